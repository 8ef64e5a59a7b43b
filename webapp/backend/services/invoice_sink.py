"""
External invoicing sink.

The sink is told "create this invoice" and trusted to do so; it returns its
own reference for the invoice. Configure INVOICE_SINK_URL to post to a
webhook (an accounting integration); without it invoices are only logged.
"""
import logging
import os
from typing import Any, Dict, Optional

import httpx

from services.exceptions import InvoiceSinkError

logger = logging.getLogger(__name__)

INVOICE_SINK_URL = os.getenv("INVOICE_SINK_URL", "")
INVOICE_SINK_TIMEOUT = float(os.getenv("INVOICE_SINK_TIMEOUT", "10"))  # seconds


class InvoiceSink:
    """Interface for anything that can receive a priced invoice."""

    def create_invoice(self, payload: Dict[str, Any], authorise: bool) -> str:
        raise NotImplementedError


class LoggingInvoiceSink(InvoiceSink):
    """Development sink: records the request and hands back a local reference."""

    def create_invoice(self, payload: Dict[str, Any], authorise: bool) -> str:
        reference = f"local-{payload['invoiceId']}"
        logger.info(
            "Invoice %s for session %s (%s cents) handed to logging sink, authorise=%s",
            payload["invoiceId"], payload["sessionId"], payload["subtotalCents"], authorise,
        )
        return reference


class WebhookInvoiceSink(InvoiceSink):
    """Posts the invoice as JSON; the response must carry the external id."""

    def __init__(self, url: str, timeout: float = INVOICE_SINK_TIMEOUT, transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def create_invoice(self, payload: Dict[str, Any], authorise: bool) -> str:
        body = dict(payload)
        body["status"] = "AUTHORISED" if authorise else "DRAFT"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.url, json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.error("Invoice sink timeout for invoice %s", payload["invoiceId"])
            raise InvoiceSinkError("The invoicing service timed out.")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Invoice sink error for invoice %s: %s", payload["invoiceId"], e)
            raise InvoiceSinkError()

        reference = data.get("invoiceId") or data.get("id")
        if not reference:
            logger.error("Invoice sink returned no reference for invoice %s", payload["invoiceId"])
            raise InvoiceSinkError("The invoicing service returned no invoice reference.")
        return str(reference)


def get_invoice_sink() -> InvoiceSink:
    """FastAPI dependency: the configured sink."""
    if INVOICE_SINK_URL:
        return WebhookInvoiceSink(INVOICE_SINK_URL)
    return LoggingInvoiceSink()
