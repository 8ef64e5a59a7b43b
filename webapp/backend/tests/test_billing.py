"""
Tests for the billing engine.

Tests cover:
- Exactly one draft invoice per session, including concurrent requests
- Amount and due date of a draft
- Voiding and re-drafting
- Handing drafts to the invoicing sink
- The unbilled sessions report
"""
import json
from datetime import timedelta

import httpx
import pytest

from conftest import BASE_START, TUTOR_A, TUTOR_B, add_staff
from constants import BillingStatus, InvoiceStatus, SessionStatus
from models import Client, Invoice, SessionLog, Student
from services import billing
from services.exceptions import (
    AlreadyBilledError,
    InvalidTransitionError,
    InvoiceSinkError,
    PermissionDeniedError,
    ValidationFailedError,
)
from services.invoice_sink import InvoiceSink, LoggingInvoiceSink, WebhookInvoiceSink
from utils.clock import as_utc


class FailingSink(InvoiceSink):
    def create_invoice(self, payload, authorise):
        raise InvoiceSinkError()


def _webhook(handler) -> WebhookInvoiceSink:
    return WebhookInvoiceSink("https://invoices.example.test/hook", transport=httpx.MockTransport(handler))


# ============================================================================
# Draft invoices
# ============================================================================

class TestCreateDraftInvoice:
    """Tests for drafting a session's invoice."""

    def test_online_hour_is_sixty_dollars(self, db_session, make_session):
        session = make_session(modality="ONLINE", duration_minutes=60)

        invoice = billing.create_draft_invoice(db_session, session.id, TUTOR_A, now=BASE_START - timedelta(days=5))

        assert invoice.subtotal_cents == 6000
        assert invoice.status == InvoiceStatus.DRAFT.value
        assert invoice.invoice_type == "ONE_OFF"
        assert invoice.session_id == session.id
        assert invoice.client_id == "client-1"
        session = db_session.get(SessionLog, session.id)
        assert session.billing_status == BillingStatus.INVOICE_DRAFT.value
        assert session.invoice_id == invoice.id

    def test_in_home_ninety_minutes(self, db_session, make_session):
        session = make_session(modality="IN_HOME", duration_minutes=90)
        invoice = billing.create_draft_invoice(db_session, session.id, now=BASE_START - timedelta(days=5))
        assert invoice.subtotal_cents == 11250

    def test_client_locked_rate(self, db_session, make_session):
        db_session.get(Client, "client-1").rate_per_hour_cents = 4000
        db_session.commit()
        session = make_session(duration_minutes=30)
        invoice = billing.create_draft_invoice(db_session, session.id, now=BASE_START - timedelta(days=5))
        assert invoice.subtotal_cents == 2000

    def test_second_draft_is_already_billed(self, db_session, make_session):
        session = make_session()
        billing.create_draft_invoice(db_session, session.id)

        with pytest.raises(AlreadyBilledError):
            billing.create_draft_invoice(db_session, session.id)

        assert db_session.query(Invoice).count() == 1

    def test_due_two_days_before_start(self, db_session, make_session):
        session = make_session()
        invoice = billing.create_draft_invoice(db_session, session.id, now=BASE_START - timedelta(days=5))
        assert as_utc(invoice.due_at) == BASE_START - timedelta(hours=48)

    def test_due_now_when_start_is_close(self, db_session, make_session):
        session = make_session()
        now = BASE_START - timedelta(hours=10)
        invoice = billing.create_draft_invoice(db_session, session.id, now=now)
        assert as_utc(invoice.due_at) == now

    def test_prepaid_client_rejected(self, db_session, make_session):
        db_session.get(Client, "client-1").pricing_plan = "PACKAGE_5"
        db_session.commit()
        session = make_session()

        with pytest.raises(ValidationFailedError) as exc:
            billing.create_draft_invoice(db_session, session.id)

        assert exc.value.details["reason"] == "PREPAID_PACKAGE"
        assert db_session.query(Invoice).count() == 0

    def test_completed_session(self, db_session, make_session):
        session = make_session(status=SessionStatus.COMPLETED.value, billing_status=BillingStatus.READY_TO_INVOICE.value)
        invoice = billing.create_draft_invoice(db_session, session.id, TUTOR_A)
        assert invoice.id

    def test_fee_free_cancellation_rejected(self, db_session, make_session):
        session = make_session(status=SessionStatus.CANCELLED_PARENT.value)
        with pytest.raises(ValidationFailedError, match="without a fee"):
            billing.create_draft_invoice(db_session, session.id)

    @pytest.mark.parametrize("billing_status", ["INVOICED", "BILLED", "CREDITED", "FORFEITED"])
    def test_non_billable_status(self, db_session, make_session, billing_status):
        session = make_session(billing_status=billing_status)
        with pytest.raises(AlreadyBilledError):
            billing.create_draft_invoice(db_session, session.id)

    def test_other_tutor_rejected(self, db_session, make_session):
        session = make_session()
        with pytest.raises(PermissionDeniedError):
            billing.create_draft_invoice(db_session, session.id, TUTOR_B)


class TestConcurrentDraft:
    """Two draft requests for the same session on separate connections."""

    def test_exactly_one_invoice(self, file_sessions, monkeypatch):
        setup = file_sessions()
        add_staff(setup)
        setup.add(Client(id="client-1", parent_name="Pat Parent", pricing_plan="CASUAL"))
        setup.add(Student(id="student-1", client_id="client-1", assigned_tutor_id=TUTOR_A.user_id))
        setup.add(SessionLog(
            id="s1", tutor_id=TUTOR_A.user_id, student_id="student-1", client_id="client-1",
            start_at=BASE_START, end_at=BASE_START + timedelta(hours=1), duration_minutes=60,
            modality="ONLINE", status="SCHEDULED", billing_status="NOT_BILLED", version=1,
        ))
        setup.commit()
        setup.close()

        original_get = billing.get_session_or_404
        state = {"interleaved": False}

        def get_then_draft_elsewhere(db, session_id):
            session = original_get(db, session_id)
            if not state["interleaved"]:
                state["interleaved"] = True
                other = file_sessions()
                try:
                    billing.create_draft_invoice(other, session_id)
                finally:
                    other.close()
            return session

        monkeypatch.setattr(billing, "get_session_or_404", get_then_draft_elsewhere)

        db = file_sessions()
        try:
            with pytest.raises(AlreadyBilledError):
                billing.create_draft_invoice(db, "s1")
        finally:
            db.close()

        check = file_sessions()
        try:
            invoices = check.query(Invoice).all()
            assert len(invoices) == 1
            session = check.get(SessionLog, "s1")
            assert session.invoice_id == invoices[0].id
            assert session.billing_status == BillingStatus.INVOICE_DRAFT.value
        finally:
            check.close()


# ============================================================================
# Void
# ============================================================================

class TestVoidInvoice:
    def test_void_then_redraft(self, db_session, make_session):
        session = make_session()
        first = billing.create_draft_invoice(db_session, session.id)

        voided = billing.void_invoice(db_session, session.id, TUTOR_A, reason="Wrong rate")

        assert voided.id == first.id
        assert voided.status == InvoiceStatus.VOID.value
        assert voided.voided_at is not None
        assert voided.cancel_reason == "Wrong rate"
        session = db_session.get(SessionLog, session.id)
        assert session.billing_status == BillingStatus.READY_TO_INVOICE.value
        assert session.invoice_id is None

        second = billing.create_draft_invoice(db_session, session.id)
        assert second.id != first.id
        assert db_session.query(Invoice).count() == 2

    def test_nothing_to_void(self, db_session, make_session):
        session = make_session()
        with pytest.raises(ValidationFailedError):
            billing.void_invoice(db_session, session.id, TUTOR_A)

    def test_paid_invoice_cannot_be_voided(self, db_session, make_session):
        session = make_session()
        invoice = billing.create_draft_invoice(db_session, session.id)
        invoice.status = InvoiceStatus.PAID.value
        db_session.commit()

        with pytest.raises(InvalidTransitionError):
            billing.void_invoice(db_session, session.id, TUTOR_A)

        db_session.expire_all()
        assert db_session.get(SessionLog, session.id).invoice_id == invoice.id


# ============================================================================
# Sink
# ============================================================================

class TestSubmitInvoice:
    """Tests for handing a draft to the invoicing sink."""

    def test_authorised_marks_sent_and_invoiced(self, db_session, make_session):
        session = make_session()
        invoice = billing.create_draft_invoice(db_session, session.id)

        sent = billing.submit_invoice(db_session, invoice.id, LoggingInvoiceSink(), "AUTHORISED", TUTOR_A)

        assert sent.status == InvoiceStatus.SENT.value
        assert sent.external_invoice_id == f"local-{invoice.id}"
        assert db_session.get(SessionLog, session.id).billing_status == BillingStatus.INVOICED.value

    def test_draft_mode_keeps_draft(self, db_session, make_session):
        session = make_session()
        invoice = billing.create_draft_invoice(db_session, session.id)

        kept = billing.submit_invoice(db_session, invoice.id, FailingSink(), "DRAFT")

        assert kept.status == InvoiceStatus.DRAFT.value

    def test_sink_failure_leaves_draft(self, db_session, make_session):
        session = make_session()
        invoice = billing.create_draft_invoice(db_session, session.id)

        with pytest.raises(InvoiceSinkError):
            billing.submit_invoice(db_session, invoice.id, FailingSink())

        db_session.expire_all()
        assert db_session.get(Invoice, invoice.id).status == InvoiceStatus.DRAFT.value
        assert db_session.get(SessionLog, session.id).billing_status == BillingStatus.INVOICE_DRAFT.value

    def test_sent_invoice_cannot_be_sent_again(self, db_session, make_session):
        session = make_session()
        invoice = billing.create_draft_invoice(db_session, session.id)
        billing.submit_invoice(db_session, invoice.id, LoggingInvoiceSink())

        with pytest.raises(InvalidTransitionError):
            billing.submit_invoice(db_session, invoice.id, LoggingInvoiceSink())

    def test_unknown_mode(self, db_session):
        with pytest.raises(ValidationFailedError):
            billing.submit_invoice(db_session, "inv", LoggingInvoiceSink(), "SEND")


class TestWebhookInvoiceSink:
    """Tests for the HTTP sink against a mock transport."""

    PAYLOAD = {"invoiceId": "inv-1", "sessionId": "s1", "subtotalCents": 6000}

    def test_posts_payload_and_returns_reference(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"invoiceId": "ACC-42"})

        reference = _webhook(handler).create_invoice(self.PAYLOAD, authorise=True)

        assert reference == "ACC-42"
        assert seen["body"]["status"] == "AUTHORISED"
        assert seen["body"]["subtotalCents"] == 6000

    def test_id_field_accepted(self):
        sink = _webhook(lambda request: httpx.Response(201, json={"id": 7}))
        assert sink.create_invoice(self.PAYLOAD, authorise=False) == "7"

    def test_error_status(self):
        sink = _webhook(lambda request: httpx.Response(500, json={"error": "down"}))
        with pytest.raises(InvoiceSinkError):
            sink.create_invoice(self.PAYLOAD, authorise=True)

    def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(InvoiceSinkError, match="timed out"):
            _webhook(handler).create_invoice(self.PAYLOAD, authorise=True)

    def test_missing_reference(self):
        sink = _webhook(lambda request: httpx.Response(200, json={"ok": True}))
        with pytest.raises(InvoiceSinkError, match="no invoice reference"):
            sink.create_invoice(self.PAYLOAD, authorise=True)

    def test_payload_shape(self, db_session, make_session):
        session = make_session()
        invoice = billing.create_draft_invoice(db_session, session.id)
        payload = billing.build_sink_payload(invoice, db_session.get(Client, "client-1"))
        assert payload["contactName"] == "Pat Parent"
        assert payload["contactEmail"] == "pat@example.com"
        assert payload["subtotalCents"] == 6000
        assert payload["coverageStartAt"].startswith("2030-03-04T10:00:00")


# ============================================================================
# Reports
# ============================================================================

class TestListUnbilledSessions:
    def test_only_upcoming_unbilled(self, db_session, make_session):
        now = BASE_START - timedelta(days=1)
        wanted = make_session(start_at=BASE_START)
        make_session(start_at=BASE_START + timedelta(hours=3), billing_status=BillingStatus.INVOICE_DRAFT.value)
        make_session(start_at=BASE_START + timedelta(hours=5), status=SessionStatus.CANCELLED_PARENT.value)
        make_session(start_at=BASE_START + timedelta(days=40))
        make_session(start_at=now - timedelta(days=2))

        result = billing.list_unbilled_sessions(db_session, now=now)

        assert [s.id for s in result] == [wanted.id]

    def test_prepaid_clients_left_out(self, db_session, make_session):
        db_session.get(Client, "client-1").pricing_plan = "PACKAGE_12"
        db_session.commit()
        make_session(start_at=BASE_START)

        assert billing.list_unbilled_sessions(db_session, now=BASE_START - timedelta(days=1)) == []

    def test_horizon_is_configurable(self, db_session, make_session):
        make_session(start_at=BASE_START + timedelta(days=40))
        now = BASE_START - timedelta(days=1)
        assert len(billing.list_unbilled_sessions(db_session, now=now, days=60)) == 1
