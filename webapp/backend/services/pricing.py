"""
Session pricing.

Pure functions only: no database access, so they can be unit tested and
reused by invoice previews without a session.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from constants import DEFAULT_RATE_CENTS_BY_MODALITY, Modality, PREPAID_PRICING_PLANS


def default_rate_per_hour(modality: Optional[str]) -> int:
    """Default hourly rate in cents; unknown modalities price as in-home."""
    return DEFAULT_RATE_CENTS_BY_MODALITY.get(
        modality or Modality.IN_HOME.value,
        DEFAULT_RATE_CENTS_BY_MODALITY[Modality.IN_HOME.value],
    )


def rate_per_hour(modality: Optional[str], client_override_cents_per_hour: Optional[int] = None) -> int:
    """
    Hourly rate in cents for a session.

    A client's locked rate wins when it is set and positive; otherwise the
    modality default applies (online is cheaper than in-home).
    """
    if client_override_cents_per_hour is not None and client_override_cents_per_hour > 0:
        return int(client_override_cents_per_hour)
    return default_rate_per_hour(modality)


def amount_cents(duration_minutes: int, rate_per_hour_cents: int) -> int:
    """
    round(duration_minutes / 60 * rate), rounding half cents up.

    Decimal keeps this exact; float division would make e.g. 50 minutes at
    7500 depend on binary representation.
    """
    amount = Decimal(duration_minutes) * Decimal(rate_per_hour_cents) / Decimal(60)
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def is_prepaid_plan(pricing_plan: Optional[str]) -> bool:
    return (pricing_plan or "") in PREPAID_PRICING_PLANS


def session_amount_cents(session, client=None) -> int:
    """Price a SessionLog using its client's locked rate, if any."""
    override = client.rate_per_hour_cents if client is not None else None
    rate = rate_per_hour(session.modality, override)
    return amount_cents(session.duration_minutes, rate)
