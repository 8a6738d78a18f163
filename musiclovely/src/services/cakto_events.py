"""
Cakto payload normalization - raw webhook JSON -> PaymentEvent.

Cakto has shipped several payload shapes over time (flat vs nested customer,
camelCase vs snake_case, order id in metadata vs external_id vs embedded in
the checkout URL). Each canonical field is resolved from an ordered list of
candidate paths; the first non-empty value wins. Supporting a new variant
means appending a path to CAKTO_FIELD_PATHS, not writing new code.

Paths are rooted at "body" (the whole JSON object) or "data" (body["data"],
or the body itself when there is no data envelope).
"""
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from src.schemas.cakto_events import NormalizedStatus, PaymentEvent

logger = logging.getLogger(__name__)

EXTRACTION_TABLE_VERSION = 2

# Postgres INTEGER upper bound (orders.amount_cents, cakto_webhook_logs.amount_cents)
MAX_AMOUNT_CENTS = 2**31 - 1

CAKTO_FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "transaction_id": ("data.id", "data.transaction_id"),
    "checkout_url": ("data.checkoutUrl", "data.checkout_url", "body.checkoutUrl"),
    "order_id": ("data.metadata.order_id", "data.external_id", "data.order_id"),
    "customer_email": ("data.customer.email", "data.customer_email", "data.email"),
    "customer_phone": ("data.customer.phone", "data.customer_phone", "data.phone"),
    "amount": ("data.amount", "data.amount_paid", "data.total"),
    "paid_at": ("data.paidAt", "data.paid_at", "data.payment_date"),
    "status": ("body.event", "data.status", "body.status"),
}

_UUID_IN_TEXT = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)

# Keyword rules, evaluated in order against the lowercased status string
_STATUS_RULES: tuple[tuple[str, str], ...] = (
    ("purchase_approved", NormalizedStatus.APPROVED),
    ("purchase_refused", NormalizedStatus.REFUSED),
    ("refund", NormalizedStatus.REFUNDED),
    ("aprovada", NormalizedStatus.APPROVED),
    ("approved", NormalizedStatus.APPROVED),
)


class ReconciliationError(Exception):
    """Terminal, expected rejection of a webhook. No order is mutated."""
    http_status = 400
    outcome = "rejected"

    def __init__(self, message: str, event: Optional[PaymentEvent] = None):
        super().__init__(message)
        self.event = event


class MissingIdentifiersError(ReconciliationError):
    """Event carries no order id, no transaction id and no email."""
    http_status = 400
    outcome = "missing_identifiers"


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _dig(roots: dict, path: str) -> Any:
    current: Any = roots
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def first_present(roots: dict, field: str) -> Any:
    """Return the first non-blank value among the candidate paths for a field."""
    for path in CAKTO_FIELD_PATHS[field]:
        value = _dig(roots, path)
        if not _is_blank(value):
            return value
    return None


def _as_clean_str(value: Any) -> Optional[str]:
    if _is_blank(value):
        return None
    return str(value).strip()


def extract_order_id_hint(roots: dict) -> Optional[str]:
    """UUID embedded in the checkout URL wins over explicit order id fields."""
    checkout_url = first_present(roots, "checkout_url")
    if isinstance(checkout_url, str):
        match = _UUID_IN_TEXT.search(checkout_url)
        if match:
            return match.group(0)
    return _as_clean_str(first_present(roots, "order_id"))


def parse_amount_cents(value: Any) -> int:
    """
    Decimal currency amount (number or numeric string) -> integer cents.
    "47.90" -> 4790, 47.9 -> 4790, "47,90" -> 4790. Unparsable -> 0.

    Amounts whose cents do not fit the audit/order INTEGER columns count as
    unparsable too.
    """
    if value is None or isinstance(value, bool):
        return 0
    text = str(value).strip()
    if "," in text and "." not in text:
        text = text.replace(",", ".")
    try:
        amount = Decimal(text)
        if not amount.is_finite():
            return 0
        cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return 0
    if abs(cents) > MAX_AMOUNT_CENTS:
        logger.warning("Cakto amount %r out of range, recorded as 0", text[:40])
        return 0
    return cents


def parse_paid_at(value: Any) -> Optional[datetime]:
    """ISO-8601 string (Z suffix accepted) or epoch seconds -> aware UTC datetime."""
    if _is_blank(value):
        return None
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except (ValueError, OverflowError, OSError):
        logger.debug("Unparsable Cakto paid_at value: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def classify_status(raw_status: str, empty_means_approved: bool = False) -> str:
    """
    Map the vendor event/status string to a NormalizedStatus.

    An empty string is approved only when the legacy flag is on; anything
    unrecognized is unclassified and will be ignored by reconciliation.
    """
    lowered = (raw_status or "").strip().lower()
    if not lowered:
        return NormalizedStatus.APPROVED if empty_means_approved else NormalizedStatus.UNCLASSIFIED
    for keyword, status in _STATUS_RULES:
        if keyword in lowered:
            return status
    if lowered == "paid":
        return NormalizedStatus.APPROVED
    return NormalizedStatus.UNCLASSIFIED


def normalize_cakto_payload(body: dict, empty_status_means_approved: bool = False) -> PaymentEvent:
    """
    Build the canonical PaymentEvent from an authenticated Cakto body.
    Raises MissingIdentifiersError when nothing could ever match an order.
    """
    data = body.get("data")
    if not isinstance(data, dict):
        data = body
    roots = {"body": body, "data": data}

    raw_status = _as_clean_str(first_present(roots, "status")) or ""
    email = _as_clean_str(first_present(roots, "customer_email"))

    event = PaymentEvent(
        event_type=raw_status,
        transaction_id=_as_clean_str(first_present(roots, "transaction_id")),
        order_id_hint=extract_order_id_hint(roots),
        customer_email=email.lower() if email else "",
        customer_phone=_as_clean_str(first_present(roots, "customer_phone")),
        amount_cents=parse_amount_cents(first_present(roots, "amount")),
        paid_at=parse_paid_at(first_present(roots, "paid_at")),
        normalized_status=classify_status(raw_status, empty_status_means_approved),
    )

    if not event.has_identifiers:
        raise MissingIdentifiersError(
            "Webhook has no order_id, transaction_id or customer_email", event=event,
        )
    return event
