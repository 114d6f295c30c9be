"""
Per-source payload mapping from staged raw records to contact signals.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping

from identity_sync.models import RawRecord

from .normalize import clean_text, normalize_email, normalize_tags
from .resolver import ContactSignal, TransactionSignal


class PayloadMappingError(ValueError):
    """Raised when a raw payload cannot be turned into a contact signal."""


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _join_name(first: Any, last: Any) -> str | None:
    return clean_text(" ".join(str(part) for part in (first, last) if part))


def _optional_bool(value: Any) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in {"1", "true", "yes", "y", "on"}:
        return True
    if token in {"0", "false", "no", "n", "off"}:
        return False
    return None


def _to_cents(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value).replace(",", "").replace("$", "").strip())
    except InvalidOperation:
        raise PayloadMappingError(f"Invalid monetary amount '{value}'.") from None
    return int((abs(amount) * 100).to_integral_value())


def _identity_key(primary: Any, email: Any) -> str | None:
    if primary not in (None, ""):
        return str(primary)
    normalized = normalize_email(email)
    if normalized:
        return f"email:{normalized}"
    return None


# ---------------------------------------------------------------------------
# Push-delivered contact sources
# ---------------------------------------------------------------------------


def _ghl_channel_opt_in(payload: Mapping[str, Any], channel: str) -> bool | None:
    dnd_settings = payload.get("dndSettings") or {}
    inbound_settings = payload.get("inboundDndSettings") or {}
    if "dnd" not in payload and not dnd_settings and not inbound_settings:
        return None
    if payload.get("dnd") is True:
        return False
    for settings in (dnd_settings, inbound_settings):
        channel_state = settings.get(channel) if isinstance(settings, Mapping) else None
        if isinstance(channel_state, Mapping) and channel_state.get("status") == "active":
            return False
    return True


def map_ghl(record: RawRecord) -> ContactSignal:
    payload = record.payload_json or {}
    contact = payload.get("contact") if isinstance(payload.get("contact"), Mapping) else payload
    external_id = _first(contact, "id", "contactId") or record.external_id
    if not external_id:
        raise PayloadMappingError("GoHighLevel payload has no contact id.")
    full_name = clean_text(_first(contact, "contactName", "name")) or _join_name(
        contact.get("firstName"), contact.get("lastName")
    )
    attributes = {
        "ghl_location_id": contact.get("locationId"),
        "source_detail": contact.get("source"),
    }
    return ContactSignal(
        source="ghl",
        external_id=str(external_id),
        email=contact.get("email"),
        phone=contact.get("phone"),
        full_name=full_name,
        wa_opt_in=_ghl_channel_opt_in(contact, "whatsApp"),
        sms_opt_in=_ghl_channel_opt_in(contact, "sms"),
        email_opt_in=_ghl_channel_opt_in(contact, "email"),
        tags=normalize_tags(contact.get("tags")),
        attributes=attributes,
        raw=payload,
    )


def map_manychat(record: RawRecord) -> ContactSignal:
    payload = record.payload_json or {}
    external_id = _first(payload, "id", "subscriber_id") or record.external_id
    if not external_id:
        raise PayloadMappingError("ManyChat payload has no subscriber id.")
    full_name = clean_text(payload.get("name")) or _join_name(payload.get("first_name"), payload.get("last_name"))
    return ContactSignal(
        source="manychat",
        external_id=str(external_id),
        email=payload.get("email"),
        phone=_first(payload, "phone", "whatsapp_phone"),
        full_name=full_name,
        wa_opt_in=_optional_bool(payload.get("optin_whatsapp")),
        sms_opt_in=_optional_bool(payload.get("optin_sms")),
        email_opt_in=_optional_bool(payload.get("optin_email")),
        tags=normalize_tags(payload.get("tags")),
        attributes={"manychat_page_id": payload.get("page_id")},
        raw=payload,
    )


_CSV_EMAIL_KEYS = ("email", "Email", "EMAIL", "correo", "Correo", "e-mail")
_CSV_PHONE_KEYS = ("phone", "Phone", "PHONE", "telefono", "Telefono", "teléfono", "whatsapp", "mobile")
_CSV_NAME_KEYS = ("full_name", "name", "Name", "nombre", "Nombre")
_CSV_FIRST_KEYS = ("first_name", "First Name", "firstName")
_CSV_LAST_KEYS = ("last_name", "Last Name", "lastName")
_CSV_SPEND_KEYS = ("total_spend", "Total Spend", "total_spent", "spend")


def map_csv(record: RawRecord) -> ContactSignal:
    payload = record.payload_json or {}
    external_id = record.external_id or str(record.id)
    full_name = clean_text(_first(payload, *_CSV_NAME_KEYS)) or _join_name(
        _first(payload, *_CSV_FIRST_KEYS), _first(payload, *_CSV_LAST_KEYS)
    )
    attributes = {}
    if record.import_id:
        attributes["csv_import_id"] = record.import_id
    return ContactSignal(
        source="csv",
        external_id=external_id,
        email=_first(payload, *_CSV_EMAIL_KEYS),
        phone=_first(payload, *_CSV_PHONE_KEYS),
        full_name=full_name,
        wa_opt_in=_optional_bool(payload.get("wa_opt_in")),
        sms_opt_in=_optional_bool(payload.get("sms_opt_in")),
        email_opt_in=_optional_bool(payload.get("email_opt_in")),
        tags=normalize_tags(payload.get("tags")),
        attributes=attributes,
        total_spend=_to_cents(_first(payload, *_CSV_SPEND_KEYS)),
        raw=payload,
    )


# ---------------------------------------------------------------------------
# Payment providers
# ---------------------------------------------------------------------------

_STRIPE_STATUS_MAP = {
    "succeeded": "paid",
    "requires_payment_method": "failed",
    "requires_action": "pending",
    "requires_confirmation": "pending",
    "processing": "pending",
    "canceled": "canceled",
}


def map_stripe(record: RawRecord) -> ContactSignal:
    intent = record.payload_json or {}
    intent_id = intent.get("id") or record.external_id
    if not intent_id:
        raise PayloadMappingError("Stripe payment intent has no id.")
    customer = intent.get("customer")
    customer_id: str | None = None
    email = intent.get("receipt_email")
    full_name = None
    phone = None
    if isinstance(customer, Mapping):
        customer_id = customer.get("id")
        email = email or customer.get("email")
        full_name = customer.get("name")
        phone = customer.get("phone")
    elif isinstance(customer, str):
        customer_id = customer

    created = intent.get("created")
    occurred_at = datetime.fromtimestamp(int(created), tz=timezone.utc) if created else None
    transaction = TransactionSignal(
        external_id=str(intent_id),
        amount=int(intent.get("amount") or 0),
        currency=str(intent.get("currency") or "usd"),
        status=_STRIPE_STATUS_MAP.get(str(intent.get("status")), "failed"),
        occurred_at=occurred_at,
        payload={"description": intent.get("description"), "metadata": intent.get("metadata") or {}},
    )
    return ContactSignal(
        source="stripe",
        external_id=_identity_key(customer_id, email) or f"payment_intent:{intent_id}",
        email=email,
        phone=phone,
        full_name=full_name,
        attributes={"stripe_customer_id": customer_id},
        transaction=transaction,
        raw=intent,
    )


def _paypal_status(status: Any, event_code: Any) -> str:
    status_token = str(status or "").lower()
    event_token = str(event_code or "").lower()
    if status_token in {"s", "success", "completed"} or "completed" in event_token:
        return "paid"
    if status_token in {"d", "denied", "failed", "r", "reversed", "refunded"}:
        return "failed"
    return "pending"


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def map_paypal(record: RawRecord) -> ContactSignal:
    detail = record.payload_json or {}
    info = detail.get("transaction_info") or {}
    payer = detail.get("payer_info") or {}
    transaction_id = info.get("transaction_id") or record.external_id
    if not transaction_id:
        raise PayloadMappingError("PayPal transaction has no transaction_id.")
    amount_info = info.get("transaction_amount") or {}
    payer_name = payer.get("payer_name") or {}
    full_name = clean_text(payer_name.get("alternate_full_name")) or _join_name(
        payer_name.get("given_name"), payer_name.get("surname")
    )
    phone_info = payer.get("phone_number") or {}
    phone = None
    if phone_info.get("national_number"):
        country = str(phone_info.get("country_code") or "").lstrip("+")
        phone = f"+{country}{phone_info['national_number']}" if country else phone_info["national_number"]
    email = payer.get("email_address")
    transaction = TransactionSignal(
        external_id=str(transaction_id),
        amount=_to_cents(amount_info.get("value")) or 0,
        currency=str(amount_info.get("currency_code") or "usd"),
        status=_paypal_status(info.get("transaction_status"), info.get("transaction_event_code")),
        occurred_at=_parse_iso(info.get("transaction_initiation_date")),
        payload={"subject": info.get("transaction_subject"), "event_code": info.get("transaction_event_code")},
    )
    return ContactSignal(
        source="paypal",
        external_id=_identity_key(payer.get("account_id"), email) or f"transaction:{transaction_id}",
        email=email,
        phone=phone,
        full_name=full_name,
        attributes={"paypal_payer_id": payer.get("account_id")},
        transaction=transaction,
        raw=detail,
    )


MAPPERS: dict[str, Callable[[RawRecord], ContactSignal]] = {
    "ghl": map_ghl,
    "manychat": map_manychat,
    "csv": map_csv,
    "stripe": map_stripe,
    "paypal": map_paypal,
}


def map_raw_record(record: RawRecord) -> ContactSignal:
    try:
        mapper = MAPPERS[record.source]
    except KeyError:
        raise PayloadMappingError(f"No payload mapper registered for source '{record.source}'.") from None
    return mapper(record)
