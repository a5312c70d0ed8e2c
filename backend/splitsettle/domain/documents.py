# backend/splitsettle/domain/documents.py
"""
Convert between split documents (plain dicts, as stored in jsonb columns and
sent over the API) and domain objects.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from splitsettle.domain.errors import InvalidInputError
from splitsettle.domain.models import (
    Allocation,
    BreakdownEntry,
    Member,
    Payer,
    PaymentEvent,
    PaymentStatus,
    Split,
    SplitStatus,
    SplitType,
)
from splitsettle.domain.reconcile import ReconciledSplit
from splitsettle.domain.surplus import ResolvedEntry


def _require_mapping(raw: object, what: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise InvalidInputError(f"{what} must be an object")
    return raw


def _opt_str(raw: Mapping[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise InvalidInputError(f"'{key}' must be a string")
    text = str(value).strip()
    return text or None


def _str(raw: Mapping[str, Any], key: str) -> str:
    return _opt_str(raw, key) or ""


def _cents(raw: Mapping[str, Any], key: str, *, default: Optional[int] = None) -> int:
    value = raw.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidInputError(f"'{key}' must be an int number of cents")
    return value


def _int(raw: Mapping[str, Any], key: str, *, default: int = 0) -> int:
    value = raw.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise InvalidInputError(f"'{key}' must be an int")
    return value


def _enum(enum_cls, raw: Mapping[str, Any], key: str, default):
    value = raw.get(key, default.value)
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidInputError(f"'{key}' must be one of: {allowed}") from e


def _datetime(raw: Mapping[str, Any], key: str) -> Optional[datetime]:
    value = raw.get(key)
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise InvalidInputError(f"'{key}' must be an ISO-8601 timestamp")
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise InvalidInputError(f"'{key}' must be an ISO-8601 timestamp") from e


def _percentage(raw: Mapping[str, Any]) -> Optional[Decimal]:
    value = raw.get("percentage")
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidInputError("'percentage' must be a number") from e


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# --- breakdown -------------------------------------------------------------


def entry_from_document(raw: object) -> BreakdownEntry:
    doc = _require_mapping(raw, "breakdown entry")
    entry_id = _opt_str(doc, "id")
    if entry_id is None:
        raise InvalidInputError("breakdown entry must include an 'id'")
    return BreakdownEntry(
        id=entry_id,
        name=_str(doc, "name"),
        email=_str(doc, "email"),
        user_id=_opt_str(doc, "user_id"),
        participant_id=_opt_str(doc, "participant_id"),
        amount_cents=_cents(doc, "amount_cents", default=0),
        amount_paid_cents=_cents(doc, "amount_paid_cents", default=0),
        payment_status=_enum(PaymentStatus, doc, "payment_status", PaymentStatus.UNPAID),
        paid_for_id=_opt_str(doc, "paid_for_id"),
        percentage=_percentage(doc),
    )


def entry_to_document(entry: BreakdownEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "participant_id": entry.participant_id,
        "name": entry.name,
        "email": entry.email,
        "amount_cents": entry.amount_cents,
        "amount_paid_cents": entry.amount_paid_cents,
        "payment_status": entry.payment_status.value,
        "paid_for_id": entry.paid_for_id,
        "percentage": str(entry.percentage) if entry.percentage is not None else None,
    }


# --- payments --------------------------------------------------------------


def allocation_from_document(raw: object) -> Allocation:
    doc = _require_mapping(raw, "allocation")
    return Allocation(
        amount_cents=_cents(doc, "amount_cents"),
        paid_for=_opt_str(doc, "paid_for"),
        paid_for_name=_str(doc, "paid_for_name"),
        paid_for_email=_str(doc, "paid_for_email"),
    )


def payment_from_document(raw: object) -> PaymentEvent:
    doc = _require_mapping(raw, "payment")
    payer = _require_mapping(doc.get("paid_by") or {}, "'paid_by'")
    allocations = doc.get("allocations")
    if not isinstance(allocations, list):
        raise InvalidInputError("'allocations' must be a list")
    return PaymentEvent(
        id=_opt_str(doc, "id"),
        amount_cents=_cents(doc, "amount_cents"),
        paid_by=Payer(id=_opt_str(payer, "id"), name=_str(payer, "name"), email=_str(payer, "email")),
        allocations=tuple(allocation_from_document(a) for a in allocations),
        note=_str(doc, "note"),
        created_at=_datetime(doc, "created_at"),
    )


def payment_to_document(payment: PaymentEvent) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "amount_cents": payment.amount_cents,
        "paid_by": {
            "id": payment.paid_by.id,
            "name": payment.paid_by.name,
            "email": payment.paid_by.email,
        },
        "allocations": [
            {
                "paid_for": a.paid_for,
                "paid_for_name": a.paid_for_name,
                "paid_for_email": a.paid_for_email,
                "amount_cents": a.amount_cents,
            }
            for a in payment.allocations
        ],
        "note": payment.note,
        "created_at": _iso(payment.created_at),
    }


# --- members ---------------------------------------------------------------


def member_from_document(raw: object) -> Member:
    doc = _require_mapping(raw, "member")
    return Member(
        user_id=_opt_str(doc, "user_id"),
        participant_id=_opt_str(doc, "participant_id"),
        name=_str(doc, "name"),
        email=_str(doc, "email"),
    )


# --- split -----------------------------------------------------------------


def split_from_document(raw: object) -> Split:
    doc = _require_mapping(raw, "split")
    split_id = _opt_str(doc, "id")
    if split_id is None:
        raise InvalidInputError("split must include an 'id'")

    breakdown = doc.get("breakdown") or []
    payments = doc.get("payments") or []
    if not isinstance(breakdown, list):
        raise InvalidInputError("'breakdown' must be a list")
    if not isinstance(payments, list):
        raise InvalidInputError("'payments' must be a list")

    return Split(
        id=split_id,
        name=_str(doc, "name"),
        total_cents=_cents(doc, "total_cents"),
        split_type=_enum(SplitType, doc, "split_type", SplitType.EQUAL),
        status=_enum(SplitStatus, doc, "status", SplitStatus.PENDING),
        breakdown=tuple(entry_from_document(e) for e in breakdown),
        payments=tuple(payment_from_document(p) for p in payments),
        version=_int(doc, "version", default=0),
        calculated_at=_datetime(doc, "calculated_at"),
        finalized_at=_datetime(doc, "finalized_at"),
    )


def split_to_document(split: Split) -> Dict[str, Any]:
    return {
        "id": split.id,
        "name": split.name,
        "total_cents": split.total_cents,
        "split_type": split.split_type.value,
        "status": split.status.value,
        "version": split.version,
        "calculated_at": _iso(split.calculated_at),
        "finalized_at": _iso(split.finalized_at),
        "breakdown": [entry_to_document(e) for e in split.breakdown],
        "payments": [payment_to_document(p) for p in split.payments],
    }


def resolved_entry_to_document(resolved: ResolvedEntry) -> Dict[str, Any]:
    doc = entry_to_document(resolved.entry)
    doc.update(
        {
            "amount_paid_cents": resolved.amount_paid_cents,
            "payment_status": resolved.payment_status.value,
            "surplus_received_cents": resolved.surplus_received_cents,
            "surplus_forwarded_cents": resolved.surplus_forwarded_cents,
            "surplus_from": list(resolved.surplus_from),
            "due_cents": resolved.due_cents,
            "paid_by_name": resolved.paid_by_name,
        }
    )
    return doc


def view_to_document(view: ReconciledSplit) -> Dict[str, Any]:
    """Split document with the breakdown replaced by its reconciled figures."""
    doc = split_to_document(view.split)
    doc["breakdown"] = [resolved_entry_to_document(e) for e in view.entries]
    doc["total_paid_cents"] = view.total_paid_cents
    doc["total_due_cents"] = view.total_due_cents
    return doc
