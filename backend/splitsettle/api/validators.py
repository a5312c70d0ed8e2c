from __future__ import annotations

import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from splitsettle.domain.documents import member_from_document, payment_from_document
from splitsettle.domain.money import MoneyError, decimal_to_cents
from splitsettle.domain.models import Item, Member, PaymentEvent, Split, SplitStatus, SplitType
from splitsettle.domain.reconcile import build_split


class ApiValidationError(ValueError):
    """Raised when request payload validation fails."""


def is_uuid(value: str) -> bool:
    try:
        UUID(value)
    except (ValueError, TypeError, AttributeError):
        return False
    return True


def _object(data: object) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ApiValidationError("Request body must be a JSON object.")
    return data


def parse_members(raw_members: object, *, field: str = "participants") -> List[Member]:
    if not isinstance(raw_members, list) or not raw_members:
        raise ApiValidationError(f"'{field}' must be a non-empty list.")
    return [member_from_document(m) for m in raw_members]


def _parse_percentages(raw_participants: List[Any]) -> List[Decimal]:
    out: List[Decimal] = []
    for idx, p in enumerate(raw_participants):
        value = p.get("percentage") if isinstance(p, dict) else None
        if value is None or isinstance(value, bool):
            raise ApiValidationError(f"Participant at index {idx} must include 'percentage'.")
        try:
            out.append(Decimal(str(value)))
        except InvalidOperation as e:
            raise ApiValidationError(f"Participant at index {idx} has an invalid 'percentage'.") from e
    return out


def _parse_amounts(raw_participants: List[Any]) -> List[int]:
    out: List[int] = []
    for idx, p in enumerate(raw_participants):
        value = p.get("amount_cents") if isinstance(p, dict) else None
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ApiValidationError(
                f"Participant at index {idx} must include 'amount_cents' as int >= 0."
            )
        out.append(value)
    return out


def _parse_refs(raw_participants: List[Any]) -> List[str]:
    refs: List[str] = []
    for idx, p in enumerate(raw_participants):
        ref = p.get("ref") if isinstance(p, dict) else None
        if ref is None:
            ref = str(idx)
        if not isinstance(ref, str) or not ref.strip():
            raise ApiValidationError(f"Participant at index {idx} has an invalid 'ref'.")
        refs.append(ref.strip())
    return refs


def _parse_items(raw_items: object) -> List[Item]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ApiValidationError("'items' must be a non-empty list.")

    items: List[Item] = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ApiValidationError(f"Item at index {idx} must be an object.")
        price_cents = raw.get("price_cents")
        if not isinstance(price_cents, int) or isinstance(price_cents, bool) or price_cents < 0:
            raise ApiValidationError(f"Item at index {idx} must include 'price_cents' as int >= 0.")
        assignees = raw.get("assignees")
        if not isinstance(assignees, list) or not assignees or not all(isinstance(a, str) for a in assignees):
            raise ApiValidationError(f"Item at index {idx} must include a non-empty 'assignees' list.")
        items.append(
            Item(
                id=str(raw.get("id") or f"i{idx}"),
                price_cents=price_cents,
                assignees=tuple(a.strip() for a in assignees),
            )
        )
    return items


def _parse_total(body: Dict[str, Any], split_type: SplitType) -> int:
    """
    Accept either total_cents (int) or total as a decimal string in currency
    units, e.g. "1000.00".
    """
    if "total_cents" not in body and isinstance(body.get("total"), str):
        try:
            total_cents = decimal_to_cents(body["total"])
        except MoneyError as e:
            raise ApiValidationError("'total' must be a decimal amount like \"12.34\".") from e
    else:
        total_cents = body.get("total_cents", 0 if split_type is SplitType.ITEM_BASED else None)
    if not isinstance(total_cents, int) or isinstance(total_cents, bool) or total_cents < 0:
        raise ApiValidationError("'total_cents' must be an int >= 0.")
    return total_cents


def parse_create_split(data: object, *, now=None) -> Split:
    body = _object(data)

    raw_type = body.get("split_type", SplitType.EQUAL.value)
    try:
        split_type = SplitType(raw_type)
    except ValueError as e:
        allowed = ", ".join(t.value for t in SplitType)
        raise ApiValidationError(f"'split_type' must be one of: {allowed}.") from e

    raw_participants = body.get("participants")
    members = parse_members(raw_participants)

    total_cents = _parse_total(body, split_type)

    name = body.get("name") or ""
    if not isinstance(name, str):
        raise ApiValidationError("'name' must be a string.")

    kwargs: Dict[str, Any] = {}
    if split_type is SplitType.PERCENTAGE:
        kwargs["percentages"] = _parse_percentages(raw_participants)
    elif split_type is SplitType.CUSTOM:
        kwargs["amounts"] = _parse_amounts(raw_participants)
    elif split_type is SplitType.ITEM_BASED:
        kwargs["items"] = _parse_items(body.get("items"))
        kwargs["refs"] = _parse_refs(raw_participants)

    return build_split(
        split_id=str(uuid.uuid4()),
        name=name.strip(),
        total_cents=total_cents,
        split_type=split_type,
        members=members,
        now=now,
        **kwargs,
    )


def parse_payment(data: object) -> PaymentEvent:
    body = _object(data)
    # Ledger ids and timestamps are assigned server-side.
    body = {k: v for k, v in body.items() if k not in ("id", "created_at")}
    return payment_from_document(body)


def parse_roster(data: object) -> Optional[List[Member]]:
    """An explicit roster is optional; None means "ask the group"."""
    if data is None:
        return None
    body = _object(data)
    if "members" not in body:
        return None
    return parse_members(body["members"], field="members")


def parse_status(data: object) -> SplitStatus:
    body = _object(data)
    try:
        return SplitStatus(body.get("status"))
    except ValueError as e:
        allowed = ", ".join(s.value for s in SplitStatus)
        raise ApiValidationError(f"'status' must be one of: {allowed}.") from e
