from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

from splitsettle.domain.money import cents_to_str
from splitsettle.domain.reconcile import ReconciledSplit, highest_payer, outstanding_dues

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    kind: str  # "nudge" | "summary"
    recipient_name: str
    recipient_email: str
    subject: str
    body: str
    due_cents: int = 0


class NotificationDispatcher(Protocol):
    def send(self, notification: Notification) -> None: ...


class RealtimeRelay(Protocol):
    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> None: ...


class LoggingDispatcher:
    """Default dispatcher: records what would be mailed."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "%s for %s <%s>: %s",
            notification.kind,
            notification.recipient_name,
            notification.recipient_email,
            notification.subject,
        )


class LoggingRelay:
    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        logger.info("relay %s -> room %s: %s", event, room, payload)


def _split_title(view: ReconciledSplit) -> str:
    return view.split.name or "your split"


def build_nudge_messages(view: ReconciledSplit, *, symbol: str = "$") -> List[Notification]:
    """
    One reminder per participant with a balance due and an email address on
    file. Guests without an email cannot be nudged and are skipped.
    """
    title = _split_title(view)
    payer = highest_payer(view)
    sender = payer.entry.display_name if payer is not None else "Your group"

    messages: List[Notification] = []
    for resolved in outstanding_dues(view):
        email = resolved.entry.email.strip()
        if not email:
            logger.debug("no email for %s; nudge skipped", resolved.entry.display_name)
            continue
        due = cents_to_str(resolved.due_cents, symbol=symbol)
        messages.append(
            Notification(
                kind="nudge",
                recipient_name=resolved.entry.display_name,
                recipient_email=email,
                subject=f"Reminder: {due} due for {title}",
                body=(
                    f"Hi {resolved.entry.display_name},\n\n"
                    f"{sender} is waiting on your share of {title}.\n"
                    f"Share: {cents_to_str(resolved.share_cents, symbol=symbol)}\n"
                    f"Paid: {cents_to_str(resolved.net_paid_cents, symbol=symbol)}\n"
                    f"Due: {due}\n"
                ),
                due_cents=resolved.due_cents,
            )
        )
    return messages


def build_summary_messages(view: ReconciledSplit, *, symbol: str = "$") -> List[Notification]:
    """Per-participant summary of the whole split."""
    title = _split_title(view)
    total = cents_to_str(view.split.total_cents, symbol=symbol)

    lines = [
        f"- {e.entry.display_name}: {cents_to_str(e.share_cents, symbol=symbol)} "
        f"({e.payment_status.value})"
        for e in view.entries
    ]
    table = "\n".join(lines)

    messages: List[Notification] = []
    for resolved in view.entries:
        email = resolved.entry.email.strip()
        if not email:
            continue
        messages.append(
            Notification(
                kind="summary",
                recipient_name=resolved.entry.display_name,
                recipient_email=email,
                subject=f"Split summary for {title}",
                body=(
                    f"Hi {resolved.entry.display_name},\n\n"
                    f"{title} came to {total}.\n{table}\n\n"
                    f"You owe {cents_to_str(resolved.due_cents, symbol=symbol)}.\n"
                ),
                due_cents=resolved.due_cents,
            )
        )
    return messages
