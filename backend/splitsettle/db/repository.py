from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional, Sequence

try:
    import psycopg
    from psycopg.types.json import Jsonb
except ImportError:  # pragma: no cover
    psycopg = None
    Jsonb = None

from splitsettle.domain.documents import (
    entry_to_document,
    payment_to_document,
    split_from_document,
)
from splitsettle.domain.errors import ConcurrentModificationError
from splitsettle.domain.models import (
    CLOSED_STATUSES,
    BreakdownEntry,
    Member,
    PaymentEvent,
    Split,
    SplitStatus,
    SplitType,
)

_SPLIT_COLUMNS = """
    id::text, name, split_type, status, total_cents,
    breakdown, payments, version, calculated_at, finalized_at
"""

_CLOSED = [s.value for s in CLOSED_STATUSES]


def _row_to_split(row) -> Split:
    return split_from_document(
        {
            "id": row[0],
            "name": row[1],
            "split_type": row[2],
            "status": row[3],
            "total_cents": int(row[4]),
            "breakdown": row[5] or [],
            "payments": row[6] or [],
            "version": int(row[7]),
            "calculated_at": row[8],
            "finalized_at": row[9],
        }
    )


class SplitRepository:
    """
    Splits live in one row each; breakdown and payments are jsonb documents.

    Every write bumps `version`. Writes that replace the breakdown or status
    are conditional on the version the caller read, so a stale writer fails
    with ConcurrentModificationError instead of overwriting a newer document.
    Payments are appended in a single UPDATE and never rewritten.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url.strip()

    @property
    def enabled(self) -> bool:
        return bool(self.database_url)

    def _connect(self):
        if not self.enabled:
            raise RuntimeError("DATABASE_URL not configured")
        if psycopg is None:
            raise RuntimeError("psycopg is not installed")
        return psycopg.connect(self.database_url)

    def get_split(self, split_id: str) -> Optional[Split]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_SPLIT_COLUMNS}
                FROM splits
                WHERE id = %s
                """,
                (split_id,),
            )
            row = cur.fetchone()
            return _row_to_split(row) if row else None

    def create_split(self, split: Split) -> Split:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO splits (
                    id, name, split_type, status, total_cents,
                    breakdown, payments, version, calculated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s)
                RETURNING version
                """,
                (
                    split.id,
                    split.name,
                    split.split_type.value,
                    split.status.value,
                    split.total_cents,
                    Jsonb([entry_to_document(e) for e in split.breakdown]),
                    Jsonb([payment_to_document(p) for p in split.payments]),
                    split.calculated_at,
                ),
            )
            version = int(cur.fetchone()[0])
            conn.commit()
            return replace(split, version=version)

    def append_payment(self, split_id: str, payment: PaymentEvent) -> Optional[int]:
        """
        Append one payment to the ledger. Returns the new version, or None when
        the split does not exist or no longer accepts payments.
        """
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE splits
                SET payments = payments || %s,
                    version = version + 1
                WHERE id = %s AND NOT (status = ANY(%s))
                RETURNING version
                """,
                (Jsonb([payment_to_document(payment)]), split_id, _CLOSED),
            )
            row = cur.fetchone()
            conn.commit()
            return int(row[0]) if row else None

    def replace_breakdown(
        self,
        split_id: str,
        breakdown: Sequence[BreakdownEntry],
        *,
        split_type: SplitType,
        status: SplitStatus,
        calculated_at: Optional[datetime],
        expected_version: int,
    ) -> int:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE splits
                SET breakdown = %s,
                    split_type = %s,
                    status = %s,
                    calculated_at = %s,
                    version = version + 1
                WHERE id = %s AND version = %s
                RETURNING version
                """,
                (
                    Jsonb([entry_to_document(e) for e in breakdown]),
                    split_type.value,
                    status.value,
                    calculated_at,
                    split_id,
                    expected_version,
                ),
            )
            row = cur.fetchone()
            conn.commit()
        if row is None:
            raise ConcurrentModificationError(
                f"split {split_id} changed since version {expected_version}"
            )
        return int(row[0])

    def update_status(
        self,
        split_id: str,
        status: SplitStatus,
        *,
        calculated_at: Optional[datetime],
        finalized_at: Optional[datetime],
        expected_version: int,
    ) -> int:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE splits
                SET status = %s,
                    calculated_at = %s,
                    finalized_at = %s,
                    version = version + 1
                WHERE id = %s AND version = %s
                RETURNING version
                """,
                (status.value, calculated_at, finalized_at, split_id, expected_version),
            )
            row = cur.fetchone()
            conn.commit()
        if row is None:
            raise ConcurrentModificationError(
                f"split {split_id} changed since version {expected_version}"
            )
        return int(row[0])

    def get_group_members(self, split_id: str) -> list[Member]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT gm.user_id, gm.participant_id, gm.name, gm.email
                FROM group_members gm
                JOIN groups g ON g.id = gm.group_id
                WHERE g.split_id = %s
                ORDER BY gm.joined_at ASC, gm.user_id ASC
                """,
                (split_id,),
            )
            return [
                Member(user_id=row[0], participant_id=row[1], name=row[2] or "", email=row[3] or "")
                for row in cur.fetchall()
            ]
