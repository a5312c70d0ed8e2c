from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

try:
    from psycopg import Error as PsycopgError
except ImportError:  # pragma: no cover
    PsycopgError = None

from splitsettle.api.validators import (
    ApiValidationError,
    is_uuid,
    parse_create_split,
    parse_payment,
    parse_roster,
    parse_status,
)
from splitsettle.db.repository import SplitRepository
from splitsettle.domain.documents import view_to_document
from splitsettle.domain.errors import (
    InvalidInputError,
    LifecycleError,
    ReconciliationInvariantViolation,
)
from splitsettle.domain.reconcile import outstanding_dues
from splitsettle.services.reconciliation import (
    ReconciliationFailed,
    ReconciliationService,
    SplitNotFound,
)

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


class DatabaseUnavailable(RuntimeError):
    pass


def _json_error(message: str, *, status: int = 400, code: str = "bad_request"):
    return jsonify({"error": {"code": code, "message": message}}), status


def _repo() -> SplitRepository:
    return SplitRepository(current_app.config.get("DATABASE_URL", ""))


def _service() -> ReconciliationService:
    repo = _repo()
    if not repo.enabled:
        raise DatabaseUnavailable()
    return ReconciliationService(
        repo,
        repo,
        max_retries=current_app.config.get("RECONCILE_MAX_RETRIES", 3),
        currency_symbol=current_app.config.get("CURRENCY_SYMBOL", "$"),
    )


def _split_id(split_id: str) -> str:
    if not is_uuid(split_id):
        raise ApiValidationError("Split id must be a valid UUID.")
    return split_id


# --- error mapping ---------------------------------------------------------


@api_bp.errorhandler(ApiValidationError)
@api_bp.errorhandler(InvalidInputError)
def _bad_request(e: Exception):
    return _json_error(str(e), status=400)


@api_bp.errorhandler(LifecycleError)
def _invalid_state(e: LifecycleError):
    return _json_error(str(e), status=409, code="invalid_state")


@api_bp.errorhandler(SplitNotFound)
def _not_found(e: SplitNotFound):
    return _json_error("Split not found.", status=404, code="not_found")


@api_bp.errorhandler(ReconciliationInvariantViolation)
def _invariant_violation(e: ReconciliationInvariantViolation):
    return _json_error("Split shares do not add up to the total.", status=422, code="invariant_violation")


@api_bp.errorhandler(ReconciliationFailed)
def _reconcile_failed(e: ReconciliationFailed):
    return _json_error("Could not update split.", status=503, code="reconcile_failed")


@api_bp.errorhandler(DatabaseUnavailable)
def _db_unavailable(e: DatabaseUnavailable):
    return _json_error("Database is not configured.", status=503, code="db_unavailable")


@api_bp.errorhandler(Exception)
def _unexpected(e: Exception):
    if isinstance(e, HTTPException):
        return e
    if PsycopgError is not None and isinstance(e, PsycopgError):
        logger.exception("database error in %s %s", request.method, request.path)
        return _json_error("Database request failed.", status=500, code="db_error")
    logger.exception("unhandled error in %s %s", request.method, request.path)
    return _json_error("Unexpected server error.", status=500, code="internal_error")


# --- routes ----------------------------------------------------------------


@api_bp.get("/health")
def health():
    return jsonify({"status": "ok"}), 200


@api_bp.post("/splits")
def create_split_endpoint():
    """
    JSON body:
      - name: string (optional)
      - split_type: equal | percentage | custom | item_based
      - total_cents: int (ignored for item_based)
      - participants: [{user_id?, participant_id?, name?, email?, percentage?, amount_cents?, ref?}]
      - items: [{id?, price_cents, assignees: [ref]}] (item_based only)
    """
    data = request.get_json(silent=True)
    if data is None:
        return _json_error("Request body must be JSON.", status=400)

    service = _service()
    split = parse_create_split(data, now=service.clock())
    view = service.create_split(split)
    return jsonify({"split": view_to_document(view)}), 201


@api_bp.get("/splits/<split_id>")
def get_split_endpoint(split_id: str):
    view = _service().get_view(_split_id(split_id))
    return jsonify({"split": view_to_document(view)}), 200


@api_bp.post("/splits/<split_id>/payments")
def record_payment_endpoint(split_id: str):
    """
    JSON body:
      - amount_cents: int > 0
      - paid_by: {id?, name?, email?}
      - allocations: [{paid_for?, paid_for_name?, paid_for_email?, amount_cents}]
      - note: string (optional)
    """
    split_id = _split_id(split_id)
    data = request.get_json(silent=True)
    if data is None:
        return _json_error("Request body must be JSON.", status=400)

    view = _service().record_payment(split_id, parse_payment(data))
    return jsonify({"split": view_to_document(view)}), 201


@api_bp.post("/splits/<split_id>/members")
def ensure_members_endpoint(split_id: str):
    """
    Re-share the split over the current group roster. An explicit roster may
    be sent as {"members": [{user_id?, name?, email?}, ...]}.
    """
    split_id = _split_id(split_id)
    roster = parse_roster(request.get_json(silent=True))
    view = _service().reconcile(split_id, roster)
    return jsonify({"split": view_to_document(view)}), 200


@api_bp.put("/splits/<split_id>/status")
def change_status_endpoint(split_id: str):
    split_id = _split_id(split_id)
    data = request.get_json(silent=True)
    if data is None:
        return _json_error("Request body must be JSON.", status=400)

    view = _service().change_status(split_id, parse_status(data))
    return jsonify({"split": view_to_document(view)}), 200


@api_bp.get("/splits/<split_id>/dues")
def dues_endpoint(split_id: str):
    view = _service().get_view(_split_id(split_id))
    dues = [
        {
            "id": e.entry.id,
            "name": e.entry.display_name,
            "email": e.entry.email,
            "due_cents": e.due_cents,
        }
        for e in outstanding_dues(view)
    ]
    return jsonify({"split_id": view.split.id, "dues": dues, "total_due_cents": view.total_due_cents}), 200


@api_bp.post("/splits/<split_id>/nudges")
def nudges_endpoint(split_id: str):
    sent = _service().send_nudges(_split_id(split_id))
    return jsonify(
        {
            "sent": len(sent),
            "recipients": [{"email": n.recipient_email, "due_cents": n.due_cents} for n in sent],
        }
    ), 200


@api_bp.post("/splits/<split_id>/summary")
def summary_endpoint(split_id: str):
    sent = _service().send_summary(_split_id(split_id))
    return jsonify(
        {
            "sent": len(sent),
            "recipients": [{"email": n.recipient_email, "due_cents": n.due_cents} for n in sent],
        }
    ), 200
