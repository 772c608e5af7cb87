# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/resale_pos/routes/sales.py
"""
Sale Transaction API Routes

WHY: HTTP surface of the sale engine. Routes only parse the envelope, pick
the actor and hand off to the SaleOrchestrator; every business rule lives in
the service layer.

DESIGN:
- Services return tagged results; each result knows its HTTP status
- Idempotency-Key header on create, register-payment and settle
- Malformed JSON body -> 400, before the engine is called
- Unexpected exceptions -> logged, session rolled back, generic 500

SECURITY:
- Writes: seller, admin, owner
- Cancellation: admin, owner
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import CANCEL_ROLES, WRITE_ROLES, require_actor
from ..extensions import db
from ..results import ErrorCode, Failure

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

IDEMPOTENCY_HEADER = "Idempotency-Key"


def _orchestrator():
    return current_app.extensions["sale_orchestrator"]


def _json_body():
    """The request body as a dict, or None when it is not a JSON object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _malformed_body():
    failure = Failure(ErrorCode.VALIDATION_ERROR, "Request body must be a JSON object", "malformed_body", status=400)
    return jsonify(failure.to_dict()), 400


def _internal_error():
    db.session.rollback()
    failure = Failure(ErrorCode.INTERNAL_ERROR, "Internal server error")
    return jsonify(failure.to_dict()), 500


def _respond(result):
    body, status = result.to_response()
    return jsonify(body), status


def _idempotency_key():
    key = (request.headers.get(IDEMPOTENCY_HEADER) or "").strip()
    return key or None


# =============================================================================
# SALE DOCUMENTS
# =============================================================================

@sales_bp.post("")
@sales_bp.post("/")
@require_actor(*WRITE_ROLES)
def create_sale_route():
    """
    Create a completed sale.

    Request body:
    {
        "sale_date": "2026-03-01T14:00:00Z",
        "customer": {"name": "Ana", "phone": "1155550000"},  (or "customer_id")
        "items": [{"stock_item_id": 12, "qty": 1, "sale_price_cents": 120000}],
        "total_cents": 120000,  (optional, must match the items)
        "currency": "ARS",  ("USD" requires fx_rate_used)
        "payment_method": "cash",  (or nested under "payment")
        "payments": [{"method": "cash", "currency": "ARS", "amount_cents": 50000}],  (optional)
        "trade_in": {"enabled": true, "device": {...}, "trade_value_usd_cents": 30000}  (optional)
    }

    Returns:
        201: sale_id, totals and receivable snapshot
        400: Malformed body
        404: Customer, seller or stock item not found
        409: Stock unit not available, idempotency conflict, request in progress
        422: Validation error or total mismatch
    """
    data = _json_body()
    if data is None:
        return _malformed_body()

    try:
        result = _orchestrator().create_sale(g.current_user.id, data, idempotency_key=_idempotency_key())
        return _respond(result)
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return _internal_error()


@sales_bp.get("/<int:sale_id>")
@require_actor()
def get_sale_route(sale_id: int):
    """Sale with its items, payments, warranties and trade-ins."""
    try:
        result = _orchestrator().get_sale(sale_id)
        if isinstance(result, Failure):
            return _respond(result)
        return jsonify(result), 200
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return _internal_error()


@sales_bp.patch("/<int:sale_id>")
@require_actor(*WRITE_ROLES)
def update_sale_route(sale_id: int):
    """
    Edit a sale. Any subset of sale_date, customer/customer_id, seller_id,
    items, total_cents, currency, fx_rate_used, payment metadata, notes, details.

    Sending "items" replaces the whole item set (units are re-claimed).
    """
    data = _json_body()
    if data is None:
        return _malformed_body()

    try:
        return _respond(_orchestrator().update_sale(g.current_user.id, sale_id, data))
    except Exception:
        current_app.logger.exception("Failed to update sale")
        return _internal_error()


@sales_bp.post("/<int:sale_id>/cancel")
@require_actor(*CANCEL_ROLES)
def cancel_sale_route(sale_id: int):
    """
    Cancel a sale: release its units, drop its warranties, close the receivable.

    Request body: {"reason": "customer returned the device"}
    Cancelling an already cancelled sale returns 200 with already_cancelled=true.
    """
    data = _json_body()
    if data is None:
        return _malformed_body()

    try:
        return _respond(_orchestrator().cancel_sale(g.current_user.id, sale_id, data))
    except Exception:
        current_app.logger.exception("Failed to cancel sale")
        return _internal_error()


# =============================================================================
# PAYMENTS
# =============================================================================

@sales_bp.post("/<int:sale_id>/payments")
@require_actor(*WRITE_ROLES)
def register_payment_route(sale_id: int):
    """
    Register one payment against a sale.

    Request body:
    {
        "method": "transfer",
        "currency": "ARS",
        "amount_cents": 30000,
        "card_brand": null, "installments": null, "surcharge_pct": null,
        "note": "second installment"
    }
    """
    data = _json_body()
    if data is None:
        return _malformed_body()

    try:
        result = _orchestrator().register_payment(
            g.current_user.id, sale_id, data, idempotency_key=_idempotency_key()
        )
        return _respond(result)
    except Exception:
        current_app.logger.exception("Failed to register payment")
        return _internal_error()


@sales_bp.post("/<int:sale_id>/settle")
@require_actor(*WRITE_ROLES)
def settle_sale_route(sale_id: int):
    """
    Pay off the outstanding balance with one payment.

    Request body (all optional): {"method": "transfer", "currency": "ARS", "note": "..."}
    Returns payment_id null when the sale was already fully paid.
    """
    data = request.get_json(silent=True)
    if data is None and not request.get_data():
        data = {}
    if not isinstance(data, dict):
        return _malformed_body()

    try:
        result = _orchestrator().settle_sale(
            g.current_user.id, sale_id, data, idempotency_key=_idempotency_key()
        )
        return _respond(result)
    except Exception:
        current_app.logger.exception("Failed to settle sale")
        return _internal_error()
