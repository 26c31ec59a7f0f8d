# Overview: Flask API routes for orders; parses input and returns JSON responses.

from flask import Blueprint, g, request, jsonify, current_app

from ..config import OrderSettings
from ..decorators import with_actor
from ..errors import LedgerInvariantViolation, StockError
from ..validation import parse_cancel, parse_create_order
from ..services import order_service

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@with_actor
def create_order_route():
    try:
        data = parse_create_order(request.get_json(silent=True))
        settings = OrderSettings.from_config(current_app.config)
        order = order_service.create_order(data, settings, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 201

    except LedgerInvariantViolation:
        current_app.logger.exception("Ledger invariant violated while creating order")
        return jsonify({"error": "Internal server error"}), 500
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
def list_orders_route():
    try:
        result = order_service.list_orders(
            status=request.args.get("status"),
            channel=request.args.get("channel"),
            search=request.args.get("search"),
            page=request.args.get("page", default=1, type=int),
            limit=request.args.get("limit", default=20, type=int),
        )
        return jsonify(result), 200
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.get("/invoice/<invoice_number>")
def get_order_by_invoice_route(invoice_number: str):
    try:
        order = order_service.get_order_by_invoice(invoice_number)
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    return jsonify({"order": order.to_dict()}), 200


@orders_bp.post("/<int:order_id>/process")
@with_actor
def process_order_route(order_id: int):
    try:
        order = order_service.mark_processing(order_id, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to mark order processing")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/confirm")
@with_actor
def confirm_order_route(order_id: int):
    try:
        order = order_service.confirm_order(order_id, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200

    except LedgerInvariantViolation:
        current_app.logger.exception("Ledger invariant violated while confirming order")
        return jsonify({"error": "Internal server error"}), 500
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to confirm order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@with_actor
def cancel_order_route(order_id: int):
    try:
        reason = parse_cancel(request.get_json(silent=True))
        order = order_service.cancel_order(order_id, reason, actor_id=g.actor_id)
        return jsonify({"order": order.to_dict()}), 200

    except LedgerInvariantViolation:
        current_app.logger.exception("Ledger invariant violated while cancelling order")
        return jsonify({"error": "Internal server error"}), 500
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
