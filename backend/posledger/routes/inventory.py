# Overview: Flask API routes for stock batches and the stock ledger; parses input and returns JSON responses.

from flask import Blueprint, g, request, jsonify, current_app

from ..decorators import with_actor
from ..errors import LedgerInvariantViolation, StockError, ValidationError
from ..validation import parse_adjust, parse_stock_in, parse_stock_out
from ..services import batch_service, expiry_service, inventory_service, ledger_service
from ..services.catalog_service import get_product

"""
Time semantics:
- expiry_date accepts ISO-8601 dates or datetimes with Z/offsets; stored UTC-naive.
- Responses serialize datetimes as ISO-8601 'Z' strings.
- History cursors are <ISO-8601>|<id>, taken verbatim from next_cursor.
"""

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _flag(name: str) -> bool:
    return request.args.get(name, "").strip().lower() in ("1", "true", "yes")


@inventory_bp.post("/stock-in")
@with_actor
def stock_in_route():
    try:
        data = parse_stock_in(request.get_json(silent=True))
        batch, entry = batch_service.stock_in(data, actor_id=g.actor_id)
        return jsonify({"batch": batch.to_dict(), "entry": entry.to_dict()}), 201

    except LedgerInvariantViolation:
        current_app.logger.exception("Ledger invariant violated during stock-in")
        return jsonify({"error": "Internal server error"}), 500
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to receive stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/stock-out")
@with_actor
def stock_out_route():
    try:
        data = parse_stock_out(request.get_json(silent=True))
        entries = inventory_service.stock_out(data, actor_id=g.actor_id)
        return jsonify({"entries": [e.to_dict() for e in entries]}), 201

    except LedgerInvariantViolation:
        current_app.logger.exception("Ledger invariant violated during stock-out")
        return jsonify({"error": "Internal server error"}), 500
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to remove stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/adjust")
@with_actor
def adjust_route():
    try:
        data = parse_adjust(request.get_json(silent=True))
        entries = inventory_service.adjust_stock(
            data.product_id,
            data.delta,
            data.reason,
            batch_code=data.batch_code,
            actor_id=g.actor_id,
        )
        return jsonify({"entries": [e.to_dict() for e in entries]}), 201

    except LedgerInvariantViolation:
        current_app.logger.exception("Ledger invariant violated during adjustment")
        return jsonify({"error": "Internal server error"}), 500
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/stock")
def list_stock_route():
    try:
        page = request.args.get("page", default=1, type=int)
        limit = request.args.get("limit", default=20, type=int)
        product_id = request.args.get("product_id", type=int)

        result = batch_service.list_stock(
            product_id=product_id,
            low_stock=_flag("low_stock"),
            near_expiry=_flag("near_expiry"),
            include_empty=_flag("include_empty"),
            page=page,
            limit=limit,
            near_expiry_days=current_app.config.get("NEAR_EXPIRY_DAYS", 30),
        )
        return jsonify(result), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:product_id>/availability")
def availability_route(product_id: int):
    try:
        return jsonify(batch_service.availability(product_id)), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to read availability")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:product_id>/history")
def history_route(product_id: int):
    limit = request.args.get("limit", default=50, type=int)
    try:
        get_product(product_id)
        if limit is None:
            raise ValidationError("limit must be an integer")
        page = ledger_service.history(product_id, limit=limit, before=request.args.get("cursor"))
        return jsonify({
            "items": [entry.to_dict() for entry in page.items],
            "next_cursor": page.next_cursor,
            "limit": min(limit, ledger_service.MAX_HISTORY_LIMIT),
        }), 200

    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to read stock history")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/expiry-sweep")
@with_actor
def expiry_sweep_route():
    try:
        result = expiry_service.sweep(actor_id=g.actor_id)
        return jsonify(result.to_dict()), 200

    except LedgerInvariantViolation:
        current_app.logger.exception("Ledger invariant violated during expiry sweep")
        return jsonify({"error": "Internal server error"}), 500
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Expiry sweep failed")
        return jsonify({"error": "Internal server error"}), 500
