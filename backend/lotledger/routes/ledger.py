# Overview: Flask API routes for the lot ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..errors import LedgerError
from ..validation import (
    ValidationError,
    parse_bool,
    parse_date,
    parse_decimal,
    parse_int,
    require_fields,
)

"""
Request conventions:
- Quantities and money are JSON strings or numbers; responses return them as strings.
- Dates are ISO-8601 (YYYY-MM-DD).
- The acting user is taken from the X-Actor header (no auth at this layer).
- Ledger errors map to {"error", "code", "details"} with the error's status.
"""

ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")

LINE_FIELD_KEYS = ("total_weight", "weight_unit", "shipper_location", "sender")


def _actor():
    return request.headers.get("X-Actor") or None


def _ledger_error(e: LedgerError):
    return jsonify(e.to_dict()), e.status


def _unexpected(what: str):
    current_app.logger.exception("Unexpected error while %s", what)
    return jsonify({"error": "Internal server error"}), 500


def _line_fields(payload: dict) -> dict:
    fields = {}
    for key in LINE_FIELD_KEYS:
        if payload.get(key) is not None:
            fields[key] = parse_decimal(payload, key) if key == "total_weight" else str(payload[key])
    return fields


# ---------------------------------------------------------------------------
# Trades and lines
# ---------------------------------------------------------------------------

@ledger_bp.post("/trades")
def create_trade_route():
    from ..services.trade_service import create_trade

    payload = request.get_json(silent=True)
    try:
        require_fields(payload, "trade_type")
        trade = create_trade(
            str(payload["trade_type"]).upper(),
            parse_date(payload, "trade_date"),
            company_id=parse_int(payload, "company_id"),
            warehouse_id=parse_int(payload, "warehouse_id"),
            trade_number=payload.get("trade_number"),
            notes=payload.get("notes"),
            actor=_actor(),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("creating trade")
    return jsonify({"trade": trade.to_dict()}), 201


@ledger_bp.get("/trades/<int:trade_id>")
def get_trade_route(trade_id: int):
    from ..services.trade_service import trade_summary

    try:
        return jsonify({"trade": trade_summary(trade_id)}), 200
    except LedgerError as e:
        return _ledger_error(e)


@ledger_bp.post("/trades/<int:trade_id>/purchase-lines")
def register_purchase_line_route(trade_id: int):
    from ..services.trade_service import register_purchase_line

    payload = request.get_json(silent=True)
    try:
        require_fields(payload, "product_id", "quantity", "unit_price")
        line, lot = register_purchase_line(
            trade_id,
            parse_int(payload, "product_id", required=True),
            parse_decimal(payload, "quantity", required=True),
            parse_decimal(payload, "unit_price", required=True),
            parent_line_id=parse_int(payload, "parent_line_id"),
            actor=_actor(),
            **_line_fields(payload),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("registering purchase line")
    return jsonify({
        "line": line.to_dict(),
        "lot": lot.to_dict() if lot is not None else None,
    }), 201


@ledger_bp.post("/trades/<int:trade_id>/sale-lines")
def register_sale_line_route(trade_id: int):
    from ..services.trade_service import register_sale_line

    payload = request.get_json(silent=True)
    try:
        require_fields(payload, "product_id", "quantity")
        result = register_sale_line(
            trade_id,
            parse_int(payload, "product_id", required=True),
            parse_decimal(payload, "quantity", required=True),
            parse_decimal(payload, "unit_price", default=0),
            parent_line_id=parse_int(payload, "parent_line_id"),
            allow_backorder=parse_bool(payload, "allow_backorder"),
            actor=_actor(),
            **_line_fields(payload),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("registering sale line")

    cost_basis = result["cost_basis"]
    return jsonify({
        "line": result["line"].to_dict(),
        "matches": [m.to_dict() for m in result["matches"]],
        "cost_basis": str(cost_basis) if cost_basis is not None else None,
        "matching_status": result["matching_status"],
        "partial": result["partial"],
    }), 201


@ledger_bp.patch("/lines/<int:line_id>")
def edit_line_route(line_id: int):
    from ..services.reversal_service import edit_line

    payload = request.get_json(silent=True)
    try:
        if not isinstance(payload, dict) or not payload:
            raise ValidationError("JSON body with fields to change required")
        changes = dict(payload)
        for key in ("quantity", "unit_price", "total_weight"):
            if key in changes:
                changes[key] = parse_decimal(payload, key)
        for key in ("product_id", "parent_line_id"):
            if key in changes:
                changes[key] = parse_int(payload, key)
        allow_backorder = parse_bool(request.args, "allow_backorder")
        line = edit_line(line_id, changes, allow_backorder=allow_backorder, actor=_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("editing line")
    return jsonify({"line": line.to_dict()}), 200


@ledger_bp.delete("/lines/<int:line_id>")
def delete_line_route(line_id: int):
    from ..services.trade_service import delete_line

    try:
        delete_line(line_id, actor=_actor())
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("deleting line")
    return jsonify({"deleted": line_id}), 200


@ledger_bp.delete("/trades/<int:trade_id>")
def delete_trade_route(trade_id: int):
    from ..services.reversal_service import delete_trade

    try:
        ctx = delete_trade(trade_id, actor=_actor())
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("deleting trade")
    return jsonify({"deleted": trade_id, "trade_number": ctx.trade_number}), 200


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

@ledger_bp.post("/lines/<int:line_id>/allocate")
def allocate_route(line_id: int):
    from ..services.matching_service import allocate, allocate_manual

    payload = request.get_json(silent=True) or {}
    try:
        selections = payload.get("lots")
        if selections:
            if not isinstance(selections, list):
                raise ValidationError("lots must be a list of {lot_id, quantity}")
            pairs = [
                (parse_int(s, "lot_id", required=True), parse_decimal(s, "quantity", required=True))
                for s in selections
            ]
            result = allocate_manual(line_id, pairs, actor=_actor())
        else:
            result = allocate(
                line_id,
                allow_backorder=parse_bool(payload, "allow_backorder"),
                actor=_actor(),
            )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("allocating line")
    return jsonify(result.to_dict()), 200


@ledger_bp.post("/lines/<int:line_id>/unmatch")
def unmatch_route(line_id: int):
    from ..services.matching_service import unmatch

    try:
        line = unmatch(line_id, actor=_actor())
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("cancelling matching")
    return jsonify({"line": line.to_dict()}), 200


@ledger_bp.get("/matching/summary")
def matching_summary_route():
    from ..services.matching_service import matching_status_summary

    return jsonify(matching_status_summary()), 200


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------

@ledger_bp.post("/returns/link")
def link_return_route():
    from ..services.return_service import link_return

    payload = request.get_json(silent=True)
    try:
        require_fields(payload, "return_line_id", "sale_line_id")
        line = link_return(
            parse_int(payload, "return_line_id", required=True),
            parse_int(payload, "sale_line_id", required=True),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("linking return")
    return jsonify({"line": line.to_dict()}), 200


@ledger_bp.get("/lines/<int:line_id>/return-excess")
def return_excess_route(line_id: int):
    from ..services.return_service import compute_return_excess

    try:
        excess = compute_return_excess(line_id)
    except LedgerError as e:
        return _ledger_error(e)
    return jsonify({
        "line_id": line_id,
        "excess": str(excess),
        "over_returned": excess > 0,
    }), 200


@ledger_bp.get("/returns/over-returns")
def over_returns_route():
    from ..services.return_service import find_over_returns

    return jsonify({"items": find_over_returns()}), 200


# ---------------------------------------------------------------------------
# Production
# ---------------------------------------------------------------------------

@ledger_bp.post("/productions")
def produce_route():
    from ..services.production_service import produce

    payload = request.get_json(silent=True)
    try:
        require_fields(payload, "inputs", "output_product_id", "output_quantity")
        raw_inputs = payload["inputs"]
        if not isinstance(raw_inputs, list) or not raw_inputs:
            raise ValidationError("inputs must be a non-empty list of {lot_id, quantity}")
        inputs = [
            (parse_int(i, "lot_id", required=True), parse_decimal(i, "quantity", required=True))
            for i in raw_inputs
        ]
        record = produce(
            inputs,
            parse_int(payload, "output_product_id", required=True),
            parse_decimal(payload, "output_quantity", required=True),
            parse_decimal(payload, "additional_cost", default=0),
            memo=payload.get("memo"),
            actor=_actor(),
            production_date=parse_date(payload, "production_date"),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("recording production")
    return jsonify({"production": record.to_dict()}), 201


@ledger_bp.delete("/productions/<int:production_id>")
def reverse_production_route(production_id: int):
    from ..services.production_service import reverse_production

    try:
        reverse_production(production_id, actor=_actor())
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("reversing production")
    return jsonify({"deleted": production_id}), 200


# ---------------------------------------------------------------------------
# Lots and stock
# ---------------------------------------------------------------------------

@ledger_bp.get("/lots")
def list_lots_route():
    from ..services.lot_service import list_lots

    product_id = request.args.get("product_id", type=int)
    include_depleted = request.args.get("include_depleted", "false").lower() in {"1", "true", "yes"}
    lots = list_lots(product_id=product_id, include_depleted=include_depleted)
    return jsonify({"items": [lot.to_dict() for lot in lots]}), 200


@ledger_bp.get("/lots/available/<int:product_id>")
def available_lots_route(product_id: int):
    from ..services.lot_service import get_available_lots

    lots = get_available_lots(product_id)
    return jsonify({"product_id": product_id, "items": [lot.to_dict() for lot in lots]}), 200


@ledger_bp.post("/lots/<int:lot_id>/adjust")
def adjust_lot_route(lot_id: int):
    from ..services.lot_service import adjust_lot

    payload = request.get_json(silent=True)
    try:
        require_fields(payload, "quantity_change")
        adjustment = adjust_lot(
            lot_id,
            parse_decimal(payload, "quantity_change", required=True),
            adjustment_type=str(payload.get("adjustment_type", "CORRECTION")).upper(),
            reason=payload.get("reason"),
            actor=_actor(),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("adjusting lot")
    return jsonify({"adjustment": adjustment.to_dict()}), 201


@ledger_bp.get("/stock")
def stock_summary_route():
    from ..services.stock_service import stock_summary

    return jsonify({"items": stock_summary()}), 200


@ledger_bp.get("/stock/<int:product_id>")
def product_stock_route(product_id: int):
    from ..services.master_service import get_product
    from ..services.reconciliation_service import product_stock_check

    try:
        get_product(product_id)
    except LedgerError as e:
        return _ledger_error(e)
    return jsonify(product_stock_check(product_id)), 200


# ---------------------------------------------------------------------------
# Reconciliation and log
# ---------------------------------------------------------------------------

@ledger_bp.get("/reconcile")
def reconcile_route():
    from ..services.reconciliation_service import reconcile

    product_id = request.args.get("product_id", type=int)
    try:
        fail_on_drift = parse_bool(request.args, "fail_on_drift") or False
        report = reconcile(product_id, raise_on_drift=fail_on_drift)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    return jsonify(report.to_dict()), 200


@ledger_bp.post("/reconcile/repair")
def repair_route():
    from ..services.reconciliation_service import repair

    payload = request.get_json(silent=True) or {}
    try:
        product_id = parse_int(payload, "product_id")
        report = repair(product_id)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        return _unexpected("repairing aggregate stock")
    return jsonify(report.to_dict()), 200


@ledger_bp.get("/log")
def list_log_route():
    from ..services.ledger_service import list_log

    limit = request.args.get("limit", default=200, type=int)
    limit = max(1, min(limit, 1000))
    rows = list_log(
        product_id=request.args.get("product_id", type=int),
        line_id=request.args.get("line_id", type=int),
        limit=limit,
    )
    return jsonify({"items": [r.to_dict() for r in rows], "limit": limit}), 200
