"""Parsing of picking-service JSON payloads into engine models.

The service is lenient about types (decimals often arrive as strings) and
omits fields it considers empty, so every reader here has a default.
"""

from __future__ import annotations

import dataclasses
import re
from typing import Any, Mapping

from bulkpick.core.models import (
    CompletionStatus,
    Ingredient,
    IngredientFormData,
    LotBin,
    Pallet,
    PickedLot,
    PickResult,
    Run,
    RunCompletion,
    RunStatus,
    StatusChange,
)

_TAG_RE = re.compile(r"^\s*([A-Z][A-Z0-9_]{2,}):")


def parse_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(str(value).strip().replace(",", ""))
    except ValueError:
        return default


def parse_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(float(str(value).strip()))
    except (ValueError, OverflowError):
        return default


def parse_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()


def parse_run_status(value: Any) -> RunStatus:
    raw = parse_str(value).upper()
    try:
        return RunStatus(raw)
    except ValueError:
        # Anything that is not PRINT is still being picked.
        return RunStatus.NEW


def parse_completion_status(value: Any) -> CompletionStatus | None:
    raw = parse_str(value)
    if not raw:
        return None
    for status in CompletionStatus:
        if status.value.lower() == raw.lower():
            return status
    return None


def error_code(message: str | None, payload: Mapping[str, Any] | None = None) -> str | None:
    """Machine code of a failure: explicit `error.code`, else a leading `TAG:` in the message."""
    if payload:
        err = payload.get("error")
        if isinstance(err, Mapping) and err.get("code"):
            return str(err["code"])
        if payload.get("code"):
            return str(payload["code"])
    if message:
        m = _TAG_RE.match(message)
        if m:
            return m.group(1)
    return None


def parse_run(data: Mapping[str, Any], *, total_ingredients: int = 0) -> Run:
    return Run(
        run_no=parse_int(data.get("run_no")),
        status=parse_run_status(data.get("status")),
        total_ingredients=parse_int(data.get("total_ingredients"), total_ingredients),
        formula_id=parse_str(data.get("formula_id")),
        formula_desc=parse_str(data.get("formula_desc")),
        batch_no=parse_str(data.get("batch_no")),
    )


def parse_ingredient(data: Mapping[str, Any]) -> Ingredient:
    total = parse_float(data.get("to_picked_bulk_qty", data.get("total_needed_bags")))
    picked = parse_float(data.get("picked_bulk_qty", data.get("picked_bags")))
    remaining = data.get("remaining_bags")
    remaining_bags = parse_float(remaining) if remaining is not None else total - picked
    return Ingredient(
        item_key=parse_str(data.get("item_key")),
        line_id=parse_int(data.get("line_id")),
        total_needed_bags=total,
        picked_bags=picked,
        remaining_bags=max(remaining_bags, 0.0),
        completion_status=parse_completion_status(data.get("completion_status")),
        row_num=parse_int(data.get("row_num")),
        pack_size=parse_float(data.get("pack_size")),
        description=parse_str(data.get("description", data.get("desc"))),
        uom=parse_str(data.get("uom"), "KG") or "KG",
    )


def parse_pallet(data: Mapping[str, Any]) -> Pallet:
    return Pallet(
        batch_number=parse_str(data.get("batch_number")),
        row_num=parse_int(data.get("row_num")),
        bags_picked=parse_float(data.get("no_of_bags_picked")),
        bags_remaining=max(parse_float(data.get("no_of_bags_remaining")), 0.0),
        pallet_number=parse_int(data.get("pallet_number")),
        quantity_picked=parse_float(data.get("quantity_picked")),
        quantity_remaining=parse_float(data.get("quantity_remaining")),
    )


def parse_pallets(data: Any) -> list[Pallet]:
    rows = data.get("pallets", []) if isinstance(data, Mapping) else data
    return [parse_pallet(row) for row in rows or []]


def parse_lot_bin(data: Mapping[str, Any]) -> LotBin:
    return LotBin(
        lot_no=parse_str(data.get("lot_no")),
        bin_no=parse_str(data.get("bin_no")),
        qty_on_hand=parse_float(data.get("qty_on_hand")),
        committed_qty=parse_float(data.get("committed_qty")),
        pack_size=parse_float(data.get("pack_size")),
        item_key=parse_str(data.get("item_key")),
        location_key=parse_str(data.get("location_key")),
        date_exp=parse_str(data.get("date_exp")) or None,
    )


def parse_picked_lot(data: Mapping[str, Any]) -> PickedLot:
    return PickedLot(
        lot_tran_no=parse_int(data.get("lot_tran_no")),
        lot_no=parse_str(data.get("lot_no")),
        bin_no=parse_str(data.get("bin_no")),
        batch_no=parse_str(data.get("batch_no")),
        item_key=parse_str(data.get("item_key")),
        row_num=parse_int(data.get("row_num")),
        line_id=parse_int(data.get("line_id")),
        alloc_lot_qty=parse_float(data.get("alloc_lot_qty")),
        pack_size=parse_float(data.get("pack_size")),
        rec_date=parse_str(data.get("rec_date")) or None,
        rec_userid=parse_str(data.get("rec_userid")),
    )


def parse_picked_lots(data: Any) -> list[PickedLot]:
    rows = data.get("picked_lots", []) if isinstance(data, Mapping) else data
    return [parse_picked_lot(row) for row in rows or []]


def parse_form_data(data: Mapping[str, Any]) -> IngredientFormData:
    form = data.get("form_data") or {}
    total = parse_int(form.get("total_ingredients"))
    run = parse_run(data.get("run") or {}, total_ingredients=total)

    ingredient = None
    current = data.get("current_ingredient") or {}
    raw_ing = current.get("ingredient")
    if raw_ing:
        ingredient = parse_ingredient(raw_ing)
        calc = current.get("calculations") or {}
        remaining = form.get("remaining_bags", calc.get("remaining_to_pick"))
        if remaining is not None:
            # form_data carries the backend's own remaining figure; prefer it.
            ingredient = dataclasses.replace(ingredient, remaining_bags=max(parse_float(remaining), 0.0))

    return IngredientFormData(
        run=run,
        ingredient=ingredient,
        pallets=tuple(parse_pallets(data.get("pallets") or [])),
        ingredient_index=parse_int(form.get("ingredient_index")),
        total_ingredients=total,
    )


def parse_pick_result(data: Mapping[str, Any] | None) -> PickResult:
    data = data or {}
    doc = data.get("document_no", data.get("lot_tran_no"))
    return PickResult(success=True, document_no=parse_str(doc) or None)


def parse_run_completion(data: Mapping[str, Any]) -> RunCompletion:
    return RunCompletion(
        is_complete=bool(data.get("is_complete")),
        completed_count=parse_int(data.get("completed_count")),
        total_ingredients=parse_int(data.get("total_ingredients")),
        incomplete_count=parse_int(data.get("incomplete_count")),
    )


def parse_status_change(data: Mapping[str, Any]) -> StatusChange:
    return StatusChange(
        old_status=parse_str(data.get("old_status", data.get("oldStatus")), RunStatus.NEW.value),
        new_status=parse_str(data.get("new_status", data.get("newStatus")), RunStatus.PRINT.value),
    )
