"""Completion and advancement rules.

Pure functions over the model records: no I/O, no engine state. The
coordinator consults these after every authoritative refresh.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from bulkpick.core.errors import PickValidationError
from bulkpick.core.models import EPSILON, CompletionStatus, Ingredient, LotBin, Pallet, PalletStatus


def is_pallet_complete(pallet: Pallet, *, epsilon: float = EPSILON) -> bool:
    return pallet.bags_remaining <= epsilon


def pallet_status(pallet: Pallet, *, epsilon: float = EPSILON) -> PalletStatus:
    if pallet.bags_picked <= epsilon:
        return PalletStatus.UNPICKED
    if is_pallet_complete(pallet, epsilon=epsilon):
        return PalletStatus.COMPLETED
    return PalletStatus.IN_PROGRESS


def sort_pallets(pallets: Iterable[Pallet]) -> list[Pallet]:
    return sorted(pallets, key=lambda p: p.sort_key)


def active_pallet(pallets: Iterable[Pallet], *, epsilon: float = EPSILON) -> Pallet | None:
    """Lowest batch number that still has bags remaining.

    None means every pallet of the ingredient is consumed.
    """
    for pallet in sort_pallets(pallets):
        if pallet.bags_remaining > epsilon:
            return pallet
    return None


def derive_completion_status(
    total_needed_bags: float, picked_bags: float, *, epsilon: float = EPSILON
) -> CompletionStatus:
    remaining = total_needed_bags - picked_bags
    if total_needed_bags > 0 and remaining <= epsilon:
        return CompletionStatus.ALL_COMPLETED
    if picked_bags > epsilon:
        return CompletionStatus.PARTIALLY_PICKED
    return CompletionStatus.UNPICKED


def is_ingredient_complete(ingredient: Ingredient, *, epsilon: float = EPSILON) -> bool:
    # The backend status wins when it is present; the formula covers stale/partial payloads.
    if ingredient.completion_status is not None:
        return ingredient.completion_status is CompletionStatus.ALL_COMPLETED
    return ingredient.remaining_bags <= epsilon and ingredient.total_needed_bags > 0


def ingredient_status(ingredient: Ingredient, *, epsilon: float = EPSILON) -> CompletionStatus:
    if ingredient.completion_status is not None:
        return ingredient.completion_status
    if is_ingredient_complete(ingredient, epsilon=epsilon):
        return CompletionStatus.ALL_COMPLETED
    if ingredient.picked_bags > epsilon:
        return CompletionStatus.PARTIALLY_PICKED
    return CompletionStatus.UNPICKED


def select_next_ingredient(
    ingredients: Sequence[Ingredient],
    current: Ingredient | str | None,
    *,
    epsilon: float = EPSILON,
) -> Ingredient | None:
    """Next ingredient to pick, in the legacy order.

    Highest line_id first, ties broken by item_key ascending. Returns None when
    nothing but the current ingredient (or nothing at all) is left to pick.
    """
    current_key = current.item_key if isinstance(current, Ingredient) else current
    candidates = [
        ing
        for ing in ingredients
        if ing.item_key != current_key and not is_ingredient_complete(ing, epsilon=epsilon)
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda ing: (-ing.line_id, ing.item_key))
    return candidates[0]


def is_run_complete(ingredients: Sequence[Ingredient], *, epsilon: float = EPSILON) -> bool:
    return bool(ingredients) and all(is_ingredient_complete(ing, epsilon=epsilon) for ing in ingredients)


def run_progress(ingredients: Sequence[Ingredient], *, epsilon: float = EPSILON) -> tuple[int, int]:
    """(completed, total) ingredient counts."""
    completed = sum(1 for ing in ingredients if is_ingredient_complete(ing, epsilon=epsilon))
    return completed, len(ingredients)


def pallets_look_stale(
    pallets: Sequence[Pallet], ingredient: Ingredient | None, *, epsilon: float = EPSILON
) -> bool:
    """All pallets at zero while the ingredient itself is not reported complete.

    This is the backend read-after-write lag right after a pick; acting on it
    would wrongly finish the ingredient.
    """
    if not pallets:
        return False
    if not all(p.bags_remaining <= epsilon for p in pallets):
        return False
    if ingredient is None:
        return True
    return not is_ingredient_complete(ingredient, epsilon=epsilon)


def validate_pick(
    *,
    requested_bags: float,
    pallet: Pallet | None,
    pack_size: float,
    lot_bin: LotBin | None,
    active: Pallet | None = None,
    epsilon: float = EPSILON,
) -> None:
    """Raise PickValidationError when a pick request must be rejected."""
    if requested_bags <= 0:
        raise PickValidationError("Quantity must be greater than zero")
    if pallet is None:
        raise PickValidationError("No pallet with remaining bags for this ingredient")
    if active is not None and active.row_num != pallet.row_num:
        raise PickValidationError(
            f"Batch {active.batch_number} must be completed before batch {pallet.batch_number}"
        )

    remaining = max(pallet.bags_remaining, 0.0)
    if requested_bags > remaining + epsilon:
        max_weight = remaining * pack_size
        raise PickValidationError(
            f"Quantity picked is more than Qty Required {max_weight:.0f} "
            f"({remaining:g} bags remaining in batch {pallet.batch_number})",
            max_pickable_bags=remaining,
            max_pickable_weight=max_weight,
        )

    if lot_bin is None:
        raise PickValidationError("Select a lot and bin before entering a quantity")
    requested_weight = requested_bags * pack_size
    if lot_bin.available_qty + epsilon < requested_weight:
        raise PickValidationError(
            f"Insufficient quantity in lot {lot_bin.lot_no}. Requested: {requested_weight:.2f}, "
            f"Available: {lot_bin.available_qty:.2f} in bin {lot_bin.bin_no}"
        )
