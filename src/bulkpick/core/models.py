from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

# Absorbs float rounding on bag quantities coming from the backend.
EPSILON = 0.001


class RunStatus(str, Enum):
    NEW = "NEW"
    PRINT = "PRINT"


class CompletionStatus(str, Enum):
    UNPICKED = "Unpicked"
    PARTIALLY_PICKED = "PartiallyPicked"
    ALL_COMPLETED = "AllCompleted"


class PalletStatus(str, Enum):
    UNPICKED = "Unpicked"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


@dataclass(frozen=True)
class Run:
    run_no: int
    status: RunStatus
    total_ingredients: int = 0
    formula_id: str = ""
    formula_desc: str = ""
    batch_no: str = ""


@dataclass(frozen=True)
class Ingredient:
    item_key: str
    line_id: int
    total_needed_bags: float
    picked_bags: float
    remaining_bags: float
    # Backend-reported status; None when the payload did not carry one.
    completion_status: CompletionStatus | None = None
    row_num: int = 0
    pack_size: float = 0.0
    description: str = ""
    uom: str = "KG"


@dataclass(frozen=True)
class Pallet:
    batch_number: str
    row_num: int
    bags_picked: float
    bags_remaining: float
    pallet_number: int = 0
    quantity_picked: float = 0.0
    quantity_remaining: float = 0.0

    @property
    def sort_key(self) -> tuple[int, int, str]:
        """Natural order: numeric batch numbers ascending, anything else after them."""
        raw = str(self.batch_number).strip()
        if raw.isdigit():
            return (0, int(raw), raw)
        return (1, 0, raw)


@dataclass(frozen=True)
class LotBin:
    lot_no: str
    bin_no: str
    qty_on_hand: float
    committed_qty: float
    pack_size: float = 0.0
    item_key: str = ""
    location_key: str = ""
    date_exp: str | None = None

    @property
    def available_qty(self) -> float:
        return self.qty_on_hand - self.committed_qty


@dataclass(frozen=True)
class PickedLot:
    """One lot transaction booked against a batch row; the unit an unpick reverses."""

    lot_tran_no: int
    lot_no: str
    bin_no: str
    batch_no: str
    item_key: str
    row_num: int
    line_id: int
    alloc_lot_qty: float
    pack_size: float = 0.0
    rec_date: str | None = None
    rec_userid: str = ""

    @property
    def bags(self) -> float:
        return self.alloc_lot_qty / self.pack_size if self.pack_size > 0 else 0.0


@dataclass(frozen=True)
class Pick:
    run_no: int
    row_num: int
    line_id: int
    lot_no: str
    bin_no: str
    bags: float


@dataclass(frozen=True)
class IngredientFormData:
    run: Run
    ingredient: Ingredient | None
    pallets: tuple[Pallet, ...] = ()
    ingredient_index: int = 0
    total_ingredients: int = 0


@dataclass(frozen=True)
class PickResult:
    success: bool
    document_no: str | None = None


@dataclass(frozen=True)
class RunCompletion:
    is_complete: bool
    completed_count: int
    total_ingredients: int
    incomplete_count: int = 0


@dataclass(frozen=True)
class StatusChange:
    old_status: str
    new_status: str
