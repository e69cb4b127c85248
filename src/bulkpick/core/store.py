from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from bulkpick.core.errors import ErrorKind
from bulkpick.core.models import Ingredient, LotBin, Pallet, PickedLot, Run, RunStatus
from bulkpick.core.workflow import WorkflowContext, WorkflowState

logger = logging.getLogger(__name__)

S = TypeVar("S")
Listener = Callable[[S], None]


@dataclass(frozen=True)
class EngineState:
    """Snapshot of one operator session, rebuilt from the backend on load."""

    run: Run | None = None
    ingredients: tuple[Ingredient, ...] = ()
    current_item_key: str | None = None
    pallets: tuple[Pallet, ...] = ()
    # Which ingredient `pallets` belongs to; differs from current_item_key while reloading.
    pallets_item_key: str | None = None
    pallets_loading: bool = False
    # Bins of the scanned lot, for bin selection.
    lot_bins: tuple[LotBin, ...] = ()
    # Lot transactions booked on the run, as of the last picked-lots listing.
    picked_lots: tuple[PickedLot, ...] = ()
    workflow_state: WorkflowState = WorkflowState.INITIALIZATION
    context: WorkflowContext = WorkflowContext()
    run_status: RunStatus | None = None
    message: str | None = None
    error_kind: ErrorKind | None = None
    blocking_error: str | None = None

    @property
    def current_ingredient(self) -> Ingredient | None:
        for ing in self.ingredients:
            if ing.item_key == self.current_item_key:
                return ing
        return None


class Store(Generic[S]):
    """Holds an immutable state object and notifies subscribers on change."""

    def __init__(self, initial: S):
        self._state = initial
        self._listeners: list[Listener] = []

    @property
    def state(self) -> S:
        return self._state

    def set(self, state: S) -> None:
        if state == self._state:
            return
        self._state = state
        self._notify()

    def update(self, **changes) -> S:
        self.set(dataclasses.replace(self._state, **changes))
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        state = self._state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Store listener %r failed", listener)
