"""Operator workflow state machine.

Transitions are explicit `(state, event) -> state` edges with optional guards.
An event without a matching edge, or whose guards all fail, is rejected and
the machine keeps its current state and context.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

from bulkpick.core.models import EPSILON, Ingredient
from bulkpick.core import rules

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    INITIALIZATION = "INITIALIZATION"
    INGREDIENT_SELECTION = "INGREDIENT_SELECTION"
    LOT_VALIDATION = "LOT_VALIDATION"
    BIN_SELECTION = "BIN_SELECTION"
    QUANTITY_INPUT = "QUANTITY_INPUT"
    PICK_CONFIRMATION = "PICK_CONFIRMATION"
    BATCH_COMPLETION = "BATCH_COMPLETION"
    INGREDIENT_SWITCHING = "INGREDIENT_SWITCHING"
    AUTO_PROGRESSION = "AUTO_PROGRESSION"
    RUN_COMPLETION = "RUN_COMPLETION"


class WorkflowEvent(str, Enum):
    INITIALIZE_RUN = "INITIALIZE_RUN"
    SELECT_INGREDIENT = "SELECT_INGREDIENT"
    VALIDATE_LOT = "VALIDATE_LOT"
    SELECT_BIN = "SELECT_BIN"
    INPUT_QUANTITY = "INPUT_QUANTITY"
    CONFIRM_PICK = "CONFIRM_PICK"
    COMPLETE_BATCH = "COMPLETE_BATCH"
    TRIGGER_AUTO_SWITCH = "TRIGGER_AUTO_SWITCH"
    SWITCH_INGREDIENT = "SWITCH_INGREDIENT"
    COMPLETE_RUN = "COMPLETE_RUN"
    ERROR_OCCURRED = "ERROR_OCCURRED"
    RESET_WORKFLOW = "RESET_WORKFLOW"


@dataclass(frozen=True)
class WorkflowContext:
    run_no: int = 0
    current_ingredient: str = ""
    selected_lot: str = ""
    selected_bin: str = ""
    input_quantity: float = 0.0
    batch_number: str = ""
    consecutive_completed_batches: int = 0
    switch_threshold: int = 3
    auto_switch_enabled: bool = True
    user_switch_requested: bool = False
    error_message: str | None = None
    last_action: str | None = None


Guard = Callable[[WorkflowContext], bool]
# An action may return a replacement context; returning None keeps the one it got.
Action = Callable[[WorkflowContext], "WorkflowContext | None"]


@dataclass(frozen=True)
class Transition:
    source: WorkflowState | None  # None matches any state
    event: WorkflowEvent
    target: WorkflowState
    guard: Guard | None = None
    action: Action | None = None


def _clear_pick_fields(ctx: WorkflowContext) -> WorkflowContext:
    return dataclasses.replace(ctx, selected_lot="", selected_bin="", input_quantity=0.0)


class WorkflowStateMachine:
    def __init__(
        self,
        *,
        ingredient_statuses: Callable[[], Sequence[Ingredient]] = tuple,
        switch_suppressed: Callable[[], bool] = lambda: False,
        on_change: Callable[[WorkflowState, WorkflowContext], None] | None = None,
        switch_threshold: int = 3,
        auto_switch_enabled: bool = True,
        epsilon: float = EPSILON,
    ):
        self._ingredient_statuses = ingredient_statuses
        self._switch_suppressed = switch_suppressed
        self._on_change = on_change
        self._epsilon = epsilon
        self._state = WorkflowState.INITIALIZATION
        self._context = WorkflowContext(
            switch_threshold=switch_threshold,
            auto_switch_enabled=auto_switch_enabled,
        )
        self._transitions = self._build_transitions()

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def context(self) -> WorkflowContext:
        return self._context

    def _build_transitions(self) -> list[Transition]:
        S, E = WorkflowState, WorkflowEvent
        picking_states = (S.LOT_VALIDATION, S.BIN_SELECTION, S.QUANTITY_INPUT, S.PICK_CONFIRMATION)
        return [
            Transition(S.INITIALIZATION, E.INITIALIZE_RUN, S.INGREDIENT_SELECTION),
            Transition(S.INGREDIENT_SELECTION, E.SELECT_INGREDIENT, S.LOT_VALIDATION),
            Transition(
                S.INGREDIENT_SELECTION,
                E.TRIGGER_AUTO_SWITCH,
                S.AUTO_PROGRESSION,
                guard=lambda ctx: ctx.auto_switch_enabled,
            ),
            # Operator changes ingredient, or the engine re-enters it after a rejected pick.
            *[Transition(src, E.SELECT_INGREDIENT, S.LOT_VALIDATION) for src in picking_states],
            Transition(S.LOT_VALIDATION, E.VALIDATE_LOT, S.BIN_SELECTION),
            Transition(S.BIN_SELECTION, E.SELECT_BIN, S.QUANTITY_INPUT),
            Transition(S.QUANTITY_INPUT, E.INPUT_QUANTITY, S.PICK_CONFIRMATION),
            Transition(S.PICK_CONFIRMATION, E.CONFIRM_PICK, S.BATCH_COMPLETION),
            Transition(S.BATCH_COMPLETION, E.COMPLETE_BATCH, S.INGREDIENT_SWITCHING, guard=self.should_switch),
            Transition(
                S.BATCH_COMPLETION,
                E.COMPLETE_BATCH,
                S.LOT_VALIDATION,
                guard=lambda ctx: not self.should_switch(ctx),
                action=_clear_pick_fields,
            ),
            Transition(S.BATCH_COMPLETION, E.COMPLETE_RUN, S.RUN_COMPLETION, guard=lambda ctx: self.is_run_complete()),
            Transition(S.INGREDIENT_SWITCHING, E.TRIGGER_AUTO_SWITCH, S.AUTO_PROGRESSION),
            Transition(S.AUTO_PROGRESSION, E.SWITCH_INGREDIENT, S.INGREDIENT_SELECTION),
            Transition(None, E.RESET_WORKFLOW, S.INITIALIZATION),
            Transition(None, E.ERROR_OCCURRED, S.INITIALIZATION),
        ]

    # -- guards ---------------------------------------------------------

    def should_switch(self, ctx: WorkflowContext) -> bool:
        """Leave the current ingredient after a batch completes?

        Explicit operator requests and a fully picked ingredient always switch.
        The consecutive-batch threshold is ignored while a manual selection is
        in force. Nothing switches when no other ingredient is left to pick.
        """
        statuses = list(self._ingredient_statuses())
        current = next((ing for ing in statuses if ing.item_key == ctx.current_ingredient), None)
        current_done = current is not None and rules.is_ingredient_complete(current, epsilon=self._epsilon)

        if not (ctx.user_switch_requested or current_done):
            if not ctx.auto_switch_enabled:
                return False
            if ctx.consecutive_completed_batches < ctx.switch_threshold:
                return False
            if self._switch_suppressed():
                return False

        return rules.select_next_ingredient(statuses, ctx.current_ingredient, epsilon=self._epsilon) is not None

    def is_run_complete(self) -> bool:
        return rules.is_run_complete(list(self._ingredient_statuses()), epsilon=self._epsilon)

    # -- core -----------------------------------------------------------

    def available_events(self) -> list[WorkflowEvent]:
        events: list[WorkflowEvent] = []
        for t in self._transitions:
            if (t.source is None or t.source is self._state) and t.event not in events:
                events.append(t.event)
        return events

    def fire(self, event: WorkflowEvent, **context_update) -> bool:
        candidates = [t for t in self._transitions if (t.source is None or t.source is self._state) and t.event is event]
        if not candidates:
            logger.warning("Invalid transition: %s --%s--> (no edge)", self._state.value, event.value)
            return False

        proposed = dataclasses.replace(self._context, **context_update) if context_update else self._context
        transition = next((t for t in candidates if t.guard is None or t.guard(proposed)), None)
        if transition is None:
            logger.warning("Guard condition failed: %s --%s-->", self._state.value, event.value)
            return False

        if transition.action is not None:
            replaced = transition.action(proposed)
            if replaced is not None:
                proposed = replaced

        previous = self._state
        self._context = proposed
        self._state = transition.target
        logger.debug("Workflow %s --%s--> %s", previous.value, event.value, self._state.value)
        if self._on_change is not None:
            self._on_change(self._state, self._context)
        return True

    # -- operator steps -------------------------------------------------

    def initialize(self, run_no: int) -> bool:
        if self._state is not WorkflowState.INITIALIZATION:
            self.reset()
        return self.fire(
            WorkflowEvent.INITIALIZE_RUN,
            run_no=run_no,
            current_ingredient="",
            selected_lot="",
            selected_bin="",
            input_quantity=0.0,
            batch_number="",
            consecutive_completed_batches=0,
            user_switch_requested=False,
            error_message=None,
            last_action=f"Initialized run {run_no}",
        )

    def select_ingredient(self, item_key: str) -> bool:
        changes = {"current_ingredient": item_key, "user_switch_requested": False}
        if item_key != self._context.current_ingredient:
            changes["consecutive_completed_batches"] = 0
        return self.fire(
            WorkflowEvent.SELECT_INGREDIENT,
            selected_lot="",
            selected_bin="",
            input_quantity=0.0,
            last_action=f"Selected ingredient: {item_key}",
            **changes,
        )

    def validate_lot(self, lot_no: str) -> bool:
        return self.fire(
            WorkflowEvent.VALIDATE_LOT,
            selected_lot=lot_no,
            selected_bin="",
            last_action=f"Validated lot: {lot_no}",
        )

    def select_bin(self, bin_no: str) -> bool:
        return self.fire(
            WorkflowEvent.SELECT_BIN,
            selected_bin=bin_no,
            input_quantity=0.0,
            last_action=f"Selected bin: {bin_no}",
        )

    def input_quantity(self, bags: float) -> bool:
        return self.fire(WorkflowEvent.INPUT_QUANTITY, input_quantity=bags, last_action=f"Input quantity: {bags:g}")

    def confirm_pick(self) -> bool:
        ctx = self._context
        return self.fire(
            WorkflowEvent.CONFIRM_PICK,
            last_action=f"Confirmed pick: {ctx.input_quantity:g} from {ctx.selected_lot}/{ctx.selected_bin}",
        )

    def complete_batch(self, batch_number: str | None) -> bool:
        """Leave BATCH_COMPLETION; `batch_number` is set when the pick finished a pallet."""
        ctx = self._context
        consecutive = ctx.consecutive_completed_batches + (1 if batch_number else 0)
        return self.fire(
            WorkflowEvent.COMPLETE_BATCH,
            batch_number=batch_number or ctx.batch_number,
            consecutive_completed_batches=consecutive,
            last_action=f"Completed batch: {batch_number}" if batch_number else ctx.last_action,
        )

    def request_user_switch(self) -> None:
        self._context = dataclasses.replace(self._context, user_switch_requested=True)

    def trigger_auto_switch(self) -> bool:
        return self.fire(WorkflowEvent.TRIGGER_AUTO_SWITCH)

    def switch_ingredient(self, item_key: str) -> bool:
        return self.fire(
            WorkflowEvent.SWITCH_INGREDIENT,
            current_ingredient=item_key,
            selected_lot="",
            selected_bin="",
            input_quantity=0.0,
            consecutive_completed_batches=0,
            user_switch_requested=False,
            last_action=f"Switched to ingredient: {item_key}",
        )

    def complete_run(self) -> bool:
        return self.fire(WorkflowEvent.COMPLETE_RUN, last_action="Run completed")

    def reset(self) -> bool:
        return self.fire(
            WorkflowEvent.RESET_WORKFLOW,
            current_ingredient="",
            selected_lot="",
            selected_bin="",
            input_quantity=0.0,
            consecutive_completed_batches=0,
            user_switch_requested=False,
            error_message=None,
            last_action="Workflow reset",
        )

    def error(self, message: str) -> bool:
        logger.error("Workflow error: %s", message)
        return self.fire(WorkflowEvent.ERROR_OCCURRED, error_message=message, last_action=f"Error: {message}")
