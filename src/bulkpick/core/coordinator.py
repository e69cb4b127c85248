"""Pick coordination engine for one operator session.

`PickCoordinator` ties the workflow state machine, the completion rules, the
run status manager and the cache guards together. Quantities are never
patched locally: every mutating backend call is followed by a re-fetch of the
ingredient list and the current ingredient's pallets, and advancement is
decided from that fresh data.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import TYPE_CHECKING, Callable

from bulkpick.core import rules
from bulkpick.core.errors import (
    BackendError,
    ErrorKind,
    PickValidationError,
    is_batch_already_completed,
    user_message,
)
from bulkpick.core.guards import Clock, Cooldown, ManualSelectionOverride, SingleFlight
from bulkpick.core.models import Ingredient, LotBin, Pallet, Pick, PickedLot, Run, RunStatus
from bulkpick.core.status_manager import RunStatusManager, StatusTrigger
from bulkpick.core.store import EngineState, Store
from bulkpick.core.workflow import WorkflowContext, WorkflowState, WorkflowStateMachine
from bulkpick.settings import EngineConfig

if TYPE_CHECKING:
    from bulkpick.data.backend import PickingBackend

logger = logging.getLogger(__name__)

AuditHook = Callable[[str, str, "str | None"], None]

_RETRY_ONCE = (ErrorKind.VALIDATION, ErrorKind.CONCURRENCY_TRANSIENT, ErrorKind.NETWORK_UNKNOWN)
_PICKING_STATES = (
    WorkflowState.LOT_VALIDATION,
    WorkflowState.BIN_SELECTION,
    WorkflowState.QUANTITY_INPUT,
    WorkflowState.PICK_CONFIRMATION,
)


class PickCoordinator:
    def __init__(
        self,
        backend: PickingBackend,
        *,
        config: EngineConfig | None = None,
        user_id: str | None = None,
        clock: Clock = time.monotonic,
        audit: AuditHook | None = None,
    ):
        self.backend = backend
        self.config = config or EngineConfig()
        self.user_id = user_id
        self._audit_hook = audit
        self._eps = self.config.epsilon

        self.store: Store[EngineState] = Store(EngineState())
        self.override = ManualSelectionOverride(self.config.manual_override_seconds, clock=clock)
        self.status = RunStatusManager(
            backend,
            debounce_seconds=self.config.completion_debounce_seconds,
            settle_seconds=self.config.completion_settle_seconds,
            clock=clock,
            on_status_change=self._on_run_status,
        )
        self.workflow = WorkflowStateMachine(
            ingredient_statuses=lambda: self.store.state.ingredients,
            switch_suppressed=self._switch_suppressed,
            on_change=self._on_workflow_change,
            switch_threshold=self.config.switch_threshold,
            auto_switch_enabled=self.config.auto_switch_enabled,
            epsilon=self._eps,
        )
        self._pallet_loads = SingleFlight()
        self._ingredient_loads = SingleFlight()
        self._stale = Cooldown(self.config.stale_data_cooldown_seconds, clock=clock)
        self._stale_refetch: asyncio.Task | None = None
        self._stale_refetches = 0
        # Bumped whenever the session moves to another run or ingredient; responses
        # that started under an older generation are discarded.
        self._generation = 0
        self._confirming = False

    # -- read side ------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self.store.state

    @property
    def run_no(self) -> int | None:
        run = self.state.run
        return run.run_no if run else None

    @property
    def can_confirm(self) -> bool:
        return (
            self.workflow.state is WorkflowState.PICK_CONFIRMATION
            and self.state.blocking_error is None
            and not self._confirming
        )

    def active_pallet(self) -> Pallet | None:
        state = self.state
        if state.pallets_item_key != state.current_item_key:
            return None
        return rules.active_pallet(state.pallets, epsilon=self._eps)

    def selected_lot_bin(self) -> LotBin | None:
        ctx = self.workflow.context
        for lot_bin in self.state.lot_bins:
            if lot_bin.lot_no == ctx.selected_lot and lot_bin.bin_no == ctx.selected_bin:
                return lot_bin
        return None

    def run_progress(self) -> tuple[int, int]:
        return rules.run_progress(self.state.ingredients, epsilon=self._eps)

    # -- run lifecycle --------------------------------------------------

    async def load_run(self, run_no: int) -> bool:
        """Load a run from the backend and position the operator on its first ingredient."""
        self._generation += 1
        generation = self._generation
        self.override.clear()
        self._stale.clear()
        self._cancel_stale_refetch()
        try:
            status = await self.backend.get_run_status(run_no)
            form = await self.backend.get_ingredient_form_data(run_no)
            ingredients = await self.backend.list_run_ingredients(run_no)
        except BackendError as exc:
            logger.error("Failed to load run %s: %s", run_no, exc)
            self._report(exc)
            return False
        if generation != self._generation:
            logger.debug("Discarding late load of run %s", run_no)
            return False

        run = dataclasses.replace(
            form.run,
            run_no=run_no,
            status=status,
            total_ingredients=len(ingredients) or form.total_ingredients,
        )
        self.status.set_current_status(run_no, status)
        self.store.set(EngineState(run=run, ingredients=tuple(ingredients), run_status=status))
        self.workflow.initialize(run_no)
        self._audit("RUN", f"Loaded run {run_no}", f"status={status.value} ingredients={len(ingredients)}")

        first = rules.select_next_ingredient(ingredients, None, epsilon=self._eps)
        if first is None:
            self._inform("All ingredients of this run are picked")
            if ingredients:
                self.status.trigger_completion_check(run_no, StatusTrigger.RUN_COMPLETED)
            return True
        return await self._enter_ingredient(first.item_key, manual=False)

    def reset(self) -> None:
        self._generation += 1
        self.override.clear()
        self._stale.clear()
        self._cancel_stale_refetch()
        self.status.reset()
        self.workflow.reset()
        self.store.set(EngineState(workflow_state=self.workflow.state, context=self.workflow.context))

    async def refresh(self) -> bool:
        """Re-fetch ingredients and the current ingredient's pallets."""
        if self.run_no is None:
            return False
        try:
            await self._reload_current()
        except BackendError as exc:
            self._report(exc)
            return False

        current = self.state.current_ingredient
        if current is None or not rules.is_ingredient_complete(current, epsilon=self._eps):
            return True
        if self.override.item_key == current.item_key:
            self.override.clear()
        if self.workflow.state in _PICKING_STATES or self.workflow.state is WorkflowState.INGREDIENT_SELECTION:
            nxt = rules.select_next_ingredient(self.state.ingredients, current, epsilon=self._eps)
            if nxt is not None:
                return await self._enter_ingredient(nxt.item_key, manual=False)
        return True

    async def revert_run_status(self) -> bool:
        """Operator-initiated PRINT -> NEW revert."""
        run_no = self.run_no
        if run_no is None:
            return False
        try:
            status = await self.status.revert_run_status(run_no)
        except BackendError as exc:
            self._report(exc)
            return False
        self._audit("RUN_STATUS", f"Reverted run {run_no}", f"status={status.value}")
        self._inform(f"Run {run_no} reverted to {status.value}")
        return True

    async def acknowledge_error(self) -> bool:
        """Clear a blocking error and restart the current ingredient from fresh data."""
        if self.state.blocking_error is None:
            self.store.update(message=None, error_kind=None)
            return True
        logger.info("Operator acknowledged blocking error: %s", self.state.blocking_error)
        self._audit("ERROR_ACK", self.state.blocking_error, None)
        self.store.update(blocking_error=None, message=None, error_kind=None)
        item_key = self.state.current_item_key
        if item_key and self.workflow.state in _PICKING_STATES:
            return await self._enter_ingredient(item_key, manual=False)
        return True

    # -- ingredient selection -------------------------------------------

    async def select_ingredient(self, item_key: str, *, manual: bool = True) -> bool:
        if self._find_ingredient(item_key) is None:
            self._reject(f"Ingredient {item_key} is not part of this run")
            return False
        if manual:
            self.override.set(item_key)
            self._audit("SELECT", f"Manual selection of {item_key}", None)
        return await self._enter_ingredient(item_key, manual=manual)

    async def request_switch(self) -> bool:
        """Explicit operator request to move on to the next ingredient."""
        self.override.clear()
        self.workflow.request_user_switch()
        if self._confirming:
            # Honoured at the next batch completion.
            return True
        if self.workflow.state in _PICKING_STATES or self.workflow.state is WorkflowState.INGREDIENT_SELECTION:
            nxt = rules.select_next_ingredient(self.state.ingredients, self.state.current_item_key, epsilon=self._eps)
            if nxt is None:
                self._inform("No other ingredient left to pick")
                return False
            return await self._enter_ingredient(nxt.item_key, manual=False)
        return True

    async def auto_switch(self) -> bool:
        """Advance to the next ingredient unless a manual selection is in force."""
        state = self.state
        current = state.current_ingredient
        current_done = current is not None and rules.is_ingredient_complete(current, epsilon=self._eps)
        if self._switch_suppressed() and not current_done:
            logger.debug("Auto-switch suppressed by manual selection of %s", self.override.item_key)
            return False

        nxt = rules.select_next_ingredient(state.ingredients, state.current_item_key, epsilon=self._eps)
        if nxt is None:
            logger.debug("Auto-switch: no other ingredient left")
            return False
        if not self.workflow.trigger_auto_switch():
            return False
        if not self.workflow.switch_ingredient(nxt.item_key):
            return False
        self._audit("SWITCH", f"Auto-switched to {nxt.item_key}", f"from={state.current_item_key}")
        entered = await self._enter_ingredient(nxt.item_key, manual=False)
        self._inform(f"Switched to ingredient {nxt.item_key}")
        return entered

    async def _enter_ingredient(self, item_key: str, *, manual: bool) -> bool:
        if not self.workflow.select_ingredient(item_key):
            self._reject(f"Cannot select an ingredient while in {self.workflow.state.value}")
            return False
        self._generation += 1
        self._cancel_stale_refetch()
        same = self.state.pallets_item_key == item_key
        self.store.update(
            current_item_key=item_key,
            pallets=self.state.pallets if same else (),
            pallets_item_key=item_key if same else None,
            lot_bins=(),
            message=None,
            error_kind=None,
        )
        logger.info("Picking ingredient %s (%s)", item_key, "manual" if manual else "auto")
        try:
            await self._load_pallets(item_key)
        except BackendError as exc:
            self._report(exc)
            return False
        return True

    # -- operator pick steps --------------------------------------------

    async def validate_lot(self, lot_no: str) -> bool:
        ingredient = self.state.current_ingredient
        run_no = self.run_no
        if ingredient is None or run_no is None:
            self._reject("Select an ingredient first")
            return False
        lot_no = lot_no.strip()
        if not lot_no:
            self._reject("Lot number is required")
            return False

        generation = self._generation
        try:
            bins = await self.backend.get_lot_bins(run_no, lot_no, ingredient.item_key)
        except BackendError as exc:
            self._report(exc)
            return False
        if not self._is_current(generation, ingredient.item_key):
            logger.debug("Discarding late bins of lot %s for %s", lot_no, ingredient.item_key)
            return False
        if not bins:
            self._reject(f"Lot {lot_no} has no stock for {ingredient.item_key}")
            return False
        if not self.workflow.validate_lot(lot_no):
            return False
        self.store.update(lot_bins=tuple(bins), message=None, error_kind=None)
        return True

    def select_bin(self, bin_no: str) -> bool:
        lot_no = self.workflow.context.selected_lot
        if not any(b.bin_no == bin_no and b.lot_no == lot_no for b in self.state.lot_bins):
            self._reject(f"Bin {bin_no} does not hold lot {lot_no}")
            return False
        return self.workflow.select_bin(bin_no)

    def input_quantity(self, bags: float) -> bool:
        ingredient = self.state.current_ingredient
        lot_bin = self.selected_lot_bin()
        active = self.active_pallet()
        pack_size = (ingredient.pack_size if ingredient else 0.0) or (lot_bin.pack_size if lot_bin else 0.0)
        try:
            rules.validate_pick(
                requested_bags=bags,
                pallet=active,
                pack_size=pack_size,
                lot_bin=lot_bin,
                active=active,
                epsilon=self._eps,
            )
        except PickValidationError as exc:
            self._reject(str(exc))
            return False
        return self.workflow.input_quantity(bags)

    async def confirm_pick(self) -> bool:
        if self.state.blocking_error is not None:
            self._reject("A critical error must be acknowledged before picking again")
            return False
        if self.workflow.state is not WorkflowState.PICK_CONFIRMATION:
            logger.warning("confirm_pick ignored in state %s", self.workflow.state.value)
            return False
        if self._confirming:
            logger.debug("confirm_pick already in progress")
            return False

        ingredient = self.state.current_ingredient
        target = self.active_pallet()
        run_no = self.run_no
        if ingredient is None or target is None or run_no is None:
            self._reject("No pallet with remaining bags for this ingredient")
            return False

        ctx = self.workflow.context
        # The pallet is fixed here; later refreshes must not re-target this pick.
        pick = Pick(
            run_no=run_no,
            row_num=target.row_num,
            line_id=ingredient.line_id,
            lot_no=ctx.selected_lot,
            bin_no=ctx.selected_bin,
            bags=ctx.input_quantity,
        )
        self._confirming = True
        try:
            return await self._confirm(pick, target, ingredient.item_key)
        finally:
            self._confirming = False

    async def _confirm(self, pick: Pick, target: Pallet, item_key: str) -> bool:
        retried = False
        while True:
            try:
                result = await self.backend.confirm_pick(pick, user_id=self.user_id)
                break
            except BackendError as exc:
                kind = exc.kind
                if kind is ErrorKind.TRANSACTION_CRITICAL:
                    logger.critical("Pick on run %s row %s failed and was NOT rolled back: %s", pick.run_no, pick.row_num, exc.message)
                    self._audit("PICK_CRITICAL", exc.message, self._pick_details(pick))
                    self.store.update(blocking_error=exc.message, message=exc.message, error_kind=kind)
                    return False
                if is_batch_already_completed(exc):
                    logger.warning("Batch %s of %s already completed, reloading", target.batch_number, item_key)
                    await self._recover_completed_batch(item_key)
                    self._report(exc)
                    return False
                if kind in _RETRY_ONCE and not retried:
                    retried = True
                    logger.warning("Pick failed (%s), reloading and retrying once: %s", kind.value, exc.message)
                    if not await self._revalidate(pick, target, item_key):
                        self._report(exc)
                        return False
                    continue
                logger.error("Pick failed (%s): %s", kind.value, exc.message)
                self._report(exc)
                return False

        self.workflow.confirm_pick()
        self._audit(
            "PICK",
            f"Picked {pick.bags:g} bags of {item_key} into batch {target.batch_number}",
            self._pick_details(pick, document_no=result.document_no),
        )
        await self._after_pick(pick, target, item_key)
        return True

    async def _revalidate(self, pick: Pick, target: Pallet, item_key: str) -> bool:
        """Reload and check the captured pallet can still take the pick."""
        try:
            await self._reload_current()
        except BackendError as exc:
            logger.error("Reload before retry failed: %s", exc)
            return False
        if self.state.current_item_key != item_key:
            return False
        fresh = self.active_pallet()
        if fresh is None or fresh.row_num != target.row_num:
            return False
        return pick.bags <= fresh.bags_remaining + self._eps

    async def _recover_completed_batch(self, item_key: str) -> None:
        try:
            await self._reload_current()
        except BackendError as exc:
            logger.error("Reload after completed batch failed: %s", exc)
            return
        if self.state.current_item_key != item_key:
            return
        ingredient = self.state.current_ingredient
        if ingredient is not None and rules.is_ingredient_complete(ingredient, epsilon=self._eps):
            nxt = rules.select_next_ingredient(self.state.ingredients, item_key, epsilon=self._eps)
            if nxt is not None:
                await self._enter_ingredient(nxt.item_key, manual=False)
                return
        # Same ingredient, next active pallet.
        await self._enter_ingredient(item_key, manual=False)

    async def _after_pick(self, pick: Pick, target: Pallet, item_key: str) -> None:
        generation = self._generation
        run_no = pick.run_no
        try:
            await self._refresh_ingredients()
            pallets = await self._load_pallets(item_key)
        except BackendError as exc:
            logger.error("Refresh after pick failed: %s", exc)
            pallets = None
        if generation != self._generation:
            return

        if pallets is not None:
            fresh = next((p for p in pallets if p.row_num == target.row_num), None)
            pallet_done = fresh is None or rules.is_pallet_complete(fresh, epsilon=self._eps)
        else:
            pallet_done = target.bags_remaining - pick.bags <= self._eps

        ingredients = self.state.ingredients
        ingredient = self._find_ingredient(item_key)
        ingredient_done = ingredient is not None and rules.is_ingredient_complete(ingredient, epsilon=self._eps)

        if rules.is_run_complete(ingredients, epsilon=self._eps):
            self.workflow.complete_run()
            self.status.trigger_completion_check(run_no, StatusTrigger.RUN_COMPLETED)
            self._inform("All ingredients picked, run is ready to print")
            return

        if ingredient_done:
            if self.override.item_key == item_key:
                self.override.clear()
            self.status.trigger_completion_check(run_no, StatusTrigger.INGREDIENT_COMPLETED)
        elif pallet_done:
            self.status.trigger_completion_check(run_no, StatusTrigger.PALLET_COMPLETED)
        else:
            self.status.trigger_completion_check(run_no, StatusTrigger.AFTER_PICK)

        self.workflow.complete_batch(target.batch_number if pallet_done else None)
        if self.workflow.state is WorkflowState.INGREDIENT_SWITCHING:
            await self.auto_switch()
        elif pallet_done:
            nxt = self.active_pallet()
            if nxt is not None:
                self._inform(f"Batch {target.batch_number} completed, continue with batch {nxt.batch_number}")

    async def unpick(
        self,
        row_num: int,
        line_id: int,
        lot_no: str | None = None,
        lot_tran_no: int | None = None,
    ) -> bool:
        """Reverse picks on one batch row: a single transaction, one lot, or the whole row."""
        run_no = self.run_no
        if run_no is None:
            return False
        if self.state.blocking_error is not None:
            self._reject("A critical error must be acknowledged before unpicking")
            return False
        try:
            await self.backend.unpick_lot(run_no, row_num, line_id, lot_no=lot_no, lot_tran_no=lot_tran_no)
        except BackendError as exc:
            self._unpick_failed(exc, f"Unpick on run {run_no} row {row_num}")
            return False

        self._audit(
            "UNPICK",
            f"Unpicked run {run_no} row {row_num} line {line_id}",
            f"lot_no={lot_no} lot_tran_no={lot_tran_no}",
        )
        try:
            await self._reload_current()
        except BackendError as exc:
            self._report(exc)
            return True

        if self.workflow.state is WorkflowState.RUN_COMPLETION:
            # The run is no longer fully picked; start over on the re-opened ingredient.
            reopened = next((i for i in self.state.ingredients if i.line_id == line_id), None)
            self.workflow.initialize(run_no)
            if reopened is not None:
                await self._enter_ingredient(reopened.item_key, manual=False)
        await self.load_picked_lots()
        return True

    async def unpick_lot(self, lot: PickedLot) -> bool:
        return await self.unpick(lot.row_num, lot.line_id, lot_no=lot.lot_no, lot_tran_no=lot.lot_tran_no)

    async def unpick_all(self) -> bool:
        """Reverse every pick of the run and restart on its first ingredient."""
        run_no = self.run_no
        if run_no is None:
            return False
        if self.state.blocking_error is not None:
            self._reject("A critical error must be acknowledged before unpicking")
            return False
        try:
            await self.backend.unpick_all(run_no)
        except BackendError as exc:
            self._unpick_failed(exc, f"Unpick of all lots on run {run_no}")
            return False

        self._audit("UNPICK", f"Unpicked all lots of run {run_no}", None)
        self.override.clear()
        try:
            await self._refresh_ingredients()
        except BackendError as exc:
            self._report(exc)
            return True

        if self.workflow.state not in _PICKING_STATES:
            self.workflow.initialize(run_no)
        first = rules.select_next_ingredient(self.state.ingredients, None, epsilon=self._eps)
        if first is not None:
            await self._enter_ingredient(first.item_key, manual=False)
        await self.load_picked_lots()
        return True

    async def load_picked_lots(self, row_num: int | None = None) -> tuple[PickedLot, ...] | None:
        """Lot transactions of one batch row of the current ingredient, or of the whole run."""
        run_no = self.run_no
        if run_no is None:
            return None
        ingredient = self.state.current_ingredient
        if row_num is not None and ingredient is None:
            self._reject("Select an ingredient first")
            return None
        generation = self._generation
        try:
            if row_num is None:
                lots = await self.backend.get_all_picked_lots(run_no)
            else:
                lots = await self.backend.get_picked_lots(run_no, row_num, ingredient.line_id)
        except BackendError as exc:
            self._report(exc)
            return None
        # A run-wide listing survives ingredient changes; a row listing does not.
        stale = row_num is not None and not self._is_current(generation, ingredient.item_key)
        if self.run_no != run_no or stale:
            logger.debug("Discarding late picked-lots listing for run %s", run_no)
            return None
        lots = tuple(lots)
        self.store.update(picked_lots=lots)
        return lots

    def picked_lots_for_current(self) -> list[PickedLot]:
        ingredient = self.state.current_ingredient
        if ingredient is None:
            return []
        return [lot for lot in self.state.picked_lots if lot.line_id == ingredient.line_id]

    def _unpick_failed(self, exc: BackendError, what: str) -> None:
        if exc.kind is ErrorKind.TRANSACTION_CRITICAL:
            logger.critical("%s failed and was NOT rolled back: %s", what, exc.message)
            self._audit("PICK_CRITICAL", exc.message, what)
            self.store.update(blocking_error=exc.message, message=exc.message, error_kind=exc.kind)
            return
        logger.error("%s failed (%s): %s", what, exc.kind.value, exc.message)
        self._report(exc)

    # -- loading --------------------------------------------------------

    async def _reload_current(self) -> None:
        await self._refresh_ingredients()
        item_key = self.state.current_item_key
        if item_key:
            await self._load_pallets(item_key)

    async def _refresh_ingredients(self) -> tuple[Ingredient, ...] | None:
        run_no = self.run_no
        if run_no is None:
            return None
        generation = self._generation
        ingredients = await self._ingredient_loads.run(
            run_no, lambda: self.backend.list_run_ingredients(run_no)
        )
        if generation != self._generation or self.run_no != run_no:
            logger.debug("Discarding late ingredient list for run %s", run_no)
            return None
        ingredients = tuple(ingredients)
        self.store.update(ingredients=ingredients)
        return ingredients

    async def load_pallets(self, item_key: str) -> tuple[Pallet, ...] | None:
        return await self._load_pallets(item_key)

    async def _load_pallets(self, item_key: str) -> tuple[Pallet, ...] | None:
        """Fetch pallets for `item_key`; None when the data is stale or superseded."""
        run_no = self.run_no
        if run_no is None:
            return None
        key = (run_no, item_key)
        generation = self._generation
        self.store.update(pallets_loading=True)

        for _ in range(2):
            try:
                pallets = await self._pallet_loads.run(key, lambda: self.backend.get_pallet_tracking(run_no, item_key))
            except BackendError:
                if self._is_current(generation, item_key):
                    self.store.update(pallets_loading=False)
                raise
            if not self._is_current(generation, item_key):
                logger.debug("Discarding late pallet data for %s", item_key)
                return None

            pallets = tuple(rules.sort_pallets(pallets))
            ingredient = self._find_ingredient(item_key)
            if not rules.pallets_look_stale(pallets, ingredient, epsilon=self._eps):
                self._stale_refetches = 0
                self.store.update(pallets=pallets, pallets_item_key=item_key, pallets_loading=False)
                return pallets

            # Read-after-write lag: show a loading state instead of zero pallets.
            self.store.update(pallets=(), pallets_item_key=item_key, pallets_loading=True)
            if not self._stale.ready(key):
                logger.debug("Stale pallet data for %s, refresh suppressed", item_key)
                break
            logger.info("Pallet data for %s looks stale, re-fetching", item_key)
        self._schedule_stale_refetch(item_key)
        return None

    def _schedule_stale_refetch(self, item_key: str) -> None:
        """Re-fetch lagging pallets once the cooldown has passed, without waiting for the operator."""
        if self._stale_refetch is not None and not self._stale_refetch.done():
            return
        if self._stale_refetches >= self.config.stale_refetch_limit:
            logger.warning(
                "Pallet data for %s still stale after %d re-fetches, waiting for a manual refresh",
                item_key,
                self._stale_refetches,
            )
            self._inform("Pallet data is still updating, press Refresh")
            return
        self._stale_refetches += 1
        self._stale_refetch = asyncio.get_running_loop().create_task(
            self._refetch_stale(self._generation, item_key)
        )

    async def _refetch_stale(self, generation: int, item_key: str) -> None:
        await asyncio.sleep(self.config.stale_data_cooldown_seconds)
        if self._stale_refetch is asyncio.current_task():
            self._stale_refetch = None
        if not self._is_current(generation, item_key):
            return
        try:
            await self._load_pallets(item_key)
        except BackendError as exc:
            logger.warning("Scheduled pallet re-fetch for %s failed: %s", item_key, exc)

    def _cancel_stale_refetch(self) -> None:
        task, self._stale_refetch = self._stale_refetch, None
        if task is not None and not task.done():
            task.cancel()
        self._stale_refetches = 0

    # -- helpers --------------------------------------------------------

    def _find_ingredient(self, item_key: str) -> Ingredient | None:
        return next((i for i in self.state.ingredients if i.item_key == item_key), None)

    def _is_current(self, generation: int, item_key: str) -> bool:
        return generation == self._generation and self.state.current_item_key == item_key

    def _switch_suppressed(self) -> bool:
        return self.override.active and self.override.item_key == self.state.current_item_key

    def _on_workflow_change(self, state: WorkflowState, context: WorkflowContext) -> None:
        self.store.update(workflow_state=state, context=context)

    def _on_run_status(self, run_no: int, old: RunStatus | None, new: RunStatus) -> None:
        run: Run | None = self.state.run
        if run is None or run.run_no != run_no:
            return
        self.store.update(run=dataclasses.replace(run, status=new), run_status=new)
        if old is not None:
            self._audit("RUN_STATUS", f"Run {run_no} {old.value} -> {new.value}", None)

    def _report(self, exc: BackendError) -> None:
        kind = exc.kind
        self.store.update(message=user_message(kind, exc.message), error_kind=kind)

    def _reject(self, message: str) -> None:
        logger.info("Rejected: %s", message)
        self.store.update(message=message, error_kind=ErrorKind.VALIDATION)

    def _inform(self, message: str) -> None:
        self.store.update(message=message, error_kind=None)

    def _audit(self, category: str, message: str, details: str | None) -> None:
        if self._audit_hook is not None:
            self._audit_hook(category, message, details)

    @staticmethod
    def _pick_details(pick: Pick, *, document_no: str | None = None) -> str:
        details = (
            f"run={pick.run_no} row={pick.row_num} line={pick.line_id} "
            f"lot={pick.lot_no} bin={pick.bin_no} bags={pick.bags:g}"
        )
        return f"{details} doc={document_no}" if document_no else details
