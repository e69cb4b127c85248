from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable

from bulkpick.core.errors import BackendError, ErrorKind
from bulkpick.core.guards import Clock, DebouncedMutex
from bulkpick.core.models import RunStatus

if TYPE_CHECKING:
    from bulkpick.data.backend import PickingBackend

logger = logging.getLogger(__name__)


class StatusTrigger(str, Enum):
    AFTER_PICK = "after_pick"
    PALLET_COMPLETED = "pallet_completed"
    INGREDIENT_COMPLETED = "ingredient_completed"
    RUN_COMPLETED = "run_completed"
    MANUAL_CHECK = "manual_check"


@dataclass(frozen=True)
class RunStatusState:
    run_no: int
    status: RunStatus
    last_updated: datetime


StatusListener = Callable[[int, "RunStatus | None", RunStatus], None]


class RunStatusManager:
    """Single entry point for the NEW -> PRINT run status transition.

    Every part of the engine that suspects a run may be complete calls
    `trigger_completion_check`; debouncing and the per-run mutex make sure the
    backend is asked once and the transition is requested at most once.
    """

    def __init__(
        self,
        backend: PickingBackend,
        *,
        debounce_seconds: float = 1.0,
        settle_seconds: float = 0.1,
        clock: Clock = time.monotonic,
        on_status_change: StatusListener | None = None,
    ):
        self.backend = backend
        self._guard = DebouncedMutex(window=debounce_seconds, settle=settle_seconds, clock=clock)
        self._statuses: dict[int, RunStatusState] = {}
        self._on_status_change = on_status_change

    def status_of(self, run_no: int) -> RunStatus | None:
        entry = self._statuses.get(run_no)
        return entry.status if entry else None

    def set_current_status(self, run_no: int, status: RunStatus) -> None:
        """Prime the cache from freshly loaded run data."""
        self._set(run_no, status)

    def trigger_completion_check(self, run_no: int, reason: StatusTrigger) -> bool:
        """Schedule a completion check; returns False when the trigger was dropped."""
        if self.status_of(run_no) is RunStatus.PRINT:
            logger.debug("Run %s already PRINT, skipping completion check (%s)", run_no, reason.value)
            return False
        scheduled = self._guard.trigger(run_no, lambda: self._execute(run_no, reason))
        if scheduled:
            logger.debug("Completion check for run %s scheduled (%s)", run_no, reason.value)
        return scheduled

    async def _execute(self, run_no: int, reason: StatusTrigger) -> None:
        if self.status_of(run_no) is RunStatus.PRINT:
            return
        try:
            completion = await self.backend.check_run_completion(run_no)
        except BackendError as exc:
            logger.error("Failed to check run %s completion (%s): %s", run_no, reason.value, exc)
            return

        logger.info(
            "Run %s completion (%s): %s/%s ingredients complete",
            run_no,
            reason.value,
            completion.completed_count,
            completion.total_ingredients,
        )
        if completion.is_complete:
            await self._transition_to_print(run_no)

    async def _transition_to_print(self, run_no: int) -> None:
        if self.status_of(run_no) is RunStatus.PRINT:
            return
        try:
            change = await self.backend.update_run_status_to_print(run_no)
        except BackendError as exc:
            if exc.kind is ErrorKind.ALREADY_PRINT:
                logger.info("Run %s was already PRINT on the backend", run_no)
                self._set(run_no, RunStatus.PRINT)
                return
            logger.error("Failed to update run %s status to PRINT: %s", run_no, exc)
            return

        logger.info("Run %s status %s -> %s", run_no, change.old_status, change.new_status)
        self._set(run_no, RunStatus.PRINT)

    async def revert_run_status(self, run_no: int) -> RunStatus:
        """Manual PRINT -> NEW revert. Never called by the engine on its own."""
        status = await self.backend.revert_run_status(run_no)
        self._guard.reset(run_no)
        self._set(run_no, status)
        return status

    async def wait_idle(self) -> None:
        await self._guard.wait_idle()

    def reset(self) -> None:
        self._guard.reset()
        self._statuses.clear()

    def _set(self, run_no: int, status: RunStatus) -> None:
        previous = self.status_of(run_no)
        self._statuses[run_no] = RunStatusState(run_no=run_no, status=status, last_updated=datetime.now())
        if previous is not status and self._on_status_change is not None:
            self._on_status_change(run_no, previous, status)
