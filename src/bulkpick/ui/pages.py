from __future__ import annotations

import logging

from nicegui import ui

from bulkpick.core import rules
from bulkpick.core.coordinator import PickCoordinator
from bulkpick.core.errors import ErrorKind
from bulkpick.core.models import RunStatus
from bulkpick.core.store import EngineState
from bulkpick.core.workflow import WorkflowState
from bulkpick.data.backend import PickingBackend
from bulkpick.data.repository import Repository
from bulkpick.settings import EngineConfig, Settings
from bulkpick.ui.widgets import page_container, render_header, render_pallet_table

logger = logging.getLogger(__name__)

_NOTIFY_COLORS = {
    None: "primary",
    ErrorKind.VALIDATION: "warning",
    ErrorKind.INSUFFICIENT_QUANTITY: "warning",
    ErrorKind.CONCURRENCY_TRANSIENT: "warning",
    ErrorKind.TRANSACTION_SAFE: "warning",
    ErrorKind.ALREADY_PRINT: "primary",
}


def register_pages(*, repo: Repository, settings: Settings, backend: PickingBackend) -> None:
    @ui.page("/")
    def picking_page() -> None:
        # One engine per connected client: sessions never share coordination state.
        coordinator = PickCoordinator(
            backend,
            config=EngineConfig.from_repo(repo),
            user_id=settings.user_id,
            audit=repo.log_audit,
        )
        render_header("Bulk Picking", settings.api_base_url)

        dirty = {"value": True, "message": None}
        panels = {"unpick_open": False}

        def _on_change(_state: EngineState) -> None:
            dirty["value"] = True

        unsubscribe = coordinator.store.subscribe(_on_change)
        ui.context.client.on_disconnect(unsubscribe)

        with page_container():
            with ui.row().classes("items-end gap-2"):
                run_input = ui.number("Run No", format="%d").props("dense outlined")

                async def _load() -> None:
                    if run_input.value is None:
                        ui.notify("Enter a run number", color="warning")
                        return
                    await coordinator.load_run(int(run_input.value))

                ui.button("Load run", icon="download", on_click=_load).props("unelevated")
                ui.button("Refresh", icon="refresh", on_click=coordinator.refresh).props("flat")
                ui.button("Reset", icon="restart_alt", on_click=coordinator.reset).props("flat color=grey")
            ui.separator()

            @ui.refreshable
            def session_view() -> None:
                state = coordinator.state
                if state.blocking_error:
                    _render_blocking_error(coordinator, state.blocking_error)
                if state.run is None:
                    ui.label("Load a run to start picking.").classes("text-slate-600")
                    return
                _render_run_summary(coordinator, state)
                _render_ingredient_picker(coordinator, state)
                _render_pallets(coordinator, state)
                _render_pick_form(coordinator, state, panels)

            session_view()

        def _tick() -> None:
            if not dirty["value"]:
                return
            dirty["value"] = False
            state = coordinator.state
            if state.message and state.message != dirty["message"]:
                color = "negative" if state.blocking_error else _NOTIFY_COLORS.get(state.error_kind, "negative")
                ui.notify(state.message, color=color)
            dirty["message"] = state.message
            session_view.refresh()

        ui.timer(0.3, _tick)


def _render_blocking_error(coordinator: PickCoordinator, message: str) -> None:
    with ui.card().classes("w-full bg-red-50 border border-red-300"):
        ui.label("Critical picking error: manual intervention required").classes("text-lg font-semibold text-red-700")
        ui.label(message).classes("font-mono text-sm")
        ui.button("Acknowledge", icon="check", on_click=coordinator.acknowledge_error).props("unelevated color=negative")


def _render_run_summary(coordinator: PickCoordinator, state: EngineState) -> None:
    run = state.run
    completed, total = coordinator.run_progress()
    with ui.row().classes("items-center gap-4"):
        ui.label(f"Run {run.run_no}").classes("text-xl font-semibold")
        if run.formula_desc:
            ui.label(run.formula_desc).classes("text-slate-600")
        ui.badge(run.status.value, color="positive" if run.status is RunStatus.PRINT else "primary")
        ui.label(f"{completed}/{total} ingredients complete").classes("text-sm")
        ui.label(state.workflow_state.value).classes("text-xs text-slate-500")
        if run.status is RunStatus.PRINT:
            ui.button("Revert to NEW", icon="undo", on_click=coordinator.revert_run_status).props("flat dense color=warning")


def _render_ingredient_picker(coordinator: PickCoordinator, state: EngineState) -> None:
    options = {
        ing.item_key: f"{ing.item_key} (line {ing.line_id}): "
        f"{ing.picked_bags:g}/{ing.total_needed_bags:g} bags, {rules.ingredient_status(ing).value}"
        for ing in state.ingredients
    }

    async def _on_select(e) -> None:
        if e.value and e.value != coordinator.state.current_item_key:
            await coordinator.select_ingredient(e.value, manual=True)

    with ui.row().classes("items-end gap-2 w-full"):
        ui.select(options, value=state.current_item_key, label="Ingredient", on_change=_on_select).classes("min-w-[420px]")
        ui.button("Next ingredient", icon="skip_next", on_click=coordinator.request_switch).props("flat")
        if coordinator.override.active:
            ui.badge("manual selection", color="warning")


def _render_pallets(coordinator: PickCoordinator, state: EngineState) -> None:
    ui.label("Pallets").classes("text-lg font-semibold mt-2")
    if state.pallets_loading and not state.pallets:
        ui.spinner(size="lg")
        return
    active = coordinator.active_pallet()
    render_pallet_table(
        state.pallets,
        active_row=active.row_num if active else None,
        epsilon=coordinator.config.epsilon,
    )


def _render_pick_form(coordinator: PickCoordinator, state: EngineState, panels: dict) -> None:
    wf = state.workflow_state
    ctx = state.context
    with ui.card().classes("w-full mt-2"):
        with ui.row().classes("items-end gap-2"):
            lot_input = ui.input("Lot", value=ctx.selected_lot).props("dense outlined")

            async def _validate() -> None:
                await coordinator.validate_lot(lot_input.value or "")

            ui.button("Validate lot", on_click=_validate).props("unelevated").set_enabled(
                wf is WorkflowState.LOT_VALIDATION
            )

            bins = [b.bin_no for b in state.lot_bins if b.lot_no == ctx.selected_lot]
            ui.select(
                bins,
                value=ctx.selected_bin or None,
                label="Bin",
                on_change=lambda e: e.value and coordinator.select_bin(e.value),
            ).classes("min-w-[160px]").set_enabled(wf is WorkflowState.BIN_SELECTION)

            qty_input = ui.number("Bags", value=ctx.input_quantity or None, min=0).props("dense outlined")
            ui.button(
                "Set quantity",
                on_click=lambda: coordinator.input_quantity(float(qty_input.value or 0)),
            ).props("unelevated").set_enabled(wf is WorkflowState.QUANTITY_INPUT)

            ui.button("Confirm pick", icon="check", on_click=coordinator.confirm_pick).props(
                "unelevated color=positive"
            ).set_enabled(coordinator.can_confirm)

        lot_bin = coordinator.selected_lot_bin()
        if lot_bin is not None:
            ui.label(
                f"Lot {lot_bin.lot_no} / bin {lot_bin.bin_no}: available {lot_bin.available_qty:,.2f}"
            ).classes("text-sm text-slate-600")

    _render_unpick(coordinator, state, panels)


def _render_unpick(coordinator: PickCoordinator, state: EngineState, panels: dict) -> None:
    if state.current_ingredient is None:
        return

    async def _on_toggle(e) -> None:
        panels["unpick_open"] = bool(e.value)
        if e.value:
            await coordinator.load_picked_lots()

    with ui.expansion(
        "Picked lots / unpick", icon="undo", value=panels["unpick_open"], on_value_change=_on_toggle
    ).classes("w-full"):
        with ui.row().classes("items-center gap-2"):
            async def _reload() -> None:
                await coordinator.load_picked_lots()

            ui.button("Reload", icon="refresh", on_click=_reload).props("flat dense")
            _render_unpick_all(coordinator)

        lots = coordinator.picked_lots_for_current()
        if not lots:
            ui.label("(nothing picked for this ingredient)").classes("text-gray-500")
            return
        for lot in lots:
            with ui.row().classes("items-center gap-4 w-full"):
                ui.label(f"Batch {lot.batch_no}").classes("font-semibold")
                ui.label(f"Lot {lot.lot_no} / bin {lot.bin_no}").classes("font-mono text-sm")
                ui.label(f"{lot.bags:g} bags ({lot.alloc_lot_qty:,.2f})").classes("text-sm text-slate-600")
                if lot.rec_userid:
                    ui.label(lot.rec_userid).classes("text-xs text-slate-500")

                async def _unpick(_e=None, lot=lot) -> None:
                    await coordinator.unpick_lot(lot)

                ui.button("Unpick", icon="undo", on_click=_unpick).props("flat dense color=warning")


def _render_unpick_all(coordinator: PickCoordinator) -> None:
    dialog = ui.dialog().props("persistent")
    with dialog:
        with ui.card().classes("bg-white p-6").style("width: 92vw; max-width: 520px"):
            ui.label(f"Unpick every lot of run {coordinator.run_no}?").classes("text-lg font-semibold")
            ui.label("All ingredients go back to unpicked and picking restarts on the first one.").classes(
                "text-slate-600"
            )

            async def _confirm() -> None:
                dialog.close()
                await coordinator.unpick_all()

            with ui.row().classes("justify-end gap-2 w-full"):
                ui.button("Cancel", on_click=dialog.close).props("flat")
                ui.button("Unpick all", icon="delete_sweep", on_click=_confirm).props("unelevated color=negative")

    ui.button("Unpick entire run", icon="delete_sweep", on_click=dialog.open).props("flat dense color=negative")
