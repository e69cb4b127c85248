from __future__ import annotations

from contextlib import contextmanager

from nicegui import ui

from bulkpick.core import rules
from bulkpick.core.models import EPSILON, Pallet, PalletStatus

_THEME_APPLIED = False

_PALLET_COLORS = {
    PalletStatus.COMPLETED: "positive",
    PalletStatus.IN_PROGRESS: "warning",
    PalletStatus.UNPICKED: "grey-6",
}


def apply_theme() -> None:
    ui.colors(
        primary="#2563eb",
        secondary="#0ea5e9",
        positive="#16a34a",
        negative="#dc2626",
        warning="#f59e0b",
    )
    ui.add_css(
        """
        body { background: #f8fafc; }
        .bp-container { max-width: 1100px; margin: 0 auto; padding: 16px; }
        .bp-header { border-bottom: 1px solid rgba(15, 23, 42, 0.08); }
        .bp-active { outline: 2px solid #2563eb; }
        """
    )


def ensure_theme() -> None:
    """Apply theme once, but only when called from within a page context."""
    global _THEME_APPLIED
    if _THEME_APPLIED:
        return
    apply_theme()
    _THEME_APPLIED = True


@contextmanager
def page_container():
    with ui.element("div").classes("bp-container"):
        yield


def render_header(title: str, subtitle: str | None = None) -> None:
    ensure_theme()
    with ui.header().classes("bp-header bg-white text-slate-900"):
        with ui.row().classes("w-full items-center gap-4 px-4 py-2"):
            ui.label(title).classes("text-xl md:text-2xl font-semibold leading-none")
            if subtitle:
                ui.label(subtitle).classes("text-sm text-slate-600")


def render_pallet_table(
    pallets: tuple[Pallet, ...], *, active_row: int | None, epsilon: float = EPSILON
) -> None:
    if not pallets:
        ui.label("(no pallet data)").classes("text-gray-500")
        return
    with ui.element("div").classes("w-full grid gap-2 grid-cols-2 md:grid-cols-4"):
        for pallet in pallets:
            card = ui.card().classes("p-2")
            if pallet.row_num == active_row:
                card.classes("bp-active")
            with card:
                with ui.row().classes("items-center gap-2"):
                    ui.icon("inventory_2", color=_PALLET_COLORS[rules.pallet_status(pallet, epsilon=epsilon)])
                    ui.label(f"Batch {pallet.batch_number}").classes("font-semibold")
                ui.label(f"Picked {pallet.bags_picked:g} / remaining {pallet.bags_remaining:g} bags").classes(
                    "text-sm text-slate-600"
                )
