from bulkpick.core.workflow import WorkflowEvent, WorkflowState, WorkflowStateMachine

from fakes import ingredient


def _machine(ingredients, **kw) -> WorkflowStateMachine:
    return WorkflowStateMachine(ingredient_statuses=lambda: ingredients, **kw)


def _to_batch_completion(machine: WorkflowStateMachine, item_key: str = "A") -> None:
    assert machine.initialize(215)
    assert machine.select_ingredient(item_key)
    assert machine.validate_lot("LOT1")
    assert machine.select_bin("BIN1")
    assert machine.input_quantity(2)
    assert machine.confirm_pick()
    assert machine.state is WorkflowState.BATCH_COMPLETION


def test_happy_path_walks_the_pick_states():
    machine = _machine([ingredient("A", 2, total=8), ingredient("B", 1, total=4)])

    _to_batch_completion(machine)

    ctx = machine.context
    assert ctx.run_no == 215
    assert ctx.current_ingredient == "A"
    assert ctx.selected_lot == "LOT1"
    assert ctx.selected_bin == "BIN1"
    assert ctx.input_quantity == 2


def test_event_without_edge_is_rejected_and_state_kept():
    machine = _machine([])
    machine.initialize(1)
    before = machine.context

    assert machine.confirm_pick() is False
    assert machine.fire(WorkflowEvent.SELECT_BIN, selected_bin="X") is False
    assert machine.state is WorkflowState.INGREDIENT_SELECTION
    assert machine.context == before


def test_batch_completion_below_threshold_continues_same_ingredient():
    machine = _machine([ingredient("A", 2, total=8), ingredient("B", 1, total=4)], switch_threshold=3)
    _to_batch_completion(machine)

    assert machine.complete_batch("100")

    assert machine.state is WorkflowState.LOT_VALIDATION
    ctx = machine.context
    assert ctx.consecutive_completed_batches == 1
    assert (ctx.selected_lot, ctx.selected_bin, ctx.input_quantity) == ("", "", 0.0)


def test_threshold_reached_switches_ingredient():
    machine = _machine([ingredient("A", 2, total=8), ingredient("B", 1, total=4)], switch_threshold=1)
    _to_batch_completion(machine)

    assert machine.complete_batch("100")
    assert machine.state is WorkflowState.INGREDIENT_SWITCHING

    assert machine.trigger_auto_switch()
    assert machine.state is WorkflowState.AUTO_PROGRESSION
    assert machine.switch_ingredient("B")
    assert machine.state is WorkflowState.INGREDIENT_SELECTION
    assert machine.context.current_ingredient == "B"
    assert machine.context.consecutive_completed_batches == 0


def test_partial_pick_does_not_count_towards_threshold():
    machine = _machine([ingredient("A", 2, total=8), ingredient("B", 1, total=4)], switch_threshold=1)
    _to_batch_completion(machine)

    machine.complete_batch(None)

    assert machine.state is WorkflowState.LOT_VALIDATION
    assert machine.context.consecutive_completed_batches == 0


def test_completed_ingredient_switches_regardless_of_threshold():
    machine = _machine([ingredient("A", 2, total=8, picked=8), ingredient("B", 1, total=4)], switch_threshold=5)
    _to_batch_completion(machine)

    machine.complete_batch("101")

    assert machine.state is WorkflowState.INGREDIENT_SWITCHING


def test_user_request_switches():
    machine = _machine([ingredient("A", 2, total=8), ingredient("B", 1, total=4)])
    _to_batch_completion(machine)

    machine.request_user_switch()
    machine.complete_batch(None)

    assert machine.state is WorkflowState.INGREDIENT_SWITCHING


def test_suppressed_switch_keeps_threshold_from_firing():
    machine = _machine(
        [ingredient("A", 2, total=8), ingredient("B", 1, total=4)],
        switch_threshold=1,
        switch_suppressed=lambda: True,
    )
    _to_batch_completion(machine)

    machine.complete_batch("100")

    assert machine.state is WorkflowState.LOT_VALIDATION


def test_no_switch_when_nothing_else_to_pick():
    machine = _machine([ingredient("A", 2, total=8), ingredient("B", 1, total=4, picked=4)], switch_threshold=1)
    _to_batch_completion(machine)

    machine.complete_batch("100")

    assert machine.state is WorkflowState.LOT_VALIDATION


def test_complete_run_requires_all_ingredients_complete():
    items = [ingredient("A", 2, total=8, picked=6)]
    machine = _machine(items)
    _to_batch_completion(machine)

    assert machine.complete_run() is False
    assert machine.state is WorkflowState.BATCH_COMPLETION

    items[:] = [ingredient("A", 2, total=8, picked=8)]
    assert machine.complete_run() is True
    assert machine.state is WorkflowState.RUN_COMPLETION


def test_reset_and_error_return_to_initialization_from_any_state():
    machine = _machine([ingredient("A", 2, total=8)])
    _to_batch_completion(machine)

    assert machine.reset()
    assert machine.state is WorkflowState.INITIALIZATION
    assert machine.context.current_ingredient == ""

    machine.initialize(215)
    assert machine.error("scanner offline")
    assert machine.state is WorkflowState.INITIALIZATION
    assert machine.context.error_message == "scanner offline"


def test_reselecting_ingredient_mid_pick_resets_fields():
    machine = _machine([ingredient("A", 2, total=8), ingredient("B", 1, total=4)])
    machine.initialize(215)
    machine.select_ingredient("A")
    machine.validate_lot("LOT1")

    assert machine.select_ingredient("B")
    assert machine.state is WorkflowState.LOT_VALIDATION
    assert machine.context.selected_lot == ""


def test_auto_switch_from_selection_respects_enabled_flag():
    machine = _machine([ingredient("A", 2, total=8)], auto_switch_enabled=False)
    machine.initialize(215)

    assert machine.trigger_auto_switch() is False
    assert machine.state is WorkflowState.INGREDIENT_SELECTION


def test_available_events():
    machine = _machine([])
    machine.initialize(215)

    events = machine.available_events()

    assert WorkflowEvent.SELECT_INGREDIENT in events
    assert WorkflowEvent.RESET_WORKFLOW in events
    assert WorkflowEvent.CONFIRM_PICK not in events


def test_on_change_receives_each_transition():
    seen = []
    machine = _machine([], on_change=lambda state, ctx: seen.append(state))

    machine.initialize(215)
    machine.select_ingredient("A")

    assert seen == [WorkflowState.INGREDIENT_SELECTION, WorkflowState.LOT_VALIDATION]
