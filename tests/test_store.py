from bulkpick.core.store import EngineState, Store


def test_update_notifies_only_on_change():
    store = Store(EngineState())
    seen = []
    store.subscribe(seen.append)

    store.update(current_item_key="A")
    store.update(current_item_key="A")

    assert len(seen) == 1
    assert seen[0].current_item_key == "A"


def test_failing_listener_does_not_block_others():
    store = Store(EngineState())
    seen = []

    def broken(_state):
        raise RuntimeError("render failed")

    store.subscribe(broken)
    store.subscribe(seen.append)

    store.update(message="hello")

    assert [s.message for s in seen] == ["hello"]


def test_unsubscribe():
    store = Store(EngineState())
    seen = []
    unsubscribe = store.subscribe(seen.append)

    unsubscribe()
    unsubscribe()
    store.update(message="ignored")

    assert seen == []
