import asyncio
import json

import httpx
import pytest

from bulkpick.core.errors import BackendError, ErrorKind
from bulkpick.core.models import CompletionStatus, Pick, RunStatus
from bulkpick.data.backend import HttpPickingBackend

BASE = "http://picking.test/api"


def _envelope(data=None, *, success=True, message=None, status=200, error=None):
    body = {"success": success, "data": data, "message": message}
    if error is not None:
        body["error"] = error
    return httpx.Response(status, json=body)


def _run(handler, call):
    """Run `call(backend)` against a MockTransport; returns (result, recorded requests)."""
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(_record)) as client:
            backend = HttpPickingBackend(BASE, client=client)
            return await call(backend)

    return asyncio.run(scenario()), requests


def test_form_data_is_parsed():
    payload = {
        "run": {"run_no": 215, "batch_no": "850417", "formula_id": "TSM2285A", "formula_desc": "Marinade", "status": "NEW"},
        "current_ingredient": {
            "ingredient": {
                "row_num": 1,
                "line_id": 3,
                "item_key": "INSALT02",
                "to_picked_bulk_qty": "8.0000",
                "picked_bulk_qty": "5",
                "pack_size": "25.00",
                "completion_status": "PartiallyPicked",
            },
            "calculations": {"total_needed": 200.0, "remaining_to_pick": 3.0},
        },
        "form_data": {"total_needed_bags": 8, "remaining_bags": "3", "ingredient_index": 0, "total_ingredients": 4},
    }

    form, requests = _run(lambda r: _envelope(payload), lambda b: b.get_ingredient_form_data(215, 0))

    assert requests[0].url.path == "/api/bulk-runs/215/form-data"
    assert requests[0].url.params["ingredient_index"] == "0"
    assert form.run.formula_desc == "Marinade"
    assert form.run.status is RunStatus.NEW
    assert form.total_ingredients == 4
    ing = form.ingredient
    assert ing.item_key == "INSALT02"
    assert ing.total_needed_bags == 8.0
    assert ing.remaining_bags == 3.0
    assert ing.pack_size == 25.0
    assert ing.completion_status is CompletionStatus.PARTIALLY_PICKED


def test_search_items_and_pallets():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/search-items"):
            return _envelope(
                [
                    {"item_key": "A", "line_id": 2, "to_picked_bulk_qty": 8, "picked_bulk_qty": 9, "pack_size": 25},
                    {"item_key": "B", "line_id": "1", "to_picked_bulk_qty": "4", "picked_bulk_qty": None},
                ]
            )
        return _envelope(
            {
                "run_no": 215,
                "pallets": [
                    {"pallet_number": 2, "batch_number": "101", "row_num": 2, "no_of_bags_picked": 0, "no_of_bags_remaining": "3"},
                    {"pallet_number": 1, "batch_number": "100", "row_num": 1, "no_of_bags_picked": "5", "no_of_bags_remaining": 0},
                ],
            }
        )

    async def call(backend):
        return await backend.list_run_ingredients(215), await backend.get_pallet_tracking(215, "A")

    (ingredients, pallets), requests = _run(handler, call)

    assert [i.item_key for i in ingredients] == ["A", "B"]
    # Over-picked quantities never produce a negative remainder.
    assert ingredients[0].remaining_bags == 0.0
    assert ingredients[1].line_id == 1
    assert ingredients[1].remaining_bags == 4.0
    assert requests[1].url.params["item_key"] == "A"
    assert [(p.batch_number, p.bags_remaining) for p in pallets] == [("101", 3.0), ("100", 0.0)]


def test_confirm_pick_posts_expected_body():
    pick = Pick(run_no=215, row_num=2, line_id=3, lot_no="LOT1", bin_no="BIN1", bags=3)

    result, requests = _run(
        lambda r: _envelope({"document_no": "BT-25198"}),
        lambda b: b.confirm_pick(pick, user_id="deachawat"),
    )

    request = requests[0]
    assert request.method == "POST"
    assert request.url.path == "/api/bulk-runs/215/confirm-pick"
    assert json.loads(request.content) == {
        "row_num": 2,
        "line_id": 3,
        "picked_bulk_qty": 3,
        "lot_no": "LOT1",
        "bin_no": "BIN1",
        "user_id": "deachawat",
    }
    assert result.success is True
    assert result.document_no == "BT-25198"


def test_failed_envelope_raises_with_code_from_message_tag():
    def handler(request):
        return _envelope(success=False, message="TRANSACTION_ROLLED_BACK: deadlock victim", status=500)

    with pytest.raises(BackendError) as exc_info:
        _run(handler, lambda b: b.confirm_pick(Pick(215, 1, 1, "L", "B", 1)))

    err = exc_info.value
    assert err.code == "TRANSACTION_ROLLED_BACK"
    assert err.status == 500
    assert err.kind is ErrorKind.TRANSACTION_SAFE


def test_failed_envelope_prefers_structured_error_code():
    def handler(request):
        return _envelope(
            success=False,
            status=409,
            error={"code": "BATCH_ALREADY_COMPLETED", "message": "Batch 101 is already completed"},
        )

    with pytest.raises(BackendError) as exc_info:
        _run(handler, lambda b: b.confirm_pick(Pick(215, 1, 1, "L", "B", 1)))

    assert exc_info.value.code == "BATCH_ALREADY_COMPLETED"
    assert exc_info.value.message == "Batch 101 is already completed"
    assert exc_info.value.kind is ErrorKind.CONCURRENCY_TRANSIENT


def test_non_json_error_response():
    with pytest.raises(BackendError) as exc_info:
        _run(lambda r: httpx.Response(502, text="Bad gateway"), lambda b: b.get_run_status(215))

    assert exc_info.value.status == 502
    assert exc_info.value.kind is ErrorKind.NETWORK_UNKNOWN


def test_transport_error_becomes_backend_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendError, match="Network error"):
        _run(handler, lambda b: b.check_run_completion(215))


def test_unpick_completion_status_and_revert_endpoints():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/unpick"):
            return _envelope({"success": True})
        if path.endswith("/completion-status"):
            return _envelope({"is_complete": True, "completed_count": 4, "total_ingredients": 4, "incomplete_count": 0})
        if path.endswith("/complete"):
            return _envelope({"oldStatus": "NEW", "newStatus": "PRINT"})
        return _envelope({"run_no": 215, "status": "NEW", "formula_desc": "Marinade"})

    async def call(backend):
        return (
            await backend.unpick_lot(215, 2, 3, lot_no="LOT1"),
            await backend.check_run_completion(215),
            await backend.update_run_status_to_print(215),
            await backend.revert_run_status(215),
        )

    (unpicked, completion, change, status), requests = _run(handler, call)

    assert unpicked is True
    assert requests[0].url.path == "/api/bulk-runs/215/2/3/unpick"
    assert json.loads(requests[0].content) == {"lot_no": "LOT1"}
    assert completion.is_complete is True
    assert completion.completed_count == 4
    assert requests[2].method == "PUT"
    assert (change.old_status, change.new_status) == ("NEW", "PRINT")
    assert requests[3].url.path == "/api/bulk-runs/215/revert-status"
    assert status is RunStatus.NEW


def test_picked_lots_listings_and_unpick_all():
    lot = {
        "lot_tran_no": 5521,
        "lot_no": "2510403-1",
        "bin_no": "PWBB-12",
        "batch_no": "850417",
        "item_key": "INRICF05",
        "row_num": 2,
        "line_id": 3,
        "alloc_lot_qty": "50.000",
        "pack_size": 25,
        "rec_userid": "DECHAWAT",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/unpick-all"):
            return _envelope({"unpicked": 4})
        return _envelope({"picked_lots": [lot], "total_picked_qty": 50, "run_no": 215})

    async def call(backend):
        return (
            await backend.get_picked_lots(215, 2, 3),
            await backend.get_all_picked_lots(215),
            await backend.unpick_all(215),
        )

    (row_lots, run_lots, unpicked), requests = _run(handler, call)

    assert [r.url.path for r in requests] == [
        "/api/bulk-runs/215/2/3/picked-lots",
        "/api/bulk-runs/215/all-picked-lots",
        "/api/bulk-runs/215/unpick-all",
    ]
    assert requests[2].method == "POST"
    assert unpicked is True
    assert row_lots == run_lots
    picked = row_lots[0]
    assert (picked.lot_tran_no, picked.batch_no, picked.row_num, picked.line_id) == (5521, "850417", 2, 3)
    assert picked.bags == 2
