"""Remote picking service client.

`PickingBackend` is the seam the engine depends on; `HttpPickingBackend` is
the production implementation over the service's `/bulk-runs` REST API.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from bulkpick.core.errors import BackendError
from bulkpick.core.models import (
    Ingredient,
    IngredientFormData,
    LotBin,
    Pallet,
    Pick,
    PickedLot,
    PickResult,
    RunCompletion,
    RunStatus,
    StatusChange,
)
from bulkpick.data import payloads

logger = logging.getLogger(__name__)


class PickingBackend(Protocol):
    async def get_run_status(self, run_no: int) -> RunStatus: ...

    async def get_ingredient_form_data(self, run_no: int, ingredient_index: int | None = None) -> IngredientFormData: ...

    async def list_run_ingredients(self, run_no: int) -> list[Ingredient]: ...

    async def get_pallet_tracking(self, run_no: int, item_key: str | None = None) -> list[Pallet]: ...

    async def get_lot_bins(self, run_no: int, lot_no: str, item_key: str) -> list[LotBin]: ...

    async def confirm_pick(self, pick: Pick, *, user_id: str | None = None) -> PickResult: ...

    async def unpick_lot(
        self,
        run_no: int,
        row_num: int,
        line_id: int,
        *,
        lot_no: str | None = None,
        lot_tran_no: int | None = None,
    ) -> bool: ...

    async def unpick_all(self, run_no: int) -> bool: ...

    async def get_picked_lots(self, run_no: int, row_num: int, line_id: int) -> list[PickedLot]: ...

    async def get_all_picked_lots(self, run_no: int) -> list[PickedLot]: ...

    async def check_run_completion(self, run_no: int) -> RunCompletion: ...

    async def update_run_status_to_print(self, run_no: int) -> StatusChange: ...

    async def revert_run_status(self, run_no: int) -> RunStatus: ...


class HttpPickingBackend:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, run_no: int, *parts: object) -> str:
        tail = "/".join(str(p) for p in parts)
        return f"{self.base_url}/bulk-runs/{run_no}" + (f"/{tail}" if tail else "")

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """Send a request and unwrap the `{success, data, message}` envelope."""
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, url, e)
            raise BackendError(f"Network error: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            if resp.is_success:
                return body
            raise BackendError(f"HTTP {resp.status_code}: {resp.text[:300]}", status=resp.status_code)

        if resp.is_success and body.get("success", True):
            return body.get("data")

        err = body.get("error") if isinstance(body.get("error"), dict) else {}
        message = str(body.get("message") or err.get("message") or f"HTTP {resp.status_code}")
        code = payloads.error_code(message, body)
        logger.debug("%s %s rejected (%s): %s", method, url, code, message)
        raise BackendError(message, code=code, status=resp.status_code)

    async def get_run_status(self, run_no: int) -> RunStatus:
        data = await self._request("GET", self._url(run_no, "status"))
        return payloads.parse_run_status((data or {}).get("status"))

    async def get_ingredient_form_data(self, run_no: int, ingredient_index: int | None = None) -> IngredientFormData:
        params = {"ingredient_index": ingredient_index} if ingredient_index is not None else None
        data = await self._request("GET", self._url(run_no, "form-data"), params=params)
        return payloads.parse_form_data(data or {})

    async def list_run_ingredients(self, run_no: int) -> list[Ingredient]:
        data = await self._request("GET", self._url(run_no, "search-items"))
        return [payloads.parse_ingredient(row) for row in data or []]

    async def get_pallet_tracking(self, run_no: int, item_key: str | None = None) -> list[Pallet]:
        params = {"item_key": item_key} if item_key else None
        data = await self._request("GET", self._url(run_no, "pallets"), params=params)
        return payloads.parse_pallets(data or {})

    async def get_lot_bins(self, run_no: int, lot_no: str, item_key: str) -> list[LotBin]:
        data = await self._request(
            "GET", self._url(run_no, "lots", lot_no, "bins"), params={"item_key": item_key}
        )
        return [payloads.parse_lot_bin(row) for row in data or []]

    async def confirm_pick(self, pick: Pick, *, user_id: str | None = None) -> PickResult:
        body = {
            "row_num": pick.row_num,
            "line_id": pick.line_id,
            "picked_bulk_qty": pick.bags,
            "lot_no": pick.lot_no,
            "bin_no": pick.bin_no,
        }
        if user_id:
            body["user_id"] = user_id
        data = await self._request("POST", self._url(pick.run_no, "confirm-pick"), json=body)
        return payloads.parse_pick_result(data)

    async def unpick_lot(
        self,
        run_no: int,
        row_num: int,
        line_id: int,
        *,
        lot_no: str | None = None,
        lot_tran_no: int | None = None,
    ) -> bool:
        body: dict[str, Any] = {}
        if lot_no:
            body["lot_no"] = lot_no
        if lot_tran_no is not None:
            body["lot_tran_no"] = lot_tran_no
        await self._request("POST", self._url(run_no, row_num, line_id, "unpick"), json=body)
        return True

    async def unpick_all(self, run_no: int) -> bool:
        await self._request("POST", self._url(run_no, "unpick-all"), json={})
        return True

    async def get_picked_lots(self, run_no: int, row_num: int, line_id: int) -> list[PickedLot]:
        data = await self._request("GET", self._url(run_no, row_num, line_id, "picked-lots"))
        return payloads.parse_picked_lots(data or {})

    async def get_all_picked_lots(self, run_no: int) -> list[PickedLot]:
        data = await self._request("GET", self._url(run_no, "all-picked-lots"))
        return payloads.parse_picked_lots(data or {})

    async def check_run_completion(self, run_no: int) -> RunCompletion:
        data = await self._request("GET", self._url(run_no, "completion-status"))
        return payloads.parse_run_completion(data or {})

    async def update_run_status_to_print(self, run_no: int) -> StatusChange:
        data = await self._request("PUT", self._url(run_no, "complete"))
        return payloads.parse_status_change(data or {})

    async def revert_run_status(self, run_no: int) -> RunStatus:
        data = await self._request("POST", self._url(run_no, "revert-status"))
        return payloads.parse_run_status((data or {}).get("status"))
