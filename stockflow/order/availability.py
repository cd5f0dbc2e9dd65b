"""
Order Service - 在庫確認クライアント

Inventory Service の POST /api/products/availability を同期的に呼び出す。

  リクエスト: [{"skuCode": "IPHONE_15", "quantity": 2}, ...]
  レスポンス: {"productAvailabilityList": [{"skuCode": "IPHONE_15", "available": true}, ...]}

通信失敗 (タイムアウト・接続不可・5xx・不正な応答) は Unavailable を送出する。
空リストを返して「全部在庫切れ」に見せかけることはしない (fail-closed は呼び出し側が決める)。
"""

import logging

import httpx

from ..errors import NotFound, Unavailable

logger = logging.getLogger(__name__)

UPSTREAM = "inventory-service"


class AvailabilityClient:
    def __init__(
        self,
        inventory_service_url: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = f"{inventory_service_url.rstrip('/')}/api/products/availability"
        self.timeout = timeout
        self.transport = transport

    async def check_availability(
        self, items: list[tuple[str, int]]
    ) -> list[tuple[str, bool]]:
        """
        (sku, quantity) の列を 1 回のリクエストで問い合わせ、
        入力と同じ順序で (sku, available) を返す。
        """
        body = [{"skuCode": sku, "quantity": quantity} for sku, quantity in items]

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.post(self.url, json=body)
        except httpx.HTTPError as e:
            logger.error("Availability check failed: %r", e)
            raise Unavailable(UPSTREAM, type(e).__name__) from e

        if resp.status_code == 404:
            detail = _detail(resp)
            raise NotFound("product", _sku_from_detail(detail, items))
        if resp.status_code >= 400:
            logger.error(
                "Availability check returned %d: %s", resp.status_code, resp.text
            )
            raise Unavailable(UPSTREAM, f"HTTP {resp.status_code}")

        try:
            entries = resp.json()["productAvailabilityList"]
            results = [(e["skuCode"], bool(e["available"])) for e in entries]
        except (ValueError, KeyError, TypeError) as e:
            raise Unavailable(UPSTREAM, "malformed response") from e

        requested = [sku for sku, _quantity in items]
        if [sku for sku, _available in results] != requested:
            logger.error(
                "Availability response does not match request: %s != %s",
                results, requested,
            )
            raise Unavailable(UPSTREAM, "response does not match request")
        return results


def _detail(resp: httpx.Response) -> str:
    try:
        return str(resp.json().get("detail", ""))
    except ValueError:
        return resp.text


def _sku_from_detail(detail: str, items: list[tuple[str, int]]) -> str:
    for sku, _quantity in items:
        if detail.endswith(f" {sku}"):
            return sku
    return detail
