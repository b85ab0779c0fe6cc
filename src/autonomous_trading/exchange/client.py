"""WEEX perpetual futures REST client."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Literal, Protocol
from urllib.parse import urlencode

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from autonomous_trading.config import Settings
from autonomous_trading.errors import ExchangeAPIError
from autonomous_trading.exchange.models import (
    AccountAssets,
    Candle,
    ContractInfo,
    ExchangePosition,
    FundingRate,
    HistoryOrder,
    OrderAck,
    PlanOrder,
    Ticker,
)
from autonomous_trading.utils.logging import get_logger

_API_PREFIX = "/capi/v2"
_OK_CODES = {"00000", "0", "200"}

PlanType = Literal["profit_plan", "loss_plan"]


class ExchangeClient(Protocol):
    """Operations the engine needs from the exchange."""

    async def get_ticker(self, symbol: str) -> Ticker: ...

    async def get_funding_rate(self, symbol: str) -> FundingRate: ...

    async def get_candles(self, symbol: str, granularity: str = "1h", limit: int = 100) -> list[Candle]: ...

    async def get_contracts(self) -> list[ContractInfo]: ...

    async def get_account_assets(self) -> AccountAssets: ...

    async def get_positions(self) -> list[ExchangePosition]: ...

    async def get_position(self, symbol: str) -> ExchangePosition | None: ...

    async def place_order(self, payload: dict[str, str]) -> OrderAck: ...

    async def close_all_positions(self, symbol: str | None = None) -> list[dict[str, Any]]: ...

    async def close_partial_position(self, symbol: str, side: str, size: str) -> OrderAck: ...

    async def get_current_plan_orders(self, symbol: str | None = None) -> list[PlanOrder]: ...

    async def place_tp_sl_order(
        self,
        *,
        symbol: str,
        plan_type: PlanType,
        trigger_price: float,
        size: float,
        position_side: str,
        margin_mode: int = 1,
    ) -> list[dict[str, Any]]: ...

    async def modify_tp_sl_order(self, *, order_id: str, trigger_price: float) -> dict[str, Any]: ...

    async def adjust_position_margin(self, *, isolated_position_id: int, amount: float) -> dict[str, Any]: ...

    async def get_history_orders(self, symbol: str, limit: int = 50) -> list[HistoryOrder]: ...


def sign_request(secret: str, timestamp: str, method: str, path: str, query: str, body: str) -> str:
    """HMAC-SHA256 over timestamp + METHOD + path + query + body, base64 encoded."""
    message = f"{timestamp}{method.upper()}{path}{query}{body}"
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class WeexClient:
    """Async client for the WEEX contract API.

    Read endpoints retry transport failures; order endpoints are sent once.
    """

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._logger = get_logger("autonomous_trading.exchange.client")
        self._client = httpx.AsyncClient(
            base_url=settings.exchange_base_url,
            timeout=settings.exchange_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "WeexClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ---- market data (public) ----

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._read("/market/ticker", {"symbol": symbol})
        return Ticker.from_raw(data if isinstance(data, dict) else {})

    async def get_funding_rate(self, symbol: str) -> FundingRate:
        data = await self._read("/market/currentFundRate", {"symbol": symbol})
        rates = [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []
        exact = next((row for row in rates if row.get("symbol") == symbol), None)
        if exact is not None:
            return FundingRate.from_raw(exact)
        if rates:
            self._logger.warning("funding_rate_symbol_mismatch", symbol=symbol, returned=rates[0].get("symbol"))
            return FundingRate.from_raw(rates[0])
        return FundingRate(symbol=symbol, rate=0.0, collect_cycle_min=480, timestamp_ms=int(time.time() * 1000))

    async def get_candles(self, symbol: str, granularity: str = "1h", limit: int = 100) -> list[Candle]:
        data = await self._read(
            "/market/candles",
            {"symbol": symbol, "granularity": granularity, "limit": str(limit)},
        )
        rows = data if isinstance(data, list) else []
        return [candle for candle in (Candle.from_row(row) for row in rows) if candle is not None]

    async def get_contracts(self) -> list[ContractInfo]:
        data = await self._read("/market/contracts")
        rows = data if isinstance(data, list) else []
        return [ContractInfo.from_raw(row) for row in rows if isinstance(row, dict)]

    # ---- account (private) ----

    async def get_account_assets(self) -> AccountAssets:
        data = await self._read("/account/assets", private=True)
        return AccountAssets.from_raw(data)

    async def get_positions(self) -> list[ExchangePosition]:
        data = await self._read("/account/position/allPosition", private=True)
        return self._normalize_positions(data)

    async def get_position(self, symbol: str) -> ExchangePosition | None:
        data = await self._read("/account/position/singlePosition", {"symbol": symbol}, private=True)
        positions = self._normalize_positions(data)
        return positions[0] if positions else None

    async def get_history_orders(self, symbol: str, limit: int = 50) -> list[HistoryOrder]:
        data = await self._read("/order/history", {"symbol": symbol, "pageSize": str(limit)}, private=True)
        rows = data if isinstance(data, list) else []
        return [HistoryOrder.from_raw(row) for row in rows if isinstance(row, dict)]

    async def get_current_plan_orders(self, symbol: str | None = None) -> list[PlanOrder]:
        params = {"symbol": symbol} if symbol else None
        data = await self._read("/order/currentPlan", params, private=True)
        rows = data if isinstance(data, list) else []
        return [PlanOrder.from_raw(row) for row in rows if isinstance(row, dict)]

    # ---- trading (private, never retried) ----

    async def place_order(self, payload: dict[str, str]) -> OrderAck:
        _validate_order(payload)
        data = await self._request("POST", "/order/placeOrder", body=payload, private=True)
        return OrderAck.from_raw(data)

    async def close_all_positions(self, symbol: str | None = None) -> list[dict[str, Any]]:
        body = {"symbol": symbol} if symbol else {}
        data = await self._request("POST", "/order/closePositions", body=body, private=True)
        return data if isinstance(data, list) else [data]

    async def close_partial_position(self, symbol: str, side: str, size: str) -> OrderAck:
        if side not in {"LONG", "SHORT"}:
            raise ValueError(f"invalid_close_side: {side}")
        payload = {
            "symbol": symbol,
            "client_oid": f"close_partial_{int(time.time() * 1000)}",
            "size": size,
            "type": "3" if side == "LONG" else "4",
            "order_type": "0",
            "match_price": "1",
            "price": "0",
        }
        self._logger.info("close_partial_position", symbol=symbol, side=side, size=size)
        return await self.place_order(payload)

    async def place_tp_sl_order(
        self,
        *,
        symbol: str,
        plan_type: PlanType,
        trigger_price: float,
        size: float,
        position_side: str,
        margin_mode: int = 1,
    ) -> list[dict[str, Any]]:
        if trigger_price <= 0 or size <= 0:
            raise ValueError("invalid_tp_sl_parameters")
        body = {
            "symbol": symbol,
            "clientOrderId": f"tpsl_{plan_type}_{int(time.time() * 1000)}",
            "planType": plan_type,
            "triggerPrice": str(trigger_price),
            "executePrice": "0",
            "size": str(size),
            "positionSide": position_side.lower(),
            "marginMode": margin_mode,
        }
        data = await self._request("POST", "/order/placeTpSlOrder", body=body, private=True)
        return data if isinstance(data, list) else [data]

    async def modify_tp_sl_order(self, *, order_id: str, trigger_price: float) -> dict[str, Any]:
        if not order_id or trigger_price <= 0:
            raise ValueError("invalid_tp_sl_modification")
        body = {
            "orderId": order_id,
            "triggerPrice": str(trigger_price),
            "executePrice": "0",
            "triggerPriceType": 1,
        }
        data = await self._request("POST", "/order/modifyTpSlOrder", body=body, private=True)
        return data if isinstance(data, dict) else {"data": data}

    async def adjust_position_margin(self, *, isolated_position_id: int, amount: float) -> dict[str, Any]:
        if isolated_position_id <= 0 or amount == 0:
            raise ValueError("invalid_margin_adjustment")
        body = {
            "isolatedPositionId": isolated_position_id,
            "collateralAmount": str(amount),
            "coinId": 2,
        }
        data = await self._request("POST", "/account/adjustMargin", body=body, private=True)
        return data if isinstance(data, dict) else {"data": data}

    # ---- transport ----

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _read_with_retry(self, path: str, params: dict[str, str] | None, private: bool) -> Any:
        return await self._send("GET", path, params=params, private=private)

    async def _read(self, path: str, params: dict[str, str] | None = None, *, private: bool = False) -> Any:
        try:
            return await self._read_with_retry(path, params, private)
        except httpx.TransportError as exc:
            raise ExchangeAPIError(f"transport_error: {exc}") from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        private: bool = False,
    ) -> Any:
        try:
            return await self._send(method, path, body=body, private=private)
        except httpx.TransportError as exc:
            raise ExchangeAPIError(f"transport_error: {exc}") from exc

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        private: bool = False,
    ) -> Any:
        endpoint = f"{_API_PREFIX}{path}"
        query = f"?{urlencode(params)}" if params else ""
        body_text = json.dumps(body, separators=(",", ":")) if body is not None else ""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "locale": "en-US",
        }
        if private:
            headers.update(self._auth_headers(method, endpoint, query, body_text))

        started = time.perf_counter()
        response = await self._client.request(
            method,
            endpoint + query,
            content=body_text.encode("utf-8") if body_text else None,
            headers=headers,
        )
        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > 1000 or method != "GET":
            self._logger.debug("exchange_request", method=method, endpoint=endpoint, latency_ms=round(elapsed_ms, 2))
        return self._unwrap(response, endpoint)

    def _auth_headers(self, method: str, endpoint: str, query: str, body_text: str) -> dict[str, str]:
        settings = self._settings
        if not settings.exchange_api_key or not settings.exchange_api_secret:
            raise ExchangeAPIError("missing_exchange_credentials")
        timestamp = str(int(time.time() * 1000))
        return {
            "ACCESS-KEY": settings.exchange_api_key,
            "ACCESS-TIMESTAMP": timestamp,
            "ACCESS-PASSPHRASE": settings.exchange_passphrase,
            "ACCESS-SIGN": sign_request(settings.exchange_api_secret, timestamp, method, endpoint, query, body_text),
        }

    def _unwrap(self, response: httpx.Response, endpoint: str) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code == 429:
            raise ExchangeAPIError("rate_limited", status=429)
        if response.status_code >= 400:
            code = str(payload.get("code")) if isinstance(payload, dict) and payload.get("code") else None
            message = payload.get("msg") if isinstance(payload, dict) else None
            self._logger.error(
                "exchange_api_error",
                endpoint=endpoint,
                status=response.status_code,
                code=code,
                message=message,
            )
            raise ExchangeAPIError(message or f"http_{response.status_code}", code=code, status=response.status_code)

        if isinstance(payload, dict):
            code = payload.get("code")
            if code is not None and str(code) not in _OK_CODES and "msg" in payload:
                raise ExchangeAPIError(str(payload.get("msg") or "exchange_error"), code=str(code))
            if "data" in payload:
                return payload["data"]
        return payload

    def _normalize_positions(self, data: Any) -> list[ExchangePosition]:
        rows = data if isinstance(data, list) else []
        positions: list[ExchangePosition] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                positions.append(ExchangePosition.from_raw(row))
            except ValueError as exc:
                self._logger.warning("position_skipped", symbol=row.get("symbol"), error=str(exc))
        return positions


def _validate_order(payload: dict[str, str]) -> None:
    """Local shape checks before an order leaves the process."""
    symbol = payload.get("symbol", "")
    if not symbol.startswith("cmt_") or not symbol.endswith("usdt"):
        raise ValueError(f"invalid_symbol_format: {symbol}")
    try:
        size = float(payload.get("size", ""))
    except ValueError as exc:
        raise ValueError(f"invalid_size: {payload.get('size')}") from exc
    if size <= 0:
        raise ValueError(f"invalid_size: {payload.get('size')}")
    if payload.get("type") not in {"1", "2", "3", "4"}:
        raise ValueError(f"invalid_order_type: {payload.get('type')}")
    if payload.get("order_type") not in {"0", "1", "2", "3"}:
        raise ValueError(f"invalid_order_execution_type: {payload.get('order_type')}")
    if payload.get("match_price") not in {"0", "1"}:
        raise ValueError(f"invalid_match_price: {payload.get('match_price')}")
    if len(payload.get("client_oid", "")) > 40:
        raise ValueError("client_oid_too_long")
