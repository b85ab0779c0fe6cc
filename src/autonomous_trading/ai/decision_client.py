"""HTTP client for the external decision service."""

from __future__ import annotations

import time
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from autonomous_trading.ai.schemas import (
    ChampionshipResult,
    ManagementDecision,
    OpportunitySelection,
    RiskCouncilDecision,
    parse_payload,
)
from autonomous_trading.config import Settings
from autonomous_trading.errors import DecisionPayloadError, DecisionServiceAPIError
from autonomous_trading.types import MarketData, PositionSnapshot, RecentPnl
from autonomous_trading.utils.logging import get_logger, log_decision_call

ModelT = TypeVar("ModelT", bound=BaseModel)


class DecisionService(Protocol):
    """The four staged calls the pipeline makes."""

    async def select_opportunity(
        self,
        market_data: dict[str, MarketData],
        positions: list[PositionSnapshot],
    ) -> OpportunitySelection: ...

    async def run_deep_analysis(
        self,
        symbol: str,
        market: MarketData,
        context: dict[str, Any],
    ) -> ChampionshipResult: ...

    async def run_risk_council(
        self,
        decision: ChampionshipResult,
        market: MarketData,
        balance: float,
        positions: list[PositionSnapshot],
        recent_pnl: RecentPnl,
    ) -> RiskCouncilDecision: ...

    async def run_position_management(
        self,
        position: PositionSnapshot,
        market_data: dict[str, MarketData],
    ) -> ManagementDecision: ...


class DecisionServiceClient:
    """JSON-over-HTTP implementation of DecisionService."""

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._logger = get_logger("autonomous_trading.ai.decision_client")
        headers = {"Content-Type": "application/json"}
        if settings.decision_service_api_key:
            headers["Authorization"] = f"Bearer {settings.decision_service_api_key}"
        self._client = httpx.AsyncClient(
            base_url=settings.decision_service_url,
            timeout=settings.decision_service_timeout,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def select_opportunity(
        self,
        market_data: dict[str, MarketData],
        positions: list[PositionSnapshot],
    ) -> OpportunitySelection:
        payload = {
            "market_data": {symbol: data.to_payload() for symbol, data in market_data.items()},
            "positions": [position.to_payload() for position in positions],
        }
        return await self._call("opportunity", "/opportunity", payload, OpportunitySelection)

    async def run_deep_analysis(
        self,
        symbol: str,
        market: MarketData,
        context: dict[str, Any],
    ) -> ChampionshipResult:
        payload = {"symbol": symbol, "market": market.to_payload(), "context": context}
        return await self._call("analysis", "/analysis", payload, ChampionshipResult)

    async def run_risk_council(
        self,
        decision: ChampionshipResult,
        market: MarketData,
        balance: float,
        positions: list[PositionSnapshot],
        recent_pnl: RecentPnl,
    ) -> RiskCouncilDecision:
        payload = {
            "decision": decision.model_dump(),
            "market": market.to_payload(),
            "balance": balance,
            "positions": [position.to_payload() for position in positions],
            "recent_pnl": {"day": recent_pnl.day, "week": recent_pnl.week},
        }
        return await self._call("risk_council", "/risk-council", payload, RiskCouncilDecision)

    async def run_position_management(
        self,
        position: PositionSnapshot,
        market_data: dict[str, MarketData],
    ) -> ManagementDecision:
        payload = {
            "position": position.to_payload(),
            "market_data": {symbol: data.to_payload() for symbol, data in market_data.items()},
        }
        return await self._call("position_management", "/position-management", payload, ManagementDecision)

    async def _call(self, stage: str, path: str, payload: dict[str, Any], model: type[ModelT]) -> ModelT:
        started = time.perf_counter()
        try:
            body = await self._post(path, payload)
            result = parse_payload(model, body, stage=stage)
        except (DecisionServiceAPIError, DecisionPayloadError) as exc:
            log_decision_call(
                self._logger,
                stage=stage,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                reason=str(exc),
            )
            raise
        log_decision_call(
            self._logger,
            stage=stage,
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
        )
        return result

    @retry(
        retry=retry_if_exception_type(DecisionServiceAPIError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DecisionServiceAPIError(str(exc)) from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise DecisionPayloadError(path.strip("/"), "response_not_json") from exc
        return _extract_result(body)


def _extract_result(body: Any) -> Any:
    """Unwrap ``{"result": ...}`` or ``{"content": "<model text>"}`` envelopes."""
    if isinstance(body, dict):
        if "result" in body:
            return body["result"]
        content = body.get("content")
        if isinstance(content, str) and len(body) == 1:
            return content
    return body
