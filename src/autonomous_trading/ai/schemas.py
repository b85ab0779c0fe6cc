"""Decision service payload schemas and strict parsing helpers."""

from __future__ import annotations

import json
import re
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from autonomous_trading.errors import DecisionPayloadError

Recommendation = Literal["strong_buy", "buy", "hold", "sell", "strong_sell"]
ManageType = Literal["CLOSE_FULL", "CLOSE_PARTIAL", "TAKE_PARTIAL", "TIGHTEN_STOP", "ADJUST_TP", "ADD_MARGIN"]

ModelT = TypeVar("ModelT", bound=BaseModel)


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)


class OpportunitySelection(_StrictModel):
    """Stage 1: which symbol to act on, and how."""

    source_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    action: Literal["LONG", "SHORT", "MANAGE"]
    rationale: str = ""


class PriceTarget(_StrictModel):
    base: float = Field(gt=0.0)
    bear: float = Field(gt=0.0)
    bull: float | None = Field(default=None, gt=0.0)


class ChampionAnalysis(_StrictModel):
    analyst_id: str = Field(min_length=1)
    name: str = ""
    confidence: float = Field(ge=0.0, le=100.0)
    thesis: str = ""
    recommendation: Recommendation
    price_target: PriceTarget
    position_size: float = Field(default=5.0, ge=1.0, le=10.0)
    risk_level: str = "moderate"

    @property
    def is_bullish(self) -> bool:
        return self.recommendation in {"buy", "strong_buy"}


class ChampionshipResult(_StrictModel):
    """Stage 2: the winning thesis of the deep analysis round."""

    champion: ChampionAnalysis
    participants: list[str] = Field(default_factory=list)
    summary: str = ""


class RiskAdjustments(_StrictModel):
    position_size: float | None = Field(default=None, ge=1.0, le=10.0)
    leverage: float | None = Field(default=None, ge=1.0, le=20.0)
    stop_loss: float | None = Field(default=None, gt=0.0)


class RiskCouncilDecision(_StrictModel):
    """Stage 3: final approval or veto."""

    approved: bool
    veto_reason: str | None = None
    adjustments: RiskAdjustments | None = None
    warnings: list[str] = Field(default_factory=list)


class ManagementDecision(_StrictModel):
    """How to manage one open position."""

    manage_type: ManageType
    conviction: float = Field(default=5.0, ge=0.0, le=10.0)
    reason: str = ""
    close_percent: float | None = None
    new_stop_loss: float | None = None
    new_take_profit: float | None = None
    margin_amount: float | None = None


def parse_payload(model: type[ModelT], raw: Any, *, stage: str | None = None) -> ModelT:
    """Validate a raw payload into ``model``. Any violation raises DecisionPayloadError.

    Accepts an instance of the model, a dict, or model text holding a JSON
    object (plain, fenced or embedded).
    """
    stage_name = stage or model.__name__
    if isinstance(raw, model):
        return raw
    if isinstance(raw, str):
        try:
            raw = _extract_json_obj(raw)
        except ValueError as exc:
            raise DecisionPayloadError(stage_name, str(exc)) from exc
    if not isinstance(raw, dict):
        raise DecisionPayloadError(stage_name, f"payload_not_object: {type(raw).__name__}")
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise DecisionPayloadError(stage_name, f"schema_validation_error: {location}: {first['msg']}") from exc


def _extract_json_obj(text: str) -> dict[str, Any]:
    """Extract the first JSON object from plain text or fenced content."""
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return _as_object(json.loads(stripped))

    fenced_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", stripped, re.DOTALL)
    if fenced_match:
        return _as_object(json.loads(fenced_match.group(1)))

    brace_match = re.search(r"\{.*\}", stripped, re.DOTALL)
    if brace_match:
        return _as_object(json.loads(brace_match.group(0)))

    raise ValueError("response_not_json")


def _as_object(decoded: Any) -> dict[str, Any]:
    if isinstance(decoded, dict):
        return decoded
    raise ValueError("response_json_not_object")
