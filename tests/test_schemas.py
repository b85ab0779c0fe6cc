import pytest

from autonomous_trading.ai.schemas import (
    ChampionshipResult,
    ManagementDecision,
    OpportunitySelection,
    RiskCouncilDecision,
    parse_payload,
)
from autonomous_trading.errors import DecisionPayloadError


def test_parse_selection_from_fenced_text() -> None:
    raw = """
    Here is my pick:
    ```json
    {"source_id": "jim", "symbol": "cmt_ethusdt", "action": "SHORT", "rationale": "lower highs"}
    ```
    """
    selection = parse_payload(OpportunitySelection, raw)
    assert selection.symbol == "cmt_ethusdt"
    assert selection.action == "SHORT"


def test_parse_championship_from_dict() -> None:
    payload = {
        "champion": {
            "analyst_id": "ray",
            "confidence": 82,
            "recommendation": "strong_sell",
            "price_target": {"base": 2_700, "bear": 3_150},
        }
    }
    result = parse_payload(ChampionshipResult, payload)
    assert result.champion.analyst_id == "ray"
    assert not result.champion.is_bullish
    assert result.champion.position_size == 5.0


def test_unknown_action_is_rejected() -> None:
    with pytest.raises(DecisionPayloadError, match="opportunity"):
        parse_payload(
            OpportunitySelection,
            {"source_id": "jim", "symbol": "cmt_btcusdt", "action": "BUY"},
            stage="opportunity",
        )


def test_extra_fields_are_rejected() -> None:
    with pytest.raises(DecisionPayloadError, match="schema_validation_error"):
        parse_payload(RiskCouncilDecision, {"approved": True, "confidence": 0.9})


def test_confidence_out_of_range_is_rejected() -> None:
    payload = {
        "champion": {
            "analyst_id": "ray",
            "confidence": 140,
            "recommendation": "buy",
            "price_target": {"base": 110, "bear": 95},
        }
    }
    with pytest.raises(DecisionPayloadError):
        parse_payload(ChampionshipResult, payload)


def test_non_json_text_is_rejected() -> None:
    with pytest.raises(DecisionPayloadError, match="response_not_json"):
        parse_payload(ManagementDecision, "close it all")


def test_json_array_is_rejected() -> None:
    with pytest.raises(DecisionPayloadError, match="payload_not_object"):
        parse_payload(ManagementDecision, [{"manage_type": "CLOSE_FULL"}])


def test_management_decision_defaults() -> None:
    decision = parse_payload(ManagementDecision, '{"manage_type": "TIGHTEN_STOP", "new_stop_loss": 101.5}')
    assert decision.new_stop_loss == 101.5
    assert decision.conviction == 5.0
    assert decision.close_percent is None
