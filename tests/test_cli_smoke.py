from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from autonomous_trading import __version__
from autonomous_trading.config import Settings
from autonomous_trading.errors import EngineStartupError
from autonomous_trading.main import cli
from autonomous_trading.types import TradingCycle


class _FakeEngine:
    instances: list["_FakeEngine"] = []
    startup_error: Exception | None = None

    def __init__(self, settings: Settings, **clients: Any) -> None:
        self.settings = settings
        self.cleaned = False
        _FakeEngine.instances.append(self)

    async def run_once(self) -> TradingCycle:
        if _FakeEngine.startup_error is not None:
            raise _FakeEngine.startup_error
        return TradingCycle(cycle_number=1, start_time=0.0, status="entry complete", trades_executed=1)

    async def cleanup(self) -> None:
        self.cleaned = True


@pytest.fixture
def patched(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> list[_FakeEngine]:
    settings = Settings(journal_dir=tmp_path / "journal")
    _FakeEngine.instances = []
    _FakeEngine.startup_error = None
    monkeypatch.setattr("autonomous_trading.main.get_settings", lambda: settings)
    monkeypatch.setattr("autonomous_trading.main.TradingEngine", _FakeEngine)
    return _FakeEngine.instances


def test_cli_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"autonomous-trading version {__version__}" in result.output


def test_cli_once_smoke(patched: list[_FakeEngine], tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["once", "--dry-run"])
    assert result.exit_code == 0
    engine = patched[0]
    assert engine.cleaned
    assert engine.settings.dry_run
    assert (tmp_path / "journal").is_dir()


def test_cli_once_startup_failure_exits_nonzero(patched: list[_FakeEngine]) -> None:
    _FakeEngine.startup_error = EngineStartupError("contract metadata unavailable: timeout")
    result = CliRunner().invoke(cli, ["once"])
    assert result.exit_code == 1
    assert patched[0].cleaned


def test_cli_live_mode_requires_credentials(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = Settings(mode="live", journal_dir=tmp_path)
    monkeypatch.setattr("autonomous_trading.main.get_settings", lambda: settings)
    monkeypatch.setattr("autonomous_trading.main.TradingEngine", _FakeEngine)
    _FakeEngine.instances = []
    result = CliRunner().invoke(cli, ["once"])
    assert result.exit_code == 1
    assert _FakeEngine.instances == []


def test_cli_status_summary(patched: list[_FakeEngine]) -> None:
    result = CliRunner().invoke(cli, ["status"])
    assert result.exit_code == 0
    assert "[PAPER] Mode: Paper Trading" in result.output
    assert "Max concurrent positions: 3" in result.output
