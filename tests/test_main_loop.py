"""
Tests for AgentRunner wiring and the CLI entry point.

HTTP is routed through a fake requests.request so the whole stack
(config -> clients -> session -> cycle) runs without a network.
"""
import json
from unittest.mock import Mock, patch

import pytest
import yaml

import runner.main_loop as main_loop
from core.exceptions import ValidationError
from runner.main_loop import AgentRunner, _build_parser, main


def _config(tmp_path, **agent_overrides):
    agent = {"poll_interval_seconds": 60, "min_cooldown_ms": 120000,
             "confirm_timeout_seconds": 5, "confirm_poll_seconds": 1}
    agent.update(agent_overrides)
    return {
        "app": {"mode": "DRY_RUN"},
        "agent": agent,
        "session": {"token": "APT", "collateral_asset": "USDC", "portfolio_amount": 100,
                    "risk_level": "moderate", "account": "${PERPS_ACCOUNT_ADDRESS}"},
        "oracle": {"base_url": "${ORACLE_BASE_URL}", "max_retries": 1},
        "venue": {"base_url": "http://venue.test", "max_retries": 1},
        "wallet": {"base_url": "http://wallet.test", "max_retries": 1},
        "markets": {"APT": {"market_id": 14, "size_decimals": 3}},
        "collateral_assets": {"USDC": {"address": "0xusdc", "decimals": 6}},
        "logging": {"level": "INFO", "file": str(tmp_path / "logs" / "agent.log")},
        "monitoring": {"metrics_enabled": False, "healthcheck_enabled": False},
    }


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("ORACLE_BASE_URL", "http://oracle.test")
    monkeypatch.setenv("PERPS_ACCOUNT_ADDRESS", "0xabc")
    (tmp_path / "app.yaml").write_text(yaml.safe_dump(_config(tmp_path)))
    return str(tmp_path)


def _ok(payload):
    response = Mock()
    response.status_code = 200
    response.json.return_value = payload
    return response


class FakeServices:
    """Routes requests.request calls by URL suffix and records them."""

    def __init__(self, recommendation="LONG"):
        self.recommendation = recommendation
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if url.endswith(("/api/activate", "/api/deactivate")):
            return _ok({"status": "ok"})
        if url.endswith("/api/analyze"):
            return _ok({
                "recommendation": self.recommendation,
                "confidence": 0.7,
                "market_data": {"price": 10.0},
                "execution_signal": {"action": "OPEN"},
                "position_info": {"status": "none"},
                "iteration": 3,
            })
        if url.endswith("/getTokenAmountOwnedByAccount"):
            return _ok({"data": "100000000"})
        if url.endswith("/getPositions"):
            return _ok([])
        if "/api/historical/" in url:
            return _ok({"data": [{"timestamp": 1, "price": 9.5, "date": "2024-05-01"}]})
        raise AssertionError(f"unexpected request {method} {url}")

    def paths(self):
        return [url.split(".test", 1)[1] for _, url, _ in self.calls]


class TestAgentRunner:

    def test_builds_from_config(self, config_dir):
        runner = AgentRunner(config_dir=config_dir, configure_logging=False)
        assert runner.mode == "DRY_RUN"
        assert runner.oracle.base_url == "http://oracle.test"
        assert runner.session.default_account == "0xabc"
        assert runner.health_server is None
        assert runner.session_config().account == "0xabc"

    def test_invalid_config_raises(self, tmp_path):
        (tmp_path / "app.yaml").write_text(yaml.safe_dump({"app": {"mode": "PAPER"}}))
        with pytest.raises(ValidationError):
            AgentRunner(config_dir=str(tmp_path), configure_logging=False)

    def test_unset_base_url_raises(self, config_dir, monkeypatch):
        monkeypatch.delenv("ORACLE_BASE_URL")
        with pytest.raises(ValidationError) as exc_info:
            AgentRunner(config_dir=config_dir, configure_logging=False)
        assert "oracle.base_url" in str(exc_info.value)

    def test_unset_account_falls_back_to_empty(self, config_dir, monkeypatch):
        monkeypatch.delenv("PERPS_ACCOUNT_ADDRESS")
        runner = AgentRunner(config_dir=config_dir, configure_logging=False)
        assert runner.session_config().account == ""
        assert runner.session_config({"account": "0xdef"}).account == "0xdef"

    def test_mode_override(self, config_dir):
        runner = AgentRunner(config_dir=config_dir, mode_override="live", configure_logging=False)
        assert runner.mode == "LIVE"
        assert runner.executor.mode == "LIVE"

    def test_run_once_dry_run(self, config_dir):
        services = FakeServices()
        runner = AgentRunner(config_dir=config_dir, configure_logging=False)
        with patch('core.api_client.requests.request', side_effect=services):
            event = runner.run_once({"risk_level": "aggressive"})
        assert event["action"] == "executed"
        assert event["execution_outcome"] == "confirmed"
        assert event["recommendation"] == "LONG"
        assert not runner.session.is_active
        paths = services.paths()
        assert paths[0] == "/api/activate"
        assert paths[-1] == "/api/deactivate"
        # DRY_RUN never places an order
        assert not any(p.startswith("/api/v1/perps/open") for p in paths)

    def test_run_once_hold(self, config_dir):
        runner = AgentRunner(config_dir=config_dir, configure_logging=False)
        with patch('core.api_client.requests.request', side_effect=FakeServices("HOLD")):
            event = runner.run_once()
        assert event["action"] == "skipped"
        assert event["reason"] == "hold"


class TestCli:

    def test_parser_run_overrides(self):
        args = _build_parser().parse_args(["--mode", "LIVE", "run", "--token", "BTC", "--risk", "aggressive",
                                           "--amount", "250"])
        assert args.command == "run"
        assert args.mode == "LIVE"
        assert args.token == "BTC"
        assert args.risk_level == "aggressive"
        assert args.portfolio_amount == 250.0

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args([])

    def test_main_bad_config_exit_code(self, tmp_path, capsys):
        assert main(["--config-dir", str(tmp_path), "once"]) == 2
        assert "ERROR" in capsys.readouterr().err

    def test_main_once(self, config_dir, monkeypatch, capsys):
        lock = Mock()
        monkeypatch.setattr(main_loop, "check_single_instance", lambda *args, **kwargs: lock)
        with patch('core.api_client.requests.request', side_effect=FakeServices()):
            assert main(["--config-dir", config_dir, "once"]) == 0
        event = json.loads(capsys.readouterr().out)
        assert event["action"] == "executed"
        lock.release.assert_called_once()

    def test_main_refuses_second_instance(self, config_dir, monkeypatch):
        monkeypatch.setattr(main_loop, "check_single_instance", lambda *args, **kwargs: None)
        assert main(["--config-dir", config_dir, "once"]) == 1

    def test_main_history(self, config_dir, capsys):
        with patch('core.api_client.requests.request', side_effect=FakeServices()):
            assert main(["--config-dir", config_dir, "history", "APT", "--days", "3"]) == 0
        points = json.loads(capsys.readouterr().out)
        assert points == [{"timestamp": 1, "price": 9.5, "date": "2024-05-01"}]

    def test_main_deposit_rejects_non_positive(self, config_dir):
        assert main(["--config-dir", config_dir, "deposit", "0"]) == 1
