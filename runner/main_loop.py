"""
Perp Agent - Main Runner

Wires config, clients, session and monitoring together and exposes the CLI:

    perp-agent run        activate and poll until SIGINT/SIGTERM
    perp-agent once       activate, run one cycle, deactivate
    perp-agent history    oracle price history for a token
    perp-agent positions  open venue positions for the account
    perp-agent orders     venue order history for the account
    perp-agent deposit    deposit collateral into the venue account
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exceptions import AgentError, ValidationError
from core.execution import ExecutionAdapter
from core.markets import MarketTable
from core.oracle_client import OracleClient
from core.venue_client import PerpsVenueClient
from core.wallet import WalletBalanceClient
from infra.alerting import AlertService
from infra.healthcheck import HealthServer
from infra.instance_lock import check_single_instance
from infra.metrics import MetricsRecorder
from runner.session import AgentSession, SessionConfig
from tools.config_validator import load_app_config, validate_all_configs

logger = logging.getLogger(__name__)


def _unexpanded(value: Optional[str]) -> bool:
    return not value or "${" in value


class AgentRunner:
    """Builds the agent from config/app.yaml and drives its lifecycle."""

    def __init__(self, config_dir: str = "config", mode_override: Optional[str] = None,
                 configure_logging: bool = True):
        self.config_dir = config_dir
        errors = validate_all_configs(config_dir)
        if errors:
            raise ValidationError("Invalid configuration:\n  " + "\n  ".join(errors))
        self.app_config: Dict[str, Any] = load_app_config(config_dir)

        if configure_logging:
            self._configure_logging()

        app_cfg = self.app_config.get("app", {}) or {}
        self.mode = (mode_override or app_cfg.get("mode", "DRY_RUN")).upper()
        agent_cfg = self.app_config.get("agent", {}) or {}
        self.session_defaults = self.app_config.get("session", {}) or {}

        self.markets = MarketTable(
            self.app_config.get("markets"),
            self.app_config.get("collateral_assets") or None,
        )
        self.oracle = OracleClient(**self._service_kwargs("oracle"))
        self.wallet = WalletBalanceClient(**self._service_kwargs("wallet"))

        venue_cfg = self.app_config.get("venue", {}) or {}
        api_key = os.getenv(venue_cfg.get("api_key_env", "PERPS_API_KEY"))
        self.venue = PerpsVenueClient(api_key=api_key, **self._service_kwargs("venue"))
        if self.mode == "LIVE" and not api_key:
            logger.warning("LIVE mode without a venue API key; the venue may refuse orders")

        self.executor = ExecutionAdapter(
            self.venue,
            mode=self.mode,
            confirm_timeout_s=float(agent_cfg.get("confirm_timeout_seconds", 30.0)),
            confirm_poll_s=float(agent_cfg.get("confirm_poll_seconds", 2.0)),
            client_order_prefix=agent_cfg.get("client_order_prefix", "perpagent"),
        )

        monitoring = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring.get("metrics_enabled", False)),
            port=int(monitoring.get("metrics_port", 9100)),
        )
        alerts_cfg = monitoring.get("alerts", {}) or {}
        self.alerts = AlertService.from_config(bool(alerts_cfg.get("enabled", False)), alerts_cfg)

        account = self.session_defaults.get("account", "")
        self.session = AgentSession(
            oracle=self.oracle,
            wallet=self.wallet,
            venue=self.venue,
            executor=self.executor,
            markets=self.markets,
            poll_interval_s=float(agent_cfg.get("poll_interval_seconds", 5.0)),
            min_cooldown_ms=int(agent_cfg.get("min_cooldown_ms", 120_000)),
            default_account="" if _unexpanded(account) else account,
            metrics=self.metrics,
            alerts=self.alerts,
        )
        self.session.subscribe(self._log_event)

        self.health_server: Optional[HealthServer] = None
        if monitoring.get("healthcheck_enabled", True):
            self.health_server = HealthServer(
                int(monitoring.get("healthcheck_port", 8080)),
                self.session.status_payload,
            )

        self._stop = threading.Event()
        logger.info(f"Initialized AgentRunner in {self.mode} mode")

    def _configure_logging(self) -> None:
        log_cfg = self.app_config.get("logging", {}) or {}
        handlers: List[logging.Handler] = [logging.StreamHandler()]
        log_file = log_cfg.get("file")
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.insert(0, logging.FileHandler(log_file))
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )

    def _service_kwargs(self, section: str) -> Dict[str, Any]:
        cfg = self.app_config.get(section, {}) or {}
        base_url = cfg.get("base_url", "")
        if _unexpanded(base_url):
            raise ValidationError(f"{section}.base_url is not set (got {base_url!r}); export the referenced variable")
        return {
            "base_url": base_url,
            "timeout": float(cfg.get("timeout_seconds", 10.0)),
            "max_retries": int(cfg.get("max_retries", 3)),
        }

    def session_config(self, overrides: Optional[Dict[str, Any]] = None) -> SessionConfig:
        raw = dict(self.session_defaults)
        if _unexpanded(raw.get("account")):
            raw["account"] = ""
        raw.update({k: v for k, v in (overrides or {}).items() if v is not None})
        return SessionConfig.from_dict(raw)

    @staticmethod
    def _log_event(result) -> None:
        event = result.to_event()
        logger.info(
            f"[POLL] cycle={event['cycle_id']} rec={event['recommendation']} "
            f"conf={event['confidence']} action={event['action']} reason={event['reason']} "
            f"outcome={event['execution_outcome']}"
        )

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received, deactivating session")
        self._stop.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def run_forever(self, overrides: Optional[Dict[str, Any]] = None) -> None:
        config = self.session_config(overrides)
        self.metrics.start()
        if self.health_server:
            self.health_server.start()
        try:
            self.session.activate(config)
            self._stop.wait()
        finally:
            self.session.deactivate()
            if self.health_server:
                self.health_server.stop()
        logger.info("Agent stopped cleanly.")

    def run_once(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        config = self.session_config(overrides)
        self.session.activate(config, start_polling=False)
        try:
            result = self.session.run_cycle()
        finally:
            self.session.deactivate()
        return result.to_event()

    def stop(self) -> None:
        self._stop.set()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Perp futures trading agent")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--mode", choices=("DRY_RUN", "LIVE"), help="Override app.mode")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (("run", "Poll until interrupted"), ("once", "Run a single cycle and exit")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--token", help="Asset to trade (default: session.token)")
        cmd.add_argument("--collateral", dest="collateral_asset", help="Collateral asset")
        cmd.add_argument("--amount", dest="portfolio_amount", type=float, help="Portfolio amount")
        cmd.add_argument("--risk", dest="risk_level", choices=("conservative", "moderate", "aggressive"))
        cmd.add_argument("--account", help="Venue account address")

    history = sub.add_parser("history", help="Oracle price history")
    history.add_argument("token")
    history.add_argument("--days", type=int, default=7)

    for name, help_text in (("positions", "Open venue positions"), ("orders", "Venue order history")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--account", help="Venue account address")

    deposit = sub.add_parser("deposit", help="Deposit collateral into the venue account")
    deposit.add_argument("amount", type=float)
    deposit.add_argument("--account", help="Venue account address")
    return parser


def _account(runner: AgentRunner, args) -> str:
    account = args.account or runner.session_config().account
    if not account:
        raise ValidationError("No account given; pass --account or set session.account")
    return account


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    args = _build_parser().parse_args(argv)

    try:
        runner = AgentRunner(config_dir=args.config_dir, mode_override=args.mode)
    except ValidationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    overrides = {
        key: getattr(args, key, None)
        for key in ("token", "collateral_asset", "portfolio_amount", "risk_level", "account")
    }

    lock = None
    try:
        if args.command in ("run", "once"):
            lock = check_single_instance("perp-agent", lock_dir="data")
            if lock is None:
                print("ERROR: another perp-agent instance is running", file=sys.stderr)
                return 1
        if args.command == "run":
            runner.install_signal_handlers()
            runner.run_forever(overrides)
        elif args.command == "once":
            print(json.dumps(runner.run_once(overrides), indent=2))
        elif args.command == "history":
            points = runner.oracle.historical(args.token, days=args.days)
            print(json.dumps([p.__dict__ for p in points], indent=2))
        elif args.command == "positions":
            positions = runner.venue.positions(_account(runner, args))
            print(json.dumps([
                {**p.__dict__, "side": p.side.value} for p in positions if p.is_open
            ], indent=2))
        elif args.command == "orders":
            print(json.dumps(runner.venue.order_history(_account(runner, args)), indent=2, default=str))
        elif args.command == "deposit":
            print(json.dumps(runner.venue.deposit(_account(runner, args), args.amount), indent=2, default=str))
    except (AgentError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    finally:
        if lock is not None:
            lock.release()
    return 0


if __name__ == "__main__":
    sys.exit(main())
