"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas and runs cross-section sanity
checks. Ensures the config is correct before the agent starts polling.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class AppSection(BaseModel):
    """Process-level settings"""
    name: str = Field(default="perp-agent", min_length=1)
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|LIVE)$", description="Execution mode")


class AgentSection(BaseModel):
    """Control loop cadence and gates"""
    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Seconds between oracle polls")
    min_cooldown_ms: int = Field(default=120_000, ge=0, description="Minimum spacing between confirmed executions")
    confirm_timeout_seconds: float = Field(default=30.0, gt=0, description="Confirmation deadline after placement")
    confirm_poll_seconds: float = Field(default=2.0, gt=0, description="Order status poll spacing")
    client_order_prefix: str = Field(default="perpagent", min_length=1)


class SessionSection(BaseModel):
    """Default activation values for `run` / `once`"""
    token: str = Field(default="APT", min_length=1)
    collateral_asset: str = Field(default="USDC", min_length=1)
    portfolio_amount: float = Field(default=100.0, gt=0)
    risk_level: str = Field(default="moderate", pattern="^(conservative|moderate|aggressive)$")
    account: str = Field(default="", description="Venue account / wallet address")


class ServiceSection(BaseModel):
    """One HTTP collaborator"""
    base_url: str = Field(min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)

    @field_validator("base_url")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        if not v.startswith(("http://", "https://", "${")):
            raise ValueError(f"base_url must start with http:// or https://, got {v!r}")
        return v


class VenueSection(ServiceSection):
    api_key_env: str = Field(default="PERPS_API_KEY", min_length=1)


class MarketEntry(BaseModel):
    market_id: int = Field(ge=0)
    size_decimals: int = Field(ge=0, le=18)


class CollateralEntry(BaseModel):
    address: str = Field(default="")
    decimals: int = Field(default=6, ge=0, le=18)


class LoggingSection(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/perp_agent.log")


class AlertsSection(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)


class MonitoringSection(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    healthcheck_enabled: bool = True
    healthcheck_port: int = Field(default=8080, ge=0, lt=65536)
    alerts: AlertsSection = Field(default_factory=AlertsSection)


class AppSchema(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection = Field(default_factory=AppSection)
    agent: AgentSection = Field(default_factory=AgentSection)
    session: SessionSection = Field(default_factory=SessionSection)
    oracle: ServiceSection
    venue: VenueSection
    wallet: ServiceSection
    markets: Dict[str, MarketEntry] = Field(min_length=1)
    collateral_assets: Dict[str, CollateralEntry] = Field(default_factory=dict)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def expand_env(value: Any) -> Any:
    """Expand ${VAR} references in every string of a parsed YAML tree."""
    if isinstance(value, str):
        return os.path.expandvars(value) if "${" in value else value
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def load_app_config(config_dir: str = "config") -> Dict[str, Any]:
    """Load app.yaml with ${VAR} expansion applied."""
    return expand_env(load_yaml_file(Path(config_dir) / APP_CONFIG_FILE))


def validate_app_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate an already-loaded app config.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    try:
        AppSchema(**(config or {}))
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{APP_CONFIG_FILE}: {field}: {error['msg']}")
    return errors


def validate_sanity_checks(config: Dict[str, Any]) -> List[str]:
    """Cross-section consistency checks the schema cannot express."""
    errors = []
    agent = config.get("agent") or {}
    session = config.get("session") or {}
    markets = {str(k).upper() for k in (config.get("markets") or {})}
    collateral = {str(k).upper() for k in (config.get("collateral_assets") or {})}

    token = str(session.get("token", "APT")).upper()
    if markets and token not in markets:
        errors.append(f"{APP_CONFIG_FILE}: session.token {token} has no entry in markets ({sorted(markets)})")

    asset = str(session.get("collateral_asset", "USDC")).upper()
    if collateral and asset not in collateral:
        errors.append(f"{APP_CONFIG_FILE}: session.collateral_asset {asset} has no entry in collateral_assets")

    timeout = float(agent.get("confirm_timeout_seconds", 30.0))
    poll = float(agent.get("confirm_poll_seconds", 2.0))
    if poll > timeout:
        errors.append(
            f"{APP_CONFIG_FILE}: agent.confirm_poll_seconds ({poll}) exceeds confirm_timeout_seconds ({timeout})"
        )

    market_ids = [int(m.get("market_id", -1)) for m in (config.get("markets") or {}).values() if isinstance(m, dict)]
    if len(market_ids) != len(set(market_ids)):
        errors.append(f"{APP_CONFIG_FILE}: markets share a market_id")

    mode = str((config.get("app") or {}).get("mode", "DRY_RUN")).upper()
    if mode == "LIVE" and not session.get("account"):
        errors.append(f"{APP_CONFIG_FILE}: LIVE mode requires session.account")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate app.yaml.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir) / APP_CONFIG_FILE
    try:
        config = expand_env(load_yaml_file(config_path))
    except FileNotFoundError as e:
        return [f"{APP_CONFIG_FILE}: {e}"]
    except yaml.YAMLError as e:
        return [f"{APP_CONFIG_FILE}: Invalid YAML - {e}"]

    all_errors = validate_app_config(config)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)
