"""
Configuration validation for the investor daemon.

Validates config/app.yaml against Pydantic schemas, then runs sanity checks
the schema cannot express (paths that point at directories, alerts with no
destination).

Usage:
    python -m tools.config_validator [CONFIG_DIR]

    from tools.config_validator import load_app_config
    config = load_app_config("config")   # raises ValueError listing every problem
"""
import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.bid_schema import ADDRESS_PATTERN

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class AppSection(BaseModel):
    """Process identity"""
    name: str = Field(default="auction-investor", min_length=1, description="Instance name (lock file, logs)")


class PortfolioConfig(BaseModel):
    """Snapshot location"""
    path: Optional[str] = Field(default=None, description="Snapshot file; default ~/.auction-investor/portfolio.json")


class LoggingConfig(BaseModel):
    """Logging parameters"""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$", description="Root log level")
    file: str = Field(default="logs/auction-investor.log", min_length=1, description="Log file path")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class LedgerConfig(BaseModel):
    """Ledger client wiring"""
    factory: str = Field(
        default="infra.memory_ledger:MemoryLedger",
        pattern=r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$",
        description="module:callable returning a Ledger",
    )
    options: Dict[str, Any] = Field(default_factory=dict, description="Keyword arguments for the factory")


class DecisionConfig(BaseModel):
    """Fixed-bid decision engine parameters"""
    enabled: bool = Field(default=True, description="Bid on new loans")
    amount: Decimal = Field(gt=0, description="Bid amount per loan")
    bidder: str = Field(pattern=ADDRESS_PATTERN, description="Bidder account address")
    min_interest_rate: Decimal = Field(default=Decimal("0"), ge=0, description="Lowest acceptable rate")
    max_bids: Optional[int] = Field(default=None, ge=1, description="Lifetime cap on bids (None = unlimited)")


class MonitoringConfig(BaseModel):
    """Metrics and alerting"""
    metrics_enabled: bool = Field(default=False, description="Expose Prometheus metrics")
    metrics_port: int = Field(default=9100, gt=0, le=65535, description="Metrics HTTP port")
    alerts_enabled: bool = Field(default=False, description="Send webhook alerts")
    alerts: Dict[str, Any] = Field(default_factory=dict, description="AlertService settings")


class LockConfig(BaseModel):
    """Single-instance lock"""
    enabled: bool = Field(default=True, description="Refuse to start when another daemon holds the lock")
    lock_dir: str = Field(default="data", min_length=1, description="PID file directory")


class AppConfig(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    portfolio: PortfolioConfig = Field(default_factory=PortfolioConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    decision: DecisionConfig
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    lock: LockConfig = Field(default_factory=LockConfig)


# ===== Loading =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Describe a YAML error with the offending line and its neighbours."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"

    problem = getattr(error, "problem", None) or str(error)
    header = f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"
    try:
        lines = file_path.read_text().splitlines()
    except OSError:
        return header

    context = [
        f"{'>' if number == mark.line else ' '} {number + 1:4d} | {lines[number]}"
        for number in range(max(mark.line - 2, 0), min(mark.line + 3, len(lines)))
    ]
    return header + ("\n" + "\n".join(context) if context else "")


def load_yaml_file(file_path: Path) -> Any:
    """
    Parse one YAML file.

    Returns:
        Parsed document ({} for an empty file)

    Raises:
        FileNotFoundError: file is missing
        yaml.YAMLError: file is malformed (message carries line context)
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    text = file_path.read_text()
    try:
        return yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise yaml.YAMLError(_format_yaml_error(file_path, e)) from e


def _parse_app_config(config_dir: Path):
    """Return (config, errors); config is None when errors is non-empty."""
    errors: List[str] = []
    app_path = config_dir / APP_CONFIG_FILE

    try:
        raw = load_yaml_file(app_path)
        if not isinstance(raw, dict):
            raise TypeError(f"top level must be a mapping, got {type(raw).__name__}")
        return AppConfig(**raw), errors
    except FileNotFoundError as e:
        errors.append(f"{APP_CONFIG_FILE}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{APP_CONFIG_FILE}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{APP_CONFIG_FILE}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{APP_CONFIG_FILE}: {e}")

    return None, errors


def validate_sanity_checks(config: AppConfig) -> List[str]:
    """
    Logical consistency checks the schema cannot express.

    Returns:
        List of error messages (empty if consistent)
    """
    errors = []

    if config.portfolio.path:
        snapshot = Path(config.portfolio.path).expanduser()
        if snapshot.is_dir():
            errors.append(f"portfolio.path points at a directory: {snapshot}")

    if Path(config.logging.file).expanduser().is_dir():
        errors.append(f"logging.file points at a directory: {config.logging.file}")

    if config.monitoring.alerts_enabled:
        alerts = config.monitoring.alerts
        if not (alerts.get("webhook_url") or alerts.get("webhook_env") or alerts.get("dry_run")):
            errors.append(
                "monitoring.alerts_enabled is true but no webhook_url, webhook_env or dry_run is set"
            )

    return errors


def _check(config_dir: str):
    config, errors = _parse_app_config(Path(config_dir))
    # Sanity checks assume the schema passed
    if config is not None:
        errors.extend(validate_sanity_checks(config))
    return config, errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Schema plus sanity validation of ``<config_dir>/app.yaml``.

    Returns:
        Every error message found (empty if the config is usable)
    """
    _, errors = _check(config_dir)
    if errors:
        logger.error(f"❌ {len(errors)} config error(s) in {config_dir}")
    else:
        logger.info(f"✅ {config_dir}/{APP_CONFIG_FILE} is valid")
    return errors


def load_app_config(config_dir: str = "config") -> AppConfig:
    """
    Load and validate app.yaml.

    Raises:
        ValueError: listing every validation error
    """
    config, errors = _check(config_dir)
    if errors:
        raise ValueError(
            f"Invalid configuration: {len(errors)} error(s) found\n" + "\n".join(errors)
        )
    return config


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    problems = validate_all_configs(sys.argv[1] if len(sys.argv) > 1 else "config")
    for problem in problems:
        print(f"ERROR: {problem}", file=sys.stderr)
    sys.exit(1 if problems else 0)
