"""Configuration for the Copy Trader service."""

import logging
import os
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from pathlib import Path
from typing import Optional

import orjson

from copytrade_common.enums import RiskLevel, StorageMode
from copytrade_common.errors import ConfigurationError, InvalidInput
from copytrade_common.util import to_decimal, to_int, decimal_default

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "copy_trader.json"
LEDGER_FILENAMES = {
    StorageMode.REAL: "copy_trader_real_db.jsonl",
    StorageMode.SIMULATION: "copy_trader_sim_db.jsonl",
}
SETTLEMENT_LOG_FILENAME = "copy_trader_settlements.log"

DEFAULT_POLL_INTERVAL_MS = 2000
MIN_POLL_MS_NORMAL = 500
MIN_POLL_MS_FAST = 50  # realtime or simulation mode


def min_poll_ms(realtime_mode: bool, simulation_mode: bool) -> int:
    """Lowest poll interval allowed for the selected mode."""
    if realtime_mode or simulation_mode:
        return MIN_POLL_MS_FAST
    return MIN_POLL_MS_NORMAL


@dataclass
class CopyConfig:
    """
    Copy-trading risk parameters.

    Loaded at startup and immutable during a run unless the operator
    explicitly reconfigures. All money fields are Decimal.
    """
    leader_address: str
    allocated_funds: Decimal
    max_trade_pct: Decimal = Decimal("5")
    max_total_exposure_pct: Decimal = Decimal("70")
    min_copy_usd: Decimal = Decimal("1")

    # Polling
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS

    # Modes
    risk_level: RiskLevel = RiskLevel.BALANCED
    execute_orders: bool = False
    realtime_mode: bool = False
    simulation_mode: bool = False

    @property
    def max_trade_usd(self) -> Decimal:
        """Ceiling on a single copied trade."""
        return self.allocated_funds * self.max_trade_pct / Decimal(100)

    @property
    def max_total_exposure_usd(self) -> Decimal:
        """Ceiling on cumulative open exposure."""
        return self.allocated_funds * self.max_total_exposure_pct / Decimal(100)

    @property
    def storage_mode(self) -> StorageMode:
        return StorageMode.SIMULATION if self.simulation_mode else StorageMode.REAL

    @property
    def min_poll_ms(self) -> int:
        return min_poll_ms(self.realtime_mode, self.simulation_mode)

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            InvalidInput: On the first invalid field
        """
        if not self.leader_address or not self.leader_address.strip():
            raise InvalidInput("leader_address is required")

        if self.allocated_funds <= 0:
            raise InvalidInput("allocated_funds must be > 0")

        for name, value in (
            ("max_trade_pct", self.max_trade_pct),
            ("max_total_exposure_pct", self.max_total_exposure_pct),
        ):
            if value <= 0 or value > 100:
                raise InvalidInput(f"{name} must be between 0 and 100")

        if self.min_copy_usd < 0:
            raise InvalidInput("min_copy_usd cannot be negative")

        if self.realtime_mode and self.simulation_mode:
            raise InvalidInput("realtime_mode and simulation_mode are mutually exclusive")

        if self.poll_interval_ms < self.min_poll_ms:
            raise InvalidInput(
                f"poll_interval_ms too low for selected mode (min {self.min_poll_ms})"
            )

    @classmethod
    def from_dict(cls, data: dict) -> "CopyConfig":
        """
        Build a config from a JSON body or config file.

        Accepts `leader` as an alias of `leader_address` and
        `poll_interval_secs` when `poll_interval_ms` is absent.
        """
        if not isinstance(data, dict):
            raise InvalidInput("config must be a JSON object")

        leader = data.get("leader_address", data.get("leader"))
        if not isinstance(leader, str):
            raise InvalidInput("leader_address is required")
        if "allocated_funds" not in data:
            raise InvalidInput("allocated_funds is required")

        poll_ms = data.get("poll_interval_ms")
        if poll_ms is None and data.get("poll_interval_secs") is not None:
            poll_ms = to_int(data["poll_interval_secs"], "poll_interval_secs") * 1000

        try:
            risk_level = RiskLevel(data.get("risk_level", RiskLevel.BALANCED.value))
        except ValueError:
            raise InvalidInput(f"unknown risk_level {data.get('risk_level')!r}")

        poll_interval_ms = (
            to_int(poll_ms, "poll_interval_ms") if poll_ms is not None else DEFAULT_POLL_INTERVAL_MS
        )

        return cls(
            leader_address=leader.strip(),
            allocated_funds=to_decimal(data["allocated_funds"], "allocated_funds"),
            max_trade_pct=to_decimal(data.get("max_trade_pct", "5"), "max_trade_pct"),
            max_total_exposure_pct=to_decimal(
                data.get("max_total_exposure_pct", "70"), "max_total_exposure_pct"
            ),
            min_copy_usd=to_decimal(data.get("min_copy_usd", "1"), "min_copy_usd"),
            poll_interval_ms=poll_interval_ms,
            risk_level=risk_level,
            execute_orders=bool(data.get("execute_orders", False)),
            realtime_mode=bool(data.get("realtime_mode", False)),
            simulation_mode=bool(data.get("simulation_mode", False)),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["risk_level"] = self.risk_level.value
        return data


def save_config(config: CopyConfig, path: Path) -> None:
    """Persist config as pretty JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    body = orjson.dumps(config.to_dict(), default=decimal_default, option=orjson.OPT_INDENT_2)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(body)
    os.replace(tmp, path)
    logger.info(f"Config saved to {path}")


def load_config(path: Path) -> Optional[CopyConfig]:
    """
    Load config from disk.

    Returns:
        CopyConfig, or None if the operator has not configured yet

    Raises:
        InvalidInput: If the file exists but is not a valid config
    """
    if not path.exists():
        return None
    try:
        data = orjson.loads(path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise InvalidInput(f"Invalid copy-trader config at {path}: {e}")
    config = CopyConfig.from_dict(data)
    config.validate()
    return config


@dataclass
class ServiceSettings:
    """
    Process-level settings for the Copy Trader service.

    Loaded from environment variables with sensible defaults.
    """
    # Storage
    data_dir: str = field(default_factory=lambda: str(Path.home() / ".config" / "polymarket"))

    # Sync server
    ui_host: str = "127.0.0.1"
    ui_port: int = 8787

    # Leader activity source
    data_api_url: str = "https://data-api.polymarket.com"
    fetch_timeout_seconds: float = 15.0
    trades_limit: int = 20
    closed_positions_limit: int = 50

    # Adaptive polling (milliseconds)
    poll_floor_ms: int = MIN_POLL_MS_NORMAL
    poll_ceiling_ms: int = 30_000
    poll_decrease_step_ms: int = 100
    poll_increase_step_ms: int = 250
    autostart_poller: bool = False

    # Sync feed paging
    updates_page_limit: int = 200
    recent_movements_limit: int = 300

    # Logging
    log_level: str = "INFO"

    @property
    def config_path(self) -> Path:
        return Path(self.data_dir) / CONFIG_FILENAME

    def ledger_path(self, mode: StorageMode) -> Path:
        return Path(self.data_dir) / LEDGER_FILENAMES[mode]

    @property
    def settlement_log_path(self) -> Path:
        return Path(self.data_dir) / SETTLEMENT_LOG_FILENAME

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        """Load settings from environment variables."""
        return cls(
            data_dir=os.getenv(
                "COPY_TRADER_HOME",
                str(Path.home() / ".config" / "polymarket"),
            ),
            ui_host=os.getenv("UI_HOST", "127.0.0.1"),
            ui_port=int(os.getenv("UI_PORT", "8787")),
            data_api_url=os.getenv("DATA_API_URL", "https://data-api.polymarket.com"),
            fetch_timeout_seconds=float(os.getenv("FETCH_TIMEOUT_SECONDS", "15")),
            trades_limit=int(os.getenv("TRADES_LIMIT", "20")),
            closed_positions_limit=int(os.getenv("CLOSED_POSITIONS_LIMIT", "50")),
            poll_floor_ms=int(os.getenv("POLL_FLOOR_MS", str(MIN_POLL_MS_NORMAL))),
            poll_ceiling_ms=int(os.getenv("POLL_CEILING_MS", "30000")),
            poll_decrease_step_ms=int(os.getenv("POLL_DECREASE_STEP_MS", "100")),
            poll_increase_step_ms=int(os.getenv("POLL_INCREASE_STEP_MS", "250")),
            autostart_poller=os.getenv("AUTOSTART_POLLER", "false").lower() in ("1", "true", "yes"),
            updates_page_limit=int(os.getenv("UPDATES_PAGE_LIMIT", "200")),
            recent_movements_limit=int(os.getenv("RECENT_MOVEMENTS_LIMIT", "300")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def validate(self) -> None:
        """Validate settings values."""
        if self.ui_host not in ("127.0.0.1", "localhost"):
            raise ConfigurationError("For security, UI host must be 127.0.0.1 or localhost")

        if self.ui_port < 1 or self.ui_port > 65535:
            raise ConfigurationError("ui_port must be between 1 and 65535")

        if self.poll_floor_ms < MIN_POLL_MS_FAST:
            raise ConfigurationError(f"poll_floor_ms must be >= {MIN_POLL_MS_FAST}")

        if self.poll_ceiling_ms < self.poll_floor_ms:
            raise ConfigurationError("poll_ceiling_ms must be >= poll_floor_ms")

        if self.poll_decrease_step_ms < 0 or self.poll_increase_step_ms <= 0:
            raise ConfigurationError("poll steps must be positive")

        if self.fetch_timeout_seconds <= 0:
            raise ConfigurationError("fetch_timeout_seconds must be positive")

        if self.updates_page_limit < 1:
            raise ConfigurationError("updates_page_limit must be >= 1")

