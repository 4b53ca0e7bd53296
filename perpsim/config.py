"""Configuration loading for perpsim.

Settings live in ``~/.config/perpsim/config.toml`` (or the file named by
``PERPSIM_CONFIG``). Every key is optional; a missing or unreadable file
yields the defaults below.

    [ledger]
    db_path = "~/.config/perpsim/perpsim.db"
    allowed_leverage = [1, 2, 3, 5, 10, 20, 50]
    min_order_size = 0.001
    cas_retries = 5

    [pricing]
    base_url = "https://price-api.crypto.com"
    timeout = 5.0
    max_deviation = 0.2

    [leaderboard]
    default_limit = 10
    max_limit = 50
"""

import logging
import os
from pathlib import Path
from typing import Optional

import toml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "perpsim"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.toml"
DEFAULT_DB_PATH = CONFIG_DIR / "perpsim.db"


class LedgerSettings(BaseModel):
    """Order-validation and storage settings."""

    db_path: Path = Field(default=DEFAULT_DB_PATH, description="SQLite database file")
    allowed_leverage: tuple[float, ...] = Field(
        default=(1, 2, 3, 5, 10, 20, 50), min_length=1, description="Leverage allow-list"
    )
    min_order_size: float = Field(default=0.001, gt=0, description="Minimum order amount")
    cas_retries: int = Field(default=5, ge=1, description="Optimistic write attempts")

    model_config = {"frozen": True}


class PricingSettings(BaseModel):
    """Price feed settings."""

    base_url: str = Field(default="https://price-api.crypto.com", description="Feed base URL")
    timeout: float = Field(default=5.0, gt=0, description="HTTP timeout in seconds")
    max_deviation: float = Field(
        default=0.2, gt=0, lt=1, description="Max relative gap for client fallback prices"
    )

    model_config = {"frozen": True}


class LeaderboardSettings(BaseModel):
    """Leaderboard paging settings."""

    default_limit: int = Field(default=10, ge=1, description="Rows when no limit is given")
    max_limit: int = Field(default=50, ge=1, description="Upper bound on requested rows")

    model_config = {"frozen": True}


class SimulatorConfig(BaseModel):
    """Top-level configuration."""

    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    pricing: PricingSettings = Field(default_factory=PricingSettings)
    leaderboard: LeaderboardSettings = Field(default_factory=LeaderboardSettings)

    model_config = {"frozen": True}


def get_config_path() -> Path:
    """Get the config file path, honouring ``PERPSIM_CONFIG``."""
    override = os.environ.get("PERPSIM_CONFIG")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH


def load_config(path: Optional[Path] = None) -> SimulatorConfig:
    """Load configuration from a TOML file.

    Args:
        path: Config file to read. Defaults to :func:`get_config_path`.

    Returns:
        Parsed configuration, or defaults if the file is missing or invalid.
    """
    config_path = path or get_config_path()
    if not config_path.exists():
        return SimulatorConfig()

    try:
        raw = toml.load(config_path)
        config = SimulatorConfig.model_validate(raw)
    except (toml.TomlDecodeError, OSError, ValidationError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", config_path, exc)
        return SimulatorConfig()

    db_path = config.ledger.db_path.expanduser()
    if db_path != config.ledger.db_path:
        ledger = config.ledger.model_copy(update={"db_path": db_path})
        config = config.model_copy(update={"ledger": ledger})
    return config
