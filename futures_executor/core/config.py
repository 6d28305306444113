"""
Configuration loading.

Trading settings live in config.yaml and are validated into pydantic
models; API credentials live in the environment (optionally loaded from a
.env file) and never touch the YAML file.

Credential variables:
- Testnet: BINANCE_TESTNET_API_KEY, BINANCE_TESTNET_API_SECRET
- Mainnet: BINANCE_MAINNET_API_KEY, BINANCE_MAINNET_API_SECRET
"""

import os
from pathlib import Path
from typing import Literal, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator


DEFAULT_SYMBOL = "BTCUSDT"

PLACEHOLDER_MARKERS = ("your_", "_here", "placeholder")


class ConfigError(Exception):
    """
    Raised when config.yaml is missing, unreadable or invalid.

    Must be resolved before the application can start.
    """
    pass


class CredentialError(Exception):
    """
    Raised when exchange API credentials are missing or are placeholders.
    """
    pass


class ExecutionConfig(BaseModel):
    """Settings for sizing and order submission."""

    enabled: bool = True
    symbol: str = DEFAULT_SYMBOL
    leverage: int = Field(default=10, ge=1, le=125)
    position_size_percent: float = Field(default=0.1, gt=0, le=1)
    take_profit_percent: float = Field(default=0.02, gt=0, lt=1)
    stop_loss_percent: float = Field(default=0.01, gt=0, lt=1)
    max_position_size_usdt: float = Field(default=1000.0, gt=0)
    min_position_size_usdt: float = Field(default=10.0, ge=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay_ms: int = Field(default=1000, ge=0)

    @model_validator(mode="after")
    def validate_size_bounds(self) -> "ExecutionConfig":
        """Ensure the minimum position size does not exceed the maximum."""
        if self.min_position_size_usdt > self.max_position_size_usdt:
            raise ValueError(
                f"min_position_size_usdt ({self.min_position_size_usdt}) exceeds "
                f"max_position_size_usdt ({self.max_position_size_usdt})"
            )
        return self


class RiskConfig(BaseModel):
    """Settings for the risk manager."""

    enabled: bool = True
    symbol: str = DEFAULT_SYMBOL
    daily_loss_limit_usdt: float = Field(default=100.0, gt=0)
    max_drawdown_percent: float = Field(default=0.1, gt=0, lt=1)
    auto_close_on_breach: bool = False
    risk_check_interval_ms: int = Field(default=5000, ge=100)


class PositionConfig(BaseModel):
    """Settings for the position tracker."""

    enabled: bool = True
    symbol: str = DEFAULT_SYMBOL
    poll_interval_ms: int = Field(default=5000, ge=100)


class AppConfig(BaseModel):
    """
    Root configuration parsed from config.yaml.

    The top-level ``symbol`` is copied into every section that does not set
    its own.

    Examples:
        >>> config = AppConfig.model_validate({"use_testnet": True, "symbol": "ETHUSDT"})
        >>> config.risk.symbol
        'ETHUSDT'
    """

    use_testnet: bool
    symbol: str = DEFAULT_SYMBOL
    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_dir: str = "logs"
    event_handler_timeout: float = Field(default=30.0, gt=0)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    position: PositionConfig = Field(default_factory=PositionConfig)

    @model_validator(mode="before")
    @classmethod
    def propagate_symbol(cls, data):
        """Fill each section's symbol from the top-level symbol."""
        if not isinstance(data, dict):
            return data

        symbol = data.get("symbol") or DEFAULT_SYMBOL
        for section in ("execution", "risk", "position"):
            values = data.get(section)
            if values is None:
                values = {}
            if isinstance(values, dict):
                data[section] = {"symbol": symbol, **values}
        return data


def load_config(path: Union[str, Path] = "config.yaml") -> AppConfig:
    """
    Load and validate config.yaml.

    Args:
        path (str | Path): Path to the YAML file

    Returns:
        AppConfig: Validated configuration

    Raises:
        ConfigError: If the file is missing, empty, malformed or invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with config_path.open() as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse configuration file: {e}") from e
    except OSError as e:
        raise ConfigError(f"Error reading configuration file: {e}") from e

    if raw is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Configuration root must be a mapping, got {type(raw).__name__}"
        )

    if "use_testnet" not in raw:
        raise ConfigError(
            f"{config_path} must set use_testnet explicitly (true for the testnet, "
            "false for real funds)"
        )

    if not isinstance(raw["use_testnet"], bool):
        raise ConfigError(
            f"'use_testnet' must be boolean (true/false), "
            f"got {type(raw['use_testnet']).__name__}"
        )

    try:
        config = AppConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(f"Loaded configuration from {config_path}")
    return config


def load_credentials(
    use_testnet: bool,
    env_file: Optional[Union[str, Path]] = None
) -> Tuple[str, str]:
    """
    Read the Binance key pair for the selected network.

    Args:
        use_testnet (bool): Read the TESTNET variables instead of MAINNET
        env_file (str | Path, optional): .env file to load first. Existing
            environment variables are never overridden.

    Returns:
        Tuple[str, str]: API key and secret

    Raises:
        CredentialError: If a variable is missing or holds a placeholder
    """
    load_dotenv(env_file)

    network = "testnet" if use_testnet else "mainnet"
    names = (f"BINANCE_{network.upper()}_API_KEY", f"BINANCE_{network.upper()}_API_SECRET")
    values = {name: os.getenv(name, "") for name in names}

    unset = [name for name, value in values.items() if not value]
    if unset:
        raise CredentialError(
            f"No {network} credentials in environment or .env: set {', '.join(unset)}"
        )

    for name, value in values.items():
        if any(marker in value.lower() for marker in PLACEHOLDER_MARKERS):
            raise CredentialError(f"{name} still holds the placeholder from .env.example")

    api_key, api_secret = values.values()
    logger.debug(f"Loaded {network} credentials (key {mask_secret(api_key)})")
    return api_key, api_secret


def mask_secret(secret: str) -> str:
    """
    Mask a secret for logging, keeping the first and last 4 characters.

    Examples:
        >>> mask_secret("abcd1234efgh5678")
        'abcd****5678'
        >>> mask_secret("short")
        '****'
    """
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}****{secret[-4:]}"
