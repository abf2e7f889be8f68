"""Configuration management for the position P&L engine."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
PROFILE_ENV_VAR = "PNL_PROFILE"
DEFAULT_PROFILE = "default"


class GapFillMode(str, Enum):
    """How past chart buckets are valued when snapshot coverage is missing."""

    NEAREST = "nearest"
    INTERPOLATE = "interpolate"
    MARK_GAP = "mark_gap"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = data.get(DEFAULT_PROFILE)
    if not isinstance(base_section, dict):
        # Flat files without profile tables are used as-is.
        return data
    requested = (os.getenv(PROFILE_ENV_VAR) or DEFAULT_PROFILE).lower()
    override = data.get(requested)
    if requested != DEFAULT_PROFILE and isinstance(override, dict):
        return _deep_merge(cast(Dict[str, Any], base_section), override)
    return cast(Dict[str, Any], base_section)


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    return _select_profile(payload), path


class RPCConfig(BaseModel):
    """Solana RPC endpoint used for transaction-history reads."""

    primary_url: AnyHttpUrl = Field(default="https://api.mainnet-beta.solana.com")
    request_timeout: float = Field(default=12.0, ge=1.0, le=60.0)
    commitment: str = Field(default="confirmed")
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_wait_seconds: float = Field(default=1.0, ge=0.0, le=30.0)

    @field_validator("request_timeout", mode="before")
    @classmethod
    def _parse_request_timeout(cls, value) -> float:
        if isinstance(value, str):
            return float(value)
        return value


class DataSourceConfig(BaseModel):
    """Price service settings."""

    price_oracle_url: AnyHttpUrl = Field(default="https://lite-api.jup.ag/price/v3")
    http_timeout: float = Field(default=10.0, ge=1.0, le=45.0)
    cache_ttl_seconds: int = Field(default=600, ge=0)
    cache_maxsize: int = Field(default=1_024, ge=1)
    batch_max_ids: int = Field(default=50, ge=1, le=100)
    fallback_batch_size: int = Field(default=5, ge=1, le=50)
    fallback_batch_delay_seconds: float = Field(default=0.1, ge=0.0, le=10.0)


class PnLConfig(BaseModel):
    """Snapshot cadence and chart construction parameters."""

    snapshot_interval_seconds: int = Field(default=3_600, ge=1)
    max_snapshots_per_position: int = Field(default=2_160, ge=1)
    min_position_value_usd_tracking: float = Field(default=0.01, ge=0.0)
    live_bucket_window_seconds: int = Field(default=60, ge=0)
    gap_fill_mode: GapFillMode = Field(default=GapFillMode.MARK_GAP)
    default_timeframe: str = Field(default="1D")


class BackfillConfig(BaseModel):
    """Heuristics for synthesizing entries of positions discovered without one."""

    enabled: bool = True
    assumed_age_days: float = Field(default=7.0, ge=0.0)
    entry_discount_pct: float = Field(default=5.0, ge=0.0, lt=100.0)
    default_token_decimals: int = Field(default=9, ge=0, le=18)
    inter_position_delay_seconds: float = Field(default=0.2, ge=0.0)


class HistoricalScanConfig(BaseModel):
    """Wallet history scan used to reconstruct positions closed before tracking began."""

    enabled: bool = True
    program_id: str = Field(default="cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG")
    lookback_days: int = Field(default=60, ge=1)
    signature_limit: int = Field(default=100, ge=1, le=1_000)
    batch_size: int = Field(default=5, ge=1, le=50)
    batch_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_consecutive_errors: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_max_seconds: float = Field(default=10.0, ge=0.0)
    start_delay_seconds: float = Field(default=2.0, ge=0.0)
    holding_period_days: float = Field(default=7.0, ge=0.0)
    entry_value_discount_pct: float = Field(default=10.0, ge=0.0, lt=100.0)
    entry_amount_discount_pct: float = Field(default=5.0, ge=0.0, lt=100.0)
    assumed_fee_pct: float = Field(default=5.0, ge=0.0, le=100.0)
    native_dust_lamports: int = Field(default=1_000_000, ge=0)
    sol_fallback_price_usd: Optional[float] = Field(default=None, ge=0.0)
    removal_log_patterns: List[str] = Field(
        default_factory=lambda: [
            "RemoveLiquidity",
            "Withdraw",
            "withdraw",
            "remove",
            "Remove",
            "ClaimPositionFee",
        ]
    )


class WalletConfig(BaseModel):
    """Wallet whose positions are tracked, plus the exported live position feed."""

    public_key: Optional[str] = None
    positions_file: Path = Field(default=Path("./positions.json"))


class StorageConfig(BaseModel):
    """Ledger persistence configuration."""

    database_path: Path = Field(default=Path("./ledger.sqlite3"))


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO")
    enable_prometheus: bool = True


class DashboardConfig(BaseModel):
    """Read-only HTTP API configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    read_only_token: Optional[str] = None


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    rpc: RPCConfig = Field(default_factory=RPCConfig)
    data_sources: DataSourceConfig = Field(default_factory=DataSourceConfig)
    pnl: PnLConfig = Field(default_factory=PnLConfig)
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    historical_scan: HistoricalScanConfig = Field(default_factory=HistoricalScanConfig)
    wallet: WalletConfig = Field(default_factory=WalletConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "BackfillConfig",
    "DashboardConfig",
    "DataSourceConfig",
    "GapFillMode",
    "HistoricalScanConfig",
    "MonitoringConfig",
    "PnLConfig",
    "RPCConfig",
    "StorageConfig",
    "WalletConfig",
    "get_app_config",
]
