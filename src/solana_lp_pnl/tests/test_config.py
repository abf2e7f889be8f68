from __future__ import annotations

from pathlib import Path

import pytest

from solana_lp_pnl.config import settings


def test_app_config_loads_profiles_and_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "app.toml"
    config_path.write_text(
        """
[default.pnl]
snapshot_interval_seconds = 1800
gap_fill_mode = "nearest"

[default.historical_scan]
lookback_days = 30
batch_size = 4

[audit.historical_scan]
lookback_days = 90
batch_size = 2
"""
    )
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))
    monkeypatch.setenv("PNL_PROFILE", "audit")
    monkeypatch.setenv("HISTORICAL_SCAN__BATCH_SIZE", "3")

    settings.get_app_config.cache_clear()
    try:
        cfg = settings.get_app_config()
        assert cfg.pnl.snapshot_interval_seconds == 1800
        assert cfg.pnl.gap_fill_mode == settings.GapFillMode.NEAREST
        assert cfg.historical_scan.lookback_days == 90
        assert cfg.historical_scan.batch_size == 3
    finally:
        settings.get_app_config.cache_clear()


def test_app_config_defaults_without_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_CONFIG_FILE", str(tmp_path / "missing.toml"))
    monkeypatch.delenv("PNL_PROFILE", raising=False)

    settings.get_app_config.cache_clear()
    try:
        cfg = settings.get_app_config()
        assert cfg.pnl.max_snapshots_per_position == 2160
        assert cfg.pnl.gap_fill_mode == settings.GapFillMode.MARK_GAP
        assert cfg.historical_scan.program_id == "cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG"
        assert cfg.historical_scan.sol_fallback_price_usd is None
        assert "ClaimPositionFee" in cfg.historical_scan.removal_log_patterns
        assert cfg.data_sources.cache_ttl_seconds == 600
        assert cfg.backfill.entry_discount_pct == 5.0
    finally:
        settings.get_app_config.cache_clear()


def test_flat_config_file_is_used_as_is(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "flat.toml"
    config_path.write_text('[dashboard]\nport = 9100\nread_only_token = "secret"\n')
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))

    settings.get_app_config.cache_clear()
    try:
        cfg = settings.get_app_config()
        assert cfg.dashboard.port == 9100
        assert cfg.dashboard.read_only_token == "secret"
    finally:
        settings.get_app_config.cache_clear()
