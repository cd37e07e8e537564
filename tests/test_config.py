"""Tests for intentweave.config — presets, TOML loading, env vars, CLI overrides."""

from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from intentweave.config import (
    IntentweaveConfig,
    SchedulerSectionConfig,
    load_config,
    merge_cli_overrides,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Remove env vars that _apply_env_vars reads so tests see TOML values."""
    for key in (
        "INTENTWEAVE_STATE_DIR",
        "INTENTWEAVE_MODEL",
        "INTENTWEAVE_PRESET",
        "INTENTWEAVE_MAX_CONCURRENT",
    ):
        monkeypatch.delenv(key, raising=False)


class TestDefaults:
    def test_sections(self):
        cfg = IntentweaveConfig()
        assert cfg.store.dedup_window_seconds == 30.0
        assert cfg.matching.create_threshold == 0.55
        assert cfg.matching.auto_assign_threshold == 0.70
        assert cfg.detector.merge_confidence_threshold == 0.85
        assert cfg.nudges.daily_cap == 3
        assert cfg.llm.model is None

    def test_match_weights_sum_to_one(self):
        assert sum(IntentweaveConfig().matching.weights.values()) == pytest.approx(1.0)

    def test_state_dir_expands_user(self):
        cfg = IntentweaveConfig.model_validate({"state": {"directory": "~/iw"}})
        assert cfg.state_dir == Path.home() / "iw"


class TestPresets:
    @pytest.mark.parametrize(
        ("preset", "concurrent", "verify", "scans"),
        [
            ("light", 1, False, False),
            ("balanced", 2, True, True),
            ("comprehensive", 3, True, True),
        ],
    )
    def test_preset_values(self, preset, concurrent, verify, scans):
        cfg = SchedulerSectionConfig(preset=preset)
        assert cfg.max_concurrent == concurrent
        assert cfg.enable_verification is verify
        assert cfg.enable_merge_scans is scans

    def test_explicit_values_beat_preset(self):
        cfg = SchedulerSectionConfig(preset="light", max_concurrent=4)
        assert cfg.max_concurrent == 4
        assert cfg.enable_verification is False

    def test_unknown_preset(self):
        with pytest.raises(ValidationError, match="Unknown preset"):
            SchedulerSectionConfig(preset="turbo")

    @pytest.mark.parametrize(
        ("retry", "delay"),
        [(0, 1.0), (1, 1.0), (2, 5.0), (3, 15.0), (9, 15.0)],
    )
    def test_backoff_schedule(self, retry, delay):
        assert SchedulerSectionConfig().backoff_for(retry) == delay

    def test_empty_backoff(self):
        assert SchedulerSectionConfig(backoff_seconds=[]).backoff_for(2) == 0.0


class TestLoadConfig:
    def test_load_from_explicit_path(self, tmp_path):
        toml_path = tmp_path / ".intentweave.toml"
        toml_path.write_text(
            '[scheduler]\npreset = "light"\nmax_retries = 5\n\n[nudges]\ndaily_cap = 1\n'
        )
        cfg = load_config(toml_path)
        assert cfg.scheduler.max_concurrent == 1
        assert cfg.scheduler.max_retries == 5
        assert cfg.nudges.daily_cap == 1

    def test_load_missing_path_returns_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "nonexistent.toml")
        assert cfg.scheduler.preset == "balanced"

    def test_load_searches_cwd(self, tmp_path):
        (tmp_path / ".intentweave.toml").write_text('[state]\ndirectory = "/custom/state"\n')
        with patch("intentweave.config.CONFIG_SEARCH_PATHS", [tmp_path]):
            cfg = load_config()
        assert cfg.state.directory == "/custom/state"

    def test_invalid_toml_returns_defaults(self, tmp_path):
        toml_path = tmp_path / ".intentweave.toml"
        toml_path.write_text("this is not valid toml {{{")
        cfg = load_config(toml_path)
        assert cfg.matching.create_threshold == 0.55


class TestEnvVarOverrides:
    def test_env_beats_toml(self, tmp_path, monkeypatch):
        toml_path = tmp_path / ".intentweave.toml"
        toml_path.write_text('[llm]\nmodel = "from-toml"\n')
        monkeypatch.setenv("INTENTWEAVE_MODEL", "haiku")
        cfg = load_config(toml_path)
        assert cfg.llm.model == "haiku"

    def test_preset_and_state_dir(self, monkeypatch):
        monkeypatch.setenv("INTENTWEAVE_PRESET", "comprehensive")
        monkeypatch.setenv("INTENTWEAVE_STATE_DIR", "/tmp/iw-state")
        with patch("intentweave.config.CONFIG_SEARCH_PATHS", []):
            cfg = load_config()
        assert cfg.scheduler.max_concurrent == 3
        assert cfg.state.directory == "/tmp/iw-state"

    def test_max_concurrent(self, monkeypatch):
        monkeypatch.setenv("INTENTWEAVE_MAX_CONCURRENT", "5")
        with patch("intentweave.config.CONFIG_SEARCH_PATHS", []):
            cfg = load_config()
        assert cfg.scheduler.max_concurrent == 5

    def test_non_integer_concurrency_ignored(self, monkeypatch):
        monkeypatch.setenv("INTENTWEAVE_MAX_CONCURRENT", "lots")
        with patch("intentweave.config.CONFIG_SEARCH_PATHS", []):
            cfg = load_config()
        assert cfg.scheduler.max_concurrent == 2


class TestMergeCliOverrides:
    def test_overrides(self, tmp_path):
        merged = merge_cli_overrides(
            IntentweaveConfig(), state_dir=tmp_path, model="sonnet", max_concurrent=4, daily_cap=0
        )
        assert merged.state_dir == tmp_path
        assert merged.llm.model == "sonnet"
        assert merged.scheduler.max_concurrent == 4
        assert merged.nudges.daily_cap == 0

    def test_none_values_ignored(self):
        merged = merge_cli_overrides(IntentweaveConfig(), model=None, unknown_flag="x")
        assert merged.llm.model is None
        assert merged.scheduler.max_concurrent == 2
