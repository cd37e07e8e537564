"""Unified configuration loaded from .intentweave.toml, env vars, and CLI flags.

Loading order: defaults → TOML file → env vars → CLI flags.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".intentweave.toml"
CONFIG_SEARCH_PATHS = [
    Path("."),
    Path.home() / ".config" / "intentweave",
]

DEFAULT_CONTRADICTION_GROUPS: dict[str, list[str]] = {
    "technology": ["react", "python", "vue", "angular", "java", "c++", "ruby"],
    "sports": ["tennis", "basketball", "soccer", "swimming", "football"],
    "activity": ["shopping", "learning", "research"],
}

DEFAULT_MATCH_WEIGHTS: dict[str, float] = {
    "semantic": 0.30,
    "keyword": 0.20,
    "entity": 0.15,
    "temporal": 0.15,
    "domain": 0.10,
    "behavioral": 0.10,
}

# Processing presets: values applied to scheduler fields left unset.
PRESETS: dict[str, dict[str, Any]] = {
    "light": {"max_concurrent": 1, "enable_verification": False, "enable_merge_scans": False},
    "balanced": {"max_concurrent": 2, "enable_verification": True, "enable_merge_scans": True},
    "comprehensive": {"max_concurrent": 3, "enable_verification": True, "enable_merge_scans": True},
}


class StoreSectionConfig(BaseModel):
    """[store] section."""

    dedup_window_seconds: float = 30.0
    active_page_threshold: int = 5
    dormant_after_hours: float = 24.0
    expire_after_days: float = 7.0
    completion_threshold: float = 0.8
    merge_chain_limit: int = 20


class MatchingSectionConfig(BaseModel):
    """[matching] section."""

    create_threshold: float = 0.55
    auto_assign_threshold: float = 0.70
    new_intent_confidence: float = 0.6
    recent_days: int = 30
    max_candidates: int = 20
    verify_reassign_confidence: float = 0.7
    weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_MATCH_WEIGHTS))


class DetectorSectionConfig(BaseModel):
    """[detector] section."""

    max_intents: int = 10
    top_keywords: int = 15
    concept_floor: float = 0.05
    concept_without_domain: float = 0.30
    merge_confidence_threshold: float = 0.85
    suggestion_floor: float = 0.6
    session_window_seconds: float = 300.0
    scan_min_interval_seconds: float = 10.0
    min_active_intents: int = 2
    contradiction_groups: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_CONTRADICTION_GROUPS.items()}
    )


class SchedulerSectionConfig(BaseModel):
    """[scheduler] section.

    ``max_concurrent``, ``enable_verification`` and ``enable_merge_scans``
    default to the values of the selected ``preset``.
    """

    preset: str = "balanced"
    max_concurrent: int | None = None
    enable_verification: bool | None = None
    enable_merge_scans: bool | None = None
    max_retries: int = 3
    backoff_seconds: list[float] = Field(default_factory=lambda: [1.0, 5.0, 15.0])
    task_timeout_seconds: float = 60.0
    tier_limits: dict[str, int] = Field(
        default_factory=lambda: {"critical": 1, "important": 2, "background": 1}
    )
    refresh_priority_offset: int = 20
    refresh_every_pages: int = 3
    summarize_min_chars: int = 5000
    retention_days: float = 7.0

    @model_validator(mode="after")
    def _apply_preset(self) -> SchedulerSectionConfig:
        if self.preset not in PRESETS:
            raise ValueError(f"Unknown preset {self.preset!r}; expected one of {sorted(PRESETS)}")
        for field_name, value in PRESETS[self.preset].items():
            if getattr(self, field_name) is None:
                setattr(self, field_name, value)
        return self

    def backoff_for(self, retry_count: int) -> float:
        """Delay before retry number *retry_count* (1-based) becomes eligible."""
        if not self.backoff_seconds:
            return 0.0
        index = min(max(retry_count, 1), len(self.backoff_seconds)) - 1
        return self.backoff_seconds[index]


class NudgesSectionConfig(BaseModel):
    """[nudges] section."""

    daily_cap: int = 3
    reminder_after_days: float = 7.0
    reminder_high_after_days: float = 14.0
    knowledge_gap_min_pages: int = 3
    milestone_min_pages: int = 5
    milestone_confidence_floor: float = 0.6
    milestone_high_confidence: float = 0.8
    enable_reminders: bool = True
    enable_merge_suggestions: bool = True
    enable_knowledge_gaps: bool = True
    enable_milestones: bool = True


class LLMSectionConfig(BaseModel):
    """[llm] section."""

    model: str | None = None
    timeout: int = 60
    # Overrides every prompt's own temperature when set.
    temperature: float | None = None
    # Used for prompts that set no top_k of their own.
    top_k: int | None = None


class StateSectionConfig(BaseModel):
    """[state] section."""

    directory: str = ".intentweave"


class IntentweaveConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreSectionConfig = Field(default_factory=StoreSectionConfig)
    matching: MatchingSectionConfig = Field(default_factory=MatchingSectionConfig)
    detector: DetectorSectionConfig = Field(default_factory=DetectorSectionConfig)
    scheduler: SchedulerSectionConfig = Field(default_factory=SchedulerSectionConfig)
    nudges: NudgesSectionConfig = Field(default_factory=NudgesSectionConfig)
    llm: LLMSectionConfig = Field(default_factory=LLMSectionConfig)
    state: StateSectionConfig = Field(default_factory=StateSectionConfig)

    @property
    def state_dir(self) -> Path:
        return Path(self.state.directory).expanduser()


def load_config(path: str | Path | None = None) -> IntentweaveConfig:
    """Load configuration from a TOML file.

    Search order:
    1. Explicit path (if provided)
    2. .intentweave.toml in CWD
    3. ~/.config/intentweave/config.toml

    Then overlay environment variables.
    """
    data: dict[str, Any] = {}

    if path is not None:
        toml_path = Path(path)
        if toml_path.exists():
            data = _load_toml(toml_path)
        else:
            logger.warning("Config file not found: %s", toml_path)
    else:
        for search_dir in CONFIG_SEARCH_PATHS:
            candidate = search_dir / CONFIG_FILENAME
            if candidate.exists():
                data = _load_toml(candidate)
                logger.info("Loaded config from %s", candidate)
                break
        global_config = Path.home() / ".config" / "intentweave" / "config.toml"
        if not data and global_config.exists():
            data = _load_toml(global_config)
            logger.info("Loaded config from %s", global_config)

    data = _apply_env_vars(data)
    return IntentweaveConfig.model_validate(data)


def merge_cli_overrides(config: IntentweaveConfig, **cli_kwargs: object) -> IntentweaveConfig:
    """Overlay explicitly-set CLI flags onto the config.

    Only overrides values where the CLI flag was provided (not None).
    """
    data = config.model_dump()

    mapping: dict[str, tuple[str, str]] = {
        "state_dir": ("state", "directory"),
        "model": ("llm", "model"),
        "max_concurrent": ("scheduler", "max_concurrent"),
        "daily_cap": ("nudges", "daily_cap"),
    }

    for key, value in cli_kwargs.items():
        if value is None or key not in mapping:
            continue
        section, field = mapping[key]
        data[section][field] = str(value) if key == "state_dir" else value

    return IntentweaveConfig.model_validate(data)


def _load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file and return the data dict."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        logger.warning("Failed to parse %s: %s", path, exc)
        return {}


def _apply_env_vars(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides to raw config data."""
    env_mapping: dict[str, tuple[str, str]] = {
        "INTENTWEAVE_STATE_DIR": ("state", "directory"),
        "INTENTWEAVE_MODEL": ("llm", "model"),
        "INTENTWEAVE_PRESET": ("scheduler", "preset"),
    }

    for env_var, (section, field) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None:
            data.setdefault(section, {})[field] = value

    concurrency = os.environ.get("INTENTWEAVE_MAX_CONCURRENT")
    if concurrency is not None:
        try:
            data.setdefault("scheduler", {})["max_concurrent"] = int(concurrency)
        except ValueError:
            logger.warning("Ignoring non-integer INTENTWEAVE_MAX_CONCURRENT=%r", concurrency)

    return data
