"""
config.py — Speaking Drill · Runtime Configuration
==================================================
Pydantic models for every tunable parameter of the drill.
Serialises to / deserialises from JSON.  Used by:
  • server.py   — GET/PUT /config endpoints, passes config to each drill connection
  • session.py  — timer limit, pacing delays and recognition language per turn
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

log = logging.getLogger("speaking_drill.config")


# ---------------------------------------------------------------------------
# Per-concern config sections
# ---------------------------------------------------------------------------

class TimerConfig(BaseModel):
    """Response countdown (one per turn)."""
    model_config = ConfigDict(extra="forbid")

    limit_units: int = Field(default=5, ge=1, le=120, description="Time units the learner has to answer")
    tick_seconds: float = Field(default=1.0, gt=0.0, le=10.0, description="Wall-clock length of one time unit")

    @property
    def window_seconds(self) -> float:
        return self.limit_units * self.tick_seconds

    def to_units(self, seconds: float) -> float:
        """Express a wall-clock duration in countdown units."""
        return seconds / self.tick_seconds


class PacingConfig(BaseModel):
    """Fixed display pauses between turns."""
    model_config = ConfigDict(extra="forbid")

    advance_delay_sec: float = Field(default=1.4, ge=0.0, le=30.0, description="Pause after a correct answer")
    retry_delay_sec: float = Field(default=2.0, ge=0.0, le=30.0, description="Pause before replaying a prompt")


class SpeechConfig(BaseModel):
    """Parameters forwarded to the client's speech collaborators."""
    model_config = ConfigDict(extra="forbid")

    language: str = Field(default="en-US", description="BCP-47 language for recognition and synthesis")
    rate: float = Field(default=1.05, ge=0.1, le=10.0, description="Synthesis speaking rate")
    pitch: float = Field(default=1.1, ge=0.0, le=2.0, description="Synthesis pitch")
    interim_results: bool = Field(default=True, description="Stream partial transcripts")
    continuous: bool = Field(default=False, description="Keep recognising after the first final result")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class DrillConfig(BaseModel):
    """Complete runtime configuration for the drill."""
    model_config = ConfigDict(extra="forbid")

    timer: TimerConfig = Field(default_factory=TimerConfig)
    pacing: PacingConfig = Field(default_factory=PacingConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    lessons_path: Optional[str] = Field(default=None, description="JSON lesson file (built-in lessons when unset)")

    @field_validator("lessons_path")
    @classmethod
    def _check_lessons_path(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        # A blank path means "use the built-in lessons".
        if value is not None:
            value = value.strip() or None
        if value and info.context and info.context.get("require_lessons_file") and not Path(value).is_file():
            raise ValueError(f"lesson file not found: {value}")
        return value

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "DrillConfig":
        """Load config from a JSON file.  Missing or unreadable files give the defaults.

        A saved `lessons_path` is not checked here; the server falls back to the
        built-in lessons when the file has gone away.
        """
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            config = cls.model_validate_json(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("event=config_load_error path=%s error=%s fallback=defaults", p, exc)
            return cls()
        log.info("event=config_loaded path=%s limit_units=%d lessons_path=%s", p, config.timer.limit_units, config.lessons_path)
        return config

    def save(self, path: str | Path) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "DrillConfig":
        """Return a new config with `patch` merged over `self`.

        Sections merge key by key, so {"timer": {"limit_units": 8}} keeps the
        tick length and every other section.  Unknown keys are rejected, and a
        patched `lessons_path` must name an existing file.
        """
        merged = _deep_merge(self.model_dump(), patch)
        return DrillConfig.model_validate(merged, context={"require_lessons_file": "lessons_path" in patch})


def _deep_merge(base: dict, patch: dict) -> dict:
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged
