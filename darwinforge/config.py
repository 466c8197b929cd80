"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.

Sources, lowest precedence first:
1. Default values
2. Project config file (.darwin/config.json) with sections
   "darwin", "automation" and "selfHealing"
3. Environment variables (DARWIN_*)
"""

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from darwinforge.automation import AutomationConfig, AutomationLevel
from darwinforge.db.connection import DATA_DIR
from darwinforge.errors import ConfigValidationError
from darwinforge.self_healing import SelfHealingConfig


CONFIG_FILENAME = "config.json"

ENV_AUTOMATION_LEVEL = "DARWIN_AUTOMATION_LEVEL"
ENV_DOOM_LOOP_THRESHOLD = "DARWIN_DOOM_LOOP_THRESHOLD"
ENV_MAX_DAILY_RUNS = "DARWIN_MAX_DAILY_RUNS"
ENV_MAX_DAILY_ROLLBACKS = "DARWIN_MAX_DAILY_ROLLBACKS"

__all__ = [
    "ConfigValidationError",
    "DarwinConfig",
    "DarwinSettings",
    "config_path",
]


@dataclass(frozen=True)
class DarwinConfig:
    """Top-level switches for the evolution pipeline."""
    enabled: bool = True
    trace_capture: bool = True
    doom_loop_threshold: int = 3
    council_enabled: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "DarwinConfig":
        if not isinstance(data, dict):
            raise ConfigValidationError("darwin config must be an object")

        values = {}
        for key, attr in (("enabled", "enabled"), ("traceCapture", "trace_capture"),
                          ("councilEnabled", "council_enabled")):
            if key in data:
                if not isinstance(data[key], bool):
                    raise ConfigValidationError(f"darwin.{key} must be a boolean")
                values[attr] = data[key]

        if "doomLoopThreshold" in data:
            values["doom_loop_threshold"] = _parse_threshold(data["doomLoopThreshold"], "darwin.doomLoopThreshold")

        return cls(**values)


def _parse_threshold(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 2 <= value <= 10:
        raise ConfigValidationError(f"{name} must be an integer between 2 and 10, got {value!r}")
    return value


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigValidationError(f"{name} must be an integer, got {raw!r}") from None


def config_path(project_dir: Path) -> Path:
    return Path(project_dir) / DATA_DIR / CONFIG_FILENAME


@dataclass(frozen=True)
class DarwinSettings:
    """All configuration for one project."""
    darwin: DarwinConfig = field(default_factory=DarwinConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    self_healing: SelfHealingConfig = field(default_factory=SelfHealingConfig)

    @classmethod
    def load(cls, project_dir: Path) -> "DarwinSettings":
        """
        Load settings for a project.

        Raises:
            ConfigValidationError: On unreadable JSON or invalid values
        """
        settings = cls()

        path = config_path(project_dir)
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ConfigValidationError(f"Invalid JSON in {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigValidationError(f"{path} must contain a JSON object")

            settings = cls(
                darwin=DarwinConfig.from_dict(data.get("darwin", {})),
                automation=AutomationConfig.from_dict(data.get("automation", {})),
                self_healing=SelfHealingConfig.from_dict(data.get("selfHealing", {})),
            )

        return settings.with_env_overrides()

    def with_env_overrides(self) -> "DarwinSettings":
        """Apply DARWIN_* environment variables on top of these settings."""
        darwin, automation, self_healing = self.darwin, self.automation, self.self_healing

        level = _env_int(ENV_AUTOMATION_LEVEL)
        if level is not None:
            try:
                automation = replace(automation, level=AutomationLevel(level))
            except ValueError:
                raise ConfigValidationError(f"{ENV_AUTOMATION_LEVEL} must be 0-3, got {level}") from None

        threshold = _env_int(ENV_DOOM_LOOP_THRESHOLD)
        if threshold is not None:
            darwin = replace(darwin, doom_loop_threshold=_parse_threshold(threshold, ENV_DOOM_LOOP_THRESHOLD))

        max_runs = _env_int(ENV_MAX_DAILY_RUNS)
        if max_runs is not None:
            if max_runs < 0:
                raise ConfigValidationError(f"{ENV_MAX_DAILY_RUNS} must be >= 0")
            automation = replace(automation, safety=replace(automation.safety, max_daily_runs=max_runs))

        max_rollbacks = _env_int(ENV_MAX_DAILY_ROLLBACKS)
        if max_rollbacks is not None:
            if max_rollbacks < 0:
                raise ConfigValidationError(f"{ENV_MAX_DAILY_ROLLBACKS} must be >= 0")
            self_healing = replace(self_healing, max_daily_rollbacks=max_rollbacks)

        return DarwinSettings(darwin=darwin, automation=automation, self_healing=self_healing)
