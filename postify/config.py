"""
Runtime configuration for Postify.

Settings come from three layers, later ones winning:

1. Dataclass defaults below (the values every test runs with).
2. ``config/settings.yaml``, one mapping per component section.
3. A short list of environment variables for deployment knobs.

Provides:
    - SupervisorSettings: reconcile cadence, cooldown windows, failure cap
    - SchedulerSettings: job polling and scheduling-window rules
    - GateSettings: resource lock lease and per-tenant rate limit
    - Settings / get_settings() / reset_settings()
    - validate_env(): checks the secrets ``run.py`` cannot start without
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from postify.exceptions import ConfigurationError

# .env is optional; variables already in the environment are not overwritten.
load_dotenv()

# Repository root (parent of postify/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_SETTINGS_PATH = PROJECT_ROOT / "config" / "settings.yaml"

logger = logging.getLogger(__name__)


# ===========================================================================
# COMPONENT SETTINGS
# ===========================================================================


@dataclass
class SupervisorSettings:
    """
    Settings for ``ConnectionSupervisor``.

    Cooldowns are in seconds. Conflict and unknown failures use short
    windows so the next ``acquire`` retries quickly; a revoked credential
    gets the long window because retrying it cannot succeed.
    """

    reconcile_interval_seconds: int = 30
    stagger_seconds: float = 1.0
    conflict_cooldown_seconds: int = 120
    unknown_cooldown_seconds: int = 60
    auth_revoked_cooldown_seconds: int = 3600
    max_runtime_failures: int = 5
    warm_load_limit: int = 500


@dataclass
class SchedulerSettings:
    """Settings for ``ScheduleEngine`` and ``JobRunner``."""

    check_interval_seconds: int = 30
    due_batch_size: int = 50
    min_lead_minutes: int = 1
    max_schedule_days: int = 180
    conflict_window_minutes: int = 3
    max_jobs_per_hour: int = 10
    default_hour: int = 9


@dataclass
class GateSettings:
    """Settings for ``ResourceLock`` and ``RateGate``."""

    lock_lease_seconds: int = 30
    rate_limit_max_actions: int = 10
    rate_limit_window_seconds: int = 60
    sweep_interval_seconds: int = 60


# env var -> (section attribute on Settings, field name, cast)
_SECTION_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "RATE_LIMIT_MAX_REQUESTS": ("gates", "rate_limit_max_actions", int),
    "RATE_LIMIT_WINDOW_SECONDS": ("gates", "rate_limit_window_seconds", int),
    "RECONCILE_INTERVAL_SECONDS": ("supervisor", "reconcile_interval_seconds", int),
    "JOB_CHECK_INTERVAL_SECONDS": ("scheduler", "check_interval_seconds", int),
}

# env var -> top-level Settings field
_SCALAR_OVERRIDES: Dict[str, str] = {
    "DEFAULT_TIMEZONE": "default_timezone",
    "LOG_LEVEL": "log_level",
    "LOG_DIR": "log_dir",
}


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """All Postify settings, one section per component."""

    # Zone used to read tenant time input when none is given
    default_timezone: str = "UTC"

    log_level: str = "INFO"
    log_dir: str = "logs"

    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    gates: GateSettings = field(default_factory=GateSettings)

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Build settings from *path* (default ``config/settings.yaml``).

        A missing file is not an error: defaults plus environment
        overrides are returned.

        Raises:
            ConfigurationError: The file is not valid YAML, a section is not
                a mapping, or an override variable has the wrong type.
        """
        data = _read_yaml(path or DEFAULT_SETTINGS_PATH)

        settings = cls(
            default_timezone=data.get("default_timezone", "UTC"),
            log_level=data.get("log_level", "INFO"),
            log_dir=data.get("log_dir", "logs"),
            supervisor=_build_section(SupervisorSettings, data.get("supervisor", {})),
            scheduler=_build_section(SchedulerSettings, data.get("scheduler", {})),
            gates=_build_section(GateSettings, data.get("gates", {})),
        )
        _apply_env_overrides(settings)
        return settings


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.debug("[CONFIG] %s not found, using defaults", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Failed to parse settings YAML at {path}: {exc}") from exc


def _build_section(section_cls: Any, raw: Dict[str, Any]) -> Any:
    """Instantiate a settings dataclass from a YAML mapping.

    Unknown keys are logged and ignored so an older settings file keeps
    working after a key is renamed.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Settings section for {section_cls.__name__} must be a mapping"
        )
    known = {f.name for f in fields(section_cls)}
    unknown = set(raw) - known
    if unknown:
        logger.warning(
            "[CONFIG] Ignoring unknown %s keys: %s", section_cls.__name__, sorted(unknown)
        )
    return section_cls(**{k: v for k, v in raw.items() if k in known})


def _apply_env_overrides(settings: Settings) -> None:
    for env_key, (section_name, attr_name, cast) in _SECTION_OVERRIDES.items():
        raw = os.environ.get(env_key)
        if raw is None:
            continue
        try:
            value = cast(raw)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(
                f"Invalid value for env var {env_key}='{raw}': {exc}"
            ) from exc
        setattr(getattr(settings, section_name), attr_name, value)

    for env_key, attr_name in _SCALAR_OVERRIDES.items():
        raw = os.environ.get(env_key)
        if raw is not None:
            setattr(settings, attr_name, raw)


# ===========================================================================
# SINGLETON
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """Forget the cached settings so the next ``get_settings()`` reloads."""
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# STARTUP CHECKS
# ===========================================================================

# Secrets the long-running process cannot start without
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
    "ENCRYPTION_KEY",
]

OPTIONAL_ENV_VARS: List[str] = [*_SCALAR_OVERRIDES, *_SECTION_OVERRIDES]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Report which Postify environment variables are set.

    Args:
        strict: Raise instead of returning when a required variable is
            missing or empty.

    Returns:
        Variable name -> whether it is set, for required and optional vars.

    Raises:
        ConfigurationError: ``strict`` and at least one required var missing.
    """
    status = {var: bool(os.environ.get(var)) for var in REQUIRED_ENV_VARS + OPTIONAL_ENV_VARS}
    missing = [var for var in REQUIRED_ENV_VARS if not status[var]]

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            "See .env.example for the expected values."
        )
    return status


__all__ = [
    "PROJECT_ROOT",
    "DEFAULT_SETTINGS_PATH",
    "SupervisorSettings",
    "SchedulerSettings",
    "GateSettings",
    "Settings",
    "get_settings",
    "reset_settings",
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
]
