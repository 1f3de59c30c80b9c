"""Configuration management for remedy."""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from remedy.error_handling import ValidationError
from remedy.utils.validation import (
    validate_api_key,
    validate_fraction,
    validate_positive_int,
    validate_url,
)

logger = logging.getLogger(__name__)

# Iterations never run against more rows than this, whatever is configured
MAX_SAMPLE_SIZE = 1000


@dataclass
class EngineSettings:
    """Tunables of the plan engine."""

    accuracy_threshold: float = 0.95
    max_iterations: int = 5
    sample_size: int = MAX_SAMPLE_SIZE
    approval_window_hours: float = 24.0
    partial_failure_tolerance: float = 0.01
    generator_timeout: float = 90.0
    executor_timeout: float = 300.0
    operation_lease_seconds: float = 900.0
    sweep_interval_seconds: float = 60.0
    notification_webhook_url: str | None = None

    def __post_init__(self) -> None:
        self.accuracy_threshold = validate_fraction(
            self.accuracy_threshold, "accuracy_threshold"
        )
        self.partial_failure_tolerance = validate_fraction(
            self.partial_failure_tolerance, "partial_failure_tolerance"
        )
        validate_positive_int(self.max_iterations, "max_iterations")
        validate_positive_int(self.sample_size, "sample_size")
        self.sample_size = min(self.sample_size, MAX_SAMPLE_SIZE)

        for name in (
            "approval_window_hours",
            "generator_timeout",
            "executor_timeout",
            "operation_lease_seconds",
            "sweep_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive")

        if self.notification_webhook_url:
            self.notification_webhook_url = validate_url(self.notification_webhook_url)


# settings-file key, environment variable and type for each engine setting
_ENGINE_SETTING_SOURCES: dict[str, tuple[str, str, type]] = {
    "accuracy_threshold": ("accuracyThreshold", "REMEDY_ACCURACY_THRESHOLD", float),
    "max_iterations": ("maxIterations", "REMEDY_MAX_ITERATIONS", int),
    "sample_size": ("sampleSize", "REMEDY_SAMPLE_SIZE", int),
    "approval_window_hours": (
        "approvalWindowHours",
        "REMEDY_APPROVAL_WINDOW_HOURS",
        float,
    ),
    "partial_failure_tolerance": (
        "partialFailureTolerance",
        "REMEDY_PARTIAL_FAILURE_TOLERANCE",
        float,
    ),
    "generator_timeout": ("generatorTimeout", "REMEDY_GENERATOR_TIMEOUT", float),
    "executor_timeout": ("executorTimeout", "REMEDY_EXECUTOR_TIMEOUT", float),
    "operation_lease_seconds": (
        "operationLeaseSeconds",
        "REMEDY_OPERATION_LEASE_SECONDS",
        float,
    ),
    "sweep_interval_seconds": (
        "sweepIntervalSeconds",
        "REMEDY_SWEEP_INTERVAL_SECONDS",
        float,
    ),
    "notification_webhook_url": (
        "notificationWebhookUrl",
        "REMEDY_NOTIFICATION_WEBHOOK_URL",
        str,
    ),
}


class SettingsManager:
    """Manages user settings and configuration.

    Values come from environment variables first, then
    ``<settings_dir>/user-settings.json``, then defaults.
    """

    def __init__(self, settings_dir: str | Path | None = None):
        self.settings_dir = Path(settings_dir or Path.home() / ".remedy")
        self.settings_file = self.settings_dir / "user-settings.json"
        self.settings_dir.mkdir(parents=True, exist_ok=True)

    def load_user_settings(self) -> dict[str, Any]:
        """Load user settings from file."""
        if not self.settings_file.exists():
            return {}

        try:
            with open(self.settings_file, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable settings file {self.settings_file}: {e}")
            return {}

    def save_user_settings(self, settings: dict[str, Any]) -> None:
        """Save user settings to file."""
        try:
            with open(self.settings_file, "w", encoding="utf-8") as f:
                json.dump(settings, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save settings: {e}")

    def update_user_setting(self, key: str, value: Any) -> None:
        """Update a single user setting with validation.

        Raises:
            ValidationError: If the value is invalid for the given key
        """
        if key == "apiKey":
            value = validate_api_key(value)
        elif key in ("baseURL", "notificationWebhookUrl"):
            value = validate_url(value)
        elif key == "model":
            if not value or not isinstance(value, str) or not value.strip():
                raise ValidationError("Model name must be a non-empty string")
            value = value.strip()
        elif key in ("systemDatabasePath", "userDatabasePath"):
            if not value or not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{key} must be a non-empty string")
            value = value.strip()
        elif key in ("accuracyThreshold", "partialFailureTolerance"):
            value = validate_fraction(value, key)
        elif key in ("maxIterations", "sampleSize"):
            value = validate_positive_int(value, key)

        settings = self.load_user_settings()
        settings[key] = value
        self.save_user_settings(settings)

    def get_api_key(self) -> str | None:
        """Get API key from environment or settings."""
        api_key = os.getenv("REMEDY_API_KEY")
        if api_key:
            return api_key

        settings = self.load_user_settings()
        return settings.get("apiKey")

    def get_base_url(self) -> str:
        """Get base URL from environment or settings.

        Returns:
            Base URL, defaults to "https://api.openai.com/v1" if not configured
        """
        base_url = os.getenv("REMEDY_BASE_URL")
        if base_url and base_url.strip():
            return base_url.strip()

        settings = self.load_user_settings()
        base_url = settings.get("baseURL")
        if base_url and base_url.strip():
            return base_url.strip()

        return "https://api.openai.com/v1"

    def get_current_model(self) -> str:
        """Get current model from environment or settings (default "gpt-4o")."""
        model = os.getenv("REMEDY_MODEL")
        if model:
            return model

        settings = self.load_user_settings()
        return settings.get("model") or "gpt-4o"

    def get_system_database_path(self) -> str:
        """Get the plan ledger database path from environment or settings."""
        db_path = os.getenv("REMEDY_SYSTEM_DATABASE_PATH")
        if db_path:
            return db_path

        settings = self.load_user_settings()
        db_path = settings.get("systemDatabasePath")
        if db_path:
            return db_path

        return str(Path(".remedy") / "remedy_system.db")

    def get_user_database_path(self) -> str:
        """Get the data (target asset) database path from environment or settings."""
        db_path = os.getenv("REMEDY_USER_DATABASE_PATH")
        if db_path:
            return db_path

        settings = self.load_user_settings()
        db_path = settings.get("userDatabasePath")
        if db_path:
            return db_path

        return str(Path(".remedy") / "remedy_user.db")

    def get_verbose_mode(self) -> bool:
        """Get verbose/debug mode setting.

        Checks REMEDY_VERBOSE first ("1", "true", "yes"), then the settings file.
        """
        verbose_env = os.getenv("REMEDY_VERBOSE", "").lower()
        if verbose_env in ("1", "true", "yes"):
            return True

        settings = self.load_user_settings()
        return bool(settings.get("verbose", False))

    def get_engine_settings(self) -> EngineSettings:
        """Build engine settings from environment, settings file and defaults.

        Raises:
            ValidationError: If a configured value is malformed or out of range
        """
        settings = self.load_user_settings()
        values: dict[str, Any] = {}

        for field_info in fields(EngineSettings):
            key, env_var, cast = _ENGINE_SETTING_SOURCES[field_info.name]
            raw = os.getenv(env_var)
            if raw is None or not raw.strip():
                raw = settings.get(key)
            if raw is None or raw == "":
                continue
            try:
                values[field_info.name] = cast(raw)
            except (TypeError, ValueError) as e:
                raise ValidationError(
                    f"Invalid value for {field_info.name}: {raw!r}"
                ) from e

        return EngineSettings(**values)
