"""
Centralized configuration for Hearth services.

Single source of truth for the voice gateway and the home control core,
with validation and fail-fast behavior for settings that must be present.
"""
import os
import sys
import logging
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class HomeConfig:
    """
    Configuration container with validation.

    Configuration Precedence (highest to lowest):
    1. Explicit constructor arguments (tests, embedding)
    2. Environment Variables
    3. Code Defaults (only for non-sensitive, optional values)
    """

    # =========================================================================
    # Backends
    # =========================================================================

    # "http" talks to the inventory and device store services,
    # "memory" keeps everything in-process (development and tests)
    backend: str = field(default_factory=lambda: os.environ.get("HEARTH_BACKEND", "http"))

    inventory_url: str = field(default_factory=lambda: os.environ.get("HEARTH_INVENTORY_URL", ""))
    device_store_url: str = field(default_factory=lambda: os.environ.get("HEARTH_DEVICE_STORE_URL", ""))
    api_token: str = field(default_factory=lambda: os.environ.get("HEARTH_API_TOKEN", ""))
    http_timeout_seconds: float = field(default_factory=lambda: float(os.environ.get("HEARTH_HTTP_TIMEOUT", "10")))

    # =========================================================================
    # Speech I/O
    # =========================================================================

    stt_url: str = field(default_factory=lambda: os.environ.get("STT_URL", "http://localhost:10301"))
    tts_url: str = field(default_factory=lambda: os.environ.get("TTS_URL", "http://localhost:10201"))
    tts_voice: str = field(default_factory=lambda: os.environ.get("TTS_VOICE", "default"))
    local_tts_command: str = field(default_factory=lambda: os.environ.get("LOCAL_TTS_COMMAND", "espeak"))
    listen_timeout_ms: int = field(default_factory=lambda: int(os.environ.get("LISTEN_TIMEOUT_MS", "8000")))
    speech_fallback_repeats: int = field(default_factory=lambda: int(os.environ.get("SPEECH_FALLBACK_REPEATS", "2")))
    voice_response_enabled: bool = field(default_factory=lambda: _env_bool("VOICE_RESPONSE_ENABLED", "true"))

    # =========================================================================
    # Command interpretation
    # =========================================================================

    match_threshold: float = field(default_factory=lambda: float(os.environ.get("COMMAND_MATCH_THRESHOLD", "0.4")))
    command_cache_seconds: float = field(default_factory=lambda: float(os.environ.get("COMMAND_CACHE_SECONDS", "300")))

    # =========================================================================
    # Sync reconciliation admission
    # =========================================================================

    sync_cooldown_seconds: float = field(default_factory=lambda: float(os.environ.get("SYNC_COOLDOWN_SECONDS", "5")))
    sync_max_runs: int = field(default_factory=lambda: int(os.environ.get("SYNC_MAX_RUNS", "3")))
    sync_reset_interval_seconds: float = field(default_factory=lambda: float(os.environ.get("SYNC_RESET_INTERVAL_SECONDS", "60")))

    # =========================================================================
    # Security
    # =========================================================================

    auto_lock_delay_seconds: float = field(default_factory=lambda: float(os.environ.get("AUTO_LOCK_DELAY_SECONDS", "90")))
    default_owner: str = field(default_factory=lambda: os.environ.get("HEARTH_DEFAULT_OWNER", ""))

    # Service ports
    gateway_port: int = field(default_factory=lambda: int(os.environ.get("GATEWAY_PORT", "8000")))

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, service_name: str = "hearth") -> List[str]:
        """
        Validate configuration and return list of errors.
        Call at service startup to fail fast with clear errors.

        Args:
            service_name: Name of service for error messages

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        if self.backend not in ("http", "memory"):
            errors.append(
                f"HEARTH_BACKEND must be 'http' or 'memory', got '{self.backend}'."
            )

        if self.backend == "http":
            if not self.inventory_url:
                errors.append(
                    f"HEARTH_INVENTORY_URL is required for {service_name} with the http backend.\n"
                    f"  Set via environment variable: export HEARTH_INVENTORY_URL='http://inventory:8080'"
                )
            if not self.device_store_url:
                errors.append(
                    f"HEARTH_DEVICE_STORE_URL is required for {service_name} with the http backend.\n"
                    f"  Set via environment variable: export HEARTH_DEVICE_STORE_URL='http://devices:8090'"
                )
            if not self.api_token:
                logger.warning(
                    "HEARTH_API_TOKEN not set. Requests to the inventory and device store "
                    "will be sent without an Authorization header."
                )

        if not 0.0 <= self.match_threshold < 1.0:
            errors.append(f"COMMAND_MATCH_THRESHOLD must be in [0, 1), got {self.match_threshold}.")

        if self.sync_max_runs < 1:
            errors.append(f"SYNC_MAX_RUNS must be at least 1, got {self.sync_max_runs}.")

        if self.speech_fallback_repeats < 1:
            errors.append(f"SPEECH_FALLBACK_REPEATS must be at least 1, got {self.speech_fallback_repeats}.")

        if self.auto_lock_delay_seconds < 0:
            errors.append(f"AUTO_LOCK_DELAY_SECONDS cannot be negative, got {self.auto_lock_delay_seconds}.")

        return errors

    def validate_or_exit(self, service_name: str = "hearth"):
        """Validate configuration and exit with clear error if invalid."""
        errors = self.validate(service_name)
        if errors:
            print(f"\n{'='*60}", file=sys.stderr)
            print(f"CONFIGURATION ERROR - {service_name} cannot start", file=sys.stderr)
            print(f"{'='*60}\n", file=sys.stderr)
            for i, error in enumerate(errors, 1):
                print(f"{i}. {error}\n", file=sys.stderr)
            print(f"{'='*60}", file=sys.stderr)
            print(f"Fix the above issues and restart the service.", file=sys.stderr)
            print(f"{'='*60}\n", file=sys.stderr)
            sys.exit(1)

    def require_valid(self, service_name: str = "hearth"):
        """Raise ConfigurationError instead of exiting (for embedded use)."""
        errors = self.validate(service_name)
        if errors:
            raise ConfigurationError("; ".join(errors))


# Singleton instance
config = HomeConfig()


def get_config() -> HomeConfig:
    """Get the singleton config instance."""
    return config
