import os
import shlex
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = "pet_waker.yml"

# Sourcing the pet script and calling its wake hook; the project name arrives as "$1"
# so it is never interpolated into the shell text.
DEFAULT_WAKE_SCRIPT = 'source "$PET_DIR/pet" && wake_from_waker "$1"'


def _home_path(*parts: str) -> str:
    return os.path.join(os.path.expanduser("~"), *parts)


class WakerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=3999, ge=1, le=65535)
    pet_dir: str = Field(default_factory=lambda: _home_path(".pet-cli"))
    pet_config_dir: str = Field(default_factory=lambda: _home_path(".config", "pet"))
    routing_header: str = Field(
        default="x-pet-sleep-project", description="Header carrying the sleeping project name"
    )
    wake_command: List[str] = Field(
        default_factory=lambda: ["bash", "-c", DEFAULT_WAKE_SCRIPT, "pet-waker"],
        description="Resume command; the project name is appended as its last argument",
    )
    wake_timeout_seconds: float = Field(default=60.0, gt=0)
    grace_period_seconds: float = Field(default=5.0, ge=0)
    probe_max_attempts: int = Field(default=15, ge=1)
    probe_attempt_timeout_ms: int = Field(default=2000, ge=1)
    probe_retry_delay_ms: int = Field(default=500, ge=0)
    proxy_timeout_seconds: float = Field(default=300.0, gt=0)
    max_body_bytes: int = Field(
        default=10 * 1024 * 1024, ge=0, description="Largest replayable body; 0 disables the cap"
    )
    log_level: str = "INFO"

    @field_validator("routing_header")
    @classmethod
    def normalize_routing_header(cls, v):
        v = v.strip().lower()
        if not v:
            raise ValueError("routing_header must not be empty")
        return v

    @field_validator("wake_command")
    @classmethod
    def validate_wake_command(cls, v):
        if not v:
            raise ValueError("wake_command must name an executable")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v

    @property
    def projects_dir(self) -> str:
        return os.path.join(self.pet_config_dir, "projects")


def load_config(config_path: Optional[str] = None) -> WakerConfig:
    """Load configuration from YAML file with environment variable overrides."""
    if config_path is None:
        config_path = os.getenv("PET_WAKER_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: Dict[str, Any] = {}

    try:
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        # File doesn't exist, use defaults
        pass
    except Exception as e:
        print(f"Warning: Failed to load config from {config_path}: {e}")

    _load_overrides_from_environment(config_data)

    return WakerConfig(**config_data)


def _load_overrides_from_environment(config_data: Dict[str, Any]):
    """Apply PET_* environment variables on top of file values."""

    field_mappings = {
        "PET_WAKER_HOST": ("host", str),
        "PET_WAKER_PORT": ("port", int),
        "PET_DIR": ("pet_dir", str),
        "PET_CONFIG_DIR": ("pet_config_dir", str),
        "PET_WAKER_ROUTING_HEADER": ("routing_header", str),
        "PET_WAKER_WAKE_COMMAND": ("wake_command", shlex.split),
        "PET_WAKER_WAKE_TIMEOUT": ("wake_timeout_seconds", float),
        "PET_WAKER_GRACE_PERIOD": ("grace_period_seconds", float),
        "PET_WAKER_PROBE_ATTEMPTS": ("probe_max_attempts", int),
        "PET_WAKER_PROBE_TIMEOUT_MS": ("probe_attempt_timeout_ms", int),
        "PET_WAKER_PROBE_DELAY_MS": ("probe_retry_delay_ms", int),
        "PET_WAKER_PROXY_TIMEOUT": ("proxy_timeout_seconds", float),
        "PET_WAKER_MAX_BODY_BYTES": ("max_body_bytes", int),
        "PET_WAKER_LOG_LEVEL": ("log_level", str),
    }

    for env_key, (config_field, field_type) in field_mappings.items():
        env_value = os.getenv(env_key)
        if env_value is None or env_value == "":
            continue

        try:
            config_data[config_field] = field_type(env_value)
        except (ValueError, TypeError) as e:
            print(f"Warning: Invalid value for {env_key}: {env_value} ({e})")
