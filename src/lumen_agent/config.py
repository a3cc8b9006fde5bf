"""Configuration loading for the execution engine."""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

from dotenv import find_dotenv, load_dotenv

from lumen_agent.constants import (
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_ORACLE_MODEL,
    DEFAULT_ORACLE_TIMEOUT_S,
    DEFAULT_TIMEOUT_MS,
    ENV_ALLOW_DANGEROUS,
    ENV_AUTO_APPROVE,
    ENV_DRY_RUN,
    ENV_MAX_CONSECUTIVE_FAILURES,
    ENV_MAX_ITERATIONS,
    ENV_ORACLE_MODEL,
    ENV_TIMEOUT_MS,
    ENV_TRACING,
    ENV_VERIFY,
)


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class LoopConfig:
    """Settings for one ResilientLoop run."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    dry_run: bool = False
    auto_approve: bool = False
    allow_dangerous: bool = False
    verify: bool = False

    def __post_init__(self):
        for name in ("max_iterations", "max_consecutive_failures", "timeout_ms"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class OracleSettings:
    """Settings for the OpenRouter-backed oracle."""

    openrouter_api_key: Optional[str]
    model: str = DEFAULT_ORACLE_MODEL
    timeout_s: float = DEFAULT_ORACLE_TIMEOUT_S
    tracing: bool = False


def _env_bool(name: str) -> Optional[bool]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip().lower() in _TRUE_VALUES


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def load_loop_config(**overrides: Any) -> LoopConfig:
    """
    Build a LoopConfig from defaults, then the environment, then overrides.

    Overrides whose value is None are ignored, so CLI options that were not
    given fall through to the environment.

    Raises:
        ConfigError: If an env var cannot be parsed or a value is out of range.
    """
    load_dotenv(find_dotenv(usecwd=True))

    values = {
        "max_iterations": _env_int(ENV_MAX_ITERATIONS),
        "max_consecutive_failures": _env_int(ENV_MAX_CONSECUTIVE_FAILURES),
        "timeout_ms": _env_int(ENV_TIMEOUT_MS),
        "dry_run": _env_bool(ENV_DRY_RUN),
        "auto_approve": _env_bool(ENV_AUTO_APPROVE),
        "allow_dangerous": _env_bool(ENV_ALLOW_DANGEROUS),
        "verify": _env_bool(ENV_VERIFY),
    }

    unknown = set(overrides) - set(values)
    if unknown:
        raise ConfigError(f"Unknown loop settings: {', '.join(sorted(unknown))}")

    for key, value in overrides.items():
        if value is not None:
            values[key] = value

    config = LoopConfig()
    return replace(config, **{k: v for k, v in values.items() if v is not None})


def load_oracle_settings(require_api_key: bool = True) -> OracleSettings:
    """
    Load oracle settings from environment variables.

    Args:
        require_api_key: If True, raises ConfigError when OPENROUTER_API_KEY is missing.

    Raises:
        ConfigError: If require_api_key=True and the key is missing.
    """
    load_dotenv(find_dotenv(usecwd=True))

    api_key = os.environ.get("OPENROUTER_API_KEY")
    if not api_key and require_api_key:
        raise ConfigError(
            "Missing required environment variables: OPENROUTER_API_KEY\n"
            "Please set it in your environment or create a .env file.\n"
            "See .env.example for the required format."
        )

    timeout_raw = os.environ.get("LUMEN_ORACLE_TIMEOUT_S")
    try:
        timeout_s = float(timeout_raw) if timeout_raw else DEFAULT_ORACLE_TIMEOUT_S
    except ValueError:
        raise ConfigError(f"LUMEN_ORACLE_TIMEOUT_S must be a number, got {timeout_raw!r}")

    return OracleSettings(
        openrouter_api_key=api_key,
        model=os.environ.get(ENV_ORACLE_MODEL) or DEFAULT_ORACLE_MODEL,
        timeout_s=timeout_s,
        tracing=bool(_env_bool(ENV_TRACING)),
    )
