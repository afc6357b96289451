"""Run configuration.

Collected once at process start from defaults, a ``.env`` file, the process
environment and CLI overrides, then passed explicitly into the pipeline.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from dotenv import dotenv_values

DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_NUM_COMMITS = 5
DEFAULT_CHUNK_BUDGET = 12000  # characters per remote call
DEFAULT_WORKERS = 4
DEFAULT_FAN_IN = 8
DEFAULT_TIMEOUT = 60.0
DEFAULT_MAX_ATTEMPTS = 3

# Environment variable -> RunConfig field
ENV_KEYS = {
    "OPENAI_API_KEY": "api_key",
    "OPENAI_BASE_URL": "base_url",
    "WTF_MODEL": "model",
}


class ConfigError(Exception):
    """Invalid or missing configuration."""


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one analysis run."""

    api_key: str
    num_commits: int = DEFAULT_NUM_COMMITS
    chunk_char_budget: int = DEFAULT_CHUNK_BUDGET
    worker_pool_size: int = DEFAULT_WORKERS
    fan_in_limit: int = DEFAULT_FAN_IN
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = DEFAULT_TIMEOUT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    temperature: float = 0.7

    def __post_init__(self) -> None:
        if not self.api_key or not self.api_key.strip():
            raise ConfigError(
                "OPENAI_API_KEY is not set. Export it or add it to a .env file."
            )
        for name in (
            "num_commits",
            "chunk_char_budget",
            "worker_pool_size",
            "fan_in_limit",
            "max_attempts",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if self.request_timeout <= 0:
            raise ConfigError(
                f"request_timeout must be positive, got {self.request_timeout!r}"
            )

    def masked(self) -> dict[str, Any]:
        """Config as a dict with the API key masked, for logging."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["api_key"] = mask_secret(self.api_key)
        return data


def mask_secret(value: str) -> str:
    """Show only the first and last four characters of a secret."""
    if len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "[too short]"


def load_config(
    env_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> RunConfig:
    """Build a RunConfig.

    Precedence, lowest first: defaults, ``.env`` file, process environment,
    explicit overrides. Overrides whose value is None are ignored so CLI
    options can be passed straight through.
    """
    environ = os.environ if environ is None else environ

    if env_file is None:
        candidate = Path(".env")
        env_file = candidate if candidate.is_file() else None
    elif not Path(env_file).is_file():
        raise ConfigError(f"Env file not found: {env_file}")

    values: dict[str, Any] = {}
    sources: list[Mapping[str, Any]] = []
    if env_file is not None:
        sources.append(dotenv_values(env_file))
    sources.append(environ)

    for source in sources:
        for env_key, field_name in ENV_KEYS.items():
            if source.get(env_key):
                values[field_name] = source[env_key]

    values.update({k: v for k, v in overrides.items() if v is not None})
    values.setdefault("api_key", "")

    try:
        return RunConfig(**values)
    except TypeError as e:
        raise ConfigError(str(e)) from e
