"""Configuration: YAML root config, model catalogue, env overrides, logging.

The engine itself performs no ambient lookups. This module is the one place
that reads files and environment variables; it turns them into explicit
``RunnerConfig`` / ``BatchConfig`` values and a ready ``ChatCompletionsClient``
that callers pass into constructors.

Example ``llm-tasks.yaml``::

    api:
      endpoint: https://api.openai.com/v1
      api_key_env: OPENAI_API_KEY
    logging:
      level: INFO
    defaults:
      attempts: 3
      timeout_seconds: 60
    batch:
      batch_size: 4
      fallback_token_budgets: [768, 1024, 1280, 1536, 1792]
    models:
      - name: default
        model_id: gpt-4.1-mini
        default: true
        max_completion_tokens: 1024
"""

from __future__ import annotations

from collections.abc import Mapping
import logging
import os
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, field_validator, model_validator
import yaml

from llm_tasks.client import ChatCompletionsClient
from llm_tasks.models import BatchConfig, RunnerConfig

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"


class APIConfig(BaseModel):
    """Remote endpoint and the name of the env var holding its API key."""

    model_config = ConfigDict(frozen=True)

    endpoint: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"


class LoggingConfig(BaseModel):
    """Logging level, record format, and optional log file."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    format: str = _LOG_FORMAT
    file: str | None = None


class DefaultsConfig(BaseModel):
    """Default attempt ceiling and per-attempt timeout."""

    model_config = ConfigDict(frozen=True)

    attempts: int = 3
    timeout_seconds: float = 60.0

    @field_validator("timeout_seconds")
    @classmethod
    def _timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            msg = "timeout_seconds must be > 0"
            raise ValueError(msg)
        return v


class ModelConfig(BaseModel):
    """One entry of the model catalogue.

    Attributes:
        name: Catalogue name used to select the model.
        provider: Provider label (informational).
        model_id: Identifier sent to the remote service.
        default: Whether this is the default model.
        supports_temperature: Whether ``default_temperature`` may be sent.
        default_temperature: Sampling temperature used when a request sets none.
        max_completion_tokens: Output cap used when a request sets none.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    name: str
    provider: str = "openai"
    model_id: str
    default: bool = False
    supports_temperature: bool = True
    default_temperature: float = 0.0
    max_completion_tokens: int = 0


class AppConfig(BaseModel):
    """Root configuration document."""

    model_config = ConfigDict(frozen=True)

    api: APIConfig = APIConfig()
    logging: LoggingConfig = LoggingConfig()
    defaults: DefaultsConfig = DefaultsConfig()
    batch: BatchConfig = BatchConfig()
    models: list[ModelConfig]

    @model_validator(mode="after")
    def _check_models(self) -> AppConfig:
        """Require a non-empty catalogue with exactly one default model."""
        if not self.models:
            msg = "config.models is empty"
            raise ValueError(msg)
        defaults = [m.name for m in self.models if m.default]
        if not defaults:
            msg = "no default model found (set models[].default: true)"
            raise ValueError(msg)
        if len(defaults) > 1:
            msg = f"multiple default models: {', '.join(defaults)}"
            raise ValueError(msg)
        return self

    def default_model(self) -> ModelConfig:
        """Return the model flagged ``default: true``."""
        return next(m for m in self.models if m.default)

    def find_model(self, name: str) -> ModelConfig | None:
        """Return the catalogue entry named *name*, or ``None``."""
        for model in self.models:
            if model.name == name:
                return model
        return None

    def runner_config(self) -> RunnerConfig:
        """Runner budgets derived from ``defaults``."""
        return RunnerConfig(
            max_attempts=self.defaults.attempts,
            timeout_seconds=self.defaults.timeout_seconds,
        )

    def batch_config(self) -> BatchConfig:
        """Batch settings from the ``batch`` section."""
        return self.batch


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML file that must contain a mapping.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not valid YAML or is not a mapping.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"config file not found: {path}"
        raise FileNotFoundError(msg)

    try:
        with open(file_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"config file {path} is not valid YAML: {exc}"
        raise ValueError(msg) from exc

    if not isinstance(data, dict):
        msg = f"config file {path} must contain a YAML mapping, got {type(data).__name__}"
        raise ValueError(msg)
    return data


def load_config(path: str | Path) -> AppConfig:
    """Load and validate the root configuration from *path*.

    Args:
        path: Path to the YAML config file.

    Returns:
        The validated ``AppConfig``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty, malformed, or fails validation.
    """
    return AppConfig.model_validate(_load_yaml(path))


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, tuple[str, str]] = {
    "LLM_TASKS_LOG_LEVEL": ("logging", "level"),
    "LLM_TASKS_ATTEMPTS": ("defaults", "attempts"),
    "LLM_TASKS_TIMEOUT": ("defaults", "timeout_seconds"),
}
"""Maps environment variable names to ``(section, field)`` of ``AppConfig``."""


def _parse_env_value(field_name: str, raw: str) -> Any:
    """Parse *raw* for *field_name*; ``None`` when unparseable or out of range."""
    if field_name == "level":
        return raw.strip().upper() or None
    if field_name == "attempts":
        try:
            value = int(raw)
        except ValueError:
            return None
        return value if value >= 1 else None
    if field_name == "timeout_seconds":
        try:
            timeout = float(raw)
        except ValueError:
            return None
        return timeout if timeout > 0 else None
    return None


def apply_env_overrides(
    config: AppConfig,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Apply ``LLM_TASKS_*`` env var overrides to *config*.

    Environment variables override **default** values only; a value that
    differs from the built-in default was set explicitly and is kept.
    Unparseable values are ignored.

    Args:
        config: Loaded configuration.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        A new ``AppConfig`` with overrides applied (or *config* unchanged).
    """
    env = os.environ if environ is None else environ
    updates: dict[str, dict[str, Any]] = {}

    for env_var, (section, field_name) in _ENV_FIELD_MAP.items():
        raw = env.get(env_var)
        if raw is None:
            continue
        current_section = getattr(config, section)
        default = type(current_section).model_fields[field_name].default
        if getattr(current_section, field_name) != default:
            continue
        parsed = _parse_env_value(field_name, raw)
        if parsed is not None:
            updates.setdefault(section, {})[field_name] = parsed

    if not updates:
        return config
    return config.model_copy(
        update={
            section: getattr(config, section).model_copy(update=fields)
            for section, fields in updates.items()
        }
    )


def resolve_api_key(
    config: AppConfig,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Read the API key from the env var named by ``config.api.api_key_env``.

    Raises:
        ValueError: If the variable is unset or empty.
    """
    env = os.environ if environ is None else environ
    name = config.api.api_key_env
    value = env.get(name, "").strip()
    if not value:
        msg = f"environment variable {name} is not set"
        raise ValueError(msg)
    return value


def build_client(
    config: AppConfig,
    model_name: str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ChatCompletionsClient:
    """Construct a ``ChatCompletionsClient`` for a catalogue model.

    Args:
        config: Loaded configuration.
        model_name: Catalogue name; the default model when ``None``.
        environ: Environment mapping used to resolve the API key.
        http_client: Optional shared ``httpx.AsyncClient``.

    Returns:
        A client whose defaults come from the chosen model entry.

    Raises:
        ValueError: If *model_name* is unknown or the API key is missing.
    """
    if model_name is None:
        model = config.default_model()
    else:
        found = config.find_model(model_name)
        if found is None:
            msg = f"unknown model {model_name!r}"
            raise ValueError(msg)
        model = found

    temperature = model.default_temperature if model.supports_temperature else 0.0
    return ChatCompletionsClient(
        config.api.endpoint,
        resolve_api_key(config, environ),
        default_model=model.model_id,
        default_temperature=temperature,
        default_max_tokens=model.max_completion_tokens,
        http_client=http_client,
    )


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------


def configure_logging(config: LoggingConfig) -> None:
    """Configure the ``llm_tasks`` logger.

    Adds a console handler and an optional file handler. Idempotent;
    repeated calls do not duplicate handlers.

    Args:
        config: Logging section providing level, format, and optional file.
    """
    pkg_logger = logging.getLogger("llm_tasks")
    pkg_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    formatter = logging.Formatter(config.format)

    if not any(type(h) is logging.StreamHandler for h in pkg_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        pkg_logger.addHandler(console)

    if config.file is not None:
        resolved = os.path.abspath(config.file)
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == resolved
            for h in pkg_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.file)
            file_handler.setFormatter(formatter)
            pkg_logger.addHandler(file_handler)
