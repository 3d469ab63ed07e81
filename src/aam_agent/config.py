from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
import os
from pathlib import Path
import tomllib
from typing import Literal, cast


HandlerErrorPolicy = Literal["continue", "abort"]

DEFAULT_API_KEY_ENV = "AAM_API_KEY"
_HANDLER_ERROR_POLICIES: tuple[HandlerErrorPolicy, ...] = ("continue", "abort")


@dataclass(frozen=True)
class AgentConfig:
    base_url: str
    api_key: str
    state_dir: Path
    expected_project_id: str | None = None
    poll_interval_seconds: int = 30
    request_timeout_seconds: float = 15.0
    page_limit: int = 50
    max_pages_per_cycle: int = 20
    verify_tls: bool = True
    strict_key_format: bool = False
    fallback_since: str | None = None

    @property
    def api_base(self) -> str:
        return self.base_url.rstrip("/")


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 4
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    write_max_attempts: int | None = None


@dataclass(frozen=True)
class ProcessorConfig:
    seen_capacity: int = 10_000
    on_handler_error: HandlerErrorPolicy = "continue"
    skip_agent_authored: bool = True


@dataclass(frozen=True)
class AppConfig:
    agent: AgentConfig
    retry: RetryConfig = RetryConfig()
    processor: ProcessorConfig = ProcessorConfig()

    @property
    def state_db_path(self) -> Path:
        return self.agent.state_dir / "state.db"


class ConfigError(ValueError):
    pass


def load_config(path: Path | None, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Read the TOML config (if any) and apply `AAM_*` environment overrides.

    A missing file is only acceptable when the environment provides both
    `AAM_API_BASE_URL` and the API key.
    """
    env = os.environ if environ is None else environ
    data: dict[str, object] = {}
    if path is not None and path.exists():
        with path.open("rb") as fh:
            data = tomllib.load(fh)

    agent_data = _optional_table(data, "agent") or {}
    retry_data = _optional_table(data, "retry") or {}
    processor_data = _optional_table(data, "processor") or {}

    api_key_env = _str_with_default(agent_data, "api_key_env", DEFAULT_API_KEY_ENV)
    base_url = env.get("AAM_API_BASE_URL") or _optional_str(agent_data, "base_url")
    if not base_url:
        where = f" in {path}" if path is not None else ""
        raise ConfigError(f"agent.base_url{where} (or AAM_API_BASE_URL) is required")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError("agent.base_url must be an http(s) URL")
    api_key = env.get(api_key_env, "")
    if not api_key:
        raise ConfigError(f"Missing required env var: {api_key_env}")

    agent = AgentConfig(
        base_url=base_url,
        api_key=api_key,
        state_dir=Path(_str_with_default(agent_data, "state_dir", "~/.aam-agent")).expanduser(),
        expected_project_id=_optional_str(agent_data, "expected_project_id"),
        poll_interval_seconds=_int_with_default(agent_data, "poll_interval_seconds", 30),
        request_timeout_seconds=_float_with_default(agent_data, "request_timeout_seconds", 15.0),
        page_limit=_int_with_default(agent_data, "page_limit", 50),
        max_pages_per_cycle=_int_with_default(agent_data, "max_pages_per_cycle", 20),
        verify_tls=_bool_with_default(agent_data, "verify_tls", True),
        strict_key_format=_bool_with_default(agent_data, "strict_key_format", False),
        fallback_since=_optional_str(agent_data, "fallback_since"),
    )
    agent = _apply_env_overrides(agent, env)

    retry = RetryConfig(
        max_attempts=_int_with_default(retry_data, "max_attempts", 4),
        initial_delay_seconds=_float_with_default(retry_data, "initial_delay_seconds", 1.0),
        max_delay_seconds=_float_with_default(retry_data, "max_delay_seconds", 30.0),
        write_max_attempts=_optional_int(retry_data, "write_max_attempts"),
    )
    processor = ProcessorConfig(
        seen_capacity=_int_with_default(processor_data, "seen_capacity", 10_000),
        on_handler_error=_handler_error_policy(processor_data),
        skip_agent_authored=_bool_with_default(processor_data, "skip_agent_authored", True),
    )

    config = AppConfig(agent=agent, retry=retry, processor=processor)
    _validate(config)
    return config


def _apply_env_overrides(agent: AgentConfig, env: Mapping[str, str]) -> AgentConfig:
    project_id = env.get("AAM_PROJECT_ID")
    if project_id:
        agent = replace(agent, expected_project_id=project_id)

    poll_seconds = env.get("AAM_POLL_SECONDS")
    if poll_seconds:
        agent = replace(agent, poll_interval_seconds=_parse_env_int("AAM_POLL_SECONDS", poll_seconds))

    timeout_ms = env.get("AAM_TIMEOUT_MS")
    if timeout_ms:
        millis = _parse_env_int("AAM_TIMEOUT_MS", timeout_ms)
        agent = replace(agent, request_timeout_seconds=max(1.0, millis / 1000.0))

    if env.get("AAM_INSECURE_TLS") == "1":
        agent = replace(agent, verify_tls=False)

    state_dir = env.get("AAM_STATE_DIR")
    if state_dir:
        agent = replace(agent, state_dir=Path(state_dir).expanduser())
    return agent


def _validate(config: AppConfig) -> None:
    agent = config.agent
    if agent.poll_interval_seconds < 1:
        raise ConfigError("agent.poll_interval_seconds must be >= 1")
    if agent.request_timeout_seconds <= 0:
        raise ConfigError("agent.request_timeout_seconds must be > 0")
    if not 1 <= agent.page_limit <= 200:
        raise ConfigError("agent.page_limit must be between 1 and 200")
    if agent.max_pages_per_cycle < 1:
        raise ConfigError("agent.max_pages_per_cycle must be >= 1")
    if config.retry.max_attempts < 1:
        raise ConfigError("retry.max_attempts must be >= 1")
    if config.retry.write_max_attempts is not None and config.retry.write_max_attempts < 1:
        raise ConfigError("retry.write_max_attempts must be >= 1")
    if config.retry.initial_delay_seconds < 0 or config.retry.max_delay_seconds < 0:
        raise ConfigError("retry delays must be >= 0")
    if config.processor.seen_capacity < 1:
        raise ConfigError("processor.seen_capacity must be >= 1")


def _handler_error_policy(data: dict[str, object]) -> HandlerErrorPolicy:
    value = _str_with_default(data, "on_handler_error", "continue")
    if value not in _HANDLER_ERROR_POLICIES:
        raise ConfigError(
            "processor.on_handler_error must be one of: " + ", ".join(_HANDLER_ERROR_POLICIES)
        )
    return cast(HandlerErrorPolicy, value)


def _parse_env_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _optional_int(data: dict[str, object], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value
