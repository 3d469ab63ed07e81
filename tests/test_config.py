from __future__ import annotations

from pathlib import Path

import pytest

from aam_agent.config import AppConfig, ConfigError, load_config


_BASE_ENV = {"AAM_API_BASE_URL": "https://aam.example.com", "AAM_API_KEY": "aam_pk_k1_secret"}


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "aam-agent.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_from_environment_only(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "missing.toml", environ=_BASE_ENV)

    assert isinstance(cfg, AppConfig)
    assert cfg.agent.base_url == "https://aam.example.com"
    assert cfg.agent.api_key == "aam_pk_k1_secret"
    assert cfg.agent.expected_project_id is None
    assert cfg.agent.poll_interval_seconds == 30
    assert cfg.agent.request_timeout_seconds == 15.0
    assert cfg.agent.verify_tls is True
    assert cfg.agent.state_dir == Path("~/.aam-agent").expanduser()
    assert cfg.retry.max_attempts == 4
    assert cfg.processor.seen_capacity == 10_000
    assert cfg.processor.on_handler_error == "continue"
    assert cfg.processor.skip_agent_authored is True
    assert cfg.state_db_path == cfg.agent.state_dir / "state.db"


def test_load_config_reads_all_tables(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        f"""
[agent]
base_url = "https://aam.internal/"
api_key_env = "CUSTOM_KEY"
state_dir = "{tmp_path / 'state'}"
expected_project_id = "p1"
poll_interval_seconds = 10
request_timeout_seconds = 5.5
page_limit = 100
max_pages_per_cycle = 3
verify_tls = false
strict_key_format = true
fallback_since = "2024-01-01T00:00:00Z"

[retry]
max_attempts = 6
initial_delay_seconds = 0.5
max_delay_seconds = 8
write_max_attempts = 1

[processor]
seen_capacity = 500
on_handler_error = "abort"
skip_agent_authored = false
""",
    )

    cfg = load_config(path, environ={"CUSTOM_KEY": "aam_pk_k2_s"})

    assert cfg.agent.api_base == "https://aam.internal"
    assert cfg.agent.api_key == "aam_pk_k2_s"
    assert cfg.agent.state_dir == tmp_path / "state"
    assert cfg.agent.expected_project_id == "p1"
    assert cfg.agent.poll_interval_seconds == 10
    assert cfg.agent.request_timeout_seconds == 5.5
    assert cfg.agent.page_limit == 100
    assert cfg.agent.max_pages_per_cycle == 3
    assert cfg.agent.verify_tls is False
    assert cfg.agent.strict_key_format is True
    assert cfg.agent.fallback_since == "2024-01-01T00:00:00Z"
    assert cfg.retry.max_attempts == 6
    assert cfg.retry.initial_delay_seconds == 0.5
    assert cfg.retry.max_delay_seconds == 8.0
    assert cfg.retry.write_max_attempts == 1
    assert cfg.processor.seen_capacity == 500
    assert cfg.processor.on_handler_error == "abort"
    assert cfg.processor.skip_agent_authored is False


def test_environment_overrides_file_values(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
[agent]
base_url = "https://from-file.example"
expected_project_id = "p-file"
poll_interval_seconds = 60
""",
    )
    env = {
        **_BASE_ENV,
        "AAM_PROJECT_ID": "p-env",
        "AAM_POLL_SECONDS": "5",
        "AAM_TIMEOUT_MS": "250",
        "AAM_INSECURE_TLS": "1",
        "AAM_STATE_DIR": str(tmp_path / "env-state"),
    }

    cfg = load_config(path, environ=env)

    assert cfg.agent.base_url == "https://aam.example.com"
    assert cfg.agent.expected_project_id == "p-env"
    assert cfg.agent.poll_interval_seconds == 5
    assert cfg.agent.request_timeout_seconds == 1.0
    assert cfg.agent.verify_tls is False
    assert cfg.agent.state_dir == tmp_path / "env-state"


def test_timeout_ms_is_converted_to_seconds(tmp_path: Path) -> None:
    cfg = load_config(None, environ={**_BASE_ENV, "AAM_TIMEOUT_MS": "30000"})
    assert cfg.agent.request_timeout_seconds == 30.0


def test_insecure_tls_requires_exact_flag() -> None:
    cfg = load_config(None, environ={**_BASE_ENV, "AAM_INSECURE_TLS": "true"})
    assert cfg.agent.verify_tls is True


@pytest.mark.parametrize(
    "env, message",
    [
        ({"AAM_API_KEY": "k"}, "AAM_API_BASE_URL"),
        ({"AAM_API_BASE_URL": "https://x"}, "Missing required env var: AAM_API_KEY"),
        ({"AAM_API_BASE_URL": "ftp://x", "AAM_API_KEY": "k"}, "http"),
        ({**_BASE_ENV, "AAM_POLL_SECONDS": "soon"}, "AAM_POLL_SECONDS must be an integer"),
        ({**_BASE_ENV, "AAM_POLL_SECONDS": "0"}, "poll_interval_seconds"),
        ({**_BASE_ENV, "AAM_TIMEOUT_MS": "x"}, "AAM_TIMEOUT_MS"),
    ],
)
def test_load_config_rejects_bad_environment(env: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(None, environ=env)


@pytest.mark.parametrize(
    "body, message",
    [
        ("agent = 1", r"\[agent\] must be a TOML table"),
        ("[agent]\npage_limit = 0", "page_limit"),
        ("[agent]\npage_limit = 500", "page_limit"),
        ("[agent]\npoll_interval_seconds = true", "poll_interval_seconds must be an integer"),
        ("[agent]\nverify_tls = 'no'", "verify_tls must be a boolean"),
        ("[agent]\nexpected_project_id = ''", "expected_project_id"),
        ("[agent]\nrequest_timeout_seconds = 0", "request_timeout_seconds"),
        ("[agent]\nmax_pages_per_cycle = 0", "max_pages_per_cycle"),
        ("[retry]\nmax_attempts = 0", "max_attempts"),
        ("[retry]\ninitial_delay_seconds = -1", "retry delays"),
        ("[retry]\nwrite_max_attempts = 0", "write_max_attempts must be >= 1"),
        ("[retry]\nwrite_max_attempts = 'twice'", "write_max_attempts must be an integer"),
        ("[processor]\nseen_capacity = 0", "seen_capacity"),
        ("[processor]\non_handler_error = 'ignore'", "on_handler_error"),
    ],
)
def test_load_config_rejects_bad_file_values(tmp_path: Path, body: str, message: str) -> None:
    path = _write(tmp_path, body)
    with pytest.raises(ConfigError, match=message):
        load_config(path, environ=_BASE_ENV)
