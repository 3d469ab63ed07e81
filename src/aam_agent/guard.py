from __future__ import annotations

import logging
import re
from typing import Protocol

from aam_agent.errors import (
    AgentError,
    AuthError,
    ScopeMismatchError,
    StopRequested,
    ValidationError,
)
from aam_agent.models import Project
from aam_agent.observability import log_event, redact_api_key


LOGGER = logging.getLogger("aam_agent.guard")
API_KEY_PREFIX = "aam_pk"
_API_KEY_PATTERN = re.compile(r"^aam_pk_([A-Za-z0-9-]+)_(\S+)$")
_UNAUTHORIZED_STATUSES = frozenset({401, 403})


class ProjectSource(Protocol):
    def get_project(self) -> Project: ...


def check_api_key_format(api_key: str, *, strict: bool = False) -> bool:
    """Return True when the key looks like `aam_pk_<keyId>_<secret>`.

    A malformed key only warns unless `strict` is set; the server has the
    final word on authorization.
    """
    if _API_KEY_PATTERN.match(api_key):
        return True
    log_event(
        LOGGER,
        "api_key_format_unexpected",
        level=logging.WARNING,
        api_key=api_key,
        expected=f"{API_KEY_PREFIX}_<keyId>_<secret>",
    )
    if strict:
        raise AuthError(
            f"API key {redact_api_key(api_key)} does not look like an agent key "
            f"(expected {API_KEY_PREFIX}_<keyId>_<secret>)."
        )
    return False


def guard_project_scope(
    gateway: ProjectSource,
    *,
    api_key: str,
    expected_project_id: str | None,
    strict_key_format: bool = False,
) -> Project:
    check_api_key_format(api_key, strict=strict_key_format)
    try:
        project = gateway.get_project()
    except StopRequested:
        raise
    except ValidationError as exc:
        if exc.status in _UNAUTHORIZED_STATUSES:
            raise AuthError(
                f"API key {redact_api_key(api_key)} was rejected by the service (HTTP {exc.status})"
            ) from exc
        raise AuthError(f"Project identity check failed: {exc}") from exc
    except AgentError as exc:
        raise AuthError(f"Project identity check failed: {exc}") from exc

    if expected_project_id and expected_project_id != project.id:
        log_event(
            LOGGER,
            "guard_scope_mismatch",
            level=logging.ERROR,
            expected_project_id=expected_project_id,
            actual_project_id=project.id,
        )
        raise ScopeMismatchError(
            expected_project_id=expected_project_id, actual_project_id=project.id
        )

    log_event(
        LOGGER,
        "guard_passed",
        project_id=project.id,
        project_name=project.name,
        expected_project_id=expected_project_id,
    )
    return project
