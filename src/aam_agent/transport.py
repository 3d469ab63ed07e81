from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Literal, TypeAlias

import httpx

from aam_agent.observability import log_event


LOGGER = logging.getLogger("aam_agent.transport")
API_KEY_HEADER = "X-AAM-API-Key"
USER_AGENT = "aam-agent/0.1"
INVALID_CURSOR_REASON = "invalid_cursor"

Expect = Literal["json", "bytes"]
_RETRYABLE_STATUSES = frozenset({429})
_INVALID_CURSOR_CODES = frozenset({"invalid_cursor", "cursor_invalid", "unknown_cursor"})


@dataclass(frozen=True)
class Success:
    status: int
    payload: dict[str, object] | bytes


@dataclass(frozen=True)
class Retryable:
    reason: str
    status: int | None = None


@dataclass(frozen=True)
class Fatal:
    reason: str
    status: int | None = None
    message: str = ""

    @property
    def invalid_cursor(self) -> bool:
        return self.reason == INVALID_CURSOR_REASON


TransportOutcome: TypeAlias = Success | Retryable | Fatal


class Transport:
    """Authenticated HTTP calls against the agent API, classified but never retried."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float,
        verify_tls: bool = True,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            verify=verify_tls,
        )
        self._headers = {
            API_KEY_HEADER: api_key,
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        self._timeout = httpx.Timeout(timeout_seconds)

    def close(self) -> None:
        self._client.close()

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json_body: dict[str, object] | None = None,
        expect: Expect = "json",
    ) -> TransportOutcome:
        method_upper = method.upper()
        try:
            response = self._client.request(
                method_upper,
                path,
                params=params,
                json=json_body,
                headers=self._headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            outcome: TransportOutcome = Retryable(reason=f"timeout: {type(exc).__name__}")
        except httpx.RequestError as exc:
            outcome = Retryable(reason=f"connection: {type(exc).__name__}")
        else:
            outcome = classify_response(response, expect=expect)

        if not isinstance(outcome, Success):
            log_event(
                LOGGER,
                "transport_request_failed",
                method=method_upper,
                path=path,
                outcome=type(outcome).__name__.lower(),
                status=outcome.status,
                reason=outcome.reason,
            )
        return outcome


def classify_response(response: httpx.Response, *, expect: Expect = "json") -> TransportOutcome:
    status = response.status_code
    if status >= 500 or status in _RETRYABLE_STATUSES:
        return Retryable(reason=f"http_{status}", status=status)
    if status >= 400:
        code, message = _error_details(response)
        if _is_invalid_cursor(code, message):
            return Fatal(reason=INVALID_CURSOR_REASON, status=status, message=message)
        return Fatal(reason=code or f"http_{status}", status=status, message=message)
    if status < 200 or status >= 300:
        return Fatal(reason=f"unexpected_status_{status}", status=status)

    if expect == "bytes":
        return Success(status=status, payload=response.content)
    try:
        payload = json.loads(response.content)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return Fatal(reason="malformed_body", status=status, message=_preview(response.text))
    if not isinstance(payload, dict):
        return Fatal(
            reason="unexpected_shape",
            status=status,
            message=f"expected JSON object, got {type(payload).__name__}",
        )
    return Success(status=status, payload=payload)


def _error_details(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None, _preview(response.text)
    if not isinstance(body, dict):
        return None, _preview(response.text)

    code: object = body.get("code")
    message: object = body.get("message", "")
    error = body.get("error")
    if isinstance(error, dict):
        code = error.get("code", code)
        message = error.get("message", message)
    elif isinstance(error, str):
        if code is None:
            code = error
        if not message:
            message = error
    return (code if isinstance(code, str) else None), str(message or "")


def _is_invalid_cursor(code: str | None, message: str) -> bool:
    if code is not None and code.strip().lower() in _INVALID_CURSOR_CODES:
        return True
    lowered = message.lower()
    return "cursor" in lowered and ("invalid" in lowered or "unknown" in lowered)


def _preview(text: str, *, limit: int = 200) -> str:
    compact = " ".join(text.split())
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."
