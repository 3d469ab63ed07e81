from __future__ import annotations

import logging
import threading

from aam_agent.errors import StopRequested, TransientError, ValidationError
from aam_agent.gateway import AamGateway
from aam_agent.models import (
    RESOLUTION_STATUSES,
    ResolutionOutcome,
    ResolutionRequest,
    ResolutionResult,
)
from aam_agent.observability import log_event
from aam_agent.state import StateStore


LOGGER = logging.getLogger("aam_agent.resolver")


def validate_resolution(issue_id: str, request: ResolutionRequest) -> None:
    if not issue_id or not issue_id.strip():
        raise ValidationError("issue id must be non-empty")
    if request.status not in RESOLUTION_STATUSES:
        allowed = ", ".join(sorted(RESOLUTION_STATUSES))
        raise ValidationError(f"status must be one of: {allowed} (got {request.status!r})")
    if not request.resolution_note or not request.resolution_note.strip():
        raise ValidationError("resolutionNote must be a non-empty string")


class Resolver:
    """Submits terminal transitions, at most once per issue per run.

    A call that exhausts its retries, or is stopped after a request was sent,
    has an unknown outcome on the server; it is recorded as such and the
    issue stays locked for the rest of the run.
    """

    def __init__(self, gateway: AamGateway, *, state: StateStore | None = None) -> None:
        self._gateway = gateway
        self._state = state
        self._submitted: set[str] = set()
        self._lock = threading.Lock()

    def resolve(self, issue_id: str, request: ResolutionRequest) -> ResolutionResult:
        validate_resolution(issue_id, request)
        with self._lock:
            if issue_id in self._submitted:
                raise ValidationError(f"Issue {issue_id} was already submitted for resolution")
            self._submitted.add(issue_id)

        note = request.resolution_note.strip()
        try:
            response = self._gateway.resolve_issue(issue_id, request)
        except TransientError as exc:
            self._record(issue_id, request, note=note, outcome="unknown", detail=str(exc))
            log_event(
                LOGGER,
                "resolution_outcome_unknown",
                level=logging.WARNING,
                issue_id=issue_id,
                status=request.status,
                attempts=exc.attempts,
            )
            raise
        except StopRequested as exc:
            if exc.attempts == 0:
                # Nothing reached the server; the issue may be submitted again.
                with self._lock:
                    self._submitted.discard(issue_id)
                raise
            self._record(issue_id, request, note=note, outcome="unknown", detail=str(exc))
            log_event(
                LOGGER,
                "resolution_outcome_unknown",
                level=logging.WARNING,
                issue_id=issue_id,
                status=request.status,
                attempts=exc.attempts,
            )
            raise
        except ValidationError as exc:
            self._record(issue_id, request, note=note, outcome="rejected", detail=str(exc))
            log_event(
                LOGGER,
                "resolution_rejected",
                level=logging.WARNING,
                issue_id=issue_id,
                status=request.status,
                http_status=exc.status,
            )
            raise

        confirmed_status = _confirmed_status(response) or str(request.status)
        self._record(issue_id, request, note=note, outcome="confirmed", detail=None)
        log_event(
            LOGGER,
            "resolution_submitted",
            issue_id=issue_id,
            status=confirmed_status,
        )
        return ResolutionResult(issue_id=issue_id, status=confirmed_status, outcome="confirmed")

    def _record(
        self,
        issue_id: str,
        request: ResolutionRequest,
        *,
        note: str,
        outcome: ResolutionOutcome,
        detail: str | None,
    ) -> None:
        if self._state is None:
            return
        self._state.record_resolution(
            issue_id=issue_id,
            status=str(request.status),
            resolution_note=note,
            outcome=outcome,
            detail=detail,
        )


def _confirmed_status(response: dict[str, object]) -> str | None:
    issue = response.get("issue") or response.get("item")
    if isinstance(issue, dict):
        status = issue.get("status")
        if isinstance(status, str) and status:
            return status
    status = response.get("status")
    return status if isinstance(status, str) and status else None
