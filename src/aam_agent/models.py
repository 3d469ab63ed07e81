from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


ActorType = Literal["USER", "AGENT"]
CursorKind = Literal["token", "since"]
ResolutionStatus = Literal["resolved", "archived"]
ResolutionOutcome = Literal["confirmed", "rejected", "unknown"]

RESOLUTION_STATUSES: frozenset[str] = frozenset({"resolved", "archived"})
KNOWN_ACTIVITY_KINDS: frozenset[str] = frozenset(
    {
        "ITEM_CREATED",
        "ITEM_UPDATED",
        "IMAGE_UPLOADED",
        "IMAGE_DELETED",
        "IMAGES_REORDERED",
        "RESOLUTION_NOTE",
        "STATUS_CHANGE",
        "REVIEW_SUBMITTED",
        "REVIEW_APPROVED",
        "REVIEW_REJECTED",
    }
)


@dataclass(frozen=True)
class Project:
    id: str
    name: str


@dataclass(frozen=True)
class Cursor:
    """Position in the activity stream: an opaque server token or a `since` instant."""

    token: str | None = None
    since: str | None = None

    def __post_init__(self) -> None:
        if (self.token is None) == (self.since is None):
            raise ValueError("Cursor requires exactly one of token or since")
        if self.token is not None and not self.token:
            raise ValueError("Cursor token must be non-empty")
        if self.since is not None and not self.since:
            raise ValueError("Cursor since must be non-empty")

    @classmethod
    def from_token(cls, token: str) -> Cursor:
        return cls(token=token)

    @classmethod
    def from_since(cls, since: str) -> Cursor:
        return cls(since=since)

    @property
    def kind(self) -> CursorKind:
        return "token" if self.token is not None else "since"

    @property
    def value(self) -> str:
        value = self.token if self.token is not None else self.since
        assert value is not None
        return value

    def query_params(self) -> dict[str, str]:
        if self.token is not None:
            return {"cursor": self.token}
        return {"since": self.value}


@dataclass(frozen=True)
class Activity:
    id: str
    timestamp: str
    kind: str
    issue_id: str
    actor_type: ActorType | str = "USER"
    message: str = ""
    metadata: dict[str, object] | None = None


@dataclass(frozen=True)
class Page:
    activities: tuple[Activity, ...]
    next_cursor: Cursor | None


@dataclass(frozen=True)
class IssueImage:
    id: str
    filename: str
    mime_type: str
    size_bytes: int


@dataclass(frozen=True)
class Issue:
    id: str
    status: str
    title: str
    description: str
    type: str
    priority: str
    tags: tuple[str, ...] = ()
    images: tuple[IssueImage, ...] = ()
    raw: dict[str, object] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class PromptContext:
    text: str
    yaml: dict[str, object] | None


@dataclass(frozen=True)
class ResolutionRequest:
    status: ResolutionStatus | str
    resolution_note: str

    def to_payload(self) -> dict[str, object]:
        return {"status": self.status, "resolutionNote": self.resolution_note.strip()}


@dataclass(frozen=True)
class ResolutionResult:
    issue_id: str
    status: str
    outcome: ResolutionOutcome
    detail: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.outcome == "confirmed"
