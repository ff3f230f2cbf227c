from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class IssueView(str, Enum):
    RESOLVED = "resolved"
    PENDING_REDIRECT = "pending_redirect"
    BROKEN = "broken"


class ResolvedScope(str, Enum):
    ALL = "all"
    CURRENT = "current"
    PREVIOUS = "previous"


class Origin(str, Enum):
    CANONICAL = "canonical"
    HTTP = "http"
    EXTERNAL_SKIPPED = "external-skipped"


BROKEN_STATUS_THRESHOLD = 400


@dataclass(frozen=True)
class Document:
    id: int
    body: str
    doc_type: str = "post"
    status: str = "publish"
    slug: str | None = None
    parent_id: int | None = None
    modified_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Actor:
    id: int = 0
    display_name: str | None = None

    @property
    def is_system(self) -> bool:
        return self.id == 0


SYSTEM_ACTOR = Actor()


@dataclass(frozen=True)
class NewIssue:
    document_id: int
    original_url: str
    final_url: str
    http_status: int
    status_message: str
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    resolved_by_actor_id: int = 0


@dataclass(frozen=True)
class LinkIssue:
    id: int
    document_id: int
    original_url: str
    url_fingerprint: str
    final_url: str | None
    http_status: int | None
    status_message: str | None
    resolution_status: ResolutionStatus
    scan_date: datetime
    resolution_date: datetime | None = None
    resolved_by_actor_id: int | None = None

    @property
    def is_broken(self) -> bool:
        return (self.http_status or 0) >= BROKEN_STATUS_THRESHOLD


@dataclass(frozen=True)
class IssuePage:
    items: list[LinkIssue]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        if self.per_page <= 0:
            return 0
        return (self.total + self.per_page - 1) // self.per_page


@dataclass(frozen=True)
class RedirectResolution:
    final_url: str
    status_code: int
    status_message: str
    first_hop_code: int | None
    is_permanent: bool
    origin: Origin

    @property
    def is_redirect(self) -> bool:
        return self.first_hop_code is not None and 300 <= self.first_hop_code < 400

    def to_json(self) -> dict[str, Any]:
        return {
            "final_url": self.final_url,
            "status_code": self.status_code,
            "status_message": self.status_message,
            "first_hop_code": self.first_hop_code,
            "is_permanent": self.is_permanent,
            "origin": self.origin.value,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RedirectResolution:
        first_hop = data.get("first_hop_code")
        return cls(
            final_url=str(data.get("final_url") or ""),
            status_code=int(data.get("status_code") or 0),
            status_message=str(data.get("status_message") or ""),
            first_hop_code=int(first_hop) if first_hop is not None else None,
            is_permanent=bool(data.get("is_permanent")),
            origin=Origin(data.get("origin") or Origin.HTTP.value),
        )


@dataclass(frozen=True)
class ScanState:
    active: bool = False
    total: int = 0
    processed: int = 0
    cursor_id: int = 0
    batch_size: int = 25
    progress_interval: int = 10
    token: str = ""
    started_at: datetime | None = None
    last_started: datetime | None = None
    last_finished: datetime | None = None


@dataclass
class BulkResolveState:
    token: str | None = None
    cursor_id: int = 0
    processed: int = 0
    total: int = 0
    batch_size: int = 8
    inter_step_delay_ms: int = 600
    last_step_seconds: float = 0.0
    step_budget: float = 12.0
    error_notified: bool = False
    done: bool = False
    aborted: bool = False
