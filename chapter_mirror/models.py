"""Data models for the chapter pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Status(str, Enum):
    QUEUED = "Queued"
    RUNNING = "Running"
    PAUSED = "Paused"
    STOPPED = "Stopped"
    COMPLETE = "Complete"


class NotificationKind(str, Enum):
    UPDATE = "Update"
    COMPLETE = "Complete"
    STOPPED = "Stopped"


@dataclass
class Job:
    job_id: int
    source_url: str
    name: str = ""
    status: Status = Status.QUEUED
    chapter_urls_cached: bool = False
    created_at: Optional[str] = None


@dataclass
class ChapterTask:
    url: str
    job_id: int
    order_id: int
    status: Status = Status.QUEUED
    # Filled after download
    local_file_path: Optional[str] = None
    redirected_url: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class Notification:
    job_id: int
    kind: NotificationKind
    task_url: Optional[str] = None


@dataclass
class LocalizedPage:
    html: str
    title: str
    assets: List[str] = field(default_factory=list)
