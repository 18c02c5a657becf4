"""
Data models for compose discovery, project matching and update checks.

This module defines the dataclasses passed between the scanner, matcher,
registry clients and update orchestrator. Used throughout the app for:
  - Type safety and IDE autocomplete
  - Clear separation of data (models) from logic (services)
  - Event payloads (every dataclass serializes with dataclasses.asdict)

Data Classes:
  - DiscoveredComposeFile: Compose file found by a scan pass (immutable)
  - ConflictError: Unresolved conflict between active files of one project
  - ComposeService / RuntimeProject / ContainerRecord: Runtime view
  - Project: Unified view of a runtime project and its compose file
  - ImageReference: Parsed image string
  - ImageUpdateStatus / ProjectUpdateCheck: Update check results
  - ServicePullProgress / UpdateProgressEvent: Pull/recreate progress
  - OperationResult / UpdateAllResult / CheckAllResult: Operation outcomes

Key Fields:
  - State enums are str subclasses so they serialize as plain strings
  - ImageUpdateStatus.update_available is derived from the two digests
  - ServicePullProgress is mutated in place while an update runs
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ProjectState(str, Enum):
    NOT_STARTED = "not-started"
    CREATED = "created"
    RUNNING = "running"
    RESTARTING = "restarting"
    PAUSED = "paused"
    STOPPED = "stopped"
    EXITED = "exited"
    DOWN = "down"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ProjectState":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class PullStatus(str, Enum):
    WAITING = "waiting"
    PULLING = "pulling"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    PULLED = "pulled"
    RECREATING = "recreating"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def rank(self) -> int:
        """Position in the pull/recreate lifecycle; error has no rank."""
        return _PULL_STATUS_ORDER.get(self, -1)

    @property
    def is_terminal(self) -> bool:
        return self in (PullStatus.COMPLETED, PullStatus.ERROR)


_PULL_STATUS_ORDER = {
    PullStatus.WAITING: 0,
    PullStatus.PULLING: 1,
    PullStatus.DOWNLOADING: 2,
    PullStatus.EXTRACTING: 3,
    PullStatus.PULLED: 4,
    PullStatus.RECREATING: 5,
    PullStatus.COMPLETED: 6,
}


UPDATE_POLICY_DISABLED = "disabled"


@dataclass(frozen=True)
class DiscoveredComposeFile:
    file_path: str
    project_name: str
    directory_path: str
    last_modified: datetime
    is_valid: bool = True
    is_disabled: bool = False
    services: Tuple[str, ...] = ()


@dataclass
class ConflictError:
    project_name: str
    conflicting_files: List[str]
    message: str
    resolution_steps: List[str] = field(default_factory=list)


@dataclass
class ComposeService:
    id: str
    name: str
    image: Optional[str] = None
    state: str = "unknown"
    status: str = ""
    ports: List[str] = field(default_factory=list)
    health: Optional[str] = None


@dataclass
class RuntimeProject:
    """A compose project as reported by the container runtime."""
    name: str
    path: str = ""
    state: ProjectState = ProjectState.UNKNOWN
    services: List[ComposeService] = field(default_factory=list)
    compose_files: List[str] = field(default_factory=list)
    status_text: str = ""


@dataclass
class Project:
    name: str
    path: str
    state: ProjectState
    services: List[ComposeService] = field(default_factory=list)
    compose_files: List[str] = field(default_factory=list)
    compose_file_path: Optional[str] = None
    has_compose_file: bool = False
    warning: Optional[str] = None
    available_actions: Dict[str, bool] = field(default_factory=dict)
    last_updated: Optional[datetime] = None


@dataclass
class ContainerRecord:
    id: str
    name: str
    image: str
    state: str = "unknown"
    status: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    ports: List[str] = field(default_factory=list)
    health: Optional[str] = None

    @property
    def project_name(self) -> Optional[str]:
        return self.labels.get("com.docker.compose.project") or None

    @property
    def service_name(self) -> Optional[str]:
        return self.labels.get("com.docker.compose.service") or None


@dataclass
class LocalImageInfo:
    image: str
    repo_digests: List[str] = field(default_factory=list)
    architecture: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class CommandResult:
    exit_code: int
    output: str = ""
    error: str = ""


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: str = "latest"
    digest: Optional[str] = None
    full_name: str = ""


def digests_differ(local_digest: Optional[str], remote_digest: Optional[str]) -> bool:
    """True only when both digests are known and differ, ignoring case."""
    if not local_digest or not remote_digest:
        return False
    return local_digest.lower() != remote_digest.lower()


@dataclass
class ImageUpdateStatus:
    service_name: str
    image: str
    local_digest: Optional[str] = None
    remote_digest: Optional[str] = None
    update_policy: Optional[str] = None
    error: Optional[str] = None
    host_architecture: Optional[str] = None
    local_created_at: Optional[datetime] = None
    remote_created_at: Optional[datetime] = None
    is_local_build: bool = False
    is_pinned_digest: bool = False

    @property
    def update_available(self) -> bool:
        return digests_differ(self.local_digest, self.remote_digest)

    @property
    def is_actionable(self) -> bool:
        """An available update whose policy does not suppress it."""
        return self.update_available and self.update_policy != UPDATE_POLICY_DISABLED


@dataclass
class ProjectUpdateCheck:
    project_name: str
    images: List[ImageUpdateStatus] = field(default_factory=list)
    last_checked: Optional[datetime] = None

    @property
    def has_updates(self) -> bool:
        return any(i.is_actionable for i in self.images)

    @property
    def services_with_updates(self) -> int:
        return sum(1 for i in self.images if i.is_actionable)


@dataclass
class ProjectUpdateSummary:
    project_name: str
    services_with_updates: int
    last_checked: Optional[datetime] = None


@dataclass
class CheckAllResult:
    projects: List[ProjectUpdateSummary]
    projects_checked: int
    projects_with_updates: int
    total_services_with_updates: int
    checked_at: datetime
    trigger: str = "manual"


@dataclass
class ContainerUpdateCheck:
    container_id: str
    container_name: str
    image: str
    update_available: bool = False
    is_compose_managed: bool = False
    project_name: Optional[str] = None
    local_digest: Optional[str] = None
    remote_digest: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ContainerUpdateSummary:
    container_id: str
    container_name: str
    image: str
    update_available: bool
    is_compose_managed: bool = False
    project_name: Optional[str] = None


@dataclass
class ContainerCheckAllResult:
    containers: List[ContainerUpdateSummary]
    containers_checked: int
    containers_with_updates: int
    checked_at: datetime


@dataclass
class ServicePullProgress:
    service_name: str
    status: PullStatus = PullStatus.WAITING
    progress_percent: int = 0
    message: Optional[str] = None


@dataclass
class UpdateProgressEvent:
    operation_id: str
    phase: str  # "pull" or "recreate"
    overall_progress: int
    services: List[ServicePullProgress]
    current_log: Optional[str] = None
    project_name: Optional[str] = None
    container_id: Optional[str] = None


@dataclass
class OperationResult:
    success: bool
    message: str
    operation_id: Optional[str] = None


@dataclass
class UpdateAllResult:
    operation_id: str
    projects_to_update: List[str]
    status: str
