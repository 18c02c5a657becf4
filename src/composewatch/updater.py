"""
Update orchestration: registry checks, pull + recreate, periodic checks.

This module ties discovery, the registry clients and the runtime together.

Features:
- Per-project update checks with cache, lock and re-check so a cold cache
  only triggers one scan per project at a time
- Bounded concurrency for the per-image registry lookups of one project
- Pull then recreate, with per-service progress broadcast at most every
  100 ms unless a service changes status
- Update-all in the background, one project at a time
- Container level checks reusing project results where possible
- Periodic check worker

Key Classes:
  - UpdateGuard: Reject-if-busy flag for update operations
  - UpdateOrchestrator: Check and update entry points
  - UpdateCheckWorker: Daemon thread running periodic checks

Error Handling:
  - Registry/parse failures -> error field on the image status
  - Pull/recreate failure -> OperationResult(success=False), services errored
  - Cancellation -> OperationCancelled propagates, nothing is rolled back
"""

import dataclasses
import logging
import re
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

import yaml

from .cache import ContainerUpdateCache, ProjectUpdateCache
from .config import ConfigManager, SettingsStore, UpdateCheckConfig
from .digests import ImageDigestService
from .errors import OperationCancelled, UpdateInProgressError, check_cancelled
from .matcher import ProjectMatcher
from .model import (
    CheckAllResult,
    ContainerCheckAllResult,
    ContainerRecord,
    ContainerUpdateCheck,
    ContainerUpdateSummary,
    ImageUpdateStatus,
    OperationResult,
    ProjectUpdateCheck,
    ProjectUpdateSummary,
    PullStatus,
    UpdateAllResult,
    UpdateProgressEvent,
)
from .notify import (
    CONTAINER_UPDATES_CHECKED,
    PROJECT_UPDATES_CHECKED,
    UPDATE_PROGRESS,
    ProgressNotifier,
)
from .progress import PullProgressParser, phase_progress
from .runtime import DockerRuntime

logger = logging.getLogger(__name__)

PROGRESS_THROTTLE_SECONDS = 0.1
LOCK_POLL_SECONDS = 0.1
UPDATE_POLICY_KEY = "x-update-policy"

ServiceImage = Tuple[str, Optional[str], Optional[str]]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_image_excluded(image: str, patterns: List[str]) -> bool:
    """Glob match where `*` is the only wildcard, ignoring case."""
    for pattern in patterns or []:
        if not pattern:
            continue
        regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
        if re.match(regex, image, re.IGNORECASE):
            return True
    return False


def read_service_images(compose_file: str) -> List[ServiceImage]:
    """(service, image or None, update policy) per service, in file order."""
    try:
        with open(compose_file, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        logger.error(f"Could not read compose file {compose_file}: {e}")
        return []

    if not isinstance(document, dict) or not isinstance(document.get("services"), dict):
        return []

    root_policy = document.get(UPDATE_POLICY_KEY)
    entries: List[ServiceImage] = []
    for name, service in document["services"].items():
        service = service if isinstance(service, dict) else {}
        image = service.get("image")
        policy = service.get(UPDATE_POLICY_KEY)
        if policy is None:
            policy = root_policy
        entries.append((
            str(name),
            str(image) if image else None,
            str(policy).strip().lower() if policy is not None else None,
        ))
    return entries


def acquire_with_cancel(lock: threading.Lock, cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is None:
        lock.acquire()
        return
    while not lock.acquire(timeout=LOCK_POLL_SECONDS):
        check_cancelled(cancel_event)
    if cancel_event.is_set():
        lock.release()
        check_cancelled(cancel_event)


class UpdateGuard:
    """At most one update operation at a time; a busy guard rejects, it does not queue."""

    def __init__(self):
        self._lock = threading.Lock()
        self._running = False
        self.operation_id: Optional[str] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def try_acquire(self, operation_id: Optional[str] = None) -> bool:
        with self._lock:
            if self._running:
                return False
            self._running = True
            self.operation_id = operation_id
            return True

    def release(self) -> None:
        with self._lock:
            self._running = False
            self.operation_id = None

    @contextmanager
    def hold(self, operation_id: Optional[str] = None) -> Iterator[None]:
        if not self.try_acquire(operation_id):
            raise UpdateInProgressError("An update operation is already in progress")
        try:
            yield
        finally:
            self.release()


class ProgressEmitter:
    """Throttled UpdateProgress events for one operation."""

    def __init__(self, notifier: Optional[ProgressNotifier], operation_id: str,
                 project_name: Optional[str] = None, container_id: Optional[str] = None,
                 interval: float = PROGRESS_THROTTLE_SECONDS, clock=time.monotonic):
        self.notifier = notifier
        self.operation_id = operation_id
        self.project_name = project_name
        self.container_id = container_id
        self.interval = interval
        self._clock = clock
        self._last_emit: Optional[float] = None
        self._last_statuses: Optional[Tuple] = None
        self.emitted = 0

    def emit(self, phase: str, parser: PullProgressParser, log_line: Optional[str] = None,
             force: bool = False) -> bool:
        statuses = tuple(p.status for p in parser.progress_list())
        status_changed = statuses != self._last_statuses
        now = self._clock()
        if not (force or status_changed or self._last_emit is None
                or now - self._last_emit >= self.interval):
            return False

        self._last_emit = now
        self._last_statuses = statuses
        self.emitted += 1
        if self.notifier is not None:
            event = UpdateProgressEvent(
                operation_id=self.operation_id,
                phase=phase,
                overall_progress=phase_progress(phase, parser.overall_progress()),
                services=[dataclasses.replace(p) for p in parser.progress_list()],
                current_log=log_line,
                project_name=self.project_name,
                container_id=self.container_id,
            )
            self.notifier.notify(UPDATE_PROGRESS, event)
        return True


class UpdateOrchestrator:
    def __init__(self, config: UpdateCheckConfig, matcher: ProjectMatcher, runtime: DockerRuntime,
                 digest_service: ImageDigestService, project_cache: ProjectUpdateCache,
                 container_cache: ContainerUpdateCache,
                 notifier: Optional[ProgressNotifier] = None,
                 guard: Optional[UpdateGuard] = None):
        self.config = config
        self.matcher = matcher
        self.runtime = runtime
        self.digest_service = digest_service
        self.project_cache = project_cache
        self.container_cache = container_cache
        self.notifier = notifier
        self.guard = guard or UpdateGuard()
        self._check_lock = threading.Lock()
        self._background: Optional[threading.Thread] = None

    # --- CHECKS ---

    def check_project_updates(self, project_name: str, cancel_event: Optional[threading.Event] = None,
                              compose_file_path: Optional[str] = None) -> ProjectUpdateCheck:
        """Update status of every image in a project, served from cache when fresh."""
        cached = self.project_cache.get(project_name)
        if cached is not None:
            logger.debug(f"Update check cache hit for {project_name}")
            return cached

        acquire_with_cancel(self._check_lock, cancel_event)
        try:
            cached = self.project_cache.get(project_name)
            if cached is not None:
                return cached

            if compose_file_path is None:
                project = self.matcher.find_project(project_name)
                compose_file_path = project.compose_file_path if project is not None else None
            if not compose_file_path:
                logger.warning(f"No compose file found for project {project_name}, nothing to check")
                return ProjectUpdateCheck(project_name=project_name, images=[], last_checked=None)

            check = self._scan_project(project_name, compose_file_path, cancel_event)
            self.project_cache.set(project_name, check)
            logger.info(
                f"Checked {len(check.images)} images for {project_name}: "
                f"{check.services_with_updates} with updates"
            )
            return check
        finally:
            self._check_lock.release()

    def _scan_project(self, project_name: str, compose_file_path: str,
                      cancel_event: Optional[threading.Event]) -> ProjectUpdateCheck:
        to_check: List[Tuple[str, str, Optional[str]]] = []
        for service_name, image, policy in read_service_images(compose_file_path):
            if image is None:
                logger.debug(f"Service {service_name} in {project_name} is build-only, skipping")
                continue
            if is_image_excluded(image, self.config.excluded_images):
                logger.debug(f"Image {image} is excluded from update checks")
                continue
            to_check.append((service_name, image, policy))

        def check_one(entry: Tuple[str, str, Optional[str]]) -> ImageUpdateStatus:
            service_name, image, policy = entry
            check_cancelled(cancel_event)
            status = self.digest_service.check_image_update(image, service_name, cancel_event)
            status.update_policy = policy
            return status

        images: List[ImageUpdateStatus] = []
        if to_check:
            workers = max(1, min(self.config.max_concurrent_checks, len(to_check)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="composewatch-check") as pool:
                images = list(pool.map(check_one, to_check))

        return ProjectUpdateCheck(project_name=project_name, images=images, last_checked=now_utc())

    def check_all_projects_updates(self, cancel_event: Optional[threading.Event] = None,
                                   trigger: str = "manual") -> CheckAllResult:
        projects = [
            p for p in self.matcher.get_unified_projects()
            if p.has_compose_file and p.compose_file_path
            and p.name.lower() not in {e.lower() for e in self.config.excluded_projects}
        ]
        logger.info(f"Checking updates for {len(projects)} projects (trigger: {trigger})")

        summaries: List[ProjectUpdateSummary] = []
        for project in projects:
            check_cancelled(cancel_event)
            try:
                check = self.check_project_updates(project.name, cancel_event, project.compose_file_path)
                summaries.append(ProjectUpdateSummary(
                    project_name=project.name,
                    services_with_updates=check.services_with_updates,
                    last_checked=check.last_checked,
                ))
            except OperationCancelled:
                raise
            except Exception as e:
                logger.error(f"Update check failed for project {project.name}: {e}", exc_info=True)
                summaries.append(ProjectUpdateSummary(project_name=project.name, services_with_updates=0))

        result = CheckAllResult(
            projects=summaries,
            projects_checked=len(summaries),
            projects_with_updates=sum(1 for s in summaries if s.services_with_updates > 0),
            total_services_with_updates=sum(s.services_with_updates for s in summaries),
            checked_at=now_utc(),
            trigger=trigger,
        )
        if self.notifier is not None:
            self.notifier.notify(PROJECT_UPDATES_CHECKED, result)
        return result

    def get_global_update_status(self) -> List[ProjectUpdateSummary]:
        return self.project_cache.get_summaries()

    def clear_cache(self) -> None:
        self.project_cache.invalidate_all()
        self.container_cache.invalidate_all()
        logger.info("Update check caches cleared")

    # --- CONTAINER CHECKS ---

    def check_container_update(self, container_id: str,
                               cancel_event: Optional[threading.Event] = None) -> ContainerUpdateCheck:
        cached = self.container_cache.get(container_id)
        if cached is not None:
            return cached

        record = self.runtime.get_container(container_id)
        if record is None:
            return ContainerUpdateCheck(container_id=container_id, container_name="", image="",
                                        error="Container not found")
        return self._check_container(record, cancel_event)

    def _check_container(self, record: ContainerRecord,
                         cancel_event: Optional[threading.Event]) -> ContainerUpdateCheck:
        check_cancelled(cancel_event)
        status = None
        project_name = record.project_name
        if project_name:
            project_check = self.project_cache.get(project_name)
            if project_check is not None:
                status = next((i for i in project_check.images if i.service_name == record.service_name), None)
        if status is None:
            status = self.digest_service.check_image_update(
                record.image, record.service_name or record.name, cancel_event
            )

        result = ContainerUpdateCheck(
            container_id=record.id,
            container_name=record.name,
            image=record.image,
            update_available=status.is_actionable,
            is_compose_managed=project_name is not None,
            project_name=project_name,
            local_digest=status.local_digest,
            remote_digest=status.remote_digest,
            error=status.error,
        )
        self.container_cache.set(record.id, result)
        return result

    def check_all_container_updates(self, cancel_event: Optional[threading.Event] = None) -> ContainerCheckAllResult:
        summaries: List[ContainerUpdateSummary] = []
        for record in self.runtime.list_containers():
            check_cancelled(cancel_event)
            try:
                check = self.container_cache.get(record.id) or self._check_container(record, cancel_event)
            except OperationCancelled:
                raise
            except Exception as e:
                logger.error(f"Update check failed for container {record.name}: {e}", exc_info=True)
                continue
            summaries.append(ContainerUpdateSummary(
                container_id=check.container_id,
                container_name=check.container_name,
                image=check.image,
                update_available=check.update_available,
                is_compose_managed=check.is_compose_managed,
                project_name=check.project_name,
            ))

        result = ContainerCheckAllResult(
            containers=summaries,
            containers_checked=len(summaries),
            containers_with_updates=sum(1 for s in summaries if s.update_available),
            checked_at=now_utc(),
        )
        if self.notifier is not None:
            self.notifier.notify(CONTAINER_UPDATES_CHECKED, result)
        return result

    def get_cached_container_update_status(self) -> List[ContainerUpdateSummary]:
        return self.container_cache.get_summaries()

    # --- UPDATES ---

    def update_project(self, project_name: str, services: Optional[List[str]] = None,
                       update_all: bool = False, restart_full_project: bool = False,
                       cancel_event: Optional[threading.Event] = None,
                       operation_id: Optional[str] = None) -> OperationResult:
        """Pull and recreate the outdated (or given) services of a project."""
        operation_id = operation_id or uuid.uuid4().hex
        try:
            with self.guard.hold(operation_id):
                return self._update_project(
                    project_name, services, update_all, restart_full_project, cancel_event, operation_id
                )
        except UpdateInProgressError as e:
            logger.warning(f"Rejected update of {project_name}: {e}")
            return OperationResult(success=False, message=str(e))

    def _update_project(self, project_name: str, services: Optional[List[str]], update_all: bool,
                        restart_full_project: bool, cancel_event: Optional[threading.Event],
                        operation_id: str) -> OperationResult:
        project = self.matcher.find_project(project_name)
        if project is None:
            return OperationResult(False, f"Project '{project_name}' not found", operation_id)
        if not project.compose_file_path:
            return OperationResult(False, f"No compose file found for project '{project_name}'", operation_id)
        compose_file = project.compose_file_path

        # update_all replaces any explicit list with every actionable service
        if update_all or not services:
            check = self.check_project_updates(project_name, cancel_event, compose_file)
            services = [i.service_name for i in check.images if i.is_actionable]
        if not services:
            return OperationResult(True, "No services need updating", operation_id)

        logger.info(f"Updating {project_name} services: {', '.join(services)} (operation {operation_id})")
        parser = PullProgressParser(services)
        emitter = ProgressEmitter(self.notifier, operation_id, project_name=project_name)
        emitter.emit("pull", parser, force=True)

        def on_pull_line(line: str) -> None:
            parser.parse_line(line)
            emitter.emit("pull", parser, line)

        pull = self.runtime.stream_compose(compose_file, ["pull"] + list(services), on_pull_line, cancel_event)
        if pull.exit_code != 0:
            parser.mark_all(PullStatus.ERROR, 0, "Pull failed", only_pending=True)
            emitter.emit("pull", parser, pull.error, force=True)
            logger.error(f"Pull failed for {project_name}: {pull.error}")
            return OperationResult(False, f"Failed to pull images: {pull.error}", operation_id)

        parser.mark_all(PullStatus.PULLED, 100)
        emitter.emit("pull", parser, force=True)
        parser.mark_all(PullStatus.RECREATING, 0)
        emitter.emit("recreate", parser, force=True)

        def on_recreate_line(line: str) -> None:
            emitter.emit("recreate", parser, line)

        up_args = ["up", "-d", "--force-recreate"]
        if not restart_full_project:
            up_args += list(services)
        recreate = self.runtime.stream_compose(compose_file, up_args, on_recreate_line, cancel_event)
        if recreate.exit_code != 0:
            parser.mark_all(PullStatus.ERROR, 0, "Recreate failed")
            emitter.emit("recreate", parser, recreate.error, force=True)
            logger.error(f"Recreate failed for {project_name}: {recreate.error}")
            return OperationResult(False, f"Failed to recreate services: {recreate.error}", operation_id)

        parser.mark_all(PullStatus.COMPLETED, 100)
        emitter.emit("recreate", parser, force=True)
        self.project_cache.invalidate(project_name)
        logger.info(f"Successfully updated {len(services)} services in {project_name}")
        return OperationResult(True, f"Successfully updated {len(services)} services", operation_id)

    def update_all_projects(self, cancel_event: Optional[threading.Event] = None) -> UpdateAllResult:
        """Start background updates of every cached project with outdated services.

        The update guard is held for the whole batch, so no other update
        can start between two projects.
        """
        operation_id = uuid.uuid4().hex
        if not self.guard.try_acquire(operation_id):
            return UpdateAllResult(operation_id, [], "already_running")

        names = [s.project_name for s in self.project_cache.get_summaries() if s.services_with_updates > 0]
        if not names:
            self.guard.release()
            return UpdateAllResult(operation_id, [], "nothing_to_update")

        def run() -> None:
            try:
                for name in names:
                    if cancel_event is not None and cancel_event.is_set():
                        logger.info(f"Update-all {operation_id} cancelled")
                        return
                    try:
                        result = self._update_project(name, None, False, False, cancel_event, uuid.uuid4().hex)
                        if not result.success:
                            logger.warning(f"Update-all: {name} failed: {result.message}")
                    except OperationCancelled:
                        logger.info(f"Update-all {operation_id} cancelled during {name}")
                        return
                    except Exception as e:
                        logger.error(f"Update-all: {name} raised {e}", exc_info=True)
            finally:
                self.guard.release()

        try:
            self._background = threading.Thread(target=run, name=f"composewatch-update-all-{operation_id[:8]}", daemon=True)
            self._background.start()
        except RuntimeError:
            self.guard.release()
            raise
        return UpdateAllResult(operation_id, names, "started")

    def wait_for_background(self, timeout: Optional[float] = None) -> None:
        if self._background is not None:
            self._background.join(timeout)


class UpdateCheckWorker:
    """Runs project then container update checks on an interval."""

    def __init__(self, orchestrator: UpdateOrchestrator, config_manager: ConfigManager,
                 settings: Optional[SettingsStore] = None):
        self.orchestrator = orchestrator
        self.config_manager = config_manager
        self.settings = settings
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if not self.config_manager.get_config().update_check.enabled:
            logger.info("Periodic update checks are disabled")
            return False
        if self.running:
            return True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="composewatch-update-checks", daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def run_once(self) -> None:
        try:
            self.orchestrator.check_all_projects_updates(self._stop_event, trigger="periodic")
            self.orchestrator.check_all_container_updates(self._stop_event)
        except OperationCancelled:
            logger.info("Periodic update check cancelled")
        except Exception as e:
            logger.error(f"Periodic update check failed: {e}", exc_info=True)

    def _run(self) -> None:
        delay = self.config_manager.get_config().update_check.startup_delay_seconds
        if self._stop_event.wait(delay):
            return
        while not self._stop_event.is_set():
            self.run_once()
            interval = self.config_manager.get_check_interval_minutes(self.settings)
            logger.debug(f"Next update check in {interval} minutes")
            if self._stop_event.wait(interval * 60):
                return
