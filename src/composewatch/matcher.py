"""
Unified project list: runtime projects joined with discovered compose files.

Runtime projects are matched to discovered files by, in order:
  1. Project name (case-insensitive)
  2. Runtime config file path mapped through PathMapper
  3. Same file name and same parent directory name

Discovered files that no runtime project claims are listed as not-started
projects. Available actions depend only on (has compose file, state).
"""

import logging
import os
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .conflicts import ConflictResolver
from .model import (
    ComposeService,
    DiscoveredComposeFile,
    Project,
    ProjectState,
    RuntimeProject,
)
from .paths import PathMapper, normalize_path
from .runtime import DockerRuntime
from .scanner import ComposeFileCache

logger = logging.getLogger(__name__)

NO_COMPOSE_FILE_WARNING = "No compose file found for this project"
DISABLED_WARNING = "Project is disabled (x-disabled: true)"

ProjectFilter = Callable[[Project], bool]


def compute_available_actions(has_compose_file: bool, state: ProjectState) -> Dict[str, bool]:
    has_containers = state != ProjectState.NOT_STARTED
    running = state == ProjectState.RUNNING
    return {
        "up": has_compose_file,
        "start": has_containers and not running,
        "stop": running,
        "down": has_containers,
        "restart": has_containers,
        "build": has_compose_file,
        "pull": has_compose_file,
        "recreate": has_compose_file,
        "config": has_compose_file,
        "validate": has_compose_file,
        "pause": running,
        "unpause": state == ProjectState.PAUSED,
        "logs": has_containers,
        "ps": has_containers,
    }


def synthetic_services(project_name: str, service_names, state: str) -> List[ComposeService]:
    return [
        ComposeService(id=f"{project_name}_{name}", name=name, image=None, state=state)
        for name in service_names
    ]


def _base_and_parent(path: str):
    normalized = normalize_path(path)
    return os.path.basename(normalized).lower(), os.path.basename(os.path.dirname(normalized)).lower()


class ProjectMatcher:
    def __init__(self, runtime: DockerRuntime, file_cache: ComposeFileCache,
                 path_mapper: PathMapper, resolver: Optional[ConflictResolver] = None):
        self.runtime = runtime
        self.file_cache = file_cache
        self.path_mapper = path_mapper
        self.resolver = resolver or ConflictResolver()

    def get_resolved_files(self) -> List[DiscoveredComposeFile]:
        resolved, _ = self.resolver.resolve(self.file_cache.get_or_scan())
        return resolved

    def get_unified_projects(self, project_filter: Optional[ProjectFilter] = None) -> List[Project]:
        """All runtime projects plus not-started ones; project_filter screens the latter."""
        runtime_projects = self.runtime.list_projects()
        files = self.get_resolved_files()
        logger.debug(f"Matching {len(runtime_projects)} runtime projects against {len(files)} compose files")

        by_name: Dict[str, DiscoveredComposeFile] = {f.project_name.lower(): f for f in files}
        by_path: Dict[str, DiscoveredComposeFile] = {normalize_path(f.file_path).lower(): f for f in files}

        projects: List[Project] = []
        for runtime_project in runtime_projects:
            matched = self._match(runtime_project, by_name, by_path, files)
            if matched is not None:
                projects.append(self._with_file(runtime_project, matched))
                by_name.pop(matched.project_name.lower(), None)
            else:
                projects.append(self._without_file(runtime_project))

        not_started = 0
        for compose_file in by_name.values():
            project = self._not_started(compose_file)
            if project_filter is not None and not project_filter(project):
                continue
            projects.append(project)
            not_started += 1

        logger.info(
            f"Unified project list complete: {len(projects)} projects "
            f"({len(runtime_projects)} from Docker, {not_started} not-started)"
        )
        return projects

    def find_project(self, project_name: str) -> Optional[Project]:
        for project in self.get_unified_projects():
            if project.name.lower() == project_name.lower():
                return project
        return None

    def _match(self, runtime_project: RuntimeProject, by_name: Dict[str, DiscoveredComposeFile],
               by_path: Dict[str, DiscoveredComposeFile],
               files: List[DiscoveredComposeFile]) -> Optional[DiscoveredComposeFile]:
        matched = by_name.get(runtime_project.name.lower())
        if matched is not None:
            logger.debug(f"Match found by project name for {runtime_project.name}: {matched.file_path}")
            return matched

        for runtime_path in runtime_project.compose_files:
            local_path = self.path_mapper.map_to_local(runtime_path)
            if local_path is None:
                continue
            matched = by_path.get(normalize_path(local_path).lower())
            if matched is not None:
                logger.debug(f"Match found by path for {runtime_project.name}: {runtime_path} -> {local_path}")
                return matched

        if runtime_project.compose_files:
            file_name, dir_name = _base_and_parent(runtime_project.compose_files[0])
            for candidate in files:
                if _base_and_parent(candidate.file_path) == (file_name, dir_name):
                    logger.debug(f"Match found by file and directory name for {runtime_project.name}: {candidate.file_path}")
                    return candidate
        return None

    def _with_file(self, runtime_project: RuntimeProject, compose_file: DiscoveredComposeFile) -> Project:
        services = runtime_project.services or synthetic_services(
            runtime_project.name, compose_file.services, "Unknown"
        )
        return Project(
            name=runtime_project.name,
            path=runtime_project.path or compose_file.directory_path,
            state=runtime_project.state,
            services=list(services),
            compose_files=list(runtime_project.compose_files),
            compose_file_path=compose_file.file_path,
            has_compose_file=True,
            available_actions=compute_available_actions(True, runtime_project.state),
            last_updated=datetime.now(timezone.utc),
        )

    def _without_file(self, runtime_project: RuntimeProject) -> Project:
        compose_file_path = None
        if runtime_project.compose_files:
            local_path = self.path_mapper.map_to_local(runtime_project.compose_files[0])
            if local_path is not None and os.path.isfile(local_path):
                compose_file_path = local_path
                logger.debug(f"Using mapped runtime path for {runtime_project.name}: {local_path}")

        has_file = compose_file_path is not None
        if not has_file:
            logger.warning(
                f"No compose file found for Docker project {runtime_project.name}. "
                f"Docker paths: [{', '.join(runtime_project.compose_files)}]"
            )
        return Project(
            name=runtime_project.name,
            path=runtime_project.path,
            state=runtime_project.state,
            services=list(runtime_project.services),
            compose_files=list(runtime_project.compose_files),
            compose_file_path=compose_file_path,
            has_compose_file=has_file,
            warning=None if has_file else NO_COMPOSE_FILE_WARNING,
            available_actions=compute_available_actions(has_file, runtime_project.state),
            last_updated=datetime.now(timezone.utc),
        )

    def _not_started(self, compose_file: DiscoveredComposeFile) -> Project:
        state = ProjectState.NOT_STARTED
        return Project(
            name=compose_file.project_name,
            path=compose_file.directory_path,
            state=state,
            services=synthetic_services(compose_file.project_name, compose_file.services, state.value),
            compose_files=[compose_file.file_path],
            compose_file_path=compose_file.file_path,
            has_compose_file=True,
            warning=DISABLED_WARNING if compose_file.is_disabled else None,
            available_actions=compute_available_actions(True, state),
        )
