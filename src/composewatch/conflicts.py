"""
Conflict resolution between compose files sharing a project name.

Files are grouped by project name. A group resolves when exactly one of
its files is active (not marked `x-disabled: true`); a group with several
active files is reported as a ConflictError and contributes nothing to the
resolved list. Groups are sorted by file path so the outcome only depends
on the set of files, not on scan order.
"""

import logging
from collections import OrderedDict
from typing import Dict, List, Tuple

from .model import ConflictError, DiscoveredComposeFile

logger = logging.getLogger(__name__)


def conflict_error_for(project_name: str, files: List[DiscoveredComposeFile]) -> ConflictError:
    return ConflictError(
        project_name=project_name,
        conflicting_files=[f.file_path for f in files],
        message=(
            f"Multiple active compose files found for project '{project_name}'. "
            f"Mark unused files with 'x-disabled: true'."
        ),
        resolution_steps=[
            "Open each conflicting compose file",
            "Add 'x-disabled: true' at the root level of files you want to ignore",
            f"Keep only one file active for project '{project_name}'",
            "Wait for the next scan cycle or restart the application",
        ],
    )


class ConflictResolver:
    """Picks at most one compose file per project name."""

    def __init__(self):
        self._conflicts: List[ConflictError] = []

    def resolve(self, files: List[DiscoveredComposeFile]) -> Tuple[List[DiscoveredComposeFile], List[ConflictError]]:
        """Return (resolved files, conflict reports) for a full scan result."""
        groups: Dict[str, List[DiscoveredComposeFile]] = OrderedDict()
        for compose_file in files:
            groups.setdefault(compose_file.project_name, []).append(compose_file)

        resolved: List[DiscoveredComposeFile] = []
        conflicts: List[ConflictError] = []

        for project_name, group in groups.items():
            if len(group) == 1:
                resolved.append(group[0])
                continue

            active = sorted((f for f in group if not f.is_disabled), key=lambda f: f.file_path)
            disabled = sorted((f for f in group if f.is_disabled), key=lambda f: f.file_path)

            if len(active) == 1:
                logger.info(
                    f"Project '{project_name}': using {active[0].file_path} "
                    f"({len(disabled)} disabled file(s) ignored)"
                )
                resolved.append(active[0])
            elif not active:
                logger.warning(
                    f"Project '{project_name}': all {len(disabled)} compose files are disabled, "
                    f"project unavailable"
                )
            else:
                error = conflict_error_for(project_name, active)
                logger.error(f"{error.message} Files: {', '.join(error.conflicting_files)}")
                conflicts.append(error)

        self._conflicts = conflicts
        return resolved, conflicts

    def get_conflict_errors(self) -> List[ConflictError]:
        """Conflicts reported by the most recent resolve() call."""
        return list(self._conflicts)
