"""Translate compose file paths reported by the runtime into local paths.

The runtime reports paths as seen on the Docker host; this process may
only see the same tree bind-mounted somewhere else (``root_path``).
"""

import logging
import os
from typing import Optional

from .config import DiscoveryConfig

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/")
    if len(normalized) > 1:
        normalized = normalized.rstrip("/")
    return normalized


class PathMapper:
    """Maps runtime-side paths onto ``root_path``."""

    def __init__(self, config: DiscoveryConfig):
        self.root_path = normalize_path(config.root_path)
        self.host_path_mapping = normalize_path(config.host_path_mapping) if config.host_path_mapping else None

    def _join_root(self, relative: str) -> str:
        relative = relative.lstrip("/")
        if not relative:
            return self.root_path
        return f"{self.root_path.rstrip('/')}/{relative}"

    def map_to_local(self, runtime_path: Optional[str]) -> Optional[str]:
        """Return a path this process can open, or None when it cannot be mapped."""
        if not runtime_path:
            return None

        path = normalize_path(runtime_path)

        if path.lower().startswith(self.root_path.lower()):
            return path

        if self.host_path_mapping and path.lower().startswith(self.host_path_mapping.lower()):
            mapped = self._join_root(path[len(self.host_path_mapping):])
            logger.debug(f"Mapped host path {runtime_path} -> {mapped}")
            return mapped

        # Suffix probing; can pick the wrong file when projects share a layout
        segments = [s for s in path.split("/") if s]
        for start in range(1, len(segments)):
            candidate = self._join_root("/".join(segments[start:]))
            if os.path.isfile(candidate):
                logger.debug(f"Mapped {runtime_path} -> {candidate} by suffix match")
                return candidate

        logger.debug(f"Could not map runtime path {runtime_path} under {self.root_path}")
        return None
