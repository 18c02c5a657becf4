"""
Filesystem scanner for Docker Compose files.

Walks the configured root with os.walk, pruning excluded dependency/build
directories and everything below the depth limit, and returns one
DiscoveredComposeFile per well-formed compose document.

A file is kept only if it:
  1. has a .yml/.yaml extension
  2. is no larger than max_file_size_kb
  3. parses as a YAML mapping
  4. declares a non-empty `services` mapping

Oversized, unreadable and malformed files are logged and skipped; a scan
never raises because of a single bad file or directory.
"""

import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import yaml

from .config import DiscoveryConfig
from .model import DiscoveredComposeFile

logger = logging.getLogger(__name__)

COMPOSE_EXTENSIONS = (".yml", ".yaml")

# Base names (without extension) that take the directory name as project name
STANDARD_COMPOSE_NAMES = {"docker-compose", "compose"}

EXCLUDED_DIRECTORIES = {
    "node_modules",
    ".git",
    ".svn",
    ".hg",
    "vendor",
    "__pycache__",
    ".venv",
    "venv",
    "bin",
    "obj",
    ".vs",
    ".idea",
    "packages",
    "target",
    "dist",
    "build",
    ".next",
    ".nuxt",
    "coverage",
    ".cache",
}

DISABLED_KEY = "x-disabled"


def derive_project_name(document: Dict[str, Any], file_path: str) -> str:
    """Resolve project name from the `name:` key, else from directory and file name."""
    declared = document.get("name")
    if declared is not None and str(declared).strip():
        return str(declared).strip()
    return default_project_name(file_path)


def default_project_name(file_path: str) -> str:
    directory_name = os.path.basename(os.path.dirname(file_path))
    base_name = os.path.splitext(os.path.basename(file_path))[0]

    if not directory_name:
        return base_name

    # Several non-standard files in one directory must not collide
    if (base_name.lower() not in STANDARD_COMPOSE_NAMES
            and base_name.lower() != directory_name.lower()):
        return f"{directory_name}-{base_name}"
    return directory_name


def is_disabled(document: Dict[str, Any]) -> bool:
    value = document.get(DISABLED_KEY)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class ComposeFileScanner:
    """Recursive compose file scanner bounded by depth and file size."""

    def __init__(self, config: DiscoveryConfig, excluded_directories: Optional[set] = None):
        self.config = config
        excluded = excluded_directories if excluded_directories is not None else EXCLUDED_DIRECTORIES
        self.excluded_directories = {d.lower() for d in excluded}

    def scan(self, root_path: Optional[str] = None) -> List[DiscoveredComposeFile]:
        """Scan the root path recursively and return all valid compose files."""
        root = os.path.abspath(root_path or self.config.root_path)
        started = time.monotonic()
        logger.info(f"Starting compose file scan in root path: {root}")

        if not os.path.isdir(root):
            logger.warning(f"Compose root path does not exist or is not a directory: {root}")
            return []

        discovered: List[DiscoveredComposeFile] = []
        max_depth = self.config.scan_depth_limit

        for dirpath, dirnames, filenames in os.walk(root, onerror=self._on_walk_error):
            rel = os.path.relpath(dirpath, root)
            depth = 0 if rel == "." else rel.count(os.sep) + 1

            if depth >= max_depth:
                if dirnames:
                    logger.debug(f"Maximum scan depth {max_depth} reached at path: {dirpath}")
                dirnames[:] = []
            else:
                kept = []
                for d in dirnames:
                    if d.lower() in self.excluded_directories:
                        logger.debug(f"Skipping excluded directory: {os.path.join(dirpath, d)}")
                    else:
                        kept.append(d)
                # Sorted walk keeps scan output stable across runs
                dirnames[:] = sorted(kept)

            for file_name in sorted(filenames):
                if not file_name.lower().endswith(COMPOSE_EXTENSIONS):
                    continue
                compose_file = self.parse_compose_file(os.path.join(dirpath, file_name))
                if compose_file is not None:
                    discovered.append(compose_file)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Compose file scan completed in {elapsed_ms}ms. Valid files: {len(discovered)}")
        return discovered

    def parse_compose_file(self, file_path: str) -> Optional[DiscoveredComposeFile]:
        """Validate and parse a single file; None when it is not a usable compose file."""
        try:
            stat = os.stat(file_path)
            max_size_bytes = self.config.max_file_size_kb * 1024
            if stat.st_size > max_size_bytes:
                logger.warning(
                    f"Compose file exceeds size limit: {file_path} "
                    f"({stat.st_size // 1024} KB > {self.config.max_file_size_kb} KB allowed)"
                )
                return None

            with open(file_path, "r", encoding="utf-8") as f:
                document = yaml.safe_load(f)

            if not isinstance(document, dict) or "services" not in document:
                logger.debug(f"File {file_path} is not a valid compose file (no 'services' key)")
                return None

            services = document.get("services")
            if not isinstance(services, dict) or not services:
                logger.debug(f"File {file_path} has no services defined")
                return None

            return DiscoveredComposeFile(
                file_path=file_path,
                project_name=derive_project_name(document, file_path),
                directory_path=os.path.dirname(file_path),
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                is_valid=True,
                is_disabled=is_disabled(document),
                services=tuple(str(name) for name in services.keys() if name is not None),
            )
        except yaml.YAMLError as e:
            logger.debug(f"File {file_path} is not valid YAML: {e}")
            return None
        except MemoryError:
            logger.error(f"Out of memory while parsing {file_path}. File may be corrupted or malicious.")
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read compose file {file_path}: {e}")
            return None

    @staticmethod
    def _on_walk_error(error: OSError) -> None:
        if isinstance(error, PermissionError):
            logger.warning(f"Access denied to directory: {error.filename}")
        else:
            logger.error(f"Error scanning directory {error.filename}: {error}")


class ComposeFileCache:
    """Holds the last scan result for a short TTL; concurrent cold reads share one scan."""

    def __init__(self, scanner: ComposeFileScanner, ttl_seconds: Optional[float] = None):
        self.scanner = scanner
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else scanner.config.cache_duration_seconds
        self._files: Optional[List[DiscoveredComposeFile]] = None
        self._scanned_at = 0.0
        self._lock = threading.Lock()

    def _fresh(self) -> Optional[List[DiscoveredComposeFile]]:
        files = self._files
        if files is not None and time.monotonic() - self._scanned_at <= self.ttl_seconds:
            return files
        return None

    def get_or_scan(self) -> List[DiscoveredComposeFile]:
        files = self._fresh()
        if files is not None:
            return list(files)

        with self._lock:
            files = self._fresh()
            if files is not None:
                return list(files)
            files = self.scanner.scan()
            self._files = files
            self._scanned_at = time.monotonic()
            return list(files)

    def invalidate(self) -> None:
        with self._lock:
            self._files = None
            self._scanned_at = 0.0
        logger.debug("Compose file cache invalidated")
