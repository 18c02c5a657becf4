"""
composewatch - Docker Compose project discovery and image update detection.

This package discovers compose files on disk, reconciles them with the
projects the Docker runtime reports, checks remote registries for newer
image digests and drives pull + recreate operations with streamed progress.

Features:
  - Depth and size bounded compose file scanning
  - Deterministic conflict resolution between files sharing a project name
  - Host path to local path mapping for bind-mounted compose roots
  - Multi-strategy matching of runtime projects to discovered files
  - OCI registry client with anonymous and bearer token access
  - TTL cache of update checks with a live key index
  - Per-service pull progress parsing from `docker compose pull` output

Main Components:
  - scanner.py: Filesystem scan for compose files
  - conflicts.py: Project name conflict resolution
  - paths.py: Runtime path to local path mapping
  - matcher.py: Unified project list
  - images.py: Image reference parsing
  - registry.py: Registry clients and factory
  - digests.py: Local/remote digest comparison
  - cache.py: Update check caches
  - progress.py: Pull progress parser
  - updater.py: Update orchestrator and periodic worker
  - runtime.py: Docker runtime adapter (docker SDK + compose CLI)
  - notify.py: Background event fan-out to the push transport
  - config.py: YAML configuration and app settings
  - app.py: Wiring of all components

Dependencies:
  - docker>=7.0.0
  - PyYAML
  - requests
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

__version__ = "0.1.0"


def get_log_path() -> str:
    """
    Get the log file path following XDG Base Directory spec.

    Returns XDG_DATA_HOME/composewatch/logs/composewatch.log with fallback to /tmp.
    Creates directory if it doesn't exist.
    """
    xdg_data_home = os.environ.get('XDG_DATA_HOME')
    if not xdg_data_home:
        xdg_data_home = Path.home() / '.local' / 'share'
    else:
        xdg_data_home = Path(xdg_data_home)

    log_dir = xdg_data_home / 'composewatch' / 'logs'

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return str(log_dir / 'composewatch.log')
    except (PermissionError, OSError):
        return '/tmp/composewatch.log'


def setup_logging(log_config: Optional["LogConfig"] = None) -> logging.Logger:
    """Attach a rotating file handler to the package logger.

    Safe to call more than once; a handler is only added the first time.
    """
    from .config import LogConfig

    log_config = log_config or LogConfig()
    logger = logging.getLogger('composewatch')
    logger.setLevel(getattr(logging, log_config.level.upper(), logging.INFO))

    if not logger.handlers:
        handler = RotatingFileHandler(
            log_config.file_path or get_log_path(),
            maxBytes=log_config.max_size_mb * 1024 * 1024,
            backupCount=log_config.backup_count,
        )
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        logger.addHandler(handler)

    return logger
