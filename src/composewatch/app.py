"""
Component wiring.

ComposeWatch builds the scanner, matcher, registry clients, caches,
notifier and orchestrator from one AppConfig, the way the pieces are
meant to be assembled in a long-running process:

    app = ComposeWatch(ConfigManager(), publish=transport.send)
    app.start()          # notifier + periodic checks
    app.matcher.get_unified_projects()
    app.orchestrator.update_project("web")
    app.stop()
"""

import logging
from typing import Any, Optional

import requests

from . import setup_logging
from .cache import CacheManager, ContainerUpdateCache, ProjectUpdateCache
from .config import ConfigManager, InMemorySettingsStore, SettingsStore
from .conflicts import ConflictResolver
from .digests import ImageDigestService
from .matcher import ProjectMatcher
from .notify import ProgressNotifier, Publisher
from .paths import PathMapper
from .registry import RegistryClientFactory
from .runtime import DockerRuntime
from .scanner import ComposeFileCache, ComposeFileScanner
from .updater import UpdateCheckWorker, UpdateOrchestrator

logger = logging.getLogger(__name__)


class ComposeWatch:
    def __init__(self, config_manager: Optional[ConfigManager] = None,
                 publish: Optional[Publisher] = None,
                 settings: Optional[SettingsStore] = None,
                 runtime: Optional[DockerRuntime] = None,
                 session: Optional[requests.Session] = None,
                 configure_logging: bool = False):
        self.config_manager = config_manager or ConfigManager()
        config = self.config_manager.get_config()
        if configure_logging:
            setup_logging(config.logging)

        self.settings = settings or InMemorySettingsStore()
        self.runtime = runtime or DockerRuntime()

        self.scanner = ComposeFileScanner(config.discovery)
        self.file_cache = ComposeFileCache(self.scanner)
        self.resolver = ConflictResolver()
        self.path_mapper = PathMapper(config.discovery)
        self.matcher = ProjectMatcher(self.runtime, self.file_cache, self.path_mapper, self.resolver)

        self.registry_factory = RegistryClientFactory(
            session=session, timeout=config.update_check.timeout_seconds
        )
        self.digest_service = ImageDigestService(self.runtime, self.registry_factory)

        self.cache_store = CacheManager()
        self.project_cache = ProjectUpdateCache(self.cache_store, config.update_check.cache_duration_minutes)
        self.container_cache = ContainerUpdateCache(self.cache_store, config.update_check.cache_duration_minutes)

        self.notifier = ProgressNotifier(publish)
        self.orchestrator = UpdateOrchestrator(
            config.update_check,
            self.matcher,
            self.runtime,
            self.digest_service,
            self.project_cache,
            self.container_cache,
            notifier=self.notifier,
        )
        self.worker = UpdateCheckWorker(self.orchestrator, self.config_manager, self.settings)

    def start(self) -> None:
        self.notifier.start()
        self.worker.start()
        logger.info("composewatch started")

    def stop(self) -> None:
        self.worker.stop()
        self.notifier.stop()
        logger.info("composewatch stopped")

    def get_conflicts(self) -> Any:
        """Conflict reports from the latest resolution pass."""
        return self.resolver.get_conflict_errors()
