"""Local vs remote image digest comparison."""

import logging
import threading
from typing import Optional, Tuple

from .errors import OperationCancelled
from .images import parse_image_reference
from .model import ImageUpdateStatus
from .registry import RegistryClientFactory
from .runtime import DockerRuntime

logger = logging.getLogger(__name__)


class LocalDigest:
    """Outcome of a local digest lookup."""

    def __init__(self, digest: Optional[str] = None, error: Optional[str] = None,
                 is_local_build: bool = False, is_pinned: bool = False, created_at=None):
        self.digest = digest
        self.error = error
        self.is_local_build = is_local_build
        self.is_pinned = is_pinned
        self.created_at = created_at


class ImageDigestService:
    def __init__(self, runtime: DockerRuntime, registry_factory: RegistryClientFactory):
        self.runtime = runtime
        self.registry_factory = registry_factory

    def get_local_digest(self, image: str) -> LocalDigest:
        if "@" in image:
            return LocalDigest(digest=image.split("@", 1)[1], is_pinned=True)

        info = self.runtime.get_local_image(image)
        if info is None:
            return LocalDigest(error="Image not found locally")
        if not info.repo_digests:
            return LocalDigest(is_local_build=True, created_at=info.created_at)

        repo_digest = info.repo_digests[0]
        digest = repo_digest.split("@", 1)[1] if "@" in repo_digest else None
        return LocalDigest(digest=digest, created_at=info.created_at)

    def get_remote_digest(self, image: str, architecture: str,
                          cancel_event: Optional[threading.Event] = None) -> Tuple[Optional[str], Optional[object]]:
        reference = parse_image_reference(image)
        client = self.registry_factory.get_client(reference.registry)
        return client.get_manifest_digest_and_created_at(
            reference.registry, reference.repository, reference.tag, architecture, cancel_event
        )

    def check_image_update(self, image: str, service_name: str,
                           cancel_event: Optional[threading.Event] = None) -> ImageUpdateStatus:
        """Full status for one image; failures end up in the `error` field."""
        status = ImageUpdateStatus(service_name=service_name, image=image)
        try:
            local = self.get_local_digest(image)
            status.local_digest = local.digest
            status.local_created_at = local.created_at
            status.is_local_build = local.is_local_build
            status.is_pinned_digest = local.is_pinned

            if local.error:
                status.error = local.error
                return status
            if local.is_pinned or local.is_local_build:
                logger.debug(f"Skipping remote check for {image} (pinned={local.is_pinned}, local build={local.is_local_build})")
                return status

            architecture = self.runtime.get_host_architecture()
            status.host_architecture = architecture
            remote_digest, remote_created = self.get_remote_digest(image, architecture, cancel_event)
            status.remote_digest = remote_digest
            status.remote_created_at = remote_created
            if remote_digest is None:
                status.error = "Could not retrieve remote digest"
        except OperationCancelled:
            raise
        except Exception as e:
            logger.error(f"Update check failed for {image}: {e}", exc_info=True)
            status.error = str(e)
            status.remote_digest = None
        return status
