"""
Remote registry clients for manifest digest lookups.

Every client answers one question: what digest does `repository:tag` point
to right now, and when was the matching image built?

Flow for one lookup:
  1. GET /v2/<repo>/manifests/<tag> with the manifest list + single
     manifest media types in Accept
  2. On 401, parse the `WWW-Authenticate: Bearer realm=..,service=..,scope=..`
     challenge, fetch a token from the realm and retry
  3. The comparison digest is the Docker-Content-Digest response header
  4. For a manifest list, pick the entry for the host architecture
     (linux first) and fetch that manifest
  5. Fetch the config blob and read `created`

Any network, auth or parse failure yields (None, None). Only cancellation
escapes to the caller.
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import OperationCancelled, RuntimeUnavailableError, check_cancelled

logger = logging.getLogger(__name__)

DEFAULT_AUTH_URL = "https://auth.docker.io/token"
DOCKER_HUB_REGISTRY_URL = "https://registry-1.docker.io/v2"
DOCKER_HUB_SERVICE = "registry.docker.io"
GHCR_AUTH_URL = "https://ghcr.io/token"
GHCR_REGISTRY_URL = "https://ghcr.io/v2"
REQUEST_TIMEOUT = 30

MANIFEST_LIST_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
)
MANIFEST_TYPES = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
)
MANIFEST_ACCEPT_HEADER = ",".join(MANIFEST_LIST_TYPES + MANIFEST_TYPES)

CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

DigestResult = Tuple[Optional[str], Optional[datetime]]


def parse_bearer_challenge(header: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse `Bearer realm="..",service="..",scope=".."` into a dict; None if not Bearer."""
    if not header or not header.strip().lower().startswith("bearer "):
        return None
    params = dict(CHALLENGE_PARAM.findall(header.strip()[len("bearer "):]))
    if "realm" not in params:
        return None
    return params


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse RFC 3339 timestamps, including nanosecond precision ones."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    # fromisoformat accepts at most microseconds
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value}")
        return None


def json_object(response: requests.Response) -> Dict[str, Any]:
    """Decoded JSON body; ValueError unless it is an object."""
    body = response.json()
    if not isinstance(body, dict):
        raise ValueError(f"expected a JSON object, got {type(body).__name__}")
    return body


def split_architecture(architecture: str) -> Tuple[str, Optional[str]]:
    """`arm/v7` -> ("arm", "v7"); `amd64` -> ("amd64", None)."""
    arch, _, variant = architecture.partition("/")
    return arch, (variant or None)


def select_platform_manifest(manifests: List[Dict[str, Any]], architecture: str) -> Optional[Dict[str, Any]]:
    """Pick the manifest list entry for an architecture, preferring linux (or no OS)."""
    arch, variant = split_architecture(architecture)

    def arch_matches(entry: Dict[str, Any]) -> bool:
        platform = entry.get("platform") or {}
        if platform.get("architecture") != arch:
            return False
        entry_variant = platform.get("variant")
        return variant is None or entry_variant is None or entry_variant == variant

    for entry in manifests:
        os_name = (entry.get("platform") or {}).get("os")
        if arch_matches(entry) and os_name in (None, "", "linux"):
            return entry
    for entry in manifests:
        if arch_matches(entry):
            return entry
    return None


class RegistryClient(ABC):
    """Manifest digest lookups against one family of registries."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self.session = session or requests.Session()
        self.timeout = timeout

    @abstractmethod
    def can_handle(self, registry: str) -> bool:
        ...

    @abstractmethod
    def registry_url(self, registry: str) -> str:
        """Base /v2 URL for a registry host."""

    def get_manifest_digest(self, registry: str, repository: str, tag: str, architecture: str,
                            cancel_event: Optional[threading.Event] = None) -> Optional[str]:
        digest, _ = self.get_manifest_digest_and_created_at(registry, repository, tag, architecture, cancel_event)
        return digest

    def get_manifest_digest_and_created_at(self, registry: str, repository: str, tag: str,
                                           architecture: str,
                                           cancel_event: Optional[threading.Event] = None) -> DigestResult:
        try:
            return self._lookup(registry, repository, tag, architecture, cancel_event)
        except OperationCancelled:
            raise
        except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Registry lookup failed for {registry}/{repository}:{tag}: {e}")
            return None, None

    # Shared flow

    def _lookup(self, registry: str, repository: str, tag: str, architecture: str,
                cancel_event: Optional[threading.Event]) -> DigestResult:
        base_url = self.registry_url(registry)
        manifest_url = f"{base_url}/{repository}/manifests/{tag}"

        response, token = self._get_manifest(manifest_url, repository, cancel_event)
        if response is None:
            return None, None

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            logger.warning(f"No Docker-Content-Digest header for {registry}/{repository}:{tag}")
            return None, None

        created_at = None
        try:
            created_at = self._resolve_created_at(base_url, repository, response, architecture, token, cancel_event)
        except OperationCancelled:
            raise
        except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.debug(f"Could not resolve creation date for {repository}:{tag}: {e}")

        logger.debug(f"Remote digest for {registry}/{repository}:{tag} ({architecture}): {digest}")
        return digest, created_at

    def _get_manifest(self, url: str, repository: str,
                      cancel_event: Optional[threading.Event]) -> Tuple[Optional[requests.Response], Optional[str]]:
        """Anonymous GET, then token-authenticated GET on a Bearer challenge."""
        check_cancelled(cancel_event)
        response = self.session.get(url, headers={"Accept": MANIFEST_ACCEPT_HEADER}, timeout=self.timeout)
        if response.ok:
            return response, None

        if response.status_code != 401:
            logger.warning(f"Manifest request to {url} failed with HTTP {response.status_code}")
            return None, None

        token = self._get_token(repository, response.headers.get("WWW-Authenticate"), cancel_event)
        if not token:
            return None, None

        check_cancelled(cancel_event)
        response = self.session.get(url, headers=self._headers(token), timeout=self.timeout)
        if not response.ok:
            logger.warning(f"Authenticated manifest request to {url} failed with HTTP {response.status_code}")
            return None, None
        return response, token

    def _get_token(self, repository: str, challenge: Optional[str],
                   cancel_event: Optional[threading.Event]) -> Optional[str]:
        params = parse_bearer_challenge(challenge)
        if params is None:
            logger.warning(f"Registry requires authentication without a Bearer challenge for {repository}")
            return None
        query = {"scope": params.get("scope") or f"repository:{repository}:pull"}
        if params.get("service"):
            query["service"] = params["service"]
        return self._request_token(params["realm"], query, cancel_event)

    def _request_token(self, realm: str, query: Dict[str, str],
                       cancel_event: Optional[threading.Event]) -> Optional[str]:
        check_cancelled(cancel_event)
        response = self.session.get(realm, params=query, timeout=self.timeout)
        if not response.ok:
            logger.warning(f"Token request to {realm} failed with HTTP {response.status_code}")
            return None
        body = json_object(response)
        return body.get("token") or body.get("access_token")

    @staticmethod
    def _headers(token: Optional[str], accept: str = MANIFEST_ACCEPT_HEADER) -> Dict[str, str]:
        headers = {"Accept": accept}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _resolve_created_at(self, base_url: str, repository: str, response: requests.Response,
                            architecture: str, token: Optional[str],
                            cancel_event: Optional[threading.Event]) -> Optional[datetime]:
        manifest = json_object(response)
        media_type = manifest.get("mediaType") or response.headers.get("Content-Type", "")

        if media_type in MANIFEST_LIST_TYPES or "manifests" in manifest:
            entry = select_platform_manifest(manifest.get("manifests") or [], architecture)
            if entry is None:
                logger.debug(f"No manifest for architecture {architecture} in {repository}")
                return None
            check_cancelled(cancel_event)
            platform_response = self.session.get(
                f"{base_url}/{repository}/manifests/{entry['digest']}",
                headers=self._headers(token),
                timeout=self.timeout,
            )
            platform_response.raise_for_status()
            manifest = json_object(platform_response)

        config_digest = (manifest.get("config") or {}).get("digest")
        if not config_digest:
            return None

        check_cancelled(cancel_event)
        blob = self.session.get(
            f"{base_url}/{repository}/blobs/{config_digest}",
            headers=self._headers(token, accept="application/json"),
            timeout=self.timeout,
        )
        blob.raise_for_status()
        return parse_timestamp(json_object(blob).get("created"))


class GenericOciRegistryClient(RegistryClient):
    """Any OCI distribution registry; anonymous first, Bearer challenge on 401."""

    def can_handle(self, registry: str) -> bool:
        return True

    def registry_url(self, registry: str) -> str:
        return f"https://{registry}/v2"


class DockerHubRegistryClient(RegistryClient):
    """Docker Hub; always uses an anonymous pull token from auth.docker.io."""

    HOSTS = {"docker.io", "registry-1.docker.io", "registry.hub.docker.com", "index.docker.io"}

    def can_handle(self, registry: str) -> bool:
        return registry.lower() in self.HOSTS

    def registry_url(self, registry: str) -> str:
        return DOCKER_HUB_REGISTRY_URL

    def _get_manifest(self, url: str, repository: str,
                      cancel_event: Optional[threading.Event]) -> Tuple[Optional[requests.Response], Optional[str]]:
        token = self._request_token(
            DEFAULT_AUTH_URL,
            {"service": DOCKER_HUB_SERVICE, "scope": f"repository:{repository}:pull"},
            cancel_event,
        )
        if not token:
            return None, None
        check_cancelled(cancel_event)
        response = self.session.get(url, headers=self._headers(token), timeout=self.timeout)
        if not response.ok:
            logger.warning(f"Docker Hub manifest request to {url} failed with HTTP {response.status_code}")
            return None, None
        return response, token


class GhcrRegistryClient(RegistryClient):
    """GitHub Container Registry; anonymous token from ghcr.io/token."""

    def can_handle(self, registry: str) -> bool:
        return registry.lower() == "ghcr.io"

    def registry_url(self, registry: str) -> str:
        return GHCR_REGISTRY_URL

    def _get_manifest(self, url: str, repository: str,
                      cancel_event: Optional[threading.Event]) -> Tuple[Optional[requests.Response], Optional[str]]:
        token = self._request_token(
            GHCR_AUTH_URL,
            {"service": "ghcr.io", "scope": f"repository:{repository}:pull"},
            cancel_event,
        )
        check_cancelled(cancel_event)
        response = self.session.get(url, headers=self._headers(token), timeout=self.timeout)
        if not response.ok:
            logger.warning(f"GHCR manifest request to {url} failed with HTTP {response.status_code}")
            return None, None
        return response, token


class RegistryClientFactory:
    """Selects the first client that can handle a registry; generic client last."""

    def __init__(self, clients: Optional[List[RegistryClient]] = None,
                 fallback: Optional[RegistryClient] = None,
                 session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        session = session or requests.Session()
        if clients is None:
            clients = [
                DockerHubRegistryClient(session, timeout),
                GhcrRegistryClient(session, timeout),
            ]
            if fallback is None:
                fallback = GenericOciRegistryClient(session, timeout)
        self.clients = list(clients)
        self.fallback = fallback

    def get_client(self, registry: str) -> RegistryClient:
        for client in self.clients:
            if client.can_handle(registry):
                return client
        if self.fallback is not None:
            return self.fallback
        raise RuntimeUnavailableError(f"No registry client available for {registry}")
