import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from composewatch.errors import OperationCancelled, RuntimeUnavailableError
from composewatch.registry import (
    DockerHubRegistryClient,
    GenericOciRegistryClient,
    GhcrRegistryClient,
    MANIFEST_ACCEPT_HEADER,
    RegistryClientFactory,
    parse_bearer_challenge,
    parse_timestamp,
    select_platform_manifest,
)

LIST_TYPE = "application/vnd.docker.distribution.manifest.list.v2+json"
MANIFEST_TYPE = "application/vnd.docker.distribution.manifest.v2+json"


def response(status=200, body=None, headers=None):
    r = MagicMock()
    r.status_code = status
    r.ok = 200 <= status < 300
    r.headers = headers or {}
    r.json.return_value = body if body is not None else {}
    if not r.ok:
        r.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}")
    return r


def manifest_list(*platforms):
    return {
        "mediaType": LIST_TYPE,
        "manifests": [
            {"digest": digest, "platform": platform}
            for digest, platform in platforms
        ],
    }


def single_manifest(config_digest="sha256:cfg"):
    return {"mediaType": MANIFEST_TYPE, "config": {"digest": config_digest}}


class TestHelpers:
    def test_parse_bearer_challenge(self):
        header = 'Bearer realm="https://auth.example.com/token",service="registry.example.com",scope="repository:team/app:pull"'
        assert parse_bearer_challenge(header) == {
            "realm": "https://auth.example.com/token",
            "service": "registry.example.com",
            "scope": "repository:team/app:pull",
        }

    def test_non_bearer_challenge_is_ignored(self):
        assert parse_bearer_challenge('Basic realm="x"') is None
        assert parse_bearer_challenge(None) is None
        assert parse_bearer_challenge('Bearer service="x"') is None

    def test_parse_timestamp_handles_nanoseconds(self):
        parsed = parse_timestamp("2024-05-01T12:30:45.123456789Z")
        assert parsed == datetime(2024, 5, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
        assert parse_timestamp("garbage") is None
        assert parse_timestamp(None) is None

    def test_select_platform_prefers_linux(self):
        manifests = manifest_list(
            ("sha256:win", {"architecture": "amd64", "os": "windows"}),
            ("sha256:lin", {"architecture": "amd64", "os": "linux"}),
            ("sha256:arm", {"architecture": "arm64", "os": "linux"}),
        )["manifests"]

        assert select_platform_manifest(manifests, "amd64")["digest"] == "sha256:lin"
        assert select_platform_manifest(manifests, "arm64")["digest"] == "sha256:arm"
        assert select_platform_manifest(manifests, "s390x") is None

    def test_select_platform_falls_back_to_architecture_only(self):
        manifests = manifest_list(("sha256:win", {"architecture": "amd64", "os": "windows"}))["manifests"]
        assert select_platform_manifest(manifests, "amd64")["digest"] == "sha256:win"

    def test_select_platform_with_variant(self):
        manifests = manifest_list(
            ("sha256:v6", {"architecture": "arm", "os": "linux", "variant": "v6"}),
            ("sha256:v7", {"architecture": "arm", "os": "linux", "variant": "v7"}),
        )["manifests"]
        assert select_platform_manifest(manifests, "arm/v7")["digest"] == "sha256:v7"


class TestGenericClient:
    def test_anonymous_single_manifest(self):
        session = MagicMock()
        session.get.side_effect = [
            response(body=single_manifest(), headers={"Docker-Content-Digest": "sha256:remote"}),
            response(body={"created": "2024-01-02T03:04:05Z"}),
        ]
        client = GenericOciRegistryClient(session, timeout=5)

        digest, created = client.get_manifest_digest_and_created_at("registry.example.com", "team/app", "1.0", "amd64")

        assert digest == "sha256:remote"
        assert created == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        first_call = session.get.call_args_list[0]
        assert first_call.args[0] == "https://registry.example.com/v2/team/app/manifests/1.0"
        assert first_call.kwargs["headers"]["Accept"] == MANIFEST_ACCEPT_HEADER
        assert session.get.call_args_list[1].args[0] == "https://registry.example.com/v2/team/app/blobs/sha256:cfg"

    def test_bearer_challenge_flow_with_manifest_list(self):
        challenge = 'Bearer realm="https://auth.example.com/token",service="registry.example.com"'
        session = MagicMock()
        session.get.side_effect = [
            response(401, headers={"WWW-Authenticate": challenge}),
            response(body={"access_token": "tok"}),
            response(
                body=manifest_list(("sha256:arm", {"architecture": "arm64", "os": "linux"})),
                headers={"Docker-Content-Digest": "sha256:index"},
            ),
            response(body=single_manifest("sha256:armcfg")),
            response(body={"created": "2023-06-01T00:00:00Z"}),
        ]
        client = GenericOciRegistryClient(session)

        digest, created = client.get_manifest_digest_and_created_at("registry.example.com", "team/app", "latest", "arm64")

        assert digest == "sha256:index"
        assert created.year == 2023
        token_call = session.get.call_args_list[1]
        assert token_call.args[0] == "https://auth.example.com/token"
        assert token_call.kwargs["params"] == {
            "scope": "repository:team/app:pull",
            "service": "registry.example.com",
        }
        authed = session.get.call_args_list[2]
        assert authed.kwargs["headers"]["Authorization"] == "Bearer tok"
        assert session.get.call_args_list[3].args[0].endswith("/team/app/manifests/sha256:arm")

    def test_missing_digest_header_yields_nothing(self):
        session = MagicMock()
        session.get.return_value = response(body=single_manifest())
        client = GenericOciRegistryClient(session)

        assert client.get_manifest_digest_and_created_at("r.example.com", "a", "1", "amd64") == (None, None)

    def test_network_failure_yields_nothing(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("down")
        client = GenericOciRegistryClient(session)

        assert client.get_manifest_digest_and_created_at("r.example.com", "a", "1", "amd64") == (None, None)

    def test_unauthorized_without_challenge_yields_nothing(self):
        session = MagicMock()
        session.get.return_value = response(401, headers={})
        client = GenericOciRegistryClient(session)

        assert client.get_manifest_digest("r.example.com", "a", "1", "amd64") is None
        assert session.get.call_count == 1

    def test_blob_failure_keeps_digest(self):
        session = MagicMock()
        session.get.side_effect = [
            response(body=single_manifest(), headers={"Docker-Content-Digest": "sha256:remote"}),
            response(500),
        ]
        client = GenericOciRegistryClient(session)

        assert client.get_manifest_digest_and_created_at("r.example.com", "a", "1", "amd64") == ("sha256:remote", None)

    def test_non_object_manifest_body_keeps_digest(self):
        session = MagicMock()
        session.get.return_value = response(
            body=["not", "an", "object"], headers={"Docker-Content-Digest": "sha256:abc"}
        )
        client = GenericOciRegistryClient(session)

        assert client.get_manifest_digest_and_created_at("r.example.com", "a", "1", "amd64") == ("sha256:abc", None)

    def test_non_object_token_body_yields_nothing(self):
        challenge = 'Bearer realm="https://auth.example.com/token"'
        session = MagicMock()
        session.get.side_effect = [
            response(401, headers={"WWW-Authenticate": challenge}),
            response(body="token"),
        ]
        client = GenericOciRegistryClient(session)

        assert client.get_manifest_digest_and_created_at("r.example.com", "a", "1", "amd64") == (None, None)

    def test_cancellation_propagates(self):
        cancel = threading.Event()
        cancel.set()
        client = GenericOciRegistryClient(MagicMock())

        with pytest.raises(OperationCancelled):
            client.get_manifest_digest_and_created_at("r.example.com", "a", "1", "amd64", cancel)


class TestDockerHubClient:
    @pytest.mark.parametrize("registry", ["docker.io", "registry-1.docker.io", "registry.hub.docker.com", "index.docker.io"])
    def test_can_handle(self, registry):
        assert DockerHubRegistryClient(MagicMock()).can_handle(registry)

    def test_token_first(self):
        session = MagicMock()
        session.get.side_effect = [
            response(body={"token": "hub"}),
            response(body=single_manifest(), headers={"Docker-Content-Digest": "sha256:hub"}),
            response(body={"created": "2024-01-01T00:00:00Z"}),
        ]
        client = DockerHubRegistryClient(session)

        digest, _ = client.get_manifest_digest_and_created_at("docker.io", "library/nginx", "1.25", "amd64")

        assert digest == "sha256:hub"
        token_call = session.get.call_args_list[0]
        assert token_call.args[0] == "https://auth.docker.io/token"
        assert token_call.kwargs["params"] == {"service": "registry.docker.io", "scope": "repository:library/nginx:pull"}
        manifest_call = session.get.call_args_list[1]
        assert manifest_call.args[0] == "https://registry-1.docker.io/v2/library/nginx/manifests/1.25"
        assert manifest_call.kwargs["headers"]["Authorization"] == "Bearer hub"

    def test_token_failure_yields_nothing(self):
        session = MagicMock()
        session.get.return_value = response(503)
        client = DockerHubRegistryClient(session)

        assert client.get_manifest_digest_and_created_at("docker.io", "library/nginx", "1.25", "amd64") == (None, None)


class TestFactory:
    def test_picks_specific_clients_and_falls_back(self):
        factory = RegistryClientFactory(session=MagicMock())

        assert isinstance(factory.get_client("docker.io"), DockerHubRegistryClient)
        assert isinstance(factory.get_client("GHCR.io"), GhcrRegistryClient)
        assert isinstance(factory.get_client("quay.io"), GenericOciRegistryClient)

    def test_raises_without_any_client(self):
        factory = RegistryClientFactory(clients=[], fallback=None)

        with pytest.raises(RuntimeUnavailableError):
            factory.get_client("quay.io")
