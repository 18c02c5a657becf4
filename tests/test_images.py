import pytest

from composewatch.images import parse_image_reference


@pytest.mark.parametrize("image,registry,repository,tag,digest", [
    ("nginx:1.25", "docker.io", "library/nginx", "1.25", None),
    ("nginx", "docker.io", "library/nginx", "latest", None),
    ("bitnami/redis:7", "docker.io", "bitnami/redis", "7", None),
    ("ghcr.io/acme/app@sha256:deadbeef", "ghcr.io", "acme/app", "latest", "sha256:deadbeef"),
    ("ghcr.io/acme/app:v2@sha256:deadbeef", "ghcr.io", "acme/app", "v2", "sha256:deadbeef"),
    ("localhost:5000/tool", "localhost:5000", "tool", "latest", None),
    ("localhost/tool:dev", "localhost", "tool", "dev", None),
    ("registry.example.com:8443/team/svc:1.0", "registry.example.com:8443", "team/svc", "1.0", None),
])
def test_parse_image_reference(image, registry, repository, tag, digest):
    ref = parse_image_reference(image)

    assert ref.registry == registry
    assert ref.repository == repository
    assert ref.tag == tag
    assert ref.digest == digest
    assert ref.full_name == image
