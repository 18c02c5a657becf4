"""Image reference parsing (purely syntactic, no registry access)."""

from .model import ImageReference

DEFAULT_REGISTRY = "docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"


def parse_image_reference(image: str) -> ImageReference:
    """
    Split an image string into registry, repository, tag and digest.

    Examples:
        nginx:1.25                 -> docker.io / library/nginx : 1.25
        ghcr.io/acme/app@sha256:.. -> ghcr.io / acme/app : latest @ sha256:..
        localhost:5000/tool        -> localhost:5000 / tool : latest
    """
    full_name = image
    name = image.strip()
    digest = None

    if "@" in name:
        name, digest = name.split("@", 1)
        digest = digest or None

    tag = DEFAULT_TAG
    colon = name.rfind(":")
    if colon != -1:
        candidate = name[colon + 1:]
        # A colon followed by a path belongs to a registry port
        if "/" not in candidate:
            tag = candidate or DEFAULT_TAG
            name = name[:colon]

    segments = name.split("/")
    first = segments[0]
    if len(segments) > 1 and ("." in first or ":" in first or first == "localhost"):
        registry = first
        repository = "/".join(segments[1:])
    else:
        registry = DEFAULT_REGISTRY
        repository = name
        if len(segments) == 1:
            repository = f"{DEFAULT_NAMESPACE}/{name}"

    return ImageReference(
        registry=registry,
        repository=repository,
        tag=tag,
        digest=digest,
        full_name=full_name,
    )
