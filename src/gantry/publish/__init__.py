from .publisher import ImagePublisher, PublishedImage
from .registry import (
    REGISTRY_KINDS,
    DockerCliRegistry,
    InMemoryRegistry,
    ManifestInfo,
    Registry,
    registry_from_name,
    split_ref,
)

__all__ = [
    "ImagePublisher",
    "PublishedImage",
    "REGISTRY_KINDS",
    "DockerCliRegistry",
    "InMemoryRegistry",
    "ManifestInfo",
    "Registry",
    "registry_from_name",
    "split_ref",
]
