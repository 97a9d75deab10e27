import logging

from pydantic import BaseModel, ConfigDict

from pyrootfs.oci.descriptor import Descriptor, Platform
from pyrootfs.oci.errors import NoMatchingPlatform

logger = logging.getLogger(__name__)

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
INDEX_MEDIA_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)

# Variants that are implied when an index entry does not specify one
DEFAULT_VARIANTS = {"arm64": "v8"}


class Index(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    ref: https://distribution.github.io/distribution/spec/manifest-v2-2/#manifest-list
    """

    model_config = ConfigDict(frozen=True)

    manifests: tuple[Descriptor, ...] = ()
    artifactType: str | None = None
    annotations: dict[str, str] | None = None
    schemaVersion: int = 2
    mediaType: str = OCI_INDEX

    @property
    def platforms(self) -> list[str]:
        return [str(m.platform) for m in self.manifests if m.platform is not None]


def _variant(platform: Platform) -> str | None:
    return platform.variant or DEFAULT_VARIANTS.get(platform.architecture)


def select_manifest(index: Index, platform: Platform) -> Descriptor:
    """Select the manifest in `index` matching `platform`.

    Only entries matching both os and architecture are considered. Of those,
    the first one with a matching variant wins, then the first one without a
    variant, then the first one overall. The selection only depends on its
    inputs, so the same index always yields the same manifest.
    """
    candidates = [
        descriptor
        for descriptor in index.manifests
        if descriptor.platform is not None
        and descriptor.platform.os == platform.os
        and descriptor.platform.architecture == platform.architecture
    ]
    if not candidates:
        raise NoMatchingPlatform(
            f"No manifest for platform {platform}, "
            f"available: {', '.join(index.platforms) or 'none'}"
        )

    wanted = _variant(platform)
    for descriptor in candidates:
        if _variant(descriptor.platform) == wanted:
            break
    else:
        for descriptor in candidates:
            if descriptor.platform.variant is None:
                break
        else:
            descriptor = candidates[0]

    logger.debug("Selected %s for platform %s", descriptor.digest, platform)
    return descriptor


def resolve(payload, platform: Platform):
    """Return a manifest unchanged, or the descriptor `platform` selects
    from an index."""
    if isinstance(payload, Index):
        return select_manifest(payload, platform)
    return payload
