import json

from pydantic import BaseModel, ConfigDict, ValidationError

from pyrootfs.oci.descriptor import Descriptor
from pyrootfs.oci.errors import InvalidManifest
from pyrootfs.oci.index import INDEX_MEDIA_TYPES, Index

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_MEDIA_TYPES = (OCI_MANIFEST, DOCKER_MANIFEST)

OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"


class Manifest(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    ref: https://distribution.github.io/distribution/spec/manifest-v2-2/
    """

    model_config = ConfigDict(frozen=True)

    config: Descriptor
    layers: tuple[Descriptor, ...] = ()
    artifactType: str | None = None
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    mediaType: str = OCI_MANIFEST
    schemaVersion: int = 2


def parse_manifest(data: bytes, media_type: str | None = None) -> Manifest | Index:
    """Parse a raw manifest payload into a `Manifest` or an `Index`.

    The media type reported by the registry wins, the payload's own
    `mediaType` is used otherwise. Payloads without either are told apart
    by the presence of a `manifests` list.
    """
    try:
        document = json.loads(data)
    except ValueError as e:
        raise InvalidManifest(f"Manifest is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise InvalidManifest("Manifest is not a JSON object")

    if document.get("schemaVersion") == 1:
        raise InvalidManifest("Docker image manifest schema 1 is not supported")

    # Content-Type may carry parameters, e.g. "; charset=utf-8"
    media_type = (media_type or "").split(";")[0].strip()
    if media_type not in MANIFEST_MEDIA_TYPES + INDEX_MEDIA_TYPES:
        media_type = document.get("mediaType") or ""

    if media_type in INDEX_MEDIA_TYPES:
        model = Index
    elif media_type in MANIFEST_MEDIA_TYPES:
        model = Manifest
    elif not media_type:
        model = Index if "manifests" in document else Manifest
    else:
        raise InvalidManifest(f"Unsupported manifest media type: {media_type}")

    if media_type:
        document["mediaType"] = media_type
    try:
        return model.model_validate(document)
    except ValidationError as e:
        raise InvalidManifest(f"Invalid {model.__name__.lower()}: {e}") from e
