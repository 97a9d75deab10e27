"""Export pulled images as an OCI Image Layout

ref: https://github.com/opencontainers/image-spec/blob/main/image-layout.md

Blobs are hard linked from the blob store when both live on the same
filesystem and copied otherwise. The `oci-layout` file is written last,
a directory without it is not a layout.
"""
import logging
import os
import shutil
from pathlib import Path

from pydantic import BaseModel

from pyrootfs.oci.cache import BlobStore
from pyrootfs.oci.descriptor import Descriptor
from pyrootfs.oci.digest import Digest
from pyrootfs.oci.errors import ExtractionFailure
from pyrootfs.oci.index import Index

logger = logging.getLogger(__name__)

OCI_LAYOUT_FILE = "oci-layout"
INDEX_FILE = "index.json"
BLOBS_DIR = "blobs"
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"


class ImageLayout(BaseModel):
    imageLayoutVersion: str = "1.0.0"


def blob_path(root: Path, digest: str) -> Path:
    parsed = Digest.parse(digest)
    return Path(root) / BLOBS_DIR / parsed.algorithm / parsed.hex


def _write(path: Path, data: bytes):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


def _link_or_copy(source: Path, destination: Path):
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.unlink(missing_ok=True)
    try:
        os.link(source, destination)
    except OSError:
        shutil.copyfile(source, destination)


def export_layout(
    target: Path,
    store: BlobStore,
    manifest: bytes,
    descriptor: Descriptor,
    blobs: list[str],
    ref_name: str | None = None,
) -> Path:
    """Write a layout holding a single image to `target`

    `manifest` holds the bytes `descriptor` points at, `blobs` are the
    digests of the config and the layers, which must all be in `store`.
    """
    target = Path(target)
    logger.debug("Exporting %s to OCI layout %s", descriptor.digest, target)
    try:
        for digest in blobs:
            _link_or_copy(store.path(digest), blob_path(target, digest))
        _write(blob_path(target, descriptor.digest), manifest)

        if ref_name:
            annotations = {**(descriptor.annotations or {}), REF_NAME_ANNOTATION: ref_name}
            descriptor = descriptor.model_copy(update={"annotations": annotations})
        index = Index(manifests=(descriptor,))
        _write(
            target / INDEX_FILE,
            index.model_dump_json(exclude_none=True, by_alias=True).encode(),
        )
        _write(target / OCI_LAYOUT_FILE, ImageLayout().model_dump_json().encode())
    except OSError as e:
        raise ExtractionFailure(
            f"Cannot write OCI layout {target}: {e}", digest=descriptor.digest
        ) from e
    return target
