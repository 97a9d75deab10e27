"""OCI image client library for Python

This module resolves image references against a registry, inspects images
and materializes them into a root filesystem.
"""
import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import httpx
from pydantic import BaseModel, ValidationError

from pyrootfs.oci.blob import fetch_blob
from pyrootfs.oci.cache import BlobStore, CASEntry
from pyrootfs.oci.client import Client, CredentialCache, ManifestResponse
from pyrootfs.oci.config import ImageConfig
from pyrootfs.oci.descriptor import Descriptor, Platform
from pyrootfs.oci.errors import ExtractionFailure, InvalidManifest, TargetNotEmpty
from pyrootfs.oci.index import Index, resolve
from pyrootfs.oci.layer import apply_layer, clear_marker, is_complete, mark_complete
from pyrootfs.oci.layout import export_layout
from pyrootfs.oci.manifest import Manifest
from pyrootfs.oci.reference import ImageReference, parse_reference
from pyrootfs.settings import Credentials, Settings

logger = logging.getLogger(__name__)

__all__ = [
    "BlobStore",
    "Client",
    "CredentialCache",
    "ImageReference",
    "InspectSummary",
    "Platform",
    "RootFS",
    "inspect",
    "inspect_image",
    "is_complete",
    "parse_reference",
    "pull",
    "pull_image",
    "export_layout",
]


class InspectSummary(BaseModel):
    reference: str
    digest: str
    mediaType: str
    platform: Platform
    config: Descriptor
    layers: list[Descriptor]
    image: ImageConfig


@dataclass(frozen=True)
class RootFS:
    """A fully materialized root filesystem, owned by the caller"""

    path: Path
    reference: str
    digest: str
    platform: Platform
    layers: tuple[Descriptor, ...] = field(default=())


@dataclass(frozen=True)
class ResolvedImage:
    reference: ImageReference
    manifest: Manifest
    digest: str
    mediaType: str
    platform: Platform | None
    data: bytes = field(repr=False)


async def resolve_image(
    reference: ImageReference, client: Client, platform: Platform
) -> ResolvedImage:
    """Fetch the manifest of `reference`, selecting `platform` from an index"""
    response: ManifestResponse = await client.fetch_manifest(reference)
    selected_platform = None
    selected = resolve(response.payload, platform)
    if isinstance(selected, Descriptor):
        descriptor = selected
        selected_platform = descriptor.platform
        reference = reference.with_digest(descriptor.digest)
        response = await client.fetch_manifest(reference)
        if isinstance(response.payload, Index):
            raise InvalidManifest(
                "Nested image indexes are not supported", reference=str(reference)
            )
    return ResolvedImage(
        reference=reference,
        manifest=response.payload,
        digest=response.digest,
        mediaType=response.mediaType,
        platform=selected_platform,
        data=response.data,
    )


async def fetch_config(
    image: ResolvedImage, client: Client, store: BlobStore
) -> ImageConfig:
    entry: CASEntry = await fetch_blob(
        image.manifest.config, image.reference.repository, client, store
    )
    try:
        return ImageConfig.model_validate_json(
            await asyncio.to_thread(entry.path.read_bytes)
        )
    except ValidationError as e:
        raise InvalidManifest(
            f"Invalid image config: {e}",
            reference=str(image.reference),
            digest=entry.digest,
        ) from e


def _image_platform(image: ResolvedImage, config: ImageConfig, wanted: Platform):
    if image.platform is not None:
        return image.platform
    platform = Platform(
        os=config.os or wanted.os,
        architecture=config.architecture or wanted.architecture,
        variant=config.variant,
    )
    if (platform.os, platform.architecture) != (wanted.os, wanted.architecture):
        logger.warning("Image %s is built for %s, not %s", image.reference, platform, wanted)
    return platform


async def inspect_image(
    reference: ImageReference, client: Client, store: BlobStore, platform: Platform
) -> InspectSummary:
    """Summarize the image `reference` points at, without extracting it"""
    image = await resolve_image(reference, client, platform)
    config = await fetch_config(image, client, store)
    return InspectSummary(
        reference=str(image.reference),
        digest=image.digest,
        mediaType=image.mediaType,
        platform=_image_platform(image, config, platform),
        config=image.manifest.config,
        layers=list(image.manifest.layers),
        image=config,
    )


def _prepare_target(target: Path, force: bool):
    if target.exists() and (not target.is_dir() or any(target.iterdir())):
        if not force:
            raise TargetNotEmpty(
                f"{target} exists and is not empty, use force to overwrite it"
            )
        logger.warning("Removing existing %s", target)
        _remove_target(target)
    target.mkdir(parents=True, exist_ok=True)
    clear_marker(target)


def _remove_target(target: Path):
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink(missing_ok=True)


def _first_failure(tasks: list[asyncio.Task]) -> BaseException | None:
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            return task.exception()
    return None


async def pull_image(
    reference: ImageReference,
    target: Path,
    client: Client,
    store: BlobStore,
    platform: Platform,
    max_concurrent_downloads: int = 3,
    force: bool = False,
    oci_layout: Path | None = None,
    clean_on_error: bool = False,
) -> RootFS:
    """Pull the image `reference` points at and materialize it in `target`

    Layers download concurrently and are applied in manifest order as soon
    as they are available. The completion marker is written last; a
    `target` without it is an incomplete rootfs and must not be used.

    With `oci_layout`, the verified manifest, config and layers are also
    exported there as an OCI Image Layout. With `clean_on_error`, a failed
    pull removes `target` and `oci_layout` instead of leaving them behind.
    """
    target = Path(target)
    outputs = [target] if oci_layout is None else [target, Path(oci_layout)]
    for output in outputs:
        await asyncio.to_thread(_prepare_target, output, force)

    try:
        return await _pull(
            reference, target, client, store, platform, max_concurrent_downloads, oci_layout
        )
    except BaseException:
        if clean_on_error:
            for output in outputs:
                logger.info("Removing %s after failed pull", output)
                await asyncio.to_thread(_remove_target, output)
        raise


async def _pull(
    reference: ImageReference,
    target: Path,
    client: Client,
    store: BlobStore,
    platform: Platform,
    max_concurrent_downloads: int,
    oci_layout: Path | None,
) -> RootFS:
    image = await resolve_image(reference, client, platform)
    config = await fetch_config(image, client, store)
    layers = image.manifest.layers

    diff_ids = config.diff_ids
    if diff_ids is not None and len(diff_ids) != len(layers):
        raise InvalidManifest(
            f"Config lists {len(diff_ids)} diff_ids for {len(layers)} layers",
            reference=str(image.reference),
        )
    diff_ids = diff_ids or [None] * len(layers)

    logger.info("Pulling %s (%s), %d layers", image.reference, image.digest, len(layers))
    semaphore = asyncio.Semaphore(max_concurrent_downloads)

    async def download(descriptor: Descriptor, diff_id: str | None) -> CASEntry:
        async with semaphore:
            return await fetch_blob(
                descriptor, image.reference.repository, client, store, diff_id=diff_id
            )

    tasks = [
        asyncio.create_task(download(descriptor, diff_id))
        for descriptor, diff_id in zip(layers, diff_ids)
    ]

    def cancel_siblings(task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            for other in tasks:
                other.cancel()

    for task in tasks:
        task.add_done_callback(cancel_siblings)

    try:
        for number, (descriptor, task) in enumerate(zip(layers, tasks), start=1):
            entry = await task
            logger.info("Applying layer %d/%d %s", number, len(layers), descriptor.digest)
            try:
                await asyncio.to_thread(
                    apply_layer, entry.path, target, descriptor.mediaType
                )
            except ExtractionFailure as e:
                e.reference = str(image.reference)
                e.digest = descriptor.digest
                raise
    except BaseException as e:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if isinstance(e, asyncio.CancelledError):
            failure = _first_failure(tasks)
            if failure is not None:
                raise failure from None
        raise

    if oci_layout is not None:
        manifest = Descriptor(
            mediaType=image.mediaType,
            digest=image.digest,
            size=len(image.data),
            platform=_image_platform(image, config, platform),
        )
        await asyncio.to_thread(
            export_layout,
            oci_layout,
            store,
            image.data,
            manifest,
            [image.manifest.config.digest, *(layer.digest for layer in layers)],
            image.reference.tag,
        )
        logger.info("Exported %s to OCI layout %s", image.reference, oci_layout)

    await asyncio.to_thread(
        mark_complete,
        target,
        reference=str(image.reference),
        digest=image.digest,
        layers=[layer.digest for layer in layers],
    )
    logger.info("Materialized %s in %s", image.reference, target)
    return RootFS(
        path=target,
        reference=str(image.reference),
        digest=image.digest,
        platform=_image_platform(image, config, platform),
        layers=layers,
    )


def _client(
    reference: ImageReference,
    settings: Settings,
    credentials: Credentials | None,
    transport: httpx.AsyncBaseTransport | None,
) -> Client:
    return Client(
        reference.host,
        settings=settings,
        credentials=credentials,
        transport=transport,
    )


def inspect(
    reference: str,
    settings: Settings,
    credentials: Credentials | None = None,
    platform: Platform | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> InspectSummary:
    """Inspect an image, blocking until done"""
    image_reference = parse_reference(reference)

    async def run():
        async with _client(image_reference, settings, credentials, transport) as client:
            return await inspect_image(
                image_reference,
                client,
                BlobStore(settings.cache_dir),
                platform or Platform.current(),
            )

    return asyncio.run(run())


def pull(
    reference: str,
    target: Path,
    settings: Settings,
    credentials: Credentials | None = None,
    platform: Platform | None = None,
    force: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
    oci_layout: Path | None = None,
    clean_on_error: bool = False,
) -> RootFS:
    """Pull an image into `target`, blocking until done"""
    image_reference = parse_reference(reference)

    async def run():
        async with _client(image_reference, settings, credentials, transport) as client:
            return await pull_image(
                image_reference,
                Path(target),
                client,
                BlobStore(settings.cache_dir),
                platform or Platform.current(),
                max_concurrent_downloads=settings.max_concurrent_downloads,
                force=force,
                oci_layout=oci_layout,
                clean_on_error=clean_on_error,
            )

    return asyncio.run(run())
