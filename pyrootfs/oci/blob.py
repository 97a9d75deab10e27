import asyncio
import logging
import zlib
from typing import AsyncIterable, AsyncIterator, Callable

import backoff

from pyrootfs.oci.cache import BlobStore, CASEntry
from pyrootfs.oci.client import Client
from pyrootfs.oci.descriptor import Descriptor
from pyrootfs.oci.digest import Digest, Digester
from pyrootfs.oci.errors import CorruptEntry, DigestMismatch, DownloadInterrupted

logger = logging.getLogger(__name__)

GZIP_MEDIA_TYPES = (
    "application/vnd.oci.image.layer.v1.tar+gzip",
    "application/vnd.oci.image.layer.nondistributable.v1.tar+gzip",
    "application/vnd.docker.image.rootfs.diff.tar.gzip",
    "application/vnd.docker.image.rootfs.foreign.diff.tar.gzip",
)
TAR_MEDIA_TYPES = (
    "application/vnd.oci.image.layer.v1.tar",
    "application/vnd.oci.image.layer.nondistributable.v1.tar",
    "application/vnd.docker.image.rootfs.diff.tar",
)


class GzipDecompressor:
    """Incremental gzip decoder, handles multi-member streams"""

    def __init__(self):
        self._decoder = zlib.decompressobj(wbits=zlib.MAX_WBITS | 16)

    def decompress(self, chunk: bytes) -> bytes:
        output = []
        while chunk:
            output.append(self._decoder.decompress(chunk))
            if not self._decoder.eof:
                break
            chunk = self._decoder.unused_data
            self._decoder = zlib.decompressobj(wbits=zlib.MAX_WBITS | 16)
        return b"".join(output)

    def flush(self) -> bytes:
        return self._decoder.flush()


class IdentityDecompressor:
    def decompress(self, chunk: bytes) -> bytes:
        return chunk

    def flush(self) -> bytes:
        return b""


def decompressor_for(media_type: str):
    """Return a decompressor for a layer media type, `None` if unknown"""
    if media_type in GZIP_MEDIA_TYPES:
        return GzipDecompressor()
    if media_type in TAR_MEDIA_TYPES:
        return IdentityDecompressor()
    return None


class TapStream:
    """Pass chunks through unchanged while handing each one to `tap`"""

    def __init__(self, source: AsyncIterable[bytes], tap: Callable[[bytes], None]):
        self._source = source.__aiter__()
        self._tap = tap

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self._source.__anext__()
        self._tap(chunk)
        return chunk


class SizeLimit:
    """Fail as soon as more than `size` bytes went through"""

    def __init__(self, descriptor: Descriptor):
        self.descriptor = descriptor
        self.received = 0

    def __call__(self, chunk: bytes):
        self.received += len(chunk)
        if self.received > self.descriptor.size:
            raise DigestMismatch(
                f"Received more than the expected {self.descriptor.size} bytes",
                digest=self.descriptor.digest,
            )


class DiffIDCheck:
    """Digest the uncompressed content of a layer as it streams by"""

    def __init__(self, media_type: str, diff_id: str):
        self.diff_id = diff_id
        self._decompressor = decompressor_for(media_type)
        self._digester = Digester(Digest.parse(diff_id).algorithm)

    def __call__(self, chunk: bytes):
        try:
            self._digester.update(self._decompressor.decompress(chunk))
        except zlib.error as e:
            raise DigestMismatch(f"Layer is not valid gzip: {e}") from e

    def verify(self):
        self._digester.update(self._decompressor.flush())
        if self._digester.digest != self.diff_id:
            raise DigestMismatch(
                f"Uncompressed layer has digest {self._digester.digest}, "
                f"expected diff_id {self.diff_id}"
            )


async def fetch_blob(
    descriptor: Descriptor,
    repository: str,
    client: Client,
    store: BlobStore,
    diff_id: str | None = None,
) -> CASEntry:
    """Return the verified store entry for `descriptor`, downloading it if needed

    The authoritative digest is the one of the bytes as transferred. When a
    `diff_id` is given and the layer can be decompressed, the uncompressed
    content is checked against it in the same pass. A download interrupted
    mid-body starts over from the first byte.
    """
    digest = descriptor.digest
    if store.has(digest):
        try:
            entry = await asyncio.to_thread(store.entry, digest)
        except CorruptEntry:
            logger.warning("Cached %s was corrupt, downloading it again", digest)
        else:
            logger.debug("Cache hit for %s", digest)
            return entry

    settings = client.settings

    def log_retry(details):
        logger.warning(
            "%s, downloading it again in %.1fs (attempt %d/%d)",
            details["exception"].message,
            details["wait"],
            details["tries"],
            settings.max_attempts,
        )

    @backoff.on_exception(
        backoff.expo,
        DownloadInterrupted,
        max_tries=settings.max_attempts,
        factor=settings.backoff,
        max_value=settings.backoff_max,
        jitter=None,
        on_backoff=log_retry,
        logger=None,
    )
    async def download() -> CASEntry:
        limit = SizeLimit(descriptor)
        check = None
        if diff_id is not None and decompressor_for(descriptor.mediaType) is not None:
            check = DiffIDCheck(descriptor.mediaType, diff_id)

        def tap(chunk: bytes):
            limit(chunk)
            if check is not None:
                check(chunk)

        def verify():
            if limit.received != descriptor.size:
                raise DigestMismatch(
                    f"Received {limit.received} bytes, expected {descriptor.size}",
                    digest=digest,
                )
            if check is not None:
                check.verify()

        async with client.open_blob_stream(repository, digest) as stream:
            return await store.put(digest, TapStream(stream, tap), verify=verify)

    logger.info("Downloading %s (%d bytes)", digest, descriptor.size)
    try:
        return await download()
    except DigestMismatch as e:
        e.digest = e.digest or digest
        logger.error("Rejected blob %s: %s", digest, e.message)
        raise
