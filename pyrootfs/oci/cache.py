"""Content-addressable blob store

Blobs live at ``<root>/<algorithm>/<hex>``. A blob is written to a temporary
file next to its final location, digested while it is written and renamed
into place only once the digest matches. Readers therefore never observe a
partial or wrongly keyed blob, and concurrent writers of the same digest
race to the same verified content.
"""
import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, BinaryIO, Callable, Iterator

from pyrootfs.oci.digest import Digest, Digester
from pyrootfs.oci.errors import CorruptEntry, DigestMismatch, NotFound

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024
TMP_PREFIX = ".tmp-"


@dataclass(frozen=True, slots=True)
class CASEntry:
    digest: str
    size: int
    path: Path


class BlobStore:
    """Local store of verified blobs, keyed by digest"""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _parse(self, digest: str, error=DigestMismatch) -> Digest:
        try:
            parsed = Digest.parse(digest)
        except ValueError as e:
            raise error(str(e), digest=digest, stage="cache") from e
        if not parsed.supported:
            raise error(
                f"Unsupported digest algorithm {parsed.algorithm}",
                digest=digest,
                stage="cache",
            )
        return parsed

    def path(self, digest: str) -> Path:
        parsed = self._parse(digest)
        return self.root / parsed.algorithm / parsed.hex

    def has(self, digest: str) -> bool:
        return self.path(digest).is_file()

    def __contains__(self, digest: str) -> bool:
        return self.has(digest)

    def __iter__(self) -> Iterator[str]:
        if not self.root.is_dir():
            return
        for algorithm in sorted(self.root.iterdir()):
            if not algorithm.is_dir():
                continue
            for blob in sorted(algorithm.iterdir()):
                if not blob.name.startswith(TMP_PREFIX):
                    yield f"{algorithm.name}:{blob.name}"

    def entry(self, digest: str) -> CASEntry:
        """Return the entry for `digest` after checking its content

        An entry whose content does not match its digest is evicted
        and `CorruptEntry` is raised.
        """
        path = self.path(digest)
        digester = Digester(self._parse(digest).algorithm)
        try:
            with path.open("rb") as f:
                while chunk := f.read(READ_SIZE):
                    digester.update(chunk)
        except FileNotFoundError:
            raise NotFound("Blob not in cache", digest=digest, stage="cache") from None

        if digester.digest != digest:
            logger.warning(
                "Evicting corrupt cache entry %s (content has %s)",
                digest,
                digester.digest,
            )
            self.evict(digest)
            raise CorruptEntry(
                f"Cached content has digest {digester.digest}", digest=digest
            )
        return CASEntry(digest=digest, size=digester.size, path=path)

    def get(self, digest: str) -> bytes:
        return self.entry(digest).path.read_bytes()

    def open(self, digest: str) -> BinaryIO:
        return self.entry(digest).path.open("rb")

    async def put(
        self,
        digest: str,
        stream: AsyncIterable[bytes],
        verify: Callable[[], None] | None = None,
    ) -> CASEntry:
        """Store the content of `stream` under `digest`

        `verify` is called after the content is written and digested but
        before the entry becomes visible; raising from it discards the write.
        Disk writes run in a worker thread, off the event loop.
        """
        path = self.path(digest)
        digester = Digester(self._parse(digest).algorithm)

        def create() -> tuple[int, str]:
            path.parent.mkdir(parents=True, exist_ok=True)
            return tempfile.mkstemp(prefix=TMP_PREFIX, dir=path.parent)

        fd, tmp_name = await asyncio.to_thread(create)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as f:

                def write(chunk: bytes):
                    digester.update(chunk)
                    f.write(chunk)

                def sync():
                    f.flush()
                    os.fsync(f.fileno())

                async for chunk in stream:
                    await asyncio.to_thread(write, chunk)
                await asyncio.to_thread(sync)

            if digester.digest != digest:
                raise DigestMismatch(
                    f"Downloaded content has digest {digester.digest}", digest=digest
                )
            if verify is not None:
                verify()
            await asyncio.to_thread(os.replace, tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.debug("Stored %s (%d bytes)", digest, digester.size)
        return CASEntry(digest=digest, size=digester.size, path=path)

    async def put_bytes(self, digest: str, data: bytes) -> CASEntry:
        async def chunks():
            yield data

        return await self.put(digest, chunks())

    def evict(self, digest: str):
        self.path(digest).unlink(missing_ok=True)

    def clear(self):
        if self.root.exists():
            logger.info("Removing blob cache %s", self.root)
            shutil.rmtree(self.root)
