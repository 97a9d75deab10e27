import asyncio
import gzip
import io
import json
import re
import tarfile
from pathlib import Path

import httpx
import pytest

from pyrootfs.oci.cache import BlobStore
from pyrootfs.oci.client import Client
from pyrootfs.oci.digest import digest_bytes
from pyrootfs.oci.index import OCI_INDEX
from pyrootfs.oci.manifest import OCI_CONFIG, OCI_MANIFEST
from pyrootfs.settings import Settings

HOST = "example.com"
TOKEN_REALM = "https://auth.example.com/token"
GZIP_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"
TAR_LAYER = "application/vnd.oci.image.layer.v1.tar"

_ROUTE_RE = re.compile(r"^/v2/(?P<repo>.+)/(?P<kind>manifests|blobs)/(?P<ref>[^/]+)$")


def file_entry(name: str, data: bytes = b"", mode: int = 0o644):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    info.mtime = 1_700_000_000
    return info, data


def dir_entry(name: str, mode: int = 0o755):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    info.mtime = 1_700_000_000
    return info, None


def symlink_entry(name: str, target: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    return info, None


def hardlink_entry(name: str, target: str):
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE
    info.linkname = target
    return info, None


def build_tar(*entries) -> bytes:
    """Return an uncompressed tar archive of `entries`, in order"""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as archive:
        for info, data in entries:
            archive.addfile(info, io.BytesIO(data) if data is not None else None)
    return buffer.getvalue()


def gzip_bytes(data: bytes) -> bytes:
    return gzip.compress(data, mtime=0)


class InterruptedStream(httpx.AsyncByteStream):
    """Body that sends `data` and then drops the connection"""

    def __init__(self, data: bytes):
        self.data = data

    async def __aiter__(self):
        yield self.data
        raise httpx.ReadError("connection reset by peer")


class StalledStream(httpx.AsyncByteStream):
    """Body that never arrives, records whether it was cancelled"""

    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = False

    async def __aiter__(self):
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        yield b""


class GatedStream(httpx.AsyncByteStream):
    """Body that sends `data` once `gate` is set"""

    def __init__(self, gate: asyncio.Event, data: bytes):
        self.gate = gate
        self.data = data

    async def __aiter__(self):
        await self.gate.wait()
        yield self.data


class FakeRegistry:
    """In-memory registry answering the distribution API through MockTransport

    `token` switches on bearer authentication. `failures` maps a URL path to
    a list of status codes, responses or exceptions served, in order, before
    the real answer.
    """

    def __init__(self, token: str | None = None):
        self.token = token
        self.blobs: dict[str, bytes] = {}
        self.manifests: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.failures: dict[str, list] = {}
        self.requests: list[httpx.Request] = []
        self.token_requests: list[httpx.Request] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add_blob(self, data: bytes) -> str:
        digest = digest_bytes(data)
        self.blobs[digest] = data
        return digest

    def add_manifest(self, repository: str, tag: str | None, document: dict) -> str:
        data = json.dumps(document).encode()
        digest = digest_bytes(data)
        media_type = document.get("mediaType", OCI_MANIFEST)
        self.manifests[repository, digest] = (data, media_type)
        if tag is not None:
            self.manifests[repository, tag] = (data, media_type)
        return digest

    def add_image(
        self,
        repository: str,
        tag: str | None,
        layers: list[bytes],
        compress: bool = True,
        architecture: str = "amd64",
        diff_ids: list[str] | None = None,
        media_type: str = OCI_MANIFEST,
    ) -> dict:
        """Push an image with one layer per uncompressed tar in `layers`"""
        layer_descriptors = []
        for tar in layers:
            data = gzip_bytes(tar) if compress else tar
            layer_descriptors.append(
                {
                    "mediaType": GZIP_LAYER if compress else TAR_LAYER,
                    "digest": self.add_blob(data),
                    "size": len(data),
                }
            )
        config = {
            "architecture": architecture,
            "os": "linux",
            "config": {"Env": ["PATH=/usr/bin:/bin"], "Cmd": ["/bin/sh"]},
            "rootfs": {
                "type": "layers",
                "diff_ids": (
                    diff_ids
                    if diff_ids is not None
                    else [digest_bytes(tar) for tar in layers]
                ),
            },
        }
        config_data = json.dumps(config).encode()
        manifest = {
            "schemaVersion": 2,
            "mediaType": media_type,
            "config": {
                "mediaType": OCI_CONFIG,
                "digest": self.add_blob(config_data),
                "size": len(config_data),
            },
            "layers": layer_descriptors,
        }
        digest = self.add_manifest(repository, tag, manifest)
        return {"digest": digest, "manifest": manifest, "config": config}

    def add_index(self, repository: str, tag: str, entries: list[tuple[dict, str]]):
        """Push an index of `(platform, manifest digest)` entries"""
        manifests = []
        for platform, digest in entries:
            data, media_type = self.manifests[repository, digest]
            manifests.append(
                {
                    "mediaType": media_type,
                    "digest": digest,
                    "size": len(data),
                    "platform": platform,
                }
            )
        document = {"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": manifests}
        return self.add_manifest(repository, tag, document)

    def _challenge(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            401,
            headers={
                "WWW-Authenticate": (
                    f'Bearer realm="{TOKEN_REALM}",service="{HOST}",'
                    'scope="repository:library/app:pull"'
                )
            },
            json={"errors": [{"code": "UNAUTHORIZED", "message": "authentication required"}]},
            request=request,
        )

    def _not_found(self, code: str) -> httpx.Response:
        return httpx.Response(
            404, json={"errors": [{"code": code, "message": "unknown"}]}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "auth.example.com":
            self.token_requests.append(request)
            return httpx.Response(200, json={"token": self.token})

        self.requests.append(request)
        pending = self.failures.get(request.url.path)
        if pending:
            failure = pending.pop(0)
            if isinstance(failure, int):
                return httpx.Response(failure)
            if isinstance(failure, httpx.Response):
                return failure
            raise failure

        if self.token is not None:
            if request.headers.get("Authorization") != f"Bearer {self.token}":
                return self._challenge(request)

        if request.url.path == "/v2/":
            return httpx.Response(200, json={})

        match = _ROUTE_RE.match(request.url.path)
        if match is None:
            return self._not_found("NAME_UNKNOWN")
        repository, kind, ref = match["repo"], match["kind"], match["ref"]
        if kind == "blobs":
            if ref not in self.blobs:
                return self._not_found("BLOB_UNKNOWN")
            return httpx.Response(200, content=self.blobs[ref])
        if (repository, ref) not in self.manifests:
            return self._not_found("MANIFEST_UNKNOWN")
        data, media_type = self.manifests[repository, ref]
        return httpx.Response(
            200,
            content=data,
            headers={
                "Content-Type": media_type,
                "Docker-Content-Digest": digest_bytes(data),
            },
        )


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(cache_dir=tmp_path / "cache", backoff=0.001, backoff_max=0.01)


@pytest.fixture
def store(settings) -> BlobStore:
    return BlobStore(settings.cache_dir)


@pytest.fixture
def make_client(registry, settings):
    """Return a factory for clients talking to the fake registry"""

    def factory(**kwargs) -> Client:
        return Client(HOST, settings=settings, transport=registry.transport, **kwargs)

    return factory


@pytest.fixture
def rootfs(tmp_path) -> Path:
    return tmp_path / "rootfs"


