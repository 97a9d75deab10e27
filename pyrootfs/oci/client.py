from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator

import backoff
import httpx

from pyrootfs.oci.digest import Digest, digest_bytes
from pyrootfs.oci.errors import (
    AuthError,
    DigestMismatch,
    DownloadInterrupted,
    NotFound,
    PyRootFSError,
    TransportError,
)
from pyrootfs.oci.index import INDEX_MEDIA_TYPES
from pyrootfs.oci.manifest import MANIFEST_MEDIA_TYPES, parse_manifest
from pyrootfs.settings import Credentials, Settings

if TYPE_CHECKING:
    from pyrootfs.oci.index import Index
    from pyrootfs.oci.manifest import Manifest
    from pyrootfs.oci.reference import ImageReference

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"
MANIFEST_ACCEPT = ", ".join(MANIFEST_MEDIA_TYPES + INDEX_MEDIA_TYPES)
CHUNK_SIZE = 64 * 1024

# key="value" or key=token pairs, values may contain commas
_CHALLENGE_PARAM_RE = re.compile(r'(\w+)=(?:"([^"]*)"|([^,\s]*))')


def _clean_url(registry: str, insecure: bool = False) -> str:
    if registry == "docker.io":
        registry = DOCKER_HUB
    scheme = "http" if insecure else "https"
    return f"{scheme}://{registry}"


def _parse_www_auth(www_authenticate: str) -> tuple[str, dict[str, str]]:
    """Parse the WWW-Authenticate header into the scheme and its parameters"""
    scheme, _, params = www_authenticate.strip().partition(" ")
    result = {}
    for match in _CHALLENGE_PARAM_RE.finditer(params):
        key, quoted, token = match.groups()
        result[key.lower()] = quoted if quoted is not None else token
    return scheme.lower(), result


def _error_message(response: httpx.Response) -> str:
    """Extract the registry error message

    ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#error-codes
    """
    try:
        errors = response.json()["errors"]
        return "; ".join(
            f"{error.get('code', 'UNKNOWN')}: {error.get('message', '')}"
            for error in errors
        )
    except (ValueError, KeyError, TypeError, AttributeError):
        return response.reason_phrase or f"HTTP {response.status_code}"


class ServerError(Exception):
    """A 5xx answer, retried like a failed connection"""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


def _describe(error: Exception) -> str:
    if isinstance(error, ServerError):
        return str(error)
    return f"{type(error).__name__}: {error}"


class BearerAuth:
    """Attaches HTTP Bearer Authentication to the given Request object."""

    def __init__(self, token: str):
        self.token = token

    def __call__(self, request):
        request.headers["Authorization"] = f"Bearer {self.token}"
        return request


class CredentialCache:
    """Credentials obtained from registries, keyed by host and scope.

    A credential of `None` means anonymous access was granted.
    The cache lives as long as the caller keeps it around.
    """

    def __init__(self):
        self._credentials = {}

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._credentials

    def __getitem__(self, key: tuple[str, str]):
        return self._credentials[key]

    def __setitem__(self, key: tuple[str, str], credential):
        self._credentials[key] = credential

    def discard(self, host: str, scope: str):
        self._credentials.pop((host, scope), None)

    def clear(self):
        self._credentials.clear()


@dataclass(frozen=True)
class ManifestResponse:
    payload: Manifest | Index
    digest: str
    mediaType: str
    data: bytes


class BlobStream:
    """Single pass iterator over the bytes of a blob as they arrive"""

    def __init__(self, response: httpx.Response, digest: str):
        self.digest = digest
        self._chunks = response.aiter_bytes(CHUNK_SIZE)

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        try:
            return await self._chunks.__anext__()
        except httpx.TransportError as e:
            raise DownloadInterrupted(
                f"Blob download interrupted: {_describe(e)}", digest=self.digest
            ) from e


class Client:
    """Client for the OCI registry API."""

    def __init__(
        self,
        registry: str,
        settings: Settings,
        credentials: Credentials | None = None,
        credential_cache: CredentialCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = registry
        self.registry_url = _clean_url(registry, insecure=settings.insecure)
        self.settings = settings
        self.credentials = credentials or Credentials()
        self.credential_cache = (
            credential_cache if credential_cache is not None else CredentialCache()
        )
        self._transport = transport
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def session(self) -> httpx.AsyncClient:
        if self._session is None:
            self._session = httpx.AsyncClient(
                follow_redirects=True,
                max_redirects=3,
                timeout=self.settings.timeout,
                transport=self._transport,
            )
        return self._session

    async def close(self):
        if self._session is not None:
            await self._session.aclose()
            self._session = None

    async def _request(
        self, method: str, url: str, *, stage: str, auth=None, stream=False, **kwargs
    ) -> httpx.Response:
        """Send a request, retrying transient failures

        Connection errors, timeouts and 5xx responses are retried with
        exponential backoff. Every other response is returned to the caller.
        """
        attempts = self.settings.max_attempts

        def log_retry(details):
            logger.warning(
                "%s %s failed (%s), retrying in %.1fs (attempt %d/%d)",
                method,
                url,
                _describe(details["exception"]),
                details["wait"],
                details["tries"],
                attempts,
            )

        @backoff.on_exception(
            backoff.expo,
            (httpx.TransportError, ServerError),
            max_tries=attempts,
            factor=self.settings.backoff,
            max_value=self.settings.backoff_max,
            jitter=None,
            on_backoff=log_retry,
            logger=None,
        )
        async def send() -> httpx.Response:
            request = self.session.build_request(method, url, **kwargs)
            response = await self.session.send(request, auth=auth, stream=stream)
            if response.status_code >= 500:
                await response.aclose()
                raise ServerError(response)
            return response

        try:
            return await send()
        except (httpx.TransportError, ServerError) as e:
            raise TransportError(
                f"{method} {url} failed after {attempts} attempts: {_describe(e)}",
                stage=stage,
            ) from e
        except httpx.RequestError as e:
            raise TransportError(
                f"{method} {url} failed: {_describe(e)}", stage=stage
            ) from e

    async def _error(
        self, response: httpx.Response, *, stage: str, **context
    ) -> PyRootFSError:
        await response.aread()
        await response.aclose()
        message = _error_message(response)
        logger.debug("Registry error %s: %s", response.status_code, message)
        if response.status_code == 404:
            return NotFound(f"Not found: {message}", stage=stage, **context)
        if response.status_code in (401, 403):
            return AuthError(f"Access denied: {message}", **context)
        return TransportError(
            f"Registry returned HTTP {response.status_code}: {message}",
            stage=stage,
            **context,
        )

    def _scope(self, repository: str, action: str = "pull") -> str:
        return f"repository:{repository}:{action}"

    async def authenticate(self, repository: str, scope: str = "pull"):
        """Return a credential for `repository`

        Anonymous access is tried first, an authorization challenge is
        answered with a bearer token or the configured basic credentials.

        ref: https://distribution.github.io/distribution/spec/auth/token/
        """
        scope = self._scope(repository, scope)
        if (self.host, scope) in self.credential_cache:
            return self.credential_cache[self.host, scope]

        response = await self._request("GET", f"{self.registry_url}/v2/", stage="auth")
        if response.status_code == 401:
            credential = await self._answer_challenge(response, scope)
        elif response.is_success:
            logger.debug("Anonymous access to %s", self.registry_url)
            credential = None
        else:
            raise await self._error(response, stage="auth")

        self.credential_cache[self.host, scope] = credential
        return credential

    async def _answer_challenge(self, response: httpx.Response, scope: str):
        www_authenticate = response.headers.get("WWW-Authenticate")
        if not www_authenticate:
            raise AuthError(f"{self.registry_url} answered 401 without a challenge")
        scheme, params = _parse_www_auth(www_authenticate)
        logger.debug("Challenge from %s: %s %s", self.registry_url, scheme, params)

        if scheme == "bearer":
            return await self._fetch_token(params, scope)
        if scheme == "basic":
            if not self.credentials:
                raise AuthError(
                    f"{self.registry_url} requires authentication, "
                    f"provide a username and/or password."
                )
            return httpx.BasicAuth(*self.credentials.basic_auth)
        raise AuthError(f"Unsupported authentication scheme {scheme!r}")

    async def _fetch_token(self, challenge: dict[str, str], scope: str) -> BearerAuth:
        """Use the token api, with basic authentication when configured, to get a token"""
        realm = challenge.get("realm")
        if not realm:
            raise AuthError(f"Bearer challenge from {self.registry_url} has no realm")

        params = {"scope": scope}
        if "service" in challenge:
            params["service"] = challenge["service"]
        auth = None
        if self.credentials:
            auth = httpx.BasicAuth(*self.credentials.basic_auth)
            if self.credentials.username:
                params["account"] = self.credentials.username

        response = await self._request("GET", realm, params=params, auth=auth, stage="auth")
        if response.status_code in (401, 403):
            await response.aread()
            raise AuthError(
                f"Token endpoint {realm} rejected the request: {_error_message(response)}"
            )
        if not response.is_success:
            raise await self._error(response, stage="auth")

        try:
            body = response.json()
            token = body.get("token") or body.get("access_token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise AuthError(f"Token endpoint {realm} did not return a token")
        return BearerAuth(token)

    async def _registry_request(
        self,
        method: str,
        uri: str,
        repository: str,
        *,
        stage: str,
        stream: bool = False,
        headers: dict[str, str] | None = None,
        **context,
    ) -> httpx.Response:
        """Request `uri` with the credential for `repository`

        A 401 on a request means the credential expired or the repository
        needs more than anonymous access; the challenge is answered once and
        the request retried once.
        """
        url = f"{self.registry_url}{uri}"
        auth = await self.authenticate(repository)
        response = await self._request(
            method, url, auth=auth, stream=stream, headers=headers, stage=stage
        )
        if response.status_code == 401:
            logger.info("Credential for %s rejected, re-authenticating", repository)
            await response.aread()
            await response.aclose()
            scope = self._scope(repository)
            self.credential_cache.discard(self.host, scope)
            auth = await self._answer_challenge(response, scope)
            self.credential_cache[self.host, scope] = auth
            response = await self._request(
                method, url, auth=auth, stream=stream, headers=headers, stage=stage
            )

        if not response.is_success:
            raise await self._error(response, stage=stage, **context)
        return response

    async def fetch_manifest(self, reference: ImageReference) -> ManifestResponse:
        """Fetch the manifest or index `reference` points at

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pulling-manifests
        """
        uri = f"/v2/{reference.repository}/manifests/{reference.selector}"
        response = await self._registry_request(
            "GET",
            uri,
            reference.repository,
            headers={"Accept": MANIFEST_ACCEPT},
            stage="manifest",
            reference=str(reference),
        )
        data = response.content
        reported = response.headers.get("Docker-Content-Digest")

        if reference.by_digest:
            expected = Digest.parse(reference.digest)
            if not expected.supported:
                raise DigestMismatch(
                    f"Unsupported digest algorithm {expected.algorithm}",
                    reference=str(reference),
                    stage="manifest",
                )
            digest = digest_bytes(data, expected.algorithm)
            if digest != reference.digest:
                raise DigestMismatch(
                    f"Manifest content has digest {digest}",
                    reference=str(reference),
                    digest=reference.digest,
                    stage="manifest",
                )
            if reported and reported != reference.digest:
                raise DigestMismatch(
                    f"Registry reported digest {reported}",
                    reference=str(reference),
                    digest=reference.digest,
                    stage="manifest",
                )
        else:
            digest = digest_bytes(data)
            if reported and reported.startswith("sha256:") and reported != digest:
                raise DigestMismatch(
                    f"Registry reported digest {reported}, content has {digest}",
                    reference=str(reference),
                    digest=reported,
                    stage="manifest",
                )

        payload = parse_manifest(data, response.headers.get("Content-Type"))
        logger.debug("Fetched %s %s (%s)", payload.mediaType, digest, reference)
        return ManifestResponse(
            payload=payload, digest=digest, mediaType=payload.mediaType, data=data
        )

    @asynccontextmanager
    async def open_blob_stream(
        self, repository: str, digest: str
    ) -> AsyncIterator[BlobStream]:
        """Open the blob `digest` for streaming

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pulling-blobs
        """
        response = await self._registry_request(
            "GET",
            f"/v2/{repository}/blobs/{digest}",
            repository,
            stage="blob",
            stream=True,
            digest=digest,
        )
        try:
            yield BlobStream(response, digest)
        finally:
            await response.aclose()
