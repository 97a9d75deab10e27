"""Errors raised while resolving, fetching and materializing images.

Every error names the stage it happened in, the reference or digest
involved (when known) and whether the caller has anything to clean up.
Only an incomplete rootfs ever needs cleanup, cache entries are always
verified or absent.
"""


class PyRootFSError(Exception):
    """Base class for all pyrootfs errors."""

    stage: str = "resolve"
    needs_cleanup: bool = False

    def __init__(
        self,
        message: str,
        *,
        reference: str | None = None,
        digest: str | None = None,
        stage: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.reference = reference
        self.digest = digest
        if stage is not None:
            self.stage = stage

    def __str__(self):
        parts = [f"[{self.stage}] {self.message}"]
        if self.reference is not None:
            parts.append(f"reference={self.reference}")
        if self.digest is not None:
            parts.append(f"digest={self.digest}")
        if self.needs_cleanup:
            parts.append("target requires cleanup")
        return ", ".join(parts)


class InvalidReference(PyRootFSError):
    stage = "resolve"


class AuthError(PyRootFSError):
    stage = "auth"


class NotFound(PyRootFSError):
    stage = "manifest"


class NoMatchingPlatform(PyRootFSError):
    stage = "manifest"


class InvalidManifest(PyRootFSError):
    stage = "manifest"


class DigestMismatch(PyRootFSError):
    stage = "blob"


class CorruptEntry(PyRootFSError):
    stage = "cache"


class TransportError(PyRootFSError):
    """Raised when the retry budget for a request is exhausted,
    or the registry answered with a terminal error."""

    stage = "manifest"


class ExtractionFailure(PyRootFSError):
    stage = "extract"
    needs_cleanup = True


class DownloadInterrupted(TransportError):
    """The connection failed while a blob body was streaming."""

    stage = "blob"


class TargetNotEmpty(PyRootFSError):
    """The rootfs target holds files and overwriting was not requested."""

    stage = "extract"
