import logging
import re
from dataclasses import dataclass

from pyrootfs.oci.digest import Digest
from pyrootfs.oci.errors import InvalidReference

logger = logging.getLogger(__name__)

DEFAULT_HOST = "docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"
TRANSPORT = "docker"
MAX_NAME_LENGTH = 255

# ref: https://github.com/distribution/reference/blob/main/reference.go
DOMAIN_COMPONENT_PATTERN = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
HOST_PATTERN = (
    rf"{DOMAIN_COMPONENT_PATTERN}(?:\.{DOMAIN_COMPONENT_PATTERN})*"
    r"|\[[a-fA-F0-9:]+\]"
)
DOMAIN_PATTERN = rf"(?:{HOST_PATTERN})(?::[0-9]+)?"
PATH_COMPONENT_PATTERN = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
REPOSITORY_PATTERN = rf"{PATH_COMPONENT_PATTERN}(?:/{PATH_COMPONENT_PATTERN})*"
TAG_PATTERN = r"[\w][\w.-]{0,127}"
REFERENCE_DIGEST_PATTERN = (
    r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"
)

DOMAIN_RE = re.compile(rf"^{DOMAIN_PATTERN}$")
REFERENCE_RE = re.compile(
    rf"^(?P<repository>{REPOSITORY_PATTERN})"
    rf"(?::(?P<tag>{TAG_PATTERN}))?"
    rf"(?:@(?P<digest>{REFERENCE_DIGEST_PATTERN}))?$"
)


@dataclass(frozen=True, slots=True)
class ImageReference:
    """A parsed image reference

    ref: https://github.com/distribution/reference/blob/main/reference.go
    """

    host: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    def __post_init__(self):
        if not self.tag and not self.digest:
            raise InvalidReference("Reference needs a tag or a digest", reference=str(self))

    def __str__(self):
        result = f"{self.host}/{self.repository}"
        if self.tag:
            result += f":{self.tag}"
        if self.digest:
            result += f"@{self.digest}"
        return result

    @property
    def selector(self) -> str:
        """The tag or digest used to request the manifest, a digest wins"""
        return self.digest or self.tag

    @property
    def by_digest(self) -> bool:
        return self.digest is not None

    def with_digest(self, digest: str) -> "ImageReference":
        return ImageReference(self.host, self.repository, self.tag, digest)


def _supported_digest(value: str) -> bool:
    try:
        return Digest.parse(value).supported
    except ValueError:
        return False


def _split_host(value: str) -> tuple[str, str]:
    """Split the registry host from the remainder of the reference

    The first path component is a host when it looks like one:
    it contains a "." or a ":", or it is "localhost".
    """
    first, sep, rest = value.partition("/")
    if sep and (
        "." in first or ":" in first or first == "localhost" or first.startswith("[")
    ):
        return first, rest
    return DEFAULT_HOST, value


def parse_reference(value: str) -> ImageReference:
    """Parse `[scheme://][host[:port]/]repository[:tag][@digest]`

    - 'alpine' -> docker.io/library/alpine:latest
    - 'foo/bar:1.0' -> docker.io/foo/bar:1.0
    - 'docker://localhost:5000/foo@sha256:...' -> localhost:5000/foo@sha256:...
    """
    original = value
    if not value:
        raise InvalidReference("Reference is empty")

    scheme, sep, rest = value.partition("://")
    if sep:
        if scheme != TRANSPORT:
            raise InvalidReference(
                f"Unsupported transport {scheme!r}, expected {TRANSPORT!r}",
                reference=original,
            )
        value = rest

    host, remainder = _split_host(value)
    if not DOMAIN_RE.match(host):
        raise InvalidReference(f"Invalid registry host {host!r}", reference=original)
    if not remainder:
        raise InvalidReference("Repository is empty", reference=original)

    match = REFERENCE_RE.match(remainder)
    if match is None:
        raise InvalidReference(
            "Reference is not in '[host/]repository[:tag][@digest]' format",
            reference=original,
        )

    repository = match["repository"]
    if host == DEFAULT_HOST and "/" not in repository:
        repository = f"{DEFAULT_NAMESPACE}/{repository}"
    if len(repository) > MAX_NAME_LENGTH:
        raise InvalidReference(
            f"Repository name longer than {MAX_NAME_LENGTH} characters",
            reference=original,
        )

    tag, digest = match["tag"], match["digest"]
    if digest is not None and not _supported_digest(digest):
        raise InvalidReference(
            f"Unsupported or malformed digest {digest!r}", reference=original
        )
    if tag is None and digest is None:
        tag = DEFAULT_TAG

    reference = ImageReference(host=host, repository=repository, tag=tag, digest=digest)
    logger.debug("Parsed %r as %s", original, reference)
    return reference
