import hashlib
import re
from dataclasses import dataclass

# ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md#digests
ALGORITHM_PATTERN = r"[a-z0-9]+(?:[+._-][a-z0-9]+)*"
HEX_PATTERN = r"[a-zA-Z0-9=_-]+"
DIGEST_PATTERN = rf"{ALGORITHM_PATTERN}:{HEX_PATTERN}"
DIGEST_RE = re.compile(rf"^{DIGEST_PATTERN}$")
LOWER_HEX_RE = re.compile(r"^[0-9a-f]+$")

SUPPORTED_ALGORITHMS = {
    "sha256": 64,
    "sha384": 96,
    "sha512": 128,
}


@dataclass(frozen=True, slots=True)
class Digest:
    """An algorithm-prefixed content digest, e.g. ``sha256:<hex>``"""

    algorithm: str
    hex: str

    def __str__(self):
        return f"{self.algorithm}:{self.hex}"

    @property
    def supported(self) -> bool:
        length = SUPPORTED_ALGORITHMS.get(self.algorithm)
        return (
            length is not None
            and len(self.hex) == length
            and LOWER_HEX_RE.match(self.hex) is not None
        )

    @classmethod
    def parse(cls, value: str) -> "Digest":
        if not DIGEST_RE.match(value):
            raise ValueError(f"Invalid digest: {value!r}")
        algorithm, hex_ = value.split(":", 1)
        return cls(algorithm, hex_)

    def digester(self) -> "Digester":
        return Digester(self.algorithm)


class Digester:
    """Incrementally compute a digest over a sequence of chunks"""

    def __init__(self, algorithm: str = "sha256"):
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported digest algorithm: {algorithm}")
        self.algorithm = algorithm
        self._hash = hashlib.new(algorithm)
        self.size = 0

    def update(self, chunk: bytes):
        self._hash.update(chunk)
        self.size += len(chunk)

    @property
    def digest(self) -> str:
        return f"{self.algorithm}:{self._hash.hexdigest()}"


def digest_bytes(data: bytes, algorithm: str = "sha256") -> str:
    digester = Digester(algorithm)
    digester.update(data)
    return digester.digest
