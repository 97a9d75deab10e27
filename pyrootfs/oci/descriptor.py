import platform as _platform

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator

from pyrootfs.oci.digest import DIGEST_RE

# Map `platform.machine()` names to the names used in image indexes
# ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md#platform-variants
MACHINE_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "386",
    "i686": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}
MACHINE_VARIANTS = {
    "aarch64": "v8",
    "arm64": "v8",
    "armv7l": "v7",
    "armv6l": "v6",
}


class Platform(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    architecture: str
    os: str
    osVersion: str | None = Field(default=None, alias="os.version")
    osFeatures: list[str] | None = Field(default=None, alias="os.features")
    variant: str | None = None

    def __str__(self):
        return "/".join(
            part for part in (self.os, self.architecture, self.variant) if part
        )

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Parse an ``os/architecture[/variant]`` string"""
        os_, _, rest = value.partition("/")
        architecture, _, variant = rest.partition("/")
        if not os_ or not architecture:
            raise ValueError(f"Invalid platform: {value!r}")
        return cls(os=os_, architecture=architecture, variant=variant or None)

    @classmethod
    def current(cls) -> "Platform":
        """The platform of the host we are running on.

        Images are always Linux images, so `os` is fixed to "linux".
        """
        machine = _platform.machine().lower()
        return cls(
            os="linux",
            architecture=MACHINE_ARCHITECTURES.get(machine, machine),
            variant=MACHINE_VARIANTS.get(machine),
        )


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    model_config = ConfigDict(frozen=True)

    mediaType: str
    digest: str
    size: NonNegativeInt
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    artifactType: str | None = None
    platform: Platform | None = None

    @field_validator("digest")
    @classmethod
    def check_digest(cls, value: str) -> str:
        if not DIGEST_RE.match(value):
            raise ValueError(f"invalid digest {value!r}")
        return value
