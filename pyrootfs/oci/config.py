from pydantic import BaseModel, field_validator

from pyrootfs.oci.digest import Digest


class ContainerConfig(BaseModel):
    """Execution parameters for a container based on the image.

    Field names follow the JSON keys of the image config.
    """

    User: str | None = None
    ExposedPorts: dict[str, dict] | None = None
    Env: list[str] | None = None
    Entrypoint: list[str] | None = None
    Cmd: list[str] | None = None
    Volumes: dict[str, dict] | None = None
    WorkingDir: str | None = None
    Labels: dict[str, str] | None = None
    StopSignal: str | None = None


class RootFS(BaseModel):
    type: str = "layers"
    diff_ids: list[str] = []

    @field_validator("diff_ids")
    @classmethod
    def check_diff_ids(cls, diff_ids: list[str]) -> list[str]:
        for diff_id in diff_ids:
            if not Digest.parse(diff_id).supported:
                raise ValueError(f"Unsupported diff_id digest {diff_id!r}")
        return diff_ids


class History(BaseModel):
    created: str | None = None
    created_by: str | None = None
    author: str | None = None
    comment: str | None = None
    empty_layer: bool = False


class ImageConfig(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/config.md
    """

    architecture: str = ""
    os: str = ""
    variant: str | None = None
    created: str | None = None
    author: str | None = None
    config: ContainerConfig = ContainerConfig()
    rootfs: RootFS | None = None
    history: list[History] | None = None

    @property
    def diff_ids(self) -> list[str] | None:
        if self.rootfs is None or not self.rootfs.diff_ids:
            return None
        return self.rootfs.diff_ids
