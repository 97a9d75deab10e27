import os
from pathlib import Path

from pydantic import BaseModel, Field, PositiveFloat, PositiveInt


class Settings(BaseModel):
    """Runtime settings for talking to registries and storing blobs.

    The retry defaults give 3 attempts with a backoff of 0.2s, then 0.4s,
    capped at `backoff_max`.
    """

    cache_dir: Path
    max_attempts: PositiveInt = 3
    backoff: PositiveFloat = 0.2
    backoff_max: PositiveFloat = 5.0
    timeout: PositiveFloat = 30.0
    max_concurrent_downloads: PositiveInt = 3
    insecure: bool = False


class Credentials(BaseModel):
    """Username and password used to obtain registry tokens"""

    username: str | None = None
    password: str | None = Field(default=None, repr=False)

    def __bool__(self):
        return bool(self.password)

    @property
    def basic_auth(self) -> tuple[str, str]:
        return self.username or "", self.password or ""


def default_cache_dir() -> Path:
    cache_home = os.environ.get("XDG_CACHE_HOME") or Path.home() / ".cache"
    return Path(cache_home) / "pyrootfs" / "blobs"
