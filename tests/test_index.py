import pytest

from pyrootfs.oci.descriptor import Descriptor, Platform
from pyrootfs.oci.errors import NoMatchingPlatform
from pyrootfs.oci.index import Index, resolve, select_manifest
from pyrootfs.oci.manifest import OCI_MANIFEST, Manifest


def entry(number: int, platform: str | None) -> Descriptor:
    return Descriptor(
        mediaType=OCI_MANIFEST,
        digest=f"sha256:{number:064x}",
        size=100,
        platform=Platform.parse(platform) if platform else None,
    )


INDEX = Index(
    manifests=(
        entry(1, "linux/amd64"),
        entry(2, "linux/arm/v6"),
        entry(3, "linux/arm/v7"),
        entry(4, "linux/arm64/v8"),
        entry(5, "windows/amd64"),
        entry(6, None),
        entry(7, "linux/amd64"),
    )
)


@pytest.mark.parametrize(
    "platform,expected",
    [
        ("linux/amd64", 1),
        ("linux/arm/v7", 3),
        ("linux/arm/v6", 2),
        ("linux/arm/v5", 2),
        ("linux/arm64", 4),
        ("linux/arm64/v8", 4),
        ("windows/amd64", 5),
    ],
)
def test_select_manifest(platform, expected):
    selected = select_manifest(INDEX, Platform.parse(platform))
    assert selected.digest == f"sha256:{expected:064x}"


def test_select_prefers_variantless_fallback():
    index = Index(manifests=(entry(1, "linux/arm/v6"), entry(2, "linux/arm")))
    assert select_manifest(index, Platform.parse("linux/arm/v7")).digest.endswith("2")


def test_select_is_deterministic():
    platform = Platform.parse("linux/amd64")
    selected = {select_manifest(INDEX, platform).digest for _ in range(10)}
    assert len(selected) == 1


def test_no_matching_platform():
    with pytest.raises(NoMatchingPlatform) as exc_info:
        select_manifest(INDEX, Platform.parse("linux/s390x"))
    assert "linux/arm64/v8" in str(exc_info.value)


def test_resolve_returns_manifest_unchanged():
    manifest = Manifest(config=entry(9, None))
    assert resolve(manifest, Platform.parse("linux/amd64")) is manifest
    assert resolve(INDEX, Platform.parse("linux/amd64")).digest.endswith("1")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("linux/amd64", Platform(os="linux", architecture="amd64")),
        ("linux/arm64/v8", Platform(os="linux", architecture="arm64", variant="v8")),
    ],
)
def test_platform_parse(value, expected):
    assert (platform := Platform.parse(value)) == expected
    assert str(platform) == value


@pytest.mark.parametrize("value", ["", "linux", "linux/", "/amd64"])
def test_platform_parse_invalid(value):
    with pytest.raises(ValueError):
        Platform.parse(value)


def test_platform_current():
    platform = Platform.current()
    assert platform.os == "linux"
    assert platform.architecture
