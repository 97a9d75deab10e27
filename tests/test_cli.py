import functools
import json

import pytest
from click.testing import CliRunner
from conftest import build_tar, file_entry

import pyrootfs.oci
from pyrootfs.__main__ import cli

REFERENCE = "example.com/library/app:1.0"


@pytest.fixture
def image(registry):
    return registry.add_image(
        "library/app",
        "1.0",
        [build_tar(file_entry("etc/a", b"a")), build_tar(file_entry("etc/.wh.a"))],
    )


@pytest.fixture
def invoke(monkeypatch, registry, settings):
    for name in ("inspect", "pull"):
        wrapped = functools.partial(
            getattr(pyrootfs.oci, name), transport=registry.transport
        )
        monkeypatch.setattr(pyrootfs.oci, name, wrapped)

    runner = CliRunner()

    def run(*args):
        return runner.invoke(
            cli, list(args), env={"PYROOTFS_CACHE_DIR": str(settings.cache_dir)}
        )

    return run


def test_image_inspect(invoke, image):
    result = invoke("image", "inspect", REFERENCE, "--platform", "linux/amd64")

    assert result.exit_code == 0, result.output
    summary = json.loads(result.output)
    assert summary["digest"] == image["digest"]
    assert [layer["digest"] for layer in summary["layers"]] == [
        layer["digest"] for layer in image["manifest"]["layers"]
    ]


def test_image_inspect_not_found(invoke, image):
    result = invoke("image", "inspect", "example.com/library/app:2.0")

    assert result.exit_code == 1
    assert "[manifest] Not found" in result.output


def test_image_inspect_invalid_reference(invoke):
    result = invoke("image", "inspect", "Not A Reference")

    assert result.exit_code == 1
    assert "[resolve]" in result.output


def test_invalid_platform(invoke):
    result = invoke("image", "inspect", REFERENCE, "--platform", "linux")

    assert result.exit_code == 2
    assert "Invalid platform" in result.output


def test_image_pull(invoke, image, rootfs):
    result = invoke("image", "pull", REFERENCE, str(rootfs), "--platform", "linux/amd64")

    assert result.exit_code == 0, result.output
    assert f"Done pulling {REFERENCE}" in result.output
    assert (rootfs / "etc").is_dir()
    assert not (rootfs / "etc" / "a").exists()


def test_image_pull_non_empty_target(invoke, image, rootfs):
    rootfs.mkdir()
    (rootfs / "keep").touch()

    result = invoke("image", "pull", REFERENCE, str(rootfs), "--platform", "linux/amd64")

    assert result.exit_code == 1
    assert "not empty" in result.output
    assert (rootfs / "keep").exists()

    result = invoke(
        "image", "pull", REFERENCE, str(rootfs), "--platform", "linux/amd64", "--force"
    )
    assert result.exit_code == 0, result.output


def test_image_pull_oci_layout(invoke, image, rootfs, tmp_path):
    layout = tmp_path / "layout"

    result = invoke(
        "image", "pull", REFERENCE, str(rootfs), "--platform", "linux/amd64",
        "--oci-layout", str(layout),
    )

    assert result.exit_code == 0, result.output
    assert f"OCI layout written to {layout}" in result.output
    index = json.loads((layout / "index.json").read_text())
    assert index["manifests"][0]["digest"] == image["digest"]


def test_image_pull_clean_on_error(invoke, registry, image, rootfs):
    layer = image["manifest"]["layers"][0]["digest"]
    registry.failures[f"/v2/library/app/blobs/{layer}"] = [500, 500, 500]

    result = invoke(
        "image", "pull", REFERENCE, str(rootfs), "--platform", "linux/amd64",
        "--clean-on-error",
    )

    assert result.exit_code == 1
    assert "[blob]" in result.output
    assert not rootfs.exists()


def test_cache_list_and_clear(invoke, image, rootfs, settings):
    invoke("image", "pull", REFERENCE, str(rootfs), "--platform", "linux/amd64")

    result = invoke("cache", "list")
    assert result.exit_code == 0
    listed = result.output.split()
    assert image["manifest"]["config"]["digest"] in listed
    assert len(listed) == 3

    result = invoke("cache", "clear")
    assert result.exit_code == 0
    assert not settings.cache_dir.exists()
    assert invoke("cache", "list").output == ""
