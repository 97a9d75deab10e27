"""Apply layer archives onto a rootfs directory

ref: https://github.com/opencontainers/image-spec/blob/main/layer.md

Whiteouts are resolved against what is already on disk: a `.wh.<name>`
entry removes `<name>` left by earlier layers, a `.wh..wh..opq` entry
removes every child of its directory that the current layer did not
create itself. Layers must be applied bottom to top.
"""
import errno
import json
import logging
import os
import posixpath
import shutil
import tarfile
import zlib
from pathlib import Path

from pyrootfs.oci.blob import GZIP_MEDIA_TYPES, TAR_MEDIA_TYPES
from pyrootfs.oci.errors import ExtractionFailure

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
WHITEOUT_OPAQUE = ".wh..wh..opq"
COMPLETE_MARKER = ".pyrootfs-complete"
MAX_SYMLINKS = 255


def _tar_mode(media_type: str | None) -> str:
    if media_type is None:
        return "r:*"
    if media_type in GZIP_MEDIA_TYPES:
        return "r:gz"
    if media_type in TAR_MEDIA_TYPES:
        return "r:"
    raise ExtractionFailure(f"Unsupported layer media type {media_type}")


def _normalize(name: str) -> str:
    """Return the archive path relative to the root, '' for the root itself"""
    parts = []
    for part in name.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise ExtractionFailure(f"Refusing archive member outside the root: {name}")
        parts.append(part)
    return "/".join(parts)


def _resolve(root: Path, name: str) -> str:
    """Resolve the parent directories of `name` inside `root`

    Symbolic links among the parents are followed as if `root` were `/`,
    so an absolute link target or a run of `..` never leaves the root.
    The last component is left alone, it is the entry itself.
    """
    if not name:
        return name
    *parents, leaf = name.split("/")
    resolved = []
    pending = list(parents)
    followed = 0
    while pending:
        part = pending.pop(0)
        if part in ("", "."):
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = root.joinpath(*resolved, part)
        if candidate.is_symlink():
            followed += 1
            if followed > MAX_SYMLINKS:
                raise ExtractionFailure(f"Too many levels of symbolic links in {name}")
            target = os.readlink(candidate)
            if target.startswith("/"):
                resolved = []
            pending = target.split("/") + pending
        else:
            resolved.append(part)
    return "/".join([*resolved, leaf])


def _remove(path: Path):
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.is_symlink() or path.exists():
        path.unlink()


class LayerApplier:
    """Extract a single layer archive onto `root`"""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.created: set[str] = set()
        self.directories: list[tarfile.TarInfo] = []
        self.is_root = hasattr(os, "geteuid") and os.geteuid() == 0

    def _created_below(self, name: str) -> bool:
        prefix = f"{name}/"
        return any(path.startswith(prefix) for path in self.created)

    def remove_earlier(self, name: str):
        """Remove `name` unless the current layer created it

        Directories the current layer created or wrote into are descended
        into and only their older children are removed.
        """
        path = self.root / name
        if path.is_dir() and not path.is_symlink():
            if name in self.created or self._created_below(name):
                for child in path.iterdir():
                    self.remove_earlier(posixpath.join(name, child.name))
                return
        if name not in self.created:
            _remove(path)

    def _children(self, directory: str) -> list[str]:
        target = self.root / directory if directory else self.root
        if not target.is_dir() or target.is_symlink():
            return []
        return [
            posixpath.join(directory, child.name) if directory else child.name
            for child in target.iterdir()
        ]

    def whiteout(self, name: str):
        directory, _, filename = name.rpartition("/")
        if filename == WHITEOUT_OPAQUE:
            logger.debug("Opaque whiteout: %s", directory or "/")
            for child in self._children(directory):
                self.remove_earlier(child)
        else:
            hidden = posixpath.join(directory, filename[len(WHITEOUT_PREFIX):])
            logger.debug("Whiteout: %s", hidden)
            self.remove_earlier(hidden)

    def _set_xattrs(self, member: tarfile.TarInfo, path: Path):
        for key, value in member.pax_headers.items():
            if not key.startswith("SCHILY.xattr."):
                continue
            attribute = key[len("SCHILY.xattr."):]
            try:
                os.setxattr(
                    path,
                    attribute,
                    value.encode("utf-8", "surrogateescape"),
                    follow_symlinks=False,
                )
            except OSError as e:
                if e.errno not in (errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP):
                    raise
                logger.warning("Cannot set %s on %s: %s", attribute, member.name, e)

    def _clear_parents(self, name: str):
        """Remove a non-directory standing where `name` needs a parent"""
        parts = name.split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            path = self.root.joinpath(*parts[:depth])
            if not (path.is_symlink() or path.exists()):
                return
            if not path.is_dir() or path.is_symlink():
                _remove(path)
                return

    def _link_source(self, linkname: str) -> str:
        """Resolve a hardlink target to a regular file inside the root

        The target itself must not be a symbolic link, linking follows it.
        """
        source = _resolve(self.root, _normalize(linkname))
        path = self.root / source
        if not source or path.is_symlink() or not path.is_file():
            raise ExtractionFailure(
                f"Hardlink target {linkname} is not a regular file inside the root"
            )
        return source

    def extract(self, archive: tarfile.TarFile, member: tarfile.TarInfo, name: str):
        if member.isdev() and not member.isfifo() and not self.is_root:
            logger.warning("Skipping device node %s, not running as root", name)
            return

        self._clear_parents(name)
        path = self.root / name
        if path.is_symlink() or path.exists():
            if not (member.isdir() and path.is_dir() and not path.is_symlink()):
                _remove(path)

        member.name = name
        if member.islnk():
            member.linkname = self._link_source(member.linkname)
        # Directory attributes are set once the layer is done, a read-only
        # directory must still accept its children.
        archive.extract(
            member,
            self.root,
            set_attrs=not member.isdir(),
            numeric_owner=True,
            filter="fully_trusted",
        )
        if member.isdir():
            self.directories.append(member)
        if not member.issym():
            self._set_xattrs(member, path)
        self.created.add(name)

    def finish(self, archive: tarfile.TarFile):
        for member in sorted(self.directories, key=lambda m: m.name, reverse=True):
            path = str(self.root / member.name)
            if not os.path.isdir(path) or os.path.islink(path):
                continue
            if self.is_root:
                archive.chown(member, path, numeric_owner=True)
            archive.utime(member, path)
            archive.chmod(member, path)

    def apply(self, archive: tarfile.TarFile):
        for member in archive:
            name = _resolve(self.root, _normalize(member.name))
            if not name:
                continue
            basename = posixpath.basename(name)
            if basename.startswith(WHITEOUT_PREFIX):
                self.whiteout(name)
            else:
                self.extract(archive, member, name)
        self.finish(archive)


def apply_layer(path: Path, target: Path, media_type: str | None = None):
    """Extract the layer archive at `path` onto `target`

    On failure `target` is left as it is, without a completion marker.
    """
    target = Path(target)
    target.mkdir(parents=True, exist_ok=True)
    mode = _tar_mode(media_type)
    logger.debug("Applying layer %s to %s", path, target)
    try:
        with tarfile.open(path, mode=mode) as archive:
            LayerApplier(target).apply(archive)
    except ExtractionFailure:
        raise
    except (tarfile.TarError, zlib.error, EOFError, OSError, ValueError) as e:
        raise ExtractionFailure(f"Cannot apply layer {path}: {e}") from e


def mark_complete(target: Path, **metadata):
    """Record that `target` holds a fully materialized rootfs"""
    marker = Path(target) / COMPLETE_MARKER
    tmp = marker.with_name(f"{COMPLETE_MARKER}.tmp")
    tmp.write_text(json.dumps(metadata, indent=2, sort_keys=True))
    os.replace(tmp, marker)


def is_complete(target: Path) -> bool:
    return (Path(target) / COMPLETE_MARKER).is_file()


def clear_marker(target: Path):
    (Path(target) / COMPLETE_MARKER).unlink(missing_ok=True)
