"""Reproducible tarballs and content hashes for snapshots, layers and artifacts."""
from __future__ import annotations

import gzip
import hashlib
import os
import shutil
import tarfile
from pathlib import Path
from typing import Iterator, Tuple

DIGEST_PREFIX = "sha256:"
_CHUNK = 1024 * 1024


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return DIGEST_PREFIX + digest.hexdigest()


def hash_tree(root: Path) -> str:
    """Content hash of a directory: relative paths, executable bits and file bytes."""

    root = Path(root)
    digest = hashlib.sha256()
    for path in _walk(root):
        relative = path.relative_to(root).as_posix()
        if path.is_symlink():
            digest.update(f"L {relative} {os.readlink(path)}\n".encode("utf-8"))
        elif path.is_dir():
            digest.update(f"D {relative}\n".encode("utf-8"))
        else:
            executable = "x" if os.access(path, os.X_OK) else "-"
            digest.update(f"F {relative} {executable}\n".encode("utf-8"))
            with path.open("rb") as handle:
                for chunk in iter(lambda: handle.read(_CHUNK), b""):
                    digest.update(chunk)
    return DIGEST_PREFIX + digest.hexdigest()


def write_tarball(root: Path, destination: Path) -> Tuple[str, int]:
    """
    Write *root* to a gzip tarball whose bytes depend only on the tree contents.

    Entries are sorted and ownership, timestamps and permission noise are
    normalised, so the same tree always yields the same digest.
    """

    root = Path(root)
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("wb") as raw, gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as compressed:
        with tarfile.open(fileobj=compressed, mode="w", format=tarfile.PAX_FORMAT) as archive:
            for path in _walk(root):
                archive.add(path, arcname=path.relative_to(root).as_posix(), recursive=False, filter=_normalise)
    return sha256_file(destination), destination.stat().st_size


def extract_tarball(archive_path: Path, destination: Path) -> None:
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive_path, mode="r:gz") as archive:
        archive.extractall(destination, filter="data")


def replace_tree(archive_path: Path, destination: Path) -> None:
    """Empty *destination* and unpack *archive_path* into it."""

    destination = Path(destination)
    if destination.exists():
        for entry in destination.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
    extract_tarball(archive_path, destination)


def copy_tree(source: Path, destination: Path) -> None:
    source = Path(source)
    destination = Path(destination)
    if source.is_file():
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        return
    shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)


def _walk(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        current = Path(dirpath)
        entries = [current / name for name in dirnames] + [current / name for name in sorted(filenames)]
        for entry in sorted(entries, key=lambda p: p.name):
            yield entry


def _normalise(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    if info.isdir():
        info.mode = 0o755
    elif info.isfile():
        info.mode = 0o755 if info.mode & 0o111 else 0o644
    return info
