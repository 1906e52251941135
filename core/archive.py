"""Archive creation with deterministic entry metadata."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Protocol, runtime_checkable
import bz2
import gzip
import lzma
import os
import shutil
import stat
import tarfile
import tempfile
import time
import zipfile

import zstandard as zstd

_SUFFIX_FORMATS: list[tuple[str, str]] = [
    (".tar.zst", "zst"),
    (".tzst", "zst"),
    (".tar.gz", "gztar"),
    (".tgz", "gztar"),
    (".tar.bz2", "bztar"),
    (".tbz", "bztar"),
    (".tar.xz", "xztar"),
    (".txz", "xztar"),
    (".tar", "tar"),
    (".zip", "zip"),
]

_FORMAT_ALIASES: dict[str, str] = {
    "zst": "zst",
    "tar.zst": "zst",
    "tzst": "zst",
    "gztar": "gztar",
    "gz": "gztar",
    "tar.gz": "gztar",
    "tgz": "gztar",
    "bztar": "bztar",
    "bz2": "bztar",
    "tar.bz2": "bztar",
    "tbz": "bztar",
    "xztar": "xztar",
    "xz": "xztar",
    "tar.xz": "xztar",
    "txz": "xztar",
    "tar": "tar",
    "zip": "zip",
}

FORMAT_SUFFIXES: dict[str, str] = {
    "zst": ".tar.zst",
    "gztar": ".tar.gz",
    "bztar": ".tar.bz2",
    "xztar": ".tar.xz",
    "tar": ".tar",
    "zip": ".zip",
}
"""Canonical file suffix for each archive format."""

ModeResolver = Callable[[str, bool], int]

# Zip cannot represent timestamps before 1980-01-01.
_ZIP_EPOCH = 315532800


def default_mode(relative_path: str, is_dir: bool) -> int:
    return 0o755 if is_dir else 0o644


@runtime_checkable
class ArchiveConsole(Protocol):
    """Minimal console interface required by :class:`ArchiveManager`."""

    dry_run: bool

    def info(self, message: str) -> None:
        ...

    def dry(self, message: str) -> None:
        ...


@dataclass(slots=True)
class ArchiveArtifact:
    """Description of a directory tree to package into an archive.

    ``prefix`` becomes the single top-level directory inside the archive,
    ``mode_for`` maps a relative POSIX path to its permission bits, and
    ``mtime`` is stamped on every entry so archives are reproducible.
    """

    source_dir: Path
    prefix: str | None = None
    label: str | None = None
    mode_for: ModeResolver | None = None
    mtime: int = 0


def resolve_archive_format(target: Path, format_hint: str | None = None) -> str:
    if format_hint:
        normalized = format_hint.strip().lower()
        if normalized in _FORMAT_ALIASES:
            return _FORMAT_ALIASES[normalized]
        raise ValueError(f"Unsupported archive format hint '{format_hint}'")

    filename = target.name.lower()
    for suffix, fmt in sorted(_SUFFIX_FORMATS, key=lambda item: len(item[0]), reverse=True):
        if filename.endswith(suffix):
            return fmt

    raise ValueError(
        "Unable to determine archive format from target path. "
        "Provide an explicit format_hint or use a supported suffix."
    )


def iter_tree(root: Path) -> Iterator[tuple[Path, str, bool]]:
    """Yield ``(path, relative_posix, is_dir)`` for everything below *root*, sorted."""

    for dirpath, dirnames, filenames in os.walk(root, topdown=True):
        dirnames.sort()
        current = Path(dirpath)
        for dirname in dirnames:
            path = current / dirname
            yield path, path.relative_to(root).as_posix(), True
        for filename in sorted(filenames):
            path = current / filename
            yield path, path.relative_to(root).as_posix(), False


class ArchiveManager:
    """Create compressed archives from directories."""

    def __init__(self, console: ArchiveConsole) -> None:
        self._console = console

    @staticmethod
    def _zstd_thread_count(source_size: int) -> int:
        cpu_count = os.cpu_count() or 1
        size_mb = max(1, source_size) / (1024 * 1024)
        desired = 1
        if size_mb >= 32:
            desired = 2
        if size_mb >= 256:
            desired = 4
        if size_mb >= 1024:
            desired = 8
        return max(1, min(desired, cpu_count))

    def create_archive(
        self,
        *,
        artifact: ArchiveArtifact,
        target_path: Path | str,
        format_hint: str | None = None,
        overwrite: bool = True,
    ) -> Path:
        """Create an archive for *artifact* at *target_path*.

        Parameters
        ----------
        artifact:
            Data describing the directory to archive.
        target_path:
            Exact path (including filename) for the archive that should be created.
        format_hint:
            Optional explicit archive format such as ``"gztar"`` or ``"zip"``. When
            omitted, the format is inferred from *target_path*'s suffix.
        overwrite:
            When ``False`` and the target already exists, a :class:`FileExistsError`
            is raised instead of replacing the file.
        """

        target = Path(target_path).expanduser()
        source_dir = Path(artifact.source_dir).expanduser()

        if not source_dir.is_dir():
            raise FileNotFoundError(f"Archive source directory '{source_dir}' does not exist")

        archive_format = resolve_archive_format(target, format_hint)

        if self._console.dry_run:
            label = artifact.label or source_dir.name
            self._console.dry(f"Would archive {label} to {target}")
            return target

        if target.exists() and not overwrite:
            raise FileExistsError(f"Archive target '{target}' already exists")

        target.parent.mkdir(parents=True, exist_ok=True)

        if archive_format == "zip":
            return self._make_zip_archive(artifact=artifact, target_path=target)

        temp_tar = self._create_pax_tar(artifact=artifact, temp_dir=target.parent)
        try:
            if archive_format == "tar":
                os.replace(temp_tar, target)
            elif archive_format == "gztar":
                with temp_tar.open("rb") as src, target.open("wb") as raw:
                    with gzip.GzipFile(filename="", mode="wb", compresslevel=9, fileobj=raw, mtime=artifact.mtime) as dst:
                        shutil.copyfileobj(src, dst)
            elif archive_format == "bztar":
                with temp_tar.open("rb") as src, bz2.open(target, "wb", compresslevel=9) as dst:
                    shutil.copyfileobj(src, dst)
            elif archive_format == "xztar":
                with temp_tar.open("rb") as src, lzma.open(target, "wb", preset=6) as dst:
                    shutil.copyfileobj(src, dst)
            elif archive_format == "zst":
                threads = self._zstd_thread_count(temp_tar.stat().st_size)
                compressor = zstd.ZstdCompressor(level=19, threads=threads, write_checksum=True)
                with temp_tar.open("rb") as src, target.open("wb") as dst:
                    compressor.copy_stream(src, dst)
            else:
                raise RuntimeError(f"Unsupported archive format '{archive_format}'")
        finally:
            temp_tar.unlink(missing_ok=True)

        self._console.info(f"Created archive {target}")
        return target

    @staticmethod
    def _arcname(artifact: ArchiveArtifact, relative: str) -> str:
        return f"{artifact.prefix}/{relative}" if artifact.prefix else relative

    def _create_pax_tar(self, *, artifact: ArchiveArtifact, temp_dir: Path) -> Path:
        mode_for = artifact.mode_for or default_mode
        with tempfile.NamedTemporaryFile(dir=temp_dir, suffix=".tar", delete=False) as temp_handle:
            temp_path = Path(temp_handle.name)

        def _info(name: str, *, is_dir: bool, size: int, relative: str) -> tarfile.TarInfo:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE if is_dir else tarfile.REGTYPE
            info.size = 0 if is_dir else size
            info.mode = mode_for(relative, is_dir)
            info.mtime = artifact.mtime
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            return info

        try:
            with tarfile.open(temp_path, mode="w", format=tarfile.PAX_FORMAT) as tar:
                if artifact.prefix:
                    tar.addfile(_info(artifact.prefix, is_dir=True, size=0, relative=""))
                for path, relative, is_dir in iter_tree(Path(artifact.source_dir)):
                    name = self._arcname(artifact, relative)
                    if is_dir:
                        tar.addfile(_info(name, is_dir=True, size=0, relative=relative))
                        continue
                    info = _info(name, is_dir=False, size=path.stat().st_size, relative=relative)
                    with path.open("rb") as handle:
                        tar.addfile(info, handle)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        return temp_path

    def _make_zip_archive(self, *, artifact: ArchiveArtifact, target_path: Path) -> Path:
        mode_for = artifact.mode_for or default_mode
        date_time = time.gmtime(max(artifact.mtime, _ZIP_EPOCH))[:6]

        def _info(name: str, *, is_dir: bool, relative: str) -> zipfile.ZipInfo:
            info = zipfile.ZipInfo(name + "/" if is_dir else name, date_time=date_time)
            kind = stat.S_IFDIR if is_dir else stat.S_IFREG
            info.external_attr = (kind | mode_for(relative, is_dir)) << 16
            info.create_system = 3
            if is_dir:
                info.external_attr |= 0x10
            else:
                info.compress_type = zipfile.ZIP_DEFLATED
            return info

        with zipfile.ZipFile(target_path, mode="w", allowZip64=True) as archive:
            if artifact.prefix:
                archive.writestr(_info(artifact.prefix, is_dir=True, relative=""), b"")
            for path, relative, is_dir in iter_tree(Path(artifact.source_dir)):
                name = self._arcname(artifact, relative)
                if is_dir:
                    archive.writestr(_info(name, is_dir=True, relative=relative), b"")
                else:
                    archive.writestr(
                        _info(name, is_dir=False, relative=relative),
                        path.read_bytes(),
                        compresslevel=9,
                    )

        self._console.info(f"Created archive {target_path}")
        return target_path


__all__ = [
    "ArchiveArtifact",
    "ArchiveConsole",
    "ArchiveManager",
    "FORMAT_SUFFIXES",
    "ModeResolver",
    "default_mode",
    "iter_tree",
    "resolve_archive_format",
]
