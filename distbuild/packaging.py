"""Artifact package records and the deterministic jar-style writer."""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple
import os
import shutil
import stat
import tempfile
import time
import zipfile

from core.archive import iter_tree

from .config_loader import PackageSpec

MANIFEST_PATH = "META-INF/MANIFEST.MF"

# Earliest timestamp a zip entry can carry.
ZIP_EPOCH = 315532800

_MANIFEST_LINE_BYTES = 72


@dataclass(frozen=True, slots=True)
class PackageSource:
    """A source tree; ``paths`` restricts it to the listed relative files."""

    root: Path
    paths: Tuple[str, ...] | None = None

    def iter_files(self) -> Iterable[Tuple[str, Path]]:
        if self.paths is not None:
            for relative in self.paths:
                yield relative, self.root / relative
            return
        if not self.root.is_dir():
            return
        for path, relative, is_dir in iter_tree(self.root):
            if not is_dir:
                yield relative, path


@dataclass(frozen=True, slots=True)
class ArtifactPackage:
    name: str
    destination: str
    module: str = ""
    main_class: str | None = None
    class_path: Tuple[str, ...] = ()
    attributes: Tuple[Tuple[str, str], ...] = ()
    sources: Tuple[PackageSource, ...] = ()
    packaged_file: Path | None = None

    def with_file(self, path: Path) -> "ArtifactPackage":
        return replace(self, packaged_file=path)

    def manifest(self, version: str | None = None) -> bytes:
        attributes: List[Tuple[str, str]] = [
            ("Manifest-Version", "1.0"),
            ("Created-By", "distbuild"),
            ("Implementation-Title", self.name),
        ]
        if version:
            attributes.append(("Implementation-Version", version))
        if self.main_class:
            attributes.append(("Main-Class", self.main_class))
        if self.class_path:
            attributes.append(("Class-Path", " ".join(self.class_path)))
        reserved = {key for key, _ in attributes}
        attributes.extend((key, value) for key, value in sorted(self.attributes) if key not in reserved)
        lines = [_wrap_manifest_line(f"{key}: {value}") for key, value in attributes]
        return ("".join(lines) + "\r\n").encode("utf-8", "surrogateescape")

    def to_mapping(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "module": self.module,
            "destination": self.destination,
            "file": str(self.packaged_file) if self.packaged_file else None,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "ArtifactPackage":
        packaged = data.get("file")
        return cls(
            name=str(data["name"]),
            module=str(data.get("module", "")),
            destination=str(data["destination"]),
            packaged_file=Path(str(packaged)) if packaged else None,
        )


def _wrap_manifest_line(line: str) -> str:
    """Split a manifest header into 72-byte lines joined by CRLF plus a space."""

    encoded = line.encode("utf-8")
    if len(encoded) <= _MANIFEST_LINE_BYTES:
        return line + "\r\n"
    chunks: List[bytes] = [encoded[:_MANIFEST_LINE_BYTES]]
    rest = encoded[_MANIFEST_LINE_BYTES:]
    while rest:
        chunks.append(b" " + rest[: _MANIFEST_LINE_BYTES - 1])
        rest = rest[_MANIFEST_LINE_BYTES - 1 :]
    # Splits may fall inside a multi-byte character; surrogateescape round-trips them.
    return "\r\n".join(chunk.decode("utf-8", "surrogateescape") for chunk in chunks) + "\r\n"


def write_if_changed(path: Path, data: bytes) -> bool:
    """Write *data* to *path* unless it already holds exactly those bytes."""

    if path.is_file() and path.stat().st_size == len(data) and path.read_bytes() == data:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.tmp")
    temp_path.write_bytes(data)
    if path.is_file():
        shutil.copymode(path, temp_path)
    os.replace(temp_path, path)
    return True


def _zip_info(name: str, *, date_time: Tuple[int, ...], is_dir: bool) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=date_time)
    info.create_system = 3
    if is_dir:
        info.external_attr = ((stat.S_IFDIR | 0o755) << 16) | 0x10
    else:
        info.external_attr = (stat.S_IFREG | 0o644) << 16
        info.compress_type = zipfile.ZIP_DEFLATED
    return info


def collect_entries(package: ArtifactPackage) -> Dict[str, Path]:
    """Archive entry name to file; the first source providing an entry wins."""

    entries: Dict[str, Path] = {}
    for source in package.sources:
        for relative, path in source.iter_files():
            if relative == MANIFEST_PATH:
                continue
            entries.setdefault(relative, path)
    return entries


def write_package(
    package: ArtifactPackage,
    target: Path,
    *,
    version: str | None = None,
    mtime: int = ZIP_EPOCH,
) -> ArtifactPackage:
    """Write *package* as a jar-style zip with sorted entries and fixed timestamps.

    The target is only replaced when the new bytes differ, so an unchanged
    package keeps its modification time.
    """

    date_time = time.gmtime(max(mtime, ZIP_EPOCH))[:6]
    entries = collect_entries(package)
    directories = {"META-INF/"}
    for name in entries:
        parts = name.split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            directories.add("/".join(parts[:depth]) + "/")

    target.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(dir=target.parent, prefix=f".{target.name}.", delete=False) as handle:
        temp_path = Path(handle.name)
    try:
        with zipfile.ZipFile(temp_path, mode="w") as archive:
            archive.writestr(_zip_info("META-INF/", date_time=date_time, is_dir=True), b"")
            archive.writestr(
                _zip_info(MANIFEST_PATH, date_time=date_time, is_dir=False),
                package.manifest(version),
                compresslevel=9,
            )
            for name in sorted(directories - {"META-INF/"} | set(entries)):
                if name.endswith("/"):
                    archive.writestr(_zip_info(name, date_time=date_time, is_dir=True), b"")
                else:
                    archive.writestr(
                        _zip_info(name, date_time=date_time, is_dir=False),
                        entries[name].read_bytes(),
                        compresslevel=9,
                    )
        if target.is_file() and target.read_bytes() == temp_path.read_bytes():
            temp_path.unlink()
        else:
            os.chmod(temp_path, 0o644)
            os.replace(temp_path, target)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    return package.with_file(target)


def read_manifest(path: Path) -> Dict[str, str]:
    """Parse the main section of a jar manifest, joining continuation lines."""

    with zipfile.ZipFile(path) as archive:
        text = archive.read(MANIFEST_PATH).decode("utf-8")
    headers: Dict[str, str] = {}
    last: str | None = None
    for line in text.split("\r\n"):
        if not line:
            if headers:
                break
            continue
        if line.startswith(" ") and last is not None:
            headers[last] += line[1:]
            continue
        key, _, value = line.partition(": ")
        headers[key] = value
        last = key
    return headers


def packages_for(
    module: str,
    classification: Mapping[str, Sequence[str]],
    specs: Mapping[str, PackageSpec],
    *,
    unit_dir: Path,
    root: Path,
    default_dir: str,
) -> List[ArtifactPackage]:
    """One package per classified name, classified paths first, then extra source trees."""

    packages: List[ArtifactPackage] = []
    for name, paths in classification.items():
        if not paths:
            continue
        spec = specs.get(name) or PackageSpec(name=name, destination=f"{default_dir}/{name}.jar")
        sources = [PackageSource(root=unit_dir, paths=tuple(paths))]
        for extra in spec.sources:
            extra_path = Path(extra)
            sources.append(PackageSource(root=extra_path if extra_path.is_absolute() else root / extra_path))
        packages.append(
            ArtifactPackage(
                name=name,
                module=module,
                destination=spec.destination,
                main_class=spec.main_class,
                class_path=tuple(spec.class_path),
                attributes=tuple(sorted(spec.attributes.items())),
                sources=tuple(sources),
            )
        )
    return packages


__all__ = [
    "ArtifactPackage",
    "MANIFEST_PATH",
    "PackageSource",
    "ZIP_EPOCH",
    "collect_entries",
    "packages_for",
    "read_manifest",
    "write_if_changed",
    "write_package",
]
