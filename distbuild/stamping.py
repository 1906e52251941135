"""Version token substitution, digest sidecars and detached signatures."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from cryptography.exceptions import UnsupportedAlgorithm

from core.archive import iter_tree
from core.crypto import (
    DEFAULT_DIGEST,
    digest_file,
    get_digest_algorithm,
    load_private_key,
    load_public_key,
    sign_bytes,
    verify_bytes,
)

from .classifier import match_any
from .config_loader import DEFAULT_STAMP_SUFFIXES, DEFAULT_VERSION_TOKEN
from .errors import ConfigurationError, SigningError
from .packaging import write_if_changed

SIGNATURE_SUFFIX = ".sig"


def is_stampable(relative: str, suffixes: Iterable[str], paths: Sequence[str] = ("**",)) -> bool:
    """True when *relative* has an allow-listed suffix and lies under one of *paths*."""

    lowered = relative.lower()
    if not any(lowered.endswith(suffix.lower()) for suffix in suffixes):
        return False
    return match_any(paths, relative)


def stamp_bytes(data: bytes, version: str, token: str = DEFAULT_VERSION_TOKEN) -> bytes:
    """Replace *token* with *version*; bytes that are not valid UTF-8 pass through unchanged."""

    if not token or token.encode("utf-8") not in data:
        return data
    text = data.decode("utf-8", "surrogateescape")
    return text.replace(token, version).encode("utf-8", "surrogateescape")


def stamp_version(
    root: Path,
    version: str,
    token: str = DEFAULT_VERSION_TOKEN,
    suffixes: Iterable[str] = DEFAULT_STAMP_SUFFIXES,
    paths: Sequence[str] = ("**",),
) -> List[str]:
    """Rewrite allow-listed text files below *root* in place.

    Returns the relative paths that were changed. Files outside the allow-list
    are never opened for writing.
    """

    if not token:
        raise ConfigurationError("The version token cannot be empty")
    suffixes = [suffix.lower() for suffix in suffixes]
    changed: List[str] = []
    for path, relative, is_dir in iter_tree(root):
        if is_dir or path.is_symlink() or not is_stampable(relative, suffixes, paths):
            continue
        original = path.read_bytes()
        stamped = stamp_bytes(original, version, token)
        if stamped != original and write_if_changed(path, stamped):
            changed.append(relative)
    return changed


def sidecar_path(file: Path, algorithm: str = DEFAULT_DIGEST) -> Path:
    return file.with_name(f"{file.name}.{algorithm.lower()}")


def checksum(file: Path, algorithm: str = DEFAULT_DIGEST) -> Path:
    """Write ``<file>.<algorithm>`` containing ``<hex-digest>  <filename>\\n``."""

    try:
        get_digest_algorithm(algorithm)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ConfigurationError(f"Unsupported checksum algorithm '{algorithm}'") from exc
    if not file.is_file():
        raise FileNotFoundError(f"Cannot checksum missing file '{file}'")
    digest = digest_file(file, algorithm)
    sidecar = sidecar_path(file, algorithm)
    write_if_changed(sidecar, f"{digest}  {file.name}\n".encode("utf-8"))
    return sidecar


def read_checksum(sidecar: Path) -> Tuple[str, str]:
    """Return ``(digest, filename)`` from a sidecar file."""

    line = sidecar.read_text(encoding="utf-8").splitlines()[0] if sidecar.stat().st_size else ""
    digest, separator, filename = line.partition("  ")
    if not separator or not digest or not filename:
        raise ValueError(f"Malformed checksum file '{sidecar}'")
    return digest.strip().lower(), filename.strip()


def verify_checksum(file: Path, sidecar: Path | None = None, algorithm: str | None = None) -> bool:
    """Recompute the digest of *file* and compare it with the sidecar."""

    if sidecar is None:
        sidecar = sidecar_path(file, algorithm or DEFAULT_DIGEST)
    if algorithm is None:
        algorithm = sidecar.suffix.lstrip(".") or DEFAULT_DIGEST
    expected, filename = read_checksum(sidecar)
    if filename != file.name:
        return False
    return digest_file(file, algorithm) == expected


def signature_path(file: Path) -> Path:
    return file.with_name(file.name + SIGNATURE_SUFFIX)


def sign(file: Path, key_path: Path, *, password: bytes | None = None) -> Path:
    """Write a detached signature ``<file>.sig`` using a PEM private key."""

    try:
        key = load_private_key(key_path, password=password)
    except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningError(f"Cannot load signing key '{key_path}': {exc}") from exc
    try:
        signature = sign_bytes(key, file.read_bytes())
    except (OSError, ValueError) as exc:
        raise SigningError(f"Signing '{file}' failed: {exc}") from exc
    target = signature_path(file)
    target.write_bytes(signature)
    return target


def verify_signature(file: Path, public_key_path: Path, signature: Path | None = None) -> bool:
    signature = signature or signature_path(file)
    try:
        public_key = load_public_key(public_key_path)
    except (OSError, ValueError, UnsupportedAlgorithm) as exc:
        raise SigningError(f"Cannot load public key '{public_key_path}': {exc}") from exc
    try:
        return verify_bytes(public_key, signature.read_bytes(), file.read_bytes())
    except ValueError as exc:
        raise SigningError(str(exc)) from exc


__all__ = [
    "SIGNATURE_SUFFIX",
    "checksum",
    "is_stampable",
    "read_checksum",
    "sidecar_path",
    "sign",
    "signature_path",
    "stamp_bytes",
    "stamp_version",
    "verify_checksum",
    "verify_signature",
]
