"""Digest and detached-signature helpers built on ``cryptography``."""
from __future__ import annotations

from pathlib import Path
from typing import BinaryIO

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

DEFAULT_DIGEST = "sha256"
CHUNK_SIZE = 1 << 20


def get_digest_algorithm(name: str) -> hashes.HashAlgorithm:
    name = name.lower().replace("-", "").replace("_", "")
    if name == "sha256":
        return hashes.SHA256()
    elif name == "sha224":
        return hashes.SHA224()
    elif name == "sha384":
        return hashes.SHA384()
    elif name == "sha512":
        return hashes.SHA512()
    elif name == "sha3256":
        return hashes.SHA3_256()
    elif name == "sha3384":
        return hashes.SHA3_384()
    elif name == "sha3512":
        return hashes.SHA3_512()
    elif name == "sha1":
        return hashes.SHA1()
    elif name == "md5":
        return hashes.MD5()
    elif name == "blake2b":
        return hashes.BLAKE2b(64)
    elif name == "blake2s":
        return hashes.BLAKE2s(32)
    else:
        raise ValueError(f"Unsupported digest: {name}")


def digest_stream(stream: BinaryIO, algorithm: str = DEFAULT_DIGEST) -> str:
    """Hash *stream* to its end and return the lowercase hex digest."""

    hasher = hashes.Hash(get_digest_algorithm(algorithm))
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        hasher.update(chunk)
    return hasher.finalize().hex()


def digest_file(path: Path, algorithm: str = DEFAULT_DIGEST) -> str:
    with path.open("rb") as handle:
        return digest_stream(handle, algorithm)


def load_private_key(path: Path, password: bytes | None = None):
    data = path.read_bytes()
    key = serialization.load_pem_private_key(data, password=password)
    if not isinstance(key, (ed25519.Ed25519PrivateKey, rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"Unsupported signing key type in '{path}': {type(key).__name__}")
    return key


def load_public_key(path: Path):
    return serialization.load_pem_public_key(path.read_bytes())


def sign_bytes(key, data: bytes) -> bytes:
    """Sign *data*: Ed25519 natively, RSA with PSS/SHA-256, EC with ECDSA/SHA-256."""

    if isinstance(key, ed25519.Ed25519PrivateKey):
        return key.sign(data)
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(
            data,
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
            hashes.SHA256(),
        )
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return key.sign(data, ec.ECDSA(hashes.SHA256()))
    raise ValueError(f"Unsupported signing key type: {type(key).__name__}")


def verify_bytes(public_key, signature: bytes, data: bytes) -> bool:
    try:
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(
                signature,
                data,
                padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
                hashes.SHA256(),
            )
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
        else:
            raise ValueError(f"Unsupported public key type: {type(public_key).__name__}")
    except InvalidSignature:
        return False
    return True


__all__ = [
    "DEFAULT_DIGEST",
    "digest_file",
    "digest_stream",
    "get_digest_algorithm",
    "load_private_key",
    "load_public_key",
    "sign_bytes",
    "verify_bytes",
]
