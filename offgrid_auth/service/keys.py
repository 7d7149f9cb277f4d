from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from offgrid_auth.config import Settings
from offgrid_auth.logging import get_logger
from offgrid_auth.service.errors import InvalidConfigError

logger = get_logger(__name__)

_KEY_FILENAME = ".jwt_signing_key.pem"


def _generate_private_key(algorithm: str) -> Any:
    if algorithm.startswith(("RS", "PS")):
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    if algorithm == "ES256":
        return ec.generate_private_key(ec.SECP256R1())
    if algorithm == "ES384":
        return ec.generate_private_key(ec.SECP384R1())
    if algorithm == "EdDSA":
        return ed25519.Ed25519PrivateKey.generate()
    raise InvalidConfigError(f"Cannot generate keys for algorithm {algorithm!r}")


def _public_pem(public_key: Any) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


_EC_CURVES = {"ES256": ec.SECP256R1, "ES384": ec.SECP384R1}


def _check_key_fits(private_key: Any, algorithm: str) -> None:
    if algorithm.startswith(("RS", "PS")):
        fits = isinstance(private_key, rsa.RSAPrivateKey)
    elif algorithm in _EC_CURVES:
        fits = isinstance(private_key, ec.EllipticCurvePrivateKey) and isinstance(
            private_key.curve, _EC_CURVES[algorithm]
        )
    elif algorithm == "EdDSA":
        fits = isinstance(private_key, ed25519.Ed25519PrivateKey)
    else:
        raise InvalidConfigError(f"Unsupported JWT algorithm {algorithm!r}")
    if not fits:
        raise InvalidConfigError(
            f"JWT signing key ({type(private_key).__name__}) cannot sign {algorithm}"
        )


@dataclass(frozen=True)
class SigningKeys:
    """Asymmetric key pair loaded once at startup and never mutated."""

    private_key: Any
    public_key: Any
    algorithm: str

    def __post_init__(self) -> None:
        _check_key_fits(self.private_key, self.algorithm)

    @classmethod
    def generate(cls, algorithm: str = "RS256") -> "SigningKeys":
        private_key = _generate_private_key(algorithm)
        return cls(private_key, private_key.public_key(), algorithm)

    @classmethod
    def from_pem(
        cls,
        private_pem: str | bytes,
        public_pem: str | bytes | None = None,
        *,
        algorithm: str = "RS256",
    ) -> "SigningKeys":
        """Load a PEM key pair; the public half is derived when omitted.

        Raises ``InvalidConfigError`` for unreadable keys, a mismatched pair or a
        key that cannot sign with ``algorithm``.
        """
        if isinstance(private_pem, str):
            private_pem = private_pem.encode()
        try:
            private_key = serialization.load_pem_private_key(private_pem, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise InvalidConfigError("JWT private key is not a readable PEM key") from exc
        derived = private_key.public_key()
        if public_pem is None:
            return cls(private_key, derived, algorithm)
        if isinstance(public_pem, str):
            public_pem = public_pem.encode()
        try:
            public_key = serialization.load_pem_public_key(public_pem)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise InvalidConfigError("JWT public key is not a readable PEM key") from exc
        if _public_pem(public_key) != _public_pem(derived):
            raise InvalidConfigError("JWT public key does not match the private key")
        return cls(private_key, public_key, algorithm)

    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return _public_pem(self.public_key)


def load_signing_keys(settings: Settings) -> SigningKeys:
    """Resolve the deployment key pair from settings.

    Without configured PEMs a key is generated once and persisted under
    ``SHARED_FS_ROOT`` so tokens stay verifiable across restarts.
    """
    if settings.jwt_private_key:
        return SigningKeys.from_pem(
            settings.jwt_private_key,
            settings.jwt_public_key,
            algorithm=settings.jwt_algorithm,
        )
    if settings.jwt_public_key:
        raise InvalidConfigError("JWT_PUBLIC_KEY is set without JWT_PRIVATE_KEY")

    fs_root = Path(settings.shared_fs_root)
    key_path = fs_root / _KEY_FILENAME
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    persisted = _read_persisted_key(key_path)
    if persisted is not None:
        return SigningKeys.from_pem(persisted, algorithm=settings.jwt_algorithm)

    keys = SigningKeys.generate(settings.jwt_algorithm)
    tmp_path: Optional[str] = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=".jwt_signing_key_", suffix=".tmp"
        )
        try:
            os.write(fd, keys.private_pem())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(key_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_key_persist_failed", error=str(exc), path=str(key_path))
        raise InvalidConfigError(
            "Unable to persist signing key; set JWT_PRIVATE_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning(
        "jwt_key_generated",
        path=str(key_path),
        algorithm=settings.jwt_algorithm,
        message="No JWT_PRIVATE_KEY configured; generated a local signing key",
    )
    return keys


def _read_persisted_key(key_path: Path) -> Optional[bytes]:
    if key_path.is_symlink():
        logger.warning("jwt_key_symlink_ignored", path=str(key_path))
        return None
    try:
        data = key_path.read_bytes()
    except FileNotFoundError:
        return None
    return data or None
