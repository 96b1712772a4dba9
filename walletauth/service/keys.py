from __future__ import annotations

import os
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Protocol, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from walletauth.config import Settings
from walletauth.logging import get_logger

logger = get_logger(__name__)

_EC_CURVES = {
    "ES256": ec.SECP256R1,
    "ES384": ec.SECP384R1,
    "ES512": ec.SECP521R1,
}


class TokenFamily(str, Enum):
    """Independent trust domains, each with its own key pair and kid."""

    ACCESS = "access"
    REFRESH = "refresh"


class KeyProvider(Protocol):
    async def get_access_private_key(self) -> Any: ...

    async def get_access_public_key(self) -> Any: ...

    async def get_access_kid(self) -> str: ...

    async def get_refresh_private_key(self) -> Any: ...

    async def get_refresh_public_key(self) -> Any: ...

    async def get_refresh_kid(self) -> str: ...


@dataclass(frozen=True)
class KeyMaterial:
    private_key: Any
    public_key: Any
    kid: str


class SettingsKeyProvider:
    """Loads PEM key pairs from settings or files and caches them for a TTL.

    In ``TEST_MODE`` a missing key is generated once and persisted under
    ``SHARED_FS_ROOT/keys`` so tokens stay valid across restarts.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.ttl_seconds = (
            settings.key_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[TokenFamily, Tuple[KeyMaterial, float]] = {}

    async def get_access_private_key(self) -> Any:
        return self.material(TokenFamily.ACCESS).private_key

    async def get_access_public_key(self) -> Any:
        return self.material(TokenFamily.ACCESS).public_key

    async def get_access_kid(self) -> str:
        return self.material(TokenFamily.ACCESS).kid

    async def get_refresh_private_key(self) -> Any:
        return self.material(TokenFamily.REFRESH).private_key

    async def get_refresh_public_key(self) -> Any:
        return self.material(TokenFamily.REFRESH).public_key

    async def get_refresh_kid(self) -> str:
        return self.material(TokenFamily.REFRESH).kid

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    def check(self) -> None:
        """Raise if either key family cannot be loaded."""
        for family in TokenFamily:
            self.material(family)

    def material(self, family: TokenFamily) -> KeyMaterial:
        now = self._clock()
        with self._lock:
            cached = self._cache.get(family)
            if cached and now - cached[1] < self.ttl_seconds:
                return cached[0]
            loaded = self._load(family)
            self._cache[family] = (loaded, now)
            logger.info("signing_key_loaded", family=family.value, kid=loaded.kid)
            return loaded

    def _load(self, family: TokenFamily) -> KeyMaterial:
        prefix = family.value
        kid = getattr(self.settings, f"{prefix}_key_id")
        private_pem = self._private_pem(family)
        private_key = serialization.load_pem_private_key(private_pem, password=None)
        self._check_key_type(private_key, family)
        public_pem = getattr(self.settings, f"{prefix}_public_key")
        if public_pem:
            public_key = serialization.load_pem_public_key(_normalize_pem(public_pem))
        else:
            public_key = private_key.public_key()
        return KeyMaterial(private_key=private_key, public_key=public_key, kid=kid)

    def _private_pem(self, family: TokenFamily) -> bytes:
        prefix = family.value
        inline = getattr(self.settings, f"{prefix}_private_key")
        if inline:
            return _normalize_pem(inline)
        path = getattr(self.settings, f"{prefix}_private_key_path")
        if path:
            return Path(path).read_bytes()
        if not self.settings.test_mode:
            raise RuntimeError(
                f"{prefix.upper()}_PRIVATE_KEY or {prefix.upper()}_PRIVATE_KEY_PATH must be set"
            )
        return self._development_pem(family)

    def _check_key_type(self, private_key: Any, family: TokenFamily) -> None:
        algorithm = self.settings.jwt_algorithm
        expected = (
            ec.EllipticCurvePrivateKey if algorithm.startswith("ES") else rsa.RSAPrivateKey
        )
        if not isinstance(private_key, expected):
            raise RuntimeError(
                f"{family.value} signing key does not match JWT_ALGORITHM={algorithm}"
            )

    def _development_pem(self, family: TokenFamily) -> bytes:
        key_dir = Path(self.settings.shared_fs_root) / "keys"
        key_path = key_dir / f"{family.value}_{self.settings.jwt_algorithm.lower()}.pem"
        if key_path.exists() and not key_path.is_symlink():
            return key_path.read_bytes()

        key_dir.mkdir(parents=True, exist_ok=True)
        pem = generate_private_key_pem(self.settings.jwt_algorithm)
        fd, tmp_path = tempfile.mkstemp(dir=str(key_dir), prefix=".key_", suffix=".tmp")
        try:
            os.write(fd, pem)
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(key_path))
        logger.warning(
            "development_signing_key_generated",
            family=family.value,
            path=str(key_path),
        )
        return pem


def generate_private_key_pem(algorithm: str) -> bytes:
    """Generate an unencrypted PKCS8 PEM private key suited to ``algorithm``."""
    if algorithm.startswith("ES"):
        private_key = ec.generate_private_key(_EC_CURVES[algorithm]())
    else:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _normalize_pem(value: str) -> bytes:
    # env files commonly carry PEMs with literal "\n" sequences
    return value.replace("\\n", "\n").encode()
