import hashlib
import hmac
import base64
import binascii
import os
import threading
from typing import cast
import structlog
from cryptography.fernet import Fernet, MultiFernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# ============================================================================
# Encryption Key Manager
# ============================================================================


class EncryptionKeyManager:
    """
    Derives Fernet keys from configured master keys.

    Features:
    - Environment-provided salt (never generated at runtime)
    - Decryption support with fallback keys during rotation
    - PBKDF2-SHA256 key derivation
    """

    KDF_SALT_LENGTH = 32  # 256 bits

    _fernet_cache: dict[str, Fernet] = {}
    _cache_lock = threading.Lock()

    @staticmethod
    def get_salt() -> str:
        """Get KDF salt from environment variable."""
        settings = get_settings()
        salt = os.environ.get("KDF_SALT") or settings.KDF_SALT
        if salt:
            return str(salt)
        raise ValueError(
            "KDF_SALT is required for encryption stability and must be set in the environment "
            "(base64-encoded random 32 bytes)."
        )

    @classmethod
    def clear_key_caches(cls) -> None:
        with cls._cache_lock:
            cls._fernet_cache.clear()

    @classmethod
    def derive_key(cls, master_key: str, salt: str, iterations: int) -> bytes:
        """Derive an encryption key from master key using PBKDF2."""
        try:
            salt_bytes = base64.b64decode(salt, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid KDF salt format: {str(e)}") from e

        if len(salt_bytes) != cls.KDF_SALT_LENGTH:
            raise ValueError(
                f"Invalid KDF salt length: expected {cls.KDF_SALT_LENGTH} bytes, got {len(salt_bytes)}"
            )

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt_bytes,
            iterations=iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(f"{master_key}:v1".encode()))

    @classmethod
    def create_fernet_for_key(cls, master_key: str, salt: str) -> Fernet:
        iterations = get_settings().KDF_ITERATIONS
        key_fingerprint = hashlib.sha256(master_key.encode()).hexdigest()
        cache_key = f"fernet:{key_fingerprint}:{salt}:{iterations}"
        with cls._cache_lock:
            cached = cls._fernet_cache.get(cache_key)
        if cached is not None:
            return cast(Fernet, cached)
        fernet = Fernet(cls.derive_key(master_key, salt, iterations))
        with cls._cache_lock:
            cls._fernet_cache[cache_key] = fernet
        return fernet

    @classmethod
    def create_multi_fernet(
        cls,
        primary_key: str,
        fallback_keys: tuple[str, ...] | None = None,
        salt: str | None = None,
    ) -> MultiFernet:
        """Create MultiFernet for key rotation support."""
        if salt is None:
            salt = cls.get_salt()

        all_keys = [primary_key]
        if fallback_keys:
            all_keys.extend(fallback_keys)

        fernet_instances: list[Fernet] = []
        for idx, key in enumerate(all_keys):
            try:
                fernet_instances.append(cls.create_fernet_for_key(key, salt))
            except ValueError as e:
                logger.error(
                    "fernet_creation_failed",
                    key_index=idx,
                    is_primary=(idx == 0),
                    error=str(e),
                )
                # Primary key must always work; fallback keys are best-effort.
                if idx == 0:
                    raise

        return MultiFernet(fernet_instances)


# ============================================================================
# Secrets codec
# ============================================================================


class SecretsCodec:
    """
    Symmetric codec for integration secrets at rest.

    ``decrypt`` never raises: a value that cannot be decrypted (wrong key,
    corrupted ciphertext, missing key material) comes back as ``""`` and the
    caller treats it as "not configured".
    """

    def __init__(
        self,
        primary_key: str | None = None,
        fallback_keys: tuple[str, ...] | None = None,
        salt: str | None = None,
    ) -> None:
        settings = get_settings()
        self._primary_key = primary_key or settings.ENCRYPTION_KEY
        self._fallback_keys = (
            fallback_keys
            if fallback_keys is not None
            else tuple(settings.ENCRYPTION_FALLBACK_KEYS or ())
        )
        self._salt = salt

    def _fernet(self) -> MultiFernet:
        if not self._primary_key:
            raise ValueError("ENCRYPTION_KEY must be set for secure encryption.")
        return EncryptionKeyManager.create_multi_fernet(
            primary_key=self._primary_key,
            fallback_keys=self._fallback_keys or None,
            salt=self._salt,
        )

    def encrypt(self, plaintext: str) -> str:
        return self._fernet().encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str | None) -> str:
        if not ciphertext:
            return ""
        try:
            return self._fernet().decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError, UnicodeDecodeError) as e:
            logger.warning("decryption_failed", error=str(e))
            return ""


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode(), right.encode())


def generate_secret_blind_index(value: str | None) -> str | None:
    """
    Deterministic keyed hash for secrets (tokens/keys) where case must be preserved.
    Lets a presented bearer token be looked up without decrypting every row.
    """
    if not value:
        return None

    key_str = get_settings().ENCRYPTION_KEY
    if not key_str:
        return None

    raw_value = str(value).strip()
    if not raw_value:
        return None

    subkey_kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"blind-index:v1:secret",
        iterations=10000,
    )
    key = subkey_kdf.derive(key_str.encode())
    return hmac.new(key, raw_value.encode(), hashlib.sha256).hexdigest()
