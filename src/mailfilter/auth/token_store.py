"""On-disk persistence for the MSAL token cache.

The cache holds refresh tokens, so the file is always written owner-only
(0600). When the environment variable named by ``encryption_key_env``
holds a Fernet key, the content is also encrypted at rest.

Generate a key with:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

import os
import stat
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from mailfilter.core.logging import get_logger

logger = get_logger(__name__)


class TokenCacheStore:
    """Reads and writes the serialized token cache, encrypting when keyed."""

    def __init__(self, path: str | Path, encryption_key: str | None = None):
        self.path = Path(path)
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None

    @classmethod
    def from_env(cls, path: str | Path, key_env: str) -> "TokenCacheStore":
        """Build a store keyed from the environment variable ``key_env`` if it is set."""
        key = os.environ.get(key_env) or None
        if key is None:
            logger.debug("token_cache_unencrypted", key_env=key_env)
        return cls(path, encryption_key=key)

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def load(self) -> str | None:
        """Return the serialized cache, or None if absent or unreadable.

        A cache that cannot be decrypted (wrong or rotated key, or a plaintext
        file from before encryption was enabled) is treated as absent, which
        forces a new login.
        """
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_bytes()
        except OSError as e:
            logger.warning("token_cache_read_failed", path=str(self.path), error=str(e))
            return None

        if self._fernet is None:
            return raw.decode("utf-8")
        try:
            return self._fernet.decrypt(raw).decode("utf-8")
        except InvalidToken:
            logger.warning(
                "token_cache_decrypt_failed",
                path=str(self.path),
                hint="Key changed or cache was written unencrypted; run 'mailfilter login'",
            )
            return None

    def save(self, content: str) -> None:
        """Write the serialized cache with mode 0600.

        Raises:
            OSError: If the file cannot be written
        """
        data = content.encode("utf-8")
        if self._fernet is not None:
            data = self._fernet.encrypt(data)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Create with restrictive permissions before any secret is written
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(self.path, stat.S_IRUSR | stat.S_IWUSR)

    def delete(self) -> None:
        if self.path.exists():
            self.path.unlink()
