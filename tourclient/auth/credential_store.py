"""
Secure Credential Store for the TensorTours client.

This module persists the current session (tokens, expiry, refresh token,
username) using the system keyring, or an encrypted file as fallback, and
keeps the quick-check auth-state flag in sync.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken

from tourclient.auth.auth_state import AuthStatePersistence
from tourshared.exceptions import StorageError, ErrorCode, ValidationError
from tourshared.interfaces import ICredentialStore
from tourshared.models import Session

logger = logging.getLogger(__name__)

SESSION_KEY = "session"
ENCRYPTION_KEY_NAME = "encryption_key"


class SecureCredentialStore(ICredentialStore):
    """
    Secure storage for the authenticated session.

    The whole session is written as one value (a single keyring secret, or a
    single encrypted file replaced atomically), so a reader never observes a
    half-written session. Blocking storage calls run in a worker thread.
    """

    def __init__(
        self,
        service_name: str = "tensortours-client",
        storage_dir: Optional[Path] = None,
        auth_state: Optional[AuthStatePersistence] = None,
        use_keyring: Optional[bool] = None
    ):
        self.service_name = service_name
        self.storage_dir = Path(storage_dir) if storage_dir else Path.home() / '.tensortours'
        self.storage_path = self.storage_dir / 'credentials.enc'
        self.key_path = self.storage_dir / 'credentials.key'
        self.auth_state = auth_state or AuthStatePersistence(self.storage_dir)
        self.keyring_available = (
            self._check_keyring_availability() if use_keyring is None else use_keyring
        )

        self._encryption_key: Optional[bytes] = None

        logger.info(f"Credential store initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if the system keyring is usable."""
        try:
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    # Encryption for file storage

    def _get_encryption_key(self) -> bytes:
        """Get or create the Fernet key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.keyring_available:
            stored_key = keyring.get_password(self.service_name, ENCRYPTION_KEY_NAME)
            if stored_key:
                self._encryption_key = stored_key.encode()
                return self._encryption_key
        elif self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        if self.keyring_available:
            keyring.set_password(self.service_name, ENCRYPTION_KEY_NAME, key.decode())
        else:
            self._write_private_file(self.key_path, key)

        self._encryption_key = key
        return key

    def _write_private_file(self, path: Path, data: bytes) -> None:
        """Write a 0600 file atomically."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(path.suffix + '.tmp')
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        os.replace(temp_path, path)

    # Synchronous backends

    def _save_sync(self, session: Session) -> None:
        value = json.dumps(session.to_dict())
        if self.keyring_available:
            keyring.set_password(self.service_name, SESSION_KEY, value)
        else:
            fernet = Fernet(self._get_encryption_key())
            self._write_private_file(self.storage_path, fernet.encrypt(value.encode()))
        self.auth_state.mark_authenticated(session.expires_at_millis)

    def _load_sync(self) -> Optional[Session]:
        if self.keyring_available:
            value = keyring.get_password(self.service_name, SESSION_KEY)
        else:
            if not self.storage_path.exists():
                return None
            try:
                fernet = Fernet(self._get_encryption_key())
                value = fernet.decrypt(self.storage_path.read_bytes()).decode()
            except InvalidToken:
                logger.warning("Stored credentials could not be decrypted; ignoring them")
                return None

        if not value:
            return None

        try:
            return Session.from_dict(json.loads(value))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Stored credentials are malformed; ignoring them: {e}")
            return None

    def _clear_sync(self) -> None:
        if self.keyring_available:
            try:
                keyring.delete_password(self.service_name, SESSION_KEY)
            except PasswordDeleteError:
                pass  # nothing stored
        else:
            self.storage_path.unlink(missing_ok=True)
        self.auth_state.mark_signed_out()

    # ICredentialStore

    async def save(self, session: Session) -> None:
        """
        Store the session securely.

        Raises:
            StorageError: If the storage backend fails
        """
        try:
            await asyncio.to_thread(self._save_sync, session)
            logger.debug(f"Session stored securely for {session.username or 'unknown user'}")
        except (KeyringError, OSError) as e:
            logger.error(f"Failed to store session: {e}")
            raise StorageError(f"Failed to store session: {e}", ErrorCode.STORAGE_WRITE_FAILED, cause=e)

    async def load(self) -> Optional[Session]:
        """
        Retrieve the stored session.

        Returns:
            The session, or None if nothing usable is stored
        """
        try:
            return await asyncio.to_thread(self._load_sync)
        except (KeyringError, OSError) as e:
            logger.error(f"Failed to read session: {e}")
            raise StorageError(f"Failed to read session: {e}", ErrorCode.STORAGE_READ_FAILED, cause=e)

    async def clear(self) -> None:
        """Remove the stored session. Safe when nothing is stored."""
        try:
            await asyncio.to_thread(self._clear_sync)
            logger.debug("Stored session cleared")
        except (KeyringError, OSError) as e:
            logger.error(f"Failed to clear session: {e}")
            raise StorageError(f"Failed to clear session: {e}", ErrorCode.STORAGE_CLEAR_FAILED, cause=e)

    def is_authenticated_hint(self) -> bool:
        """Quick boot-time check that avoids touching secure storage."""
        return self.auth_state.is_authenticated_hint()
