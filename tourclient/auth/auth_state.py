"""
Authentication state persistence for the TensorTours client.

This module keeps the lightweight, non-secure "is authenticated" flag and the
non-sensitive user profile in plain JSON files so boot-time checks do not need
a secure storage round trip.
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any

from tourshared.models import UserData

logger = logging.getLogger(__name__)


@dataclass
class PersistedAuthState:
    """Quick-check authentication state."""
    is_authenticated: bool = False
    last_authenticated: Optional[str] = None
    token_expiration: Optional[str] = None


class AuthStatePersistence:
    """
    Stores the auth-state flag and user profile next to the client configuration.

    Files are replaced atomically (write to a temporary file, then rename).
    Read failures are treated as "not authenticated".
    """

    def __init__(self, directory: Path):
        self._directory = Path(directory)
        self._state_file = self._directory / "auth_state.json"
        self._user_file = self._directory / "user_data.json"

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            json.dump(data, f, indent=2)
        temp_file.replace(path)

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            return data if isinstance(data, dict) else None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read {path.name}: {e}")
            return None

    def save_state(self, state: PersistedAuthState) -> None:
        self._write_json(self._state_file, asdict(state))

    def load_state(self) -> PersistedAuthState:
        data = self._read_json(self._state_file)
        if not data:
            return PersistedAuthState()
        return PersistedAuthState(
            is_authenticated=bool(data.get('is_authenticated', False)),
            last_authenticated=data.get('last_authenticated'),
            token_expiration=data.get('token_expiration'),
        )

    def mark_authenticated(self, expires_at_millis: int) -> None:
        """Record a stored session and its expiry."""
        self.save_state(PersistedAuthState(
            is_authenticated=True,
            last_authenticated=datetime.now().isoformat(),
            token_expiration=datetime.fromtimestamp(expires_at_millis / 1000).isoformat(),
        ))

    def mark_signed_out(self) -> None:
        self.save_state(PersistedAuthState())

    def is_authenticated_hint(self) -> bool:
        """Fast, possibly stale answer to "was the user signed in last time"."""
        return self.load_state().is_authenticated

    def save_user_data(self, user_data: UserData) -> None:
        try:
            self._write_json(self._user_file, user_data.to_dict())
        except OSError as e:
            logger.error(f"Error storing user data: {e}")

    def load_user_data(self) -> Optional[UserData]:
        data = self._read_json(self._user_file)
        if not data:
            return None
        return UserData(
            username=data.get('username'),
            email=data.get('email'),
            sub=data.get('sub'),
        )

    def clear_user_data(self) -> None:
        self._user_file.unlink(missing_ok=True)
