"""
Core interfaces for the TensorTours client.

This module defines the abstract interfaces that the session manager and
request dispatcher depend on, so concrete storage and identity backends can be
swapped (and faked in tests).
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from .models import Session, ProviderSession


class ICredentialStore(ABC):
    """Interface for durable, tamper-resistant session storage."""

    @abstractmethod
    async def save(self, session: Session) -> None:
        """Persist the session atomically."""
        pass

    @abstractmethod
    async def load(self) -> Optional[Session]:
        """Load the stored session, or None if nothing is stored."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove any stored session. Safe when nothing is stored."""
        pass


class IIdentityProvider(ABC):
    """Interface for the external identity provider."""

    @abstractmethod
    async def sign_in(self, username: str, password: str) -> ProviderSession:
        """Authenticate with username and password."""
        pass

    @abstractmethod
    async def sign_up(self, username: str, password: str, attributes: Dict[str, str]) -> Dict:
        """Register a new account."""
        pass

    @abstractmethod
    async def confirm_sign_up(self, username: str, code: str) -> None:
        """Confirm a registration with the emailed code."""
        pass

    @abstractmethod
    async def resend_confirmation_code(self, username: str) -> Dict:
        """Send a new confirmation code."""
        pass

    @abstractmethod
    async def forgot_password(self, username: str) -> Dict:
        """Start the password reset flow."""
        pass

    @abstractmethod
    async def confirm_new_password(self, username: str, code: str, new_password: str) -> None:
        """Complete the password reset flow."""
        pass

    @abstractmethod
    async def delete_account(self, access_token: Optional[str] = None) -> None:
        """Delete the signed-in account."""
        pass

    @abstractmethod
    async def get_current_session(self) -> Optional[ProviderSession]:
        """
        Refresh the live handle's session.

        Returns None when there is no live handle or it holds no refresh token.
        """
        pass

    @abstractmethod
    async def refresh_session(self, username: Optional[str], refresh_token: str) -> ProviderSession:
        """Mint new tokens from a refresh token."""
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """Drop the live handle."""
        pass

    @abstractmethod
    def has_live_session(self) -> bool:
        """Whether a live provider handle exists in this process."""
        pass
