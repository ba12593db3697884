"""
Custom exceptions for the OmniChat library.
"""

from typing import Optional


class OmniChatError(Exception):
    """Base exception for all OmniChat errors."""
    pass


class PlatformNotSupportedError(OmniChatError):
    """Raised when an unsupported platform is specified."""
    pass


class AuthenticationError(OmniChatError):
    """Raised when a platform rejects the supplied credentials."""
    pass


class ApiError(OmniChatError):
    """Raised when a platform HTTP endpoint answers with a non-2xx status."""

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.url = url


class IdentityResolutionError(OmniChatError):
    """Raised when a room handle cannot be resolved to platform ids."""
    pass


class RoomNotFoundError(IdentityResolutionError):
    """Raised when the specified room does not exist."""
    pass


class InitializationError(OmniChatError):
    """Raised when a polled room cannot obtain its bootstrap values."""
    pass


class ProtocolError(OmniChatError):
    """Base class for wire-format problems."""
    pass


class FrameDecodeError(ProtocolError):
    """Raised when a frame's payload cannot be decoded."""

    def __init__(self, message: str, token: Optional[str] = None, preview: str = ""):
        super().__init__(message)
        self.token = token
        self.preview = preview


class UnsupportedFrameError(ProtocolError):
    """Raised when a frame carries a type token with no handler."""

    def __init__(self, token: str, preview: str = ""):
        super().__init__(f"Unsupported frame type: {token}")
        self.token = token
        self.preview = preview
