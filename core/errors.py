"""
Error taxonomy for the bot host.

InstanceNotFound      — unknown bot id, surfaced as an error status
CSRFStateMismatch     — OAuth callback state does not match what we issued
OAuthProviderError    — authorization-code or refresh exchange failed
TurnProcessingError   — a turn failed and could not be recovered locally
UpstreamServiceError  — webchat / speech token retrieval failed
PackageLoadError      — a capability package hook failed at startup
"""
from __future__ import annotations


class BotHostError(Exception):
    """Base exception for all host operations."""

    def __init__(self, message: str, bot_id: str = ""):
        self.bot_id = bot_id
        super().__init__(message)


class InstanceNotFound(BotHostError):
    def __init__(self, bot_id: str = ""):
        super().__init__(f"Instance not found: {bot_id}.", bot_id)


class CSRFStateMismatch(BotHostError):
    def __init__(self, bot_id: str = ""):
        super().__init__("state field was not provided as anti-CSRF token", bot_id)


class OAuthProviderError(BotHostError):
    pass


class TurnProcessingError(BotHostError):
    pass


class UpstreamServiceError(BotHostError):
    def __init__(self, message: str, bot_id: str = "", service: str = ""):
        self.service = service
        super().__init__(message, bot_id)


class PackageLoadError(BotHostError):
    def __init__(self, package: str, bot_id: str = "", cause: Exception = None):
        self.package = package
        super().__init__(f"Package {package} failed to load for {bot_id}: {cause}", bot_id)
