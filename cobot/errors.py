from __future__ import annotations


class CoBotError(Exception):
    """Base class for errors raised by the bot."""


class ConfigError(CoBotError):
    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")


class UnknownModelError(CoBotError):
    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f'Unknown model "{model_id}"')


class CompletionServiceError(CoBotError):
    """Non-success response, transport failure or unusable body from the completion service."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        self.message = message
        super().__init__(f"Completion service error {status}: {message}" if status else f"Completion service error: {message}")


class AttachmentTooLargeError(CoBotError):
    def __init__(self, file_name: str, limit_mb: int):
        self.file_name = file_name
        self.limit_mb = limit_mb
        super().__init__(f'"{file_name}" is too large (max {limit_mb} MB).')


class AttachmentDownloadError(CoBotError):
    def __init__(self, file_name: str, reason: str):
        self.file_name = file_name
        self.reason = reason
        super().__init__(f'Failed to download attachment "{file_name}": {reason}')


class AuthenticationError(CoBotError):
    """No usable GitHub credential could be obtained."""


class AccessDeniedError(AuthenticationError):
    def __init__(self):
        super().__init__("Access denied - user cancelled the device authorization")


class DeviceCodeExpiredError(AuthenticationError):
    def __init__(self):
        super().__init__("Device code expired - restart the bot to try again")


class GatewayPermissionError(CoBotError):
    """The bot lacks a privileged intent or permission it needs to read and answer messages."""
