"""
Bridge error taxonomy.

Routers map these onto HTTP status codes:
- InvalidRequestError -> 400
- DeviceNotFoundError -> 404
- ProtocolError -> 500 (underlying message echoed to the caller)
"""


class BridgeError(Exception):
    """Base class for lifecycle manager failures."""
    pass


class InvalidRequestError(BridgeError):
    """Caller input failed validation."""
    pass


class BackendNotConfiguredError(InvalidRequestError):
    """Device was created without external backend credentials."""
    pass


class DeviceNotFoundError(BridgeError):
    """No session is registered for the device."""

    def __init__(self, device_id: str, message: str = "Device not found"):
        self.device_id = device_id
        super().__init__(message)


class ProtocolError(BridgeError):
    """The protocol session raised while serving a request."""
    pass
