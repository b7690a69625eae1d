class GatewayError(Exception):
    """Base class for errors raised while servicing realtime connections."""


class AuthenticationFailure(GatewayError):
    """The connection presented no credential, two credentials, or one that does not resolve."""


class DeviceNotFound(GatewayError):
    def __init__(self, device_pk: str) -> None:
        super().__init__(f"Device {device_pk} not found")
        self.device_pk = device_pk


class ProtocolError(GatewayError):
    """Malformed frame or unknown message type."""
