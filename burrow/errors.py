"""Burrow exception classes."""


class TunnelError(Exception):
    """Base exception for burrow."""

    pass


class HandshakeError(TunnelError):
    """The session ended before the tunnel was registered."""

    pass


class RegistrationRejected(HandshakeError):
    """The relay answered the register frame with an error frame."""

    def __init__(self, message: str, fatal: bool = False):
        self.message = message
        self.fatal = fatal
        super().__init__(message)


class TransportClosed(HandshakeError):
    """The relay closed the connection before registration."""

    def __init__(self, code: int | None, reason: str = ""):
        self.code = code
        self.reason = reason
        detail = f"code={code}"
        if reason:
            detail += f", reason={reason}"
        super().__init__(f"Connection closed before registration ({detail})")


class TransportFailure(HandshakeError):
    """Transport-level failure before registration (refused, bad URI, handshake)."""

    pass


class ShutdownRequested(TunnelError):
    """An interrupt signal closed the session before registration."""

    pass


class AuthenticationError(TunnelError):
    """A bearer token could not be obtained."""

    pass
