"""Domain exceptions."""


class BridgeError(Exception):
    """Base class for errors raised by the bridge."""


class NotConnectedError(BridgeError):
    """Raised when an operation needs an open protocol session and there is none."""


class UnresolvableIdentityError(BridgeError):
    """Raised when neither the address nor the protocol id normalizes."""


class PersistenceError(BridgeError):
    """Raised when a message or contact could not be written."""


class SendError(BridgeError):
    """Raised when the protocol client fails to send."""


class TranscodeError(BridgeError):
    """Raised when an audio asset cannot be converted."""


class CredentialStoreError(BridgeError):
    """Raised when session credentials cannot be loaded, saved or cleared."""
