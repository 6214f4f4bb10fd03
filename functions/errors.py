"""Error types shared by the relay components.

Each watcher is its own fault domain: these exceptions are caught and
logged at the component boundary and never propagate into another
component's subscription.
"""


class RelayError(Exception):
    """Base class for relay failures."""


class TransientReadError(RelayError):
    """A store read or subscription failed; future events still arrive."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        super().__init__(f"Failed to read {path}: {reason}" if reason else f"Failed to read {path}")


class StoreWriteError(RelayError):
    """A store write failed."""

    def __init__(self, path: str, reason: str = ""):
        self.path = path
        super().__init__(f"Failed to write {path}: {reason}" if reason else f"Failed to write {path}")


class DeliveryFailure(RelayError):
    """An email or SMS provider rejected or failed a send."""

    def __init__(self, recipient: str, reason: str = ""):
        self.recipient = recipient
        super().__init__(f"Delivery to {recipient} failed: {reason}" if reason else f"Delivery to {recipient} failed")


class ValidationSkip(RelayError):
    """A request is not actionable yet (e.g. no submitted code)."""


class SigningUnavailable(RelayError):
    """Custom token minting failed for a single request."""
