"""
Exceptions raised inside the PeerDrop core.

Protocol-level failures are handled where they happen and only surface as
connection/session state; these types mark the places where that handling
happens.
"""


class PeerDropError(Exception):
    """Base class for PeerDrop errors."""
    pass


class ProtocolError(PeerDropError):
    """Raised when a data-channel message cannot be decoded."""
    pass


class DuplicateTransferError(PeerDropError):
    """Raised when a transfer id is added to the ledger twice."""
    pass


class TransferNotFoundError(PeerDropError):
    """Raised when a transfer id is not in the ledger."""
    pass


class SignalingError(PeerDropError):
    """Raised when an event cannot be sent to the signaling service."""
    pass
