"""Exception hierarchy shared by the peer-side components."""


class ShareLinkError(Exception):
    """Base class for all ShareLink errors."""


# --- Signaling ---

class SignalingError(ShareLinkError):
    """A relay call was refused locally (not connected, bad id, payload too large)."""


# --- Negotiation ---

class NegotiationError(ShareLinkError):
    """Offer/answer/candidate exchange failed."""


class NegotiationCollisionError(NegotiationError):
    """Both sides tried to drive the same negotiation step at once."""


class InvalidNegotiationStateError(NegotiationError):
    """The operation is not valid in the current signaling state."""


class NegotiationFailedError(NegotiationError):
    """Negotiation failed again after the connection was recreated."""


# --- Transfer ---

class TransferError(ShareLinkError):
    """Chunked transfer failed."""


class ChannelNotReadyError(TransferError):
    """The data channel is missing or not open."""


class ChannelClosedError(TransferError):
    """The data channel closed while data was queued."""


class IncompleteTransferError(TransferError):
    """A file ended with too many bytes missing to be finalized."""
