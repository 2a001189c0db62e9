"""Exception taxonomy for jvmtop."""


class JvmTopError(Exception):
    """Base class for all jvmtop errors."""


class AttachFailure(JvmTopError):
    """The instance could not be attached. Permanent for the run."""


class ConnectionRefused(JvmTopError):
    """The peer rejected the connection or access was denied. Permanent for the run."""


class TransientUpdateFailure(JvmTopError):
    """A single poll cycle failed to read metrics. Recoverable and counted."""


class PermanentDetach(JvmTopError):
    """Too many failed cycles or the transport died. Permanent for the run."""


class PartialAttributeFailure(TransientUpdateFailure):
    """One attribute of a batched read failed while the others were returned."""

    def __init__(self, object_name: str, attribute: str, reason: str = "") -> None:
        self.object_name = object_name
        self.attribute = attribute
        self.reason = reason
        message = f"{object_name}#{attribute}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidTransition(JvmTopError):
    """A connection state received an event it does not accept."""


class DiscoveryError(JvmTopError):
    """The discovery provider is unusable. Fatal for the polling loop."""
