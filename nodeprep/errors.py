"""Error taxonomy shared by the inspector, executor, stages and recovery."""


class NodePrepError(RuntimeError):
    """Base class; ``state`` carries whatever device detail was available."""

    def __init__(self, message: str, *, state: dict | None = None) -> None:
        super().__init__(message)
        self.state = state or {}


class InspectionError(NodePrepError):
    """The current boot source (or another device fact) could not be determined."""


class FirmwareQueryError(InspectionError):
    """Firmware boot entries could not be read."""


class PreconditionViolation(NodePrepError):
    """A guard evaluated false; no I/O was performed."""


class ConfirmationRejected(NodePrepError):
    """The operator did not type the exact expected phrase."""


class OperationFailure(NodePrepError):
    """A copy, delete or overwrite failed partway."""


class VerificationFailure(NodePrepError):
    """An invariant did not hold after a stage acted."""


class PrerequisiteMissing(NodePrepError):
    """A required image file or block device does not exist."""


class BootConfigError(NodePrepError):
    """The bootloader configuration is missing or has no root selector."""


class MountError(NodePrepError):
    """A partition could not be mounted or unmounted."""
