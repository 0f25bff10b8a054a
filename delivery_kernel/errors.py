"""Error taxonomy shared by every subsystem."""


class KernelError(Exception):
    """Base class for errors raised by the delivery kernel."""
    pass


class NotFoundError(KernelError):
    """Unknown policy, checkpoint, agent or review id."""
    pass


class InvalidStateError(KernelError):
    """The operation is not allowed in the record's current state."""
    pass


class CheckpointNotRestorableError(InvalidStateError):
    """Raised when a checkpoint does not exist or has been invalidated."""

    def __init__(self, checkpoint_id: str):
        super().__init__(f"Checkpoint {checkpoint_id} not found or invalid")
        self.checkpoint_id = checkpoint_id


class ConflictError(KernelError):
    """A concurrent write kept winning the race; the caller may retry."""
    pass


class DegradedInputError(KernelError):
    """An external analyzer failed or was unavailable."""

    def __init__(self, analyzer: str, cause: Exception):
        super().__init__(f"{analyzer} analysis unavailable: {cause}")
        self.analyzer = analyzer
        self.cause = cause
