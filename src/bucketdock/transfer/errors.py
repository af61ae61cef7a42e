"""Move queue errors."""


class TransferError(Exception):
    """Base exception for move queue operations."""


class MoveTaskNotFoundError(TransferError):
    """Raised when a move task id is unknown."""


class MoveQueueBusyError(TransferError):
    """Raised when an operation is refused because moves are still in progress."""


class MoveInterrupted(TransferError):
    """Raised inside a running transfer when it was paused or cancelled."""

    def __init__(self, status: str) -> None:
        super().__init__(f"Move {status}")
        self.status = status
