"""Error taxonomy for the batch queue.

Per-item failures are recovered inside the queue manager and turned into
state transitions. Only systemic failures (missing processor, invalid job
config, store outage) abort a batch run and reach the caller.
"""

MAX_ERROR_MESSAGE_LENGTH = 2000


class QueueError(Exception):
    """Base class for batch queue errors."""
    pass


class NotFoundError(QueueError):
    """Batch job or queue item does not exist or is not owned by the caller."""

    def __init__(self, kind: str, entity_id):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


class UnregisteredProcessorError(QueueError):
    """No processor is registered for the job type."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No processor registered for job type: {job_type}")


class InvalidJobConfigError(QueueError):
    """Job config does not match the shape declared by the job type's processor."""

    def __init__(self, job_type: str, detail: str):
        self.job_type = job_type
        self.detail = detail
        super().__init__(f"Invalid config for job type '{job_type}': {detail}")


class InvalidStateError(QueueError):
    """The batch job's current status does not allow the requested action."""

    def __init__(self, action: str, status: str):
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} batch job in '{status}' state")


class ProcessingError(QueueError):
    """A processor failed on one queue item.

    Drives the retry state machine; never propagates out of a batch run.
    """

    def __init__(self, item_id, cause: BaseException):
        self.item_id = item_id
        self.cause = cause
        super().__init__(safe_error_message(cause))


class StoreError(QueueError):
    """The persistence layer failed. Not retried by the queue."""
    pass


def safe_error_message(e: BaseException, fallback: str = "Unknown error") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions (especially from third-party libraries or cancellation races)
    produce an empty str(e). This helper falls back to the exception class name.
    The result is truncated so it always fits the error_message column budget.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg[:MAX_ERROR_MESSAGE_LENGTH]
