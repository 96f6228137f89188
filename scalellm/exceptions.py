"""Error taxonomy for the scalellm serving core.

Caller-visible failures (rejection, engine failure, cancellation) are
reported through the per-sequence completion channel as a finish reason.
The exceptions here are raised where the core must stop the caller
immediately or where an internal invariant has been broken.
"""

__all__ = [
    'ScaleLLMError',
    'AdmissionRejectedError',
    'OutOfBlocksError',
    'EngineError',
    'InvariantError',
]


class ScaleLLMError(Exception):
    """Base class for all scalellm errors."""


class AdmissionRejectedError(ScaleLLMError, ValueError):
    """A request can never be served with the configured capacity.

    Raised before the request is enqueued; the block pool is untouched.
    """


class OutOfBlocksError(ScaleLLMError, MemoryError):
    """The block pool cannot satisfy an all-or-nothing allocation."""

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(f'Not enough free blocks: need {requested}, '
                         f'have {available}')
        self.requested = requested
        self.available = available


class EngineError(ScaleLLMError, RuntimeError):
    """The executor failed to run a batch.

    Every sequence in the failed batch is finished with an error; partial
    batch state is never retried.
    """


class InvariantError(ScaleLLMError, RuntimeError):
    """Allocator or queue state is inconsistent (e.g. double free)."""
