"""Per-iteration outputs delivered to callers.

The scheduler returns a StepResult after every iteration. Each
SequenceOutput carries the tokens a request produced in that iteration and,
once the request is done, the reason it finished. Errors and cancellations
travel through the same channel as successful output.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from scalellm.engine.sequence import FinishReason


@dataclass
class SequenceOutput:
    """Incremental output of one request.

    Attributes:
        request_id: The request this output belongs to.
        new_token_ids: Tokens produced since the previous output, in order.
        finish_reason: Set on the last output of a request.
        error: Error message for an ERROR finish.
    """

    request_id: str
    new_token_ids: List[int] = field(default_factory=list)
    finish_reason: Optional[FinishReason] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.finish_reason is not None


@dataclass
class StepResult:
    """Everything one scheduler iteration produced.

    Attributes:
        outputs: Incremental outputs, at most one per request.
        num_prefill_tokens: Prompt tokens processed by the engine.
        num_decode_tokens: Decode tokens processed by the engine.
        num_preempted: Sequences preempted during scheduling.
    """

    outputs: List[SequenceOutput] = field(default_factory=list)
    num_prefill_tokens: int = 0
    num_decode_tokens: int = 0
    num_preempted: int = 0

    @property
    def finished(self) -> List[SequenceOutput]:
        return [output for output in self.outputs if output.finished]

    @property
    def num_tokens(self) -> int:
        return self.num_prefill_tokens + self.num_decode_tokens
