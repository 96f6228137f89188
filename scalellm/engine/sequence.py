"""Sequence management module for handling generation requests.

This module provides the Sequence class which represents one generation
request in the engine: its token history, its block table into the KV
cache, and its position in the scheduling state machine.

State machine::

    WAITING --> RUNNING --> FINISHED
                  ^   |
                  |   v
                PREEMPTED

    any non-terminal state --> CANCELLED
"""

import time
from copy import copy
from enum import Enum, auto
from itertools import count
from typing import Iterator, List, Optional, Tuple

from scalellm.exceptions import InvariantError
from scalellm.sampling_params import SamplingParams


class SequenceStatus(Enum):
    """Enumeration of possible sequence statuses.

    Attributes:
        WAITING: Sequence has arrived and waits for its first admission.
        RUNNING: Sequence owns blocks and takes part in iterations.
        PREEMPTED: Sequence was evicted mid-generation and waits for
            re-admission.
        FINISHED: Generation stopped on a stop condition or an error.
        CANCELLED: Generation was cancelled by the caller.
    """
    WAITING = auto()
    RUNNING = auto()
    PREEMPTED = auto()
    FINISHED = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (SequenceStatus.FINISHED, SequenceStatus.CANCELLED)


class FinishReason(str, Enum):
    """Reason code delivered with the completion of a sequence."""
    STOP = 'stop'
    LENGTH = 'length'
    CANCELLED = 'cancelled'
    ERROR = 'error'
    REJECTED = 'rejected'


class Sequence:
    """Manages a single sequence (request) in the engine.

    Class Attributes:
        counter: Global counter for generating unique sequence IDs. IDs are
            handed out in submission order and break arrival-time ties.

    Attributes:
        seq_id: Unique, monotonically increasing identifier.
        request_id: Opaque identifier the caller uses for this request.
        status: Current status in the state machine.
        block_size: Number of tokens per KV cache block.
        token_ids: Prompt tokens followed by generated tokens.
        last_token: The most recently added token ID.
        num_tokens: Total number of tokens in the sequence.
        num_prompt_tokens: Number of tokens in the original prompt.
        num_computed_tokens: Number of tokens whose KV entries are present
            in the cache. Tokens past this point are fed to the next
            engine step.
        num_cached_tokens: Number of prompt tokens served from the prefix
            cache at allocation time.
        block_table: Physical block IDs covering the sequence's tokens.
        arrival_time: Arrival timestamp used for fair ordering.
        finish_reason: Why the sequence reached a terminal state.
        num_preemptions: How many times the sequence has been preempted.
        error: Error message attached to an ERROR finish.
    """

    counter: Iterator[int] = count()

    def __init__(
        self,
        token_ids: List[int],
        sampling_params: Optional[SamplingParams] = None,
        block_size: int = 16,
        request_id: Optional[str] = None,
        arrival_time: Optional[float] = None,
    ) -> None:
        """Initialize a new sequence.

        Args:
            token_ids: List of initial token IDs (the prompt).
            sampling_params: Sampling parameters for generation.
                Defaults to a new SamplingParams() instance if not provided.
            block_size: Number of tokens per KV cache block.
            request_id: Caller-facing identifier. Defaults to the string
                form of the sequence ID.
            arrival_time: Arrival timestamp. Defaults to time.monotonic().
        """
        if sampling_params is None:
            sampling_params = SamplingParams()

        if not token_ids:
            raise ValueError('token_ids must contain at least one token')
        if block_size <= 0:
            raise ValueError(f'block_size must be positive, got {block_size}')

        self.seq_id: int = next(Sequence.counter)
        self.request_id: str = (request_id if request_id is not None else str(
            self.seq_id))
        self.status: SequenceStatus = SequenceStatus.WAITING
        self.block_size: int = block_size
        self.token_ids: List[int] = copy(token_ids)
        self.last_token: int = self.token_ids[-1]
        self.num_tokens: int = len(self.token_ids)
        self.num_prompt_tokens: int = len(self.token_ids)
        self.num_computed_tokens: int = 0
        self.num_cached_tokens: int = 0
        self.block_table: List[int] = []
        self.arrival_time: float = (arrival_time if arrival_time is not None
                                    else time.monotonic())
        self.finish_reason: Optional[FinishReason] = None
        self.num_preemptions: int = 0
        self.error: Optional[str] = None

        self.temperature: float = sampling_params.temperature
        self.max_tokens: int = sampling_params.max_tokens
        self.ignore_eos: bool = sampling_params.ignore_eos
        self.stop_token_ids: List[int] = list(sampling_params.stop_token_ids)
        self.stop_sequences: List[List[int]] = [
            list(stop) for stop in sampling_params.stop_sequences
        ]

        # Number of completion tokens already handed to the caller.
        self._num_emitted_tokens: int = 0

    def __len__(self) -> int:
        return self.num_tokens

    def __getitem__(self, key):
        return self.token_ids[key]

    def __repr__(self) -> str:
        return (f'Sequence(seq_id={self.seq_id}, '
                f'request_id={self.request_id!r}, '
                f'status={self.status.name}, num_tokens={self.num_tokens}, '
                f'num_blocks={len(self.block_table)})')

    @property
    def is_finished(self) -> bool:
        """True once the sequence reached FINISHED or CANCELLED."""
        return self.status.is_terminal

    @property
    def sort_key(self) -> Tuple[float, int]:
        """Priority key: earliest arrival first, sequence ID on ties."""
        return (self.arrival_time, self.seq_id)

    @property
    def num_completion_tokens(self) -> int:
        return self.num_tokens - self.num_prompt_tokens

    @property
    def prompt_token_ids(self) -> List[int]:
        return self.token_ids[:self.num_prompt_tokens]

    @property
    def completion_token_ids(self) -> List[int]:
        return self.token_ids[self.num_prompt_tokens:]

    @property
    def num_uncomputed_tokens(self) -> int:
        """Tokens the next engine step must process for this sequence.

        The whole remaining prompt (or the whole history after a
        recompute preemption) before prefill, exactly one afterwards.
        """
        return self.num_tokens - self.num_computed_tokens

    @property
    def is_prefill(self) -> bool:
        return self.num_uncomputed_tokens > 1

    @property
    def num_cached_blocks(self) -> int:
        return self.num_cached_tokens // self.block_size

    @property
    def num_blocks(self) -> int:
        """Get the total number of blocks needed for all tokens.

        Returns:
            Total number of blocks needed (ceiling division).
        """
        return (self.num_tokens + self.block_size - 1) // self.block_size

    @property
    def last_block_num_tokens(self) -> int:
        return self.num_tokens - (self.num_blocks - 1) * self.block_size

    @property
    def capacity(self) -> int:
        """Number of tokens the current block table can hold."""
        return len(self.block_table) * self.block_size

    def block(self, i: int) -> List[int]:
        """Get token IDs for a specific block.

        Args:
            i: Index of the block to retrieve (0-indexed).

        Returns:
            List of token IDs in the specified block.

        Raises:
            IndexError: If block index i is out of valid range.
        """
        if not (0 <= i < self.num_blocks):
            raise IndexError(
                f'Block index {i} out of range [0, {self.num_blocks})')
        return self.token_ids[i * self.block_size:(i + 1) * self.block_size]

    def append_token(self, token_id: int) -> None:
        """Add a new token to the sequence.

        This method is called after an engine step to commit a newly
        sampled token. It does NOT check for sequence completion - that is
        handled by the scheduler based on stop conditions.

        Args:
            token_id: The token ID to append to the sequence.

        Raises:
            ValueError: If token_id is negative (invalid token).
            InvariantError: If a running sequence's block table has no slot
                for the new token.
        """
        if token_id < 0:
            raise ValueError(f'Token ID must be non-negative, got {token_id}')
        if (self.status == SequenceStatus.RUNNING
                and self.num_tokens + 1 > self.capacity):
            raise InvariantError(
                f'Sequence {self.request_id} has {len(self.block_table)} '
                f'blocks, cannot append token {self.num_tokens + 1}')

        self.token_ids.append(token_id)
        self.last_token = token_id
        self.num_tokens += 1

    def take_new_tokens(self) -> List[int]:
        """Return completion tokens not yet handed to the caller.

        Each generated token is returned exactly once, in order.
        """
        start = self.num_prompt_tokens + self._num_emitted_tokens
        new_tokens = self.token_ids[start:]
        self._num_emitted_tokens += len(new_tokens)
        return new_tokens
