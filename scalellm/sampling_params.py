"""Sampling parameters module for text generation.

This module defines the SamplingParams dataclass which controls
the behavior of the text generation process and its stop conditions.
"""

from dataclasses import dataclass, field
from typing import List


@dataclass
class SamplingParams:
    """Parameters that control text generation sampling behavior.

    Attributes:
        temperature: Controls randomness in sampling. Higher
            values make output more random, lower values more
            deterministic.
            Must be > 1e-10. Default: 1.0.
        max_tokens: Maximum number of tokens to generate in completion.
            Default: 64.
        ignore_eos: Whether to ignore the end-of-sequence token and
            continue generating until max_tokens is reached.
            Default: False.
        stop_token_ids: Additional token IDs that end generation when
            produced. Honored even when ignore_eos is set.
        stop_sequences: Token ID sequences that end generation when the
            completion ends with any of them.
    """

    temperature: float = 1.0
    max_tokens: int = 64
    ignore_eos: bool = False
    stop_token_ids: List[int] = field(default_factory=list)
    stop_sequences: List[List[int]] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate sampling parameters after dataclass initialization.

        Raises:
            ValueError: If temperature is <= 1e-10, max_tokens is not
                positive or a stop sequence is empty.
        """
        if self.temperature <= 1e-10:
            raise ValueError(
                f'temperature must be > 1e-10, got {self.temperature}. '
                f'Greedy sampling (temperature=0) is not permitted.')

        if self.max_tokens <= 0:
            raise ValueError(f'max_tokens must be > 0, got {self.max_tokens}')

        if any(len(stop) == 0 for stop in self.stop_sequences):
            raise ValueError('stop_sequences must not contain empty sequences')
