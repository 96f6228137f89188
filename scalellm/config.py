"""Configuration module for the scalellm serving core.

This module provides the Config dataclass which defines every fixed
parameter of the scheduler and the KV cache block pool. A Config is built
once at startup and passed by reference into the engine; nothing in the
core reads process-wide mutable state.
"""

import os
from dataclasses import dataclass

PREEMPTION_MODES = ('recompute', 'swap')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


@dataclass
class Config:
    """Configuration for the scalellm engine.

    Attributes:
        block_size: Number of tokens stored in one KV cache block.
            Default: 16.
        num_gpu_blocks: Total number of blocks in the device block pool.
            Default: 1024.
        num_cpu_blocks: Number of host blocks available as swap space for
            swap-based preemption. Default: 0 (no swap space).
        max_num_seqs: Maximum number of sequences running concurrently.
            Default: 256.
        max_num_batched_tokens: Maximum number of tokens processed in one
            iteration. Default: 4096.
        max_model_len: Maximum length (prompt + completion) of a sequence.
            Default: 2048.
        eos: End-of-sequence token ID. Default: -1 (no EOS token).
        preemption_mode: How running sequences give their blocks back under
            memory pressure, 'recompute' or 'swap'. Default: 'recompute'.
        enable_prefix_caching: Share full blocks between sequences with
            identical token prefixes. Default: False.
        log_level: Default level of the scalellm loggers. The environment
            variable SCALELLM_LOG_LEVEL takes precedence. Default: 'INFO'.
    """

    block_size: int = 16
    num_gpu_blocks: int = 1024
    num_cpu_blocks: int = 0
    max_num_seqs: int = 256
    max_num_batched_tokens: int = 4096
    max_model_len: int = 2048
    eos: int = -1
    preemption_mode: str = 'recompute'
    enable_prefix_caching: bool = False
    log_level: str = 'INFO'

    def __post_init__(self) -> None:
        """Validate configuration after dataclass initialization.

        Raises:
            ValueError: If any configuration parameter is invalid.
        """
        if self.block_size <= 0:
            raise ValueError(
                f'block_size must be positive, got {self.block_size}')
        if self.num_gpu_blocks <= 0:
            raise ValueError(f'num_gpu_blocks must be positive, '
                             f'got {self.num_gpu_blocks}')
        if self.num_cpu_blocks < 0:
            raise ValueError(f'num_cpu_blocks must be non-negative, '
                             f'got {self.num_cpu_blocks}')
        if self.max_num_batched_tokens <= 0:
            raise ValueError(f'max_num_batched_tokens must be positive, '
                             f'got {self.max_num_batched_tokens}')
        if self.max_num_seqs <= 0:
            raise ValueError(f'max_num_seqs must be positive, '
                             f'got {self.max_num_seqs}')
        if self.max_model_len <= 1:
            raise ValueError(f'max_model_len must be greater than 1, '
                             f'got {self.max_model_len}')

        if self.preemption_mode not in PREEMPTION_MODES:
            raise ValueError(f'preemption_mode must be one of '
                             f'{PREEMPTION_MODES}, got {self.preemption_mode!r}')
        if self.preemption_mode == 'swap' and self.num_cpu_blocks == 0:
            raise ValueError(
                "preemption_mode='swap' requires num_cpu_blocks > 0")

        self.log_level = os.environ.get('SCALELLM_LOG_LEVEL',
                                        self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f'log_level must be one of {LOG_LEVELS}, '
                             f'got {self.log_level!r}')

        # Prompts are never split across iterations, so the whole context
        # must fit in a single batch.
        if self.max_num_batched_tokens < self.max_model_len:
            raise ValueError(
                f'max_num_batched_tokens ({self.max_num_batched_tokens}) '
                f'must be >= max_model_len ({self.max_model_len}) '
                f'to accommodate the full context length in a single batch.')

    @property
    def max_seq_len(self) -> int:
        """Longest sequence the block pool can ever hold."""
        return min(self.max_model_len, self.num_gpu_blocks * self.block_size)
