"""Engine module for scalellm.

This module contains the serving core components, including:

Core Components:
    Sequence: Represents and manages individual generation requests
    SequenceStatus: Enumeration of possible sequence states
    FinishReason: Reason code delivered with every completion
    BlockManager: Manages KV cache block allocation, swapping and prefix
        caching
    BatchBuilder: Packs running sequences into one iteration's batch
    Scheduler: Admission, preemption and batch scheduling
    ExecutorBase: Boundary to the model that runs a batch
    LLMEngine: Serving loop, request intake and lifecycle
"""

from scalellm.engine.batch import Batch, BatchBuilder
from scalellm.engine.block_manager import Block, BlockManager, BlockPool
from scalellm.engine.executor import (ExecutorBase, ModelExecutor, Sampler,
                                      SamplerOutput)
from scalellm.engine.llm_engine import LLMEngine
from scalellm.engine.scheduler import Scheduler, SchedulerStats
from scalellm.engine.sequence import FinishReason, Sequence, SequenceStatus

__all__ = [
    'Sequence',
    'SequenceStatus',
    'FinishReason',
    'Block',
    'BlockPool',
    'BlockManager',
    'Batch',
    'BatchBuilder',
    'ExecutorBase',
    'ModelExecutor',
    'Sampler',
    'SamplerOutput',
    'Scheduler',
    'SchedulerStats',
    'LLMEngine',
]
