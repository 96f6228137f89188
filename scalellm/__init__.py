"""ScaleLLM: the scheduling core of a continuous-batching LLM server.

ScaleLLM keeps an accelerator busy while requests of different lengths
arrive and leave independently:
- Iteration-level scheduling that mixes prefill and decode work
- Paged KV cache with fixed-size, reference-counted blocks
- Preemption by recomputation or by swapping to host memory
- Optional prefix caching of shared prompt blocks
- Thread-safe request intake with streaming callbacks

Quick Start:
    >>> from scalellm import LLMEngine, ModelExecutor, SamplingParams
    >>>
    >>> engine = LLMEngine(ModelExecutor(model_fn), num_gpu_blocks=512)
    >>> outputs = engine.generate([[1, 2, 3]], SamplingParams(max_tokens=8))
    >>> print(outputs[0]['token_ids'])

Core Modules:
    config: Configuration of the scheduler and the block pool
    sampling_params: Generation sampling and stop parameters
    outputs: Incremental per-request outputs
    exceptions: Error taxonomy
    llm: Text interface backed by a Hugging Face tokenizer
    engine.sequence: Sequence management and state handling
    engine.block_manager: Block-based KV cache allocation
    engine.batch: Batch construction
    engine.scheduler: Admission, preemption and scheduling
    engine.executor: Engine boundary and sampling
    engine.llm_engine: Serving loop and lifecycle
"""

__version__ = '0.1.0'
__author__ = 'ScaleLLM Contributors'

from scalellm.config import Config  # noqa: F401
from scalellm.engine.executor import ExecutorBase, ModelExecutor  # noqa: F401
from scalellm.engine.llm_engine import LLMEngine  # noqa: F401
from scalellm.engine.sequence import (FinishReason, Sequence,  # noqa: F401
                                      SequenceStatus)
from scalellm.exceptions import (AdmissionRejectedError,  # noqa: F401
                                 EngineError, InvariantError,
                                 OutOfBlocksError, ScaleLLMError)
from scalellm.llm import LLM  # noqa: F401
from scalellm.outputs import SequenceOutput, StepResult  # noqa: F401
from scalellm.sampling_params import SamplingParams  # noqa: F401

__all__ = [
    'Config',
    'SamplingParams',
    'LLM',
    'LLMEngine',
    'ExecutorBase',
    'ModelExecutor',
    'Sequence',
    'SequenceStatus',
    'FinishReason',
    'SequenceOutput',
    'StepResult',
    'ScaleLLMError',
    'AdmissionRejectedError',
    'OutOfBlocksError',
    'EngineError',
    'InvariantError',
]
