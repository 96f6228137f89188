"""Executor boundary between the scheduler and the model.

The scheduler never runs a forward pass itself. Each iteration it hands a
Batch to an ExecutorBase implementation and receives one SamplerOutput per
sequence, in batch order. A failed batch is reported by raising; the
scheduler then finishes every sequence of that batch with an error.

ModelExecutor adapts any torch callable that maps batch tensors to
next-token logits, and samples with per-sequence temperatures.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import torch
from torch import nn

from scalellm.engine.batch import Batch
from scalellm.exceptions import EngineError
from scalellm.utils.logger_utils import get_logger

logger = get_logger(__name__)

__all__ = ['SamplerOutput', 'ExecutorBase', 'Sampler', 'ModelExecutor']


@dataclass
class SamplerOutput:
    """Result of one engine step for one sequence.

    Attributes:
        token_id: The sampled next token.
        success: False if the step failed for this sequence only.
    """

    token_id: int
    success: bool = True


class ExecutorBase(ABC):
    """Abstract engine boundary: run one batch, return next tokens."""

    @abstractmethod
    def execute(self, batch: Batch) -> List[SamplerOutput]:
        """Run one forward step for ``batch``.

        Implementations must apply ``batch.blocks_to_swap_out``,
        ``batch.blocks_to_swap_in`` and ``batch.blocks_to_copy`` before
        writing any KV entry.

        Returns:
            One SamplerOutput per sequence, in ``batch.sequences`` order.

        Raises:
            Exception: Any failure of the batch as a whole.
        """

    def shutdown(self) -> None:
        """Release executor resources. Default no-op."""
        return


class Sampler(nn.Module):
    """Sampler module that selects tokens given logits and per-sample temperatures.

    Performs temperature scaling followed by sampling through exponential
    noise and argmax, which draws from the softmax distribution.
    """

    def forward(self, logits: torch.Tensor,
                temperatures: torch.Tensor) -> torch.Tensor:
        """Sample tokens from logits with per-sample temperatures.

        Args:
            logits: Float tensor of shape (batch, vocab).
            temperatures: Float tensor of shape (batch,) with positive values.

        Returns:
            1-D tensor of sampled token ids (shape: [batch]).
        """
        if logits.dim() != 2:
            raise ValueError(
                'logits must be a 2D tensor of shape (batch, vocab)')
        if temperatures.dim() != 1:
            raise ValueError(
                'temperatures must be a 1D tensor of shape (batch,)')
        if logits.size(0) != temperatures.size(0):
            raise ValueError(
                'batch size of logits and temperatures must match')

        temperatures = temperatures.clamp_min(1e-8)
        logits = logits.float().div(temperatures.unsqueeze(dim=1))
        probs = torch.softmax(logits, dim=-1)
        noise = torch.empty_like(probs).exponential_(1).clamp_min_(1e-10)
        return probs.div_(noise).argmax(dim=-1)


ModelFn = Callable[[Batch, Dict[str, torch.Tensor]], torch.Tensor]


class ModelExecutor(ExecutorBase):
    """Executor that runs a torch model callable and samples its logits.

    The callable receives the batch and its tensors (see
    Batch.to_tensors) and returns logits of shape (num_seqs, vocab) for
    the last token of every sequence, or (num_tokens, vocab) for every
    token, in which case the last token of each sequence is selected.

    Attributes:
        model_fn: The model callable.
        device: Device the batch tensors are placed on.
        sampler: Temperature sampler.
        cache_ops_fn: Optional callable applying the batch's swap and
            copy operations to the KV cache. Called before the model,
            even for a batch without sequences.
    """

    def __init__(self,
                 model_fn: ModelFn,
                 device: Optional[torch.device] = None,
                 cache_ops_fn: Optional[Callable[[Batch], None]] = None
                 ) -> None:
        self.model_fn: ModelFn = model_fn
        self.device: torch.device = (torch.device(device) if device
                                     is not None else torch.device('cpu'))
        self.sampler: Sampler = Sampler()
        self.cache_ops_fn = cache_ops_fn

    @torch.inference_mode()
    def execute(self, batch: Batch) -> List[SamplerOutput]:
        try:
            if self.cache_ops_fn is not None and batch.has_block_ops:
                self.cache_ops_fn(batch)
            if batch.is_empty:
                return []
            tensors = batch.to_tensors(self.device)
            logits = self.model_fn(batch, tensors)
        except Exception as e:
            logger.error(f'Batch execution failed: {e}')
            raise EngineError(f'Model execution failed: {e}') from e

        if logits.dim() != 2:
            raise EngineError(f'Expected 2D logits, got shape '
                              f'{tuple(logits.shape)}')
        if logits.size(0) == batch.num_tokens and batch.num_tokens != len(
                batch):
            logits = logits[tensors['last_token_indices']]
        if logits.size(0) != len(batch):
            raise EngineError(f'Expected logits for {len(batch)} sequences, '
                              f'got {logits.size(0)}')

        # Non-finite logits only fail the affected sequence.
        finite = torch.isfinite(logits).all(dim=-1)
        safe_logits = torch.where(finite.unsqueeze(-1), logits,
                                  torch.zeros_like(logits))
        token_ids = self.sampler(safe_logits, tensors['temperatures'])
        return [
            SamplerOutput(token_id=int(token_id), success=bool(ok))
            for token_id, ok in zip(token_ids.tolist(), finite.tolist())
        ]
