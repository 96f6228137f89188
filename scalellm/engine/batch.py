"""Batch construction for one scheduler iteration.

A Batch is the descriptor handed to the executor: flattened token IDs,
absolute positions, per-sequence block tables and boundaries, the KV slot
of every token, and the block copy/swap operations the executor must apply
before running the forward pass. Batches are rebuilt every iteration and
never persisted.

Prefill work (a whole remaining prompt) and decode work (one token) are
packed into the same batch.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import torch

from scalellm.engine.block_manager import BlockManager
from scalellm.engine.sequence import Sequence, SequenceStatus
from scalellm.utils.logger_utils import get_logger

logger = get_logger(__name__)

__all__ = ['Batch', 'BatchBuilder']


@dataclass
class Batch:
    """Descriptor of the work of one iteration.

    Attributes:
        sequences: Sequences in the batch, in priority order.
        token_ids: Flattened unprocessed tokens of every sequence.
        positions: Absolute position of each token in ``token_ids``.
        slot_mapping: KV cache slot (block_id * block_size + offset) that
            each token in ``token_ids`` writes to.
        cu_seqlens_q: Sequence boundaries in ``token_ids``; sequence ``i``
            owns ``token_ids[cu_seqlens_q[i]:cu_seqlens_q[i + 1]]``.
        context_lens: Total context length (cached + new tokens) per
            sequence.
        block_tables: Block table of each sequence.
        temperatures: Sampling temperature per sequence.
        is_prefill: Whether each sequence processes more than one token.
        block_size: Number of tokens per block.
        blocks_to_swap_in: Host block -> device block copies to perform.
        blocks_to_swap_out: Device block -> host block copies to perform.
        blocks_to_copy: Device (source, destination) copy-on-write pairs.
    """

    sequences: List[Sequence] = field(default_factory=list)
    token_ids: List[int] = field(default_factory=list)
    positions: List[int] = field(default_factory=list)
    slot_mapping: List[int] = field(default_factory=list)
    cu_seqlens_q: List[int] = field(default_factory=lambda: [0])
    context_lens: List[int] = field(default_factory=list)
    block_tables: List[List[int]] = field(default_factory=list)
    temperatures: List[float] = field(default_factory=list)
    is_prefill: List[bool] = field(default_factory=list)
    block_size: int = 16
    blocks_to_swap_in: Dict[int, int] = field(default_factory=dict)
    blocks_to_swap_out: Dict[int, int] = field(default_factory=dict)
    blocks_to_copy: List[Tuple[int, int]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.sequences)

    @property
    def is_empty(self) -> bool:
        return not self.sequences

    @property
    def num_tokens(self) -> int:
        return len(self.token_ids)

    @property
    def num_prefill_tokens(self) -> int:
        return sum(self.cu_seqlens_q[i + 1] - self.cu_seqlens_q[i]
                   for i, prefill in enumerate(self.is_prefill) if prefill)

    @property
    def num_decode_tokens(self) -> int:
        return self.num_tokens - self.num_prefill_tokens

    @property
    def request_ids(self) -> List[str]:
        return [seq.request_id for seq in self.sequences]

    @property
    def has_block_ops(self) -> bool:
        return bool(self.blocks_to_swap_in or self.blocks_to_swap_out
                    or self.blocks_to_copy)

    def add(self, sequence: Sequence) -> None:
        """Append the unprocessed tokens of ``sequence`` to the batch."""
        start = sequence.num_computed_tokens
        end = len(sequence)
        self.sequences.append(sequence)
        self.token_ids.extend(sequence[start:end])
        self.positions.extend(range(start, end))
        for pos in range(start, end):
            block_id = sequence.block_table[pos // self.block_size]
            self.slot_mapping.append(block_id * self.block_size +
                                     pos % self.block_size)
        self.cu_seqlens_q.append(self.cu_seqlens_q[-1] + end - start)
        self.context_lens.append(end)
        self.block_tables.append(list(sequence.block_table))
        self.temperatures.append(sequence.temperature)
        self.is_prefill.append(end - start > 1)

    def to_tensors(
        self,
        device: Optional[torch.device] = None,
    ) -> Dict[str, torch.Tensor]:
        """Materialize the batch as tensors for a model runner.

        Block tables are padded to the longest table with -1.

        Args:
            device: Target device. Defaults to CPU.

        Returns:
            Dictionary with ``input_ids``, ``positions``, ``slot_mapping``,
            ``cu_seqlens_q``, ``context_lens``, ``block_tables``,
            ``temperatures`` and ``last_token_indices`` (index in
            ``input_ids`` of the last token of each sequence, whose logits
            are sampled).
        """
        device = torch.device('cpu') if device is None else torch.device(
            device)
        pin_memory = device.type == 'cuda' and torch.cuda.is_available()

        max_len = max((len(table) for table in self.block_tables), default=0)
        block_tables = [
            table + [-1] * (max_len - len(table))
            for table in self.block_tables
        ]

        def _tensor(data, dtype: torch.dtype) -> torch.Tensor:
            tensor = torch.tensor(data, dtype=dtype, pin_memory=pin_memory)
            return tensor.to(device, non_blocking=pin_memory)

        return {
            'input_ids':
            _tensor(self.token_ids, torch.int64),
            'positions':
            _tensor(self.positions, torch.int64),
            'slot_mapping':
            _tensor(self.slot_mapping, torch.int32),
            'cu_seqlens_q':
            _tensor(self.cu_seqlens_q, torch.int32),
            'context_lens':
            _tensor(self.context_lens, torch.int32),
            'block_tables':
            _tensor(block_tables, torch.int32).reshape(len(self), max_len),
            'temperatures':
            _tensor(self.temperatures, torch.float32),
            'last_token_indices':
            _tensor([end - 1 for end in self.cu_seqlens_q[1:]], torch.int64),
        }


class BatchBuilder:
    """Greedily packs candidate sequences into an iteration batch.

    Attributes:
        block_manager: Supplies the blocks each included sequence needs.
        max_seq_len: Sequences that reached this length can never run
            again and are rejected.
    """

    def __init__(self, block_manager: BlockManager, max_seq_len: int) -> None:
        self.block_manager: BlockManager = block_manager
        self.max_seq_len: int = max_seq_len

    def build(
        self,
        candidates: List[Sequence],
        token_budget: int,
        max_num_seqs: Optional[int] = None,
    ) -> Tuple[Batch, List[Sequence], List[Sequence]]:
        """Build the batch of one iteration.

        Candidates are visited earliest-arrived first (ties broken by
        sequence ID). Each one demands its unprocessed tokens: the whole
        remaining prompt before prefill, exactly one token afterwards. A
        candidate is included if the cumulative token count stays within
        ``token_budget`` and its block table can be extended to also cover
        the token this step will produce. Otherwise it is deferred to a
        later iteration; it keeps its blocks and its queue position.

        Args:
            candidates: RUNNING sequences with device block tables.
            token_budget: Maximum number of tokens in the batch.
            max_num_seqs: Optional cap on the number of sequences.

        Returns:
            A tuple containing:
            - The batch, with any copy-on-write operations recorded.
            - Sequences included in the batch.
            - Sequences rejected because they reached the maximum sequence
              length (a terminal error for the caller to finish).
        """
        batch = Batch(block_size=self.block_manager.block_size)
        admitted: List[Sequence] = []
        rejected: List[Sequence] = []
        num_batched_tokens = 0

        for sequence in sorted(candidates, key=lambda s: s.sort_key):
            if sequence.status != SequenceStatus.RUNNING:
                continue
            if len(sequence) >= self.max_seq_len:
                rejected.append(sequence)
                continue
            if max_num_seqs is not None and len(admitted) >= max_num_seqs:
                continue

            num_new_tokens = sequence.num_uncomputed_tokens
            if num_batched_tokens + num_new_tokens > token_budget:
                continue
            if not self.block_manager.can_append(sequence,
                                                 len(sequence) + 1):
                continue

            copy_op = self.block_manager.append_slots(sequence,
                                                      len(sequence) + 1)
            if copy_op is not None:
                batch.blocks_to_copy.append(copy_op)

            num_batched_tokens += num_new_tokens
            batch.add(sequence)
            admitted.append(sequence)

        num_deferred = len(candidates) - len(admitted) - len(rejected)
        if num_deferred:
            logger.debug(f'Deferred {num_deferred} sequence(s) to the next '
                         f'iteration ({num_batched_tokens}/{token_budget} '
                         f'tokens batched)')
        return batch, admitted, rejected
