"""Block Manager module for paged KV cache management.

This module provides the Block, BlockPool and BlockManager classes.

BlockPool is an arena of fixed-size blocks addressed by integer ID with
explicit reference counts. Allocation is all-or-nothing and freed blocks go
straight back to the free list; since every block has the same size and is
addressed indirectly through block tables, no compaction is ever needed.

BlockManager builds the sequence-level operations on top of the pools:
covering a sequence's tokens with blocks, growing its block table ahead of
each engine step, copy-on-write for shared blocks, swapping block tables
between the device and the host pool, and optional hash-based prefix
caching that lets sequences with a common token prefix share full blocks.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
import xxhash

from scalellm.engine.sequence import Sequence
from scalellm.exceptions import InvariantError, OutOfBlocksError


class Block:
    """Represents a physical memory block in the KV cache.

    Attributes:
        block_id: Unique identifier for this block in the block pool.
        ref_count: Number of block tables referencing this block.
            When 0, the block sits on the free list.
        hash: Chained hash of the token prefix ending with this block
            (-1 if not computed). Only used by prefix caching.
        token_ids: Token IDs stored in this block, kept to reject hash
            collisions.
    """

    def __init__(self, block_id: int) -> None:
        self.block_id: int = block_id
        self.ref_count: int = 0
        self.hash: int = -1
        self.token_ids: List[int] = []

    def update(self, hash_val: int, token_ids: List[int]) -> None:
        self.hash = hash_val
        self.token_ids = token_ids

    def reset(self) -> None:
        """Reset block to a freshly allocated state with ref_count=1."""
        self.ref_count = 1
        self.hash = -1
        self.token_ids = []

    def __repr__(self) -> str:
        return f'Block(block_id={self.block_id}, ref_count={self.ref_count})'


class BlockPool:
    """Fixed-capacity pool of reference-counted blocks.

    Attributes:
        block_size: Number of tokens per block.
        blocks: All Block objects, indexed by block ID.
        hash_to_block_id: Prefix cache mapping from block hash to block ID.
            Entries survive deallocation until the block is reused for
            different content.
        free_block_ids: Queue of unreferenced block IDs, oldest first.
        used_block_ids: Set of block IDs with ref_count > 0.
    """

    def __init__(self, num_blocks: int, block_size: int) -> None:
        """Initialize the pool.

        Args:
            num_blocks: Total number of blocks in the pool.
            block_size: Number of tokens per block.

        Raises:
            ValueError: If num_blocks or block_size is invalid (<=0).
        """
        if num_blocks <= 0:
            raise ValueError(f'num_blocks must be positive, got {num_blocks}')
        if block_size <= 0:
            raise ValueError(f'block_size must be positive, got {block_size}')

        self.block_size: int = block_size
        self.blocks: List[Block] = [Block(i) for i in range(num_blocks)]
        self.hash_to_block_id: Dict[int, int] = {}
        self.free_block_ids: Deque[int] = deque(range(num_blocks))
        self.used_block_ids: Set[int] = set()

    @property
    def num_blocks(self) -> int:
        return len(self.blocks)

    def num_free(self) -> int:
        return len(self.free_block_ids)

    def num_used(self) -> int:
        return len(self.used_block_ids)

    def ref_count(self, block_id: int) -> int:
        return self.blocks[block_id].ref_count

    def allocate(self, n: int) -> List[int]:
        """Take ``n`` blocks from the free list.

        Args:
            n: Number of blocks to allocate.

        Returns:
            The allocated block IDs, each with ref_count 1.

        Raises:
            OutOfBlocksError: If fewer than ``n`` blocks are free. Nothing
                is allocated in that case.
        """
        if n < 0:
            raise ValueError(f'n must be non-negative, got {n}')
        if n > len(self.free_block_ids):
            raise OutOfBlocksError(n, len(self.free_block_ids))

        block_ids: List[int] = []
        for _ in range(n):
            block_id = self.free_block_ids.popleft()
            block = self.blocks[block_id]
            # Reusing a cached block for new content drops its cache entry.
            if block.hash != -1 and self.hash_to_block_id.get(
                    block.hash) == block_id:
                del self.hash_to_block_id[block.hash]
            block.reset()
            self.used_block_ids.add(block_id)
            block_ids.append(block_id)
        return block_ids

    def revive(self, block_id: int) -> Block:
        """Take a specific free block (a prefix cache hit) off the free list.

        The block keeps its hash and token IDs.
        """
        block = self.blocks[block_id]
        if block.ref_count != 0:
            raise InvariantError(f'Block {block_id} already allocated')
        self.free_block_ids.remove(block_id)
        self.used_block_ids.add(block_id)
        block.ref_count = 1
        return block

    def fork(self, block_ids: Iterable[int]) -> None:
        """Add one reference to each block (block table copy)."""
        for block_id in block_ids:
            block = self.blocks[block_id]
            if block.ref_count <= 0:
                raise InvariantError(
                    f'Cannot share unallocated block {block_id}')
            block.ref_count += 1

    def free(self, block_ids: Iterable[int]) -> None:
        """Drop one reference from each block.

        Blocks whose reference count reaches zero go back to the free list.

        Raises:
            InvariantError: If a block is not currently allocated.
        """
        for block_id in block_ids:
            block = self.blocks[block_id]
            if block.ref_count <= 0 or block_id not in self.used_block_ids:
                raise InvariantError(
                    f'Cannot free block {block_id}: it is not allocated')
            block.ref_count -= 1
            if block.ref_count == 0:
                self.used_block_ids.remove(block_id)
                self.free_block_ids.append(block_id)

    @classmethod
    def compute_hash(cls, token_ids: List[int], prefix: int = -1) -> int:
        """Compute hash of token sequence for prefix caching.

        Uses xxhash for fast hashing. If a prefix hash is provided, it's
        included in the computation so that each block's hash depends on
        every block before it.

        Args:
            token_ids: List of token IDs to hash.
            prefix: Hash of the previous block (for chained hashing).
                Default -1 means no prefix.

        Returns:
            Integer hash value of the token sequence (including prefix if
            provided).
        """
        hash_prev: xxhash.xxh64 = xxhash.xxh64()
        if prefix != -1:
            hash_prev.update(prefix.to_bytes(8, 'little'))
        hash_prev.update(np.array(token_ids, dtype=np.int32).tobytes())
        return hash_prev.intdigest()

    def lookup(self, hash_val: int, token_ids: List[int]) -> int:
        """Return the cached block holding ``token_ids`` or -1."""
        block_id = self.hash_to_block_id.get(hash_val, -1)
        if block_id == -1 or self.blocks[block_id].token_ids != token_ids:
            return -1
        return block_id

    def register(self, block_id: int, hash_val: int,
                 token_ids: List[int]) -> None:
        self.blocks[block_id].update(hash_val, token_ids)
        self.hash_to_block_id[hash_val] = block_id


class BlockManager:
    """Manages the block tables of sequences on top of the block pools.

    The device pool backs running sequences. The optional host pool
    receives block tables of sequences preempted in swap mode.

    Attributes:
        block_size: Number of tokens per block.
        gpu_pool: Device block pool.
        cpu_pool: Host block pool used as swap space, or None.
        enable_prefix_caching: Whether full blocks are shared between
            sequences with identical prefixes.
    """

    def __init__(self,
                 num_gpu_blocks: int,
                 block_size: int,
                 num_cpu_blocks: int = 0,
                 enable_prefix_caching: bool = False) -> None:
        """Initialize the block manager.

        Args:
            num_gpu_blocks: Total number of device blocks.
            block_size: Number of tokens per block.
            num_cpu_blocks: Number of host blocks for swapping (0 disables
                swapping).
            enable_prefix_caching: Share full blocks across sequences.

        Raises:
            ValueError: If a block count or block_size is invalid.
        """
        self.block_size: int = block_size
        self.gpu_pool: BlockPool = BlockPool(num_gpu_blocks, block_size)
        self.cpu_pool: Optional[BlockPool] = (BlockPool(
            num_cpu_blocks, block_size) if num_cpu_blocks > 0 else None)
        self.enable_prefix_caching: bool = enable_prefix_caching
        # seq_ids whose block_table currently refers to cpu_pool blocks
        self._swapped_seq_ids: Set[int] = set()

    @property
    def num_total_blocks(self) -> int:
        return self.gpu_pool.num_blocks

    @property
    def num_free_blocks(self) -> int:
        return self.gpu_pool.num_free()

    @property
    def num_used_blocks(self) -> int:
        return self.gpu_pool.num_used()

    @property
    def num_free_cpu_blocks(self) -> int:
        return self.cpu_pool.num_free() if self.cpu_pool is not None else 0

    def num_required_blocks(self, num_tokens: int) -> int:
        return (num_tokens + self.block_size - 1) // self.block_size

    def is_swapped(self, sequence: Sequence) -> bool:
        return sequence.seq_id in self._swapped_seq_ids

    # Allocation

    def can_allocate(self, sequence: Sequence) -> bool:
        """Check if the sequence's current tokens can be covered with blocks.

        Prefix cache hits are not counted, so this is conservative.
        """
        return self.gpu_pool.num_free() >= sequence.num_blocks

    def allocate(self, sequence: Sequence) -> None:
        """Cover all tokens of a sequence with device blocks.

        With prefix caching enabled, full blocks whose chained hash and
        tokens match a cached block reuse that block instead of taking a
        fresh one. Once a block misses, every later block misses too.
        Blocks enter the cache only after their KV entries are computed
        (see cache_computed_blocks).

        Args:
            sequence: Sequence to allocate blocks for. Must have an empty
                block table.

        Raises:
            InvariantError: If the sequence already has blocks.
            OutOfBlocksError: If not enough free blocks are available.
                Nothing is allocated in that case.
        """
        if sequence.block_table:
            raise InvariantError(
                f'Sequence {sequence.request_id} already has allocated blocks')
        if not self.can_allocate(sequence):
            raise OutOfBlocksError(sequence.num_blocks,
                                   self.gpu_pool.num_free())

        if not self.enable_prefix_caching:
            sequence.block_table.extend(
                self.gpu_pool.allocate(sequence.num_blocks))
            sequence.num_cached_tokens = 0
            sequence.num_computed_tokens = 0
            return

        hash_prev: int = -1
        cache_miss: bool = False
        num_cached_tokens: int = 0
        for i in range(sequence.num_blocks):
            token_ids: List[int] = sequence.block(i)
            if len(token_ids) == self.block_size:
                hash_prev = self.gpu_pool.compute_hash(token_ids, hash_prev)
            else:
                hash_prev = -1

            block_id: int = -1
            if not cache_miss and hash_prev != -1:
                block_id = self.gpu_pool.lookup(hash_prev, token_ids)
            if block_id == -1:
                cache_miss = True

            if cache_miss:
                block_id = self.gpu_pool.allocate(1)[0]
            else:
                num_cached_tokens += self.block_size
                if block_id in self.gpu_pool.used_block_ids:
                    self.gpu_pool.fork([block_id])
                else:
                    self.gpu_pool.revive(block_id)

            sequence.block_table.append(block_id)

        sequence.num_cached_tokens = num_cached_tokens
        # The last token is always recomputed so the step yields logits.
        sequence.num_computed_tokens = min(num_cached_tokens,
                                           sequence.num_tokens - 1)

    def num_append_blocks(self, sequence: Sequence, num_tokens: int) -> int:
        """Blocks needed for the table to cover ``num_tokens`` tokens."""
        num_blocks = self.num_required_blocks(num_tokens)
        num_new = max(0, num_blocks - len(sequence.block_table))
        if self._needs_copy_on_write(sequence):
            num_new += 1
        return num_new

    def can_append(self, sequence: Sequence, num_tokens: int) -> bool:
        return self.gpu_pool.num_free() >= self.num_append_blocks(
            sequence, num_tokens)

    def append_slots(self, sequence: Sequence,
                     num_tokens: int) -> Optional[Tuple[int, int]]:
        """Grow the block table so it covers ``num_tokens`` tokens.

        If the partially filled last block is shared with another sequence
        it is first replaced by a private copy (copy-on-write).

        Args:
            sequence: A sequence whose block table lives on the device.
            num_tokens: Number of tokens the table must cover.

        Returns:
            A (source, destination) block pair the executor must copy
            before writing, or None when no copy is needed.

        Raises:
            OutOfBlocksError: If not enough free blocks are available.
                Nothing is allocated in that case.
        """
        if self.is_swapped(sequence):
            raise InvariantError(
                f'Sequence {sequence.request_id} is swapped out')
        num_new = self.num_append_blocks(sequence, num_tokens)
        if num_new > self.gpu_pool.num_free():
            raise OutOfBlocksError(num_new, self.gpu_pool.num_free())

        copy_op: Optional[Tuple[int, int]] = None
        if self._needs_copy_on_write(sequence):
            src = sequence.block_table[-1]
            dst = self.gpu_pool.allocate(1)[0]
            self.gpu_pool.free([src])
            sequence.block_table[-1] = dst
            copy_op = (src, dst)

        num_blocks = self.num_required_blocks(num_tokens)
        if num_blocks > len(sequence.block_table):
            sequence.block_table.extend(
                self.gpu_pool.allocate(num_blocks -
                                       len(sequence.block_table)))
        return copy_op

    def _needs_copy_on_write(self, sequence: Sequence) -> bool:
        if not sequence.block_table or self.is_swapped(sequence):
            return False
        last_block_id = sequence.block_table[-1]
        if self.gpu_pool.ref_count(last_block_id) <= 1:
            return False
        # Only a partially filled last block receives new writes.
        last_block_start = (len(sequence.block_table) - 1) * self.block_size
        return sequence.num_tokens - last_block_start < self.block_size

    def fork(self, parent: Sequence, child: Sequence) -> None:
        """Make ``child`` share every block of ``parent``."""
        if self.is_swapped(parent):
            raise InvariantError(
                f'Cannot fork swapped sequence {parent.request_id}')
        if child.block_table:
            raise InvariantError(
                f'Sequence {child.request_id} already has allocated blocks')
        self.gpu_pool.fork(parent.block_table)
        child.block_table = list(parent.block_table)
        child.num_computed_tokens = parent.num_computed_tokens

    # Swapping

    def can_swap_out(self, sequence: Sequence) -> bool:
        if self.cpu_pool is None:
            return False
        return self.cpu_pool.num_free() >= len(sequence.block_table)

    def swap_out(self, sequence: Sequence) -> Dict[int, int]:
        """Move a sequence's block table from the device to the host pool.

        Returns:
            Mapping from device block ID to host block ID; the executor
            copies the contents before the device blocks are reused.
        """
        if self.cpu_pool is None:
            raise InvariantError('Swapping requires a host block pool')
        if self.is_swapped(sequence):
            raise InvariantError(
                f'Sequence {sequence.request_id} is already swapped out')
        mapping = self._move(sequence, self.gpu_pool, self.cpu_pool)
        self._swapped_seq_ids.add(sequence.seq_id)
        return mapping

    def can_swap_in(self, sequence: Sequence, num_tokens: int) -> bool:
        """Check the table can come back and cover ``num_tokens`` tokens."""
        num_blocks = max(len(sequence.block_table),
                         self.num_required_blocks(num_tokens))
        return self.gpu_pool.num_free() >= num_blocks

    def swap_in(self, sequence: Sequence) -> Dict[int, int]:
        """Move a swapped-out block table back to the device pool.

        Returns:
            Mapping from host block ID to device block ID.
        """
        if not self.is_swapped(sequence):
            raise InvariantError(
                f'Sequence {sequence.request_id} is not swapped out')
        mapping = self._move(sequence, self.cpu_pool, self.gpu_pool)
        self._swapped_seq_ids.discard(sequence.seq_id)
        return mapping

    def _move(self, sequence: Sequence, src_pool: BlockPool,
              dst_pool: BlockPool) -> Dict[int, int]:
        # Shared blocks get a private copy on the other side.
        dst_ids = dst_pool.allocate(len(sequence.block_table))
        mapping: Dict[int, int] = dict(zip(sequence.block_table, dst_ids))
        src_pool.free(sequence.block_table)
        sequence.block_table = dst_ids
        return mapping

    # Prefix caching

    def cache_computed_blocks(self, sequence: Sequence) -> None:
        """Publish the sequence's full, computed device blocks in the cache.

        Called once a prefill step has written the KV entries, and on
        release. No-op when prefix caching is disabled.
        """
        if not self.enable_prefix_caching or self.is_swapped(sequence):
            return
        num_full_blocks = min(sequence.num_computed_tokens // self.block_size,
                              len(sequence.block_table))
        hash_prev: int = -1
        for i in range(num_full_blocks):
            token_ids = sequence.block(i)
            hash_prev = self.gpu_pool.compute_hash(token_ids, hash_prev)
            block = self.gpu_pool.blocks[sequence.block_table[i]]
            if block.hash != hash_prev:
                self.gpu_pool.register(block.block_id, hash_prev, token_ids)

    # Release

    def free(self, sequence: Sequence) -> None:
        """Release every block of a sequence and clear its block table.

        Computed full blocks are published in the prefix cache first, so a
        later sequence (or this one after a recompute preemption) can
        revive them.
        """
        if self.is_swapped(sequence):
            self.cpu_pool.free(reversed(sequence.block_table))
            self._swapped_seq_ids.discard(sequence.seq_id)
        else:
            self.cache_computed_blocks(sequence)
            self.gpu_pool.free(reversed(sequence.block_table))

        sequence.num_cached_tokens = 0
        sequence.block_table.clear()
