"""Unit tests for BlockManager module.

This module tests the BlockPool and BlockManager classes, focusing on:
- All-or-nothing allocation and deallocation
- Reference counting, forking and copy-on-write
- Swapping block tables between the device and host pools
- Prefix caching of computed blocks
- Conservation of the free count
"""

import pytest

from scalellm.engine.block_manager import BlockManager, BlockPool
from scalellm.engine.sequence import Sequence, SequenceStatus
from scalellm.exceptions import InvariantError, OutOfBlocksError
from scalellm.sampling_params import SamplingParams


def make_seq(token_ids, block_size=4):
    return Sequence(token_ids, SamplingParams(), block_size=block_size)


class TestBlockPool:
    """Test cases for the raw block pool."""

    def test_init(self):
        """Test initialization with valid parameters."""
        pool = BlockPool(num_blocks=10, block_size=16)
        assert pool.num_blocks == 10
        assert pool.num_free() == 10
        assert pool.num_used() == 0
        assert len(pool.hash_to_block_id) == 0

    def test_init_invalid(self):
        """Test initialization with invalid parameters."""
        with pytest.raises(ValueError):
            BlockPool(num_blocks=0, block_size=16)
        with pytest.raises(ValueError):
            BlockPool(num_blocks=10, block_size=0)

    def test_allocate_is_all_or_nothing(self):
        """A request larger than the free list allocates nothing."""
        pool = BlockPool(num_blocks=4, block_size=4)
        pool.allocate(3)

        with pytest.raises(OutOfBlocksError) as exc_info:
            pool.allocate(2)

        assert exc_info.value.requested == 2
        assert exc_info.value.available == 1
        assert pool.num_free() == 1

    def test_free_returns_blocks(self):
        """Freed blocks go straight back to the free list."""
        pool = BlockPool(num_blocks=4, block_size=4)
        block_ids = pool.allocate(4)
        assert pool.num_free() == 0

        pool.free(block_ids)

        assert pool.num_free() == 4
        assert all(pool.ref_count(i) == 0 for i in block_ids)

    def test_double_free_raises(self):
        """Freeing an unallocated block is an invariant violation."""
        pool = BlockPool(num_blocks=2, block_size=4)
        block_ids = pool.allocate(1)
        pool.free(block_ids)

        with pytest.raises(InvariantError):
            pool.free(block_ids)
        assert pool.num_free() == 2

    def test_fork_keeps_block_until_last_reference(self):
        """A shared block is only freed with its last reference."""
        pool = BlockPool(num_blocks=2, block_size=4)
        block_ids = pool.allocate(1)
        pool.fork(block_ids)
        assert pool.ref_count(block_ids[0]) == 2

        pool.free(block_ids)
        assert pool.num_free() == 1

        pool.free(block_ids)
        assert pool.num_free() == 2

    def test_fork_unallocated_raises(self):
        """Sharing a free block is an invariant violation."""
        pool = BlockPool(num_blocks=2, block_size=4)
        with pytest.raises(InvariantError):
            pool.fork([0])

    def test_compute_hash_is_chained(self):
        """The same tokens hash differently under a different prefix."""
        h1 = BlockPool.compute_hash([1, 2, 3, 4])
        h2 = BlockPool.compute_hash([1, 2, 3, 4])
        h3 = BlockPool.compute_hash([1, 2, 3, 4], prefix=h1)

        assert h1 == h2
        assert h1 != h3

    def test_lookup_rejects_token_mismatch(self):
        """A hash hit with different tokens is treated as a miss."""
        pool = BlockPool(num_blocks=2, block_size=4)
        block_id = pool.allocate(1)[0]
        h = BlockPool.compute_hash([1, 2, 3, 4])
        pool.register(block_id, h, [1, 2, 3, 4])

        assert pool.lookup(h, [1, 2, 3, 4]) == block_id
        assert pool.lookup(h, [9, 9, 9, 9]) == -1
        assert pool.lookup(h + 1, [1, 2, 3, 4]) == -1


class TestBlockManagerAllocation:
    """Test cases for sequence-level allocation."""

    def test_allocate_simple(self):
        """Test simple allocation for a sequence."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        seq = make_seq([1, 2, 3, 4, 5, 6])  # 2 blocks

        assert bm.can_allocate(seq)
        bm.allocate(seq)

        assert len(seq.block_table) == 2
        assert bm.num_used_blocks == 2
        assert bm.num_free_blocks == 8
        assert seq.num_computed_tokens == 0

    def test_allocate_twice_raises(self):
        """A sequence that already owns blocks cannot be allocated again."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        seq = make_seq([1, 2, 3])
        bm.allocate(seq)

        with pytest.raises(InvariantError):
            bm.allocate(seq)
        assert bm.num_free_blocks == 9

    def test_allocate_no_free_blocks(self):
        """Test allocation fails when no blocks available."""
        bm = BlockManager(num_gpu_blocks=1, block_size=4)
        seq1 = make_seq([1, 2, 3, 4])
        bm.allocate(seq1)

        seq2 = make_seq([5, 6, 7, 8])
        assert not bm.can_allocate(seq2)
        with pytest.raises(OutOfBlocksError):
            bm.allocate(seq2)
        assert seq2.block_table == []
        assert bm.num_free_blocks == 0

    def test_free_releases_every_block(self):
        """Freeing a sequence empties its table and restores the pool."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        seq = make_seq(list(range(10)))
        bm.allocate(seq)
        assert bm.num_free_blocks == 7

        bm.free(seq)

        assert seq.block_table == []
        assert bm.num_free_blocks == 10

    def test_two_sequences_growing_by_four_tokens(self):
        """Block size 4, pool 10: prompts of 8 and 4 tokens decode 4 steps."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        a = make_seq(list(range(8)))
        b = make_seq(list(range(4)))
        bm.allocate(a)
        bm.allocate(b)

        assert len(a.block_table) == 2
        assert len(b.block_table) == 1
        assert bm.num_free_blocks == 7

        for seq in (a, b):
            seq.status = SequenceStatus.RUNNING
        for step in range(4):
            for seq in (a, b):
                bm.append_slots(seq, len(seq) + 1)
                seq.append_token(100 + step)
                assert len(seq) <= seq.capacity

        assert a.num_completion_tokens == b.num_completion_tokens == 4
        assert len(a.block_table) == 3
        assert len(b.block_table) == 2
        assert bm.num_free_blocks == 5

    def test_conservation(self):
        """Free count equals total minus blocks held by live tables."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        seqs = [make_seq(list(range(n))) for n in (3, 5, 9)]
        for seq in seqs:
            bm.allocate(seq)

        held = {b for seq in seqs for b in seq.block_table}
        assert bm.num_free_blocks == 10 - len(held)

        bm.free(seqs[1])
        held = {b for seq in seqs for b in seq.block_table}
        assert bm.num_free_blocks == 10 - len(held)


class TestBlockManagerAppend:
    """Test cases for growing block tables."""

    def test_append_within_last_block(self):
        """No new block is needed while the last block has room."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        seq = make_seq([1, 2, 3])
        bm.allocate(seq)

        assert bm.num_append_blocks(seq, 4) == 0
        assert bm.append_slots(seq, 4) is None
        assert len(seq.block_table) == 1

    def test_append_allocates_at_boundary(self):
        """Covering one more token past a full block takes a new block."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        seq = make_seq([1, 2, 3, 4])
        bm.allocate(seq)

        assert bm.num_append_blocks(seq, 5) == 1
        assert bm.can_append(seq, 5)
        bm.append_slots(seq, 5)

        assert len(seq.block_table) == 2
        assert seq.capacity == 8
        assert bm.num_free_blocks == 8

    def test_append_out_of_blocks(self):
        """A failed append leaves the table untouched."""
        bm = BlockManager(num_gpu_blocks=1, block_size=4)
        seq = make_seq([1, 2, 3, 4])
        bm.allocate(seq)

        assert not bm.can_append(seq, 5)
        with pytest.raises(OutOfBlocksError):
            bm.append_slots(seq, 5)
        assert len(seq.block_table) == 1


class TestCopyOnWrite:
    """Test cases for shared blocks."""

    def test_fork_shares_blocks(self):
        """A forked sequence references the parent's blocks."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        parent = make_seq([1, 2, 3, 4, 5, 6])
        child = make_seq([1, 2, 3, 4, 5, 6])
        bm.allocate(parent)

        bm.fork(parent, child)

        assert child.block_table == parent.block_table
        assert all(
            bm.gpu_pool.ref_count(b) == 2 for b in parent.block_table)
        assert bm.num_free_blocks == 8

    def test_append_copies_shared_partial_block(self):
        """Writing into a shared partial block gets a private copy."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        parent = make_seq([1, 2, 3, 4, 5, 6])
        child = make_seq([1, 2, 3, 4, 5, 6])
        bm.allocate(parent)
        bm.fork(parent, child)
        shared_last = parent.block_table[-1]

        assert bm.num_append_blocks(child, 7) == 1
        copy_op = bm.append_slots(child, 7)

        assert copy_op is not None
        src, dst = copy_op
        assert src == shared_last
        assert child.block_table[-1] == dst
        assert parent.block_table[-1] == shared_last
        assert bm.gpu_pool.ref_count(shared_last) == 1
        assert bm.gpu_pool.ref_count(parent.block_table[0]) == 2

    def test_no_copy_when_shared_block_is_full(self):
        """A full shared block is never written, so it is not copied."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        parent = make_seq([1, 2, 3, 4])
        child = make_seq([1, 2, 3, 4])
        bm.allocate(parent)
        bm.fork(parent, child)

        assert bm.append_slots(child, 5) is None
        assert child.block_table[0] == parent.block_table[0]
        assert len(child.block_table) == 2


class TestSwapping:
    """Test cases for moving block tables to the host pool."""

    def test_swap_out_and_in(self):
        """Blocks move to the host pool and back with a mapping each way."""
        bm = BlockManager(num_gpu_blocks=4, block_size=4, num_cpu_blocks=4)
        seq = make_seq([1, 2, 3, 4, 5, 6])
        bm.allocate(seq)
        gpu_table = list(seq.block_table)

        assert bm.can_swap_out(seq)
        out_map = bm.swap_out(seq)

        assert list(out_map.keys()) == gpu_table
        assert seq.block_table == list(out_map.values())
        assert bm.is_swapped(seq)
        assert bm.num_free_blocks == 4
        assert bm.num_free_cpu_blocks == 2

        assert bm.can_swap_in(seq, 7)
        in_map = bm.swap_in(seq)

        assert list(in_map.keys()) == list(out_map.values())
        assert seq.block_table == list(in_map.values())
        assert not bm.is_swapped(seq)
        assert bm.num_free_blocks == 2
        assert bm.num_free_cpu_blocks == 4

    def test_swapped_sequence_cannot_grow(self):
        """A swapped-out table has no device blocks to extend."""
        bm = BlockManager(num_gpu_blocks=4, block_size=4, num_cpu_blocks=4)
        seq = make_seq([1, 2, 3, 4])
        bm.allocate(seq)
        bm.swap_out(seq)

        with pytest.raises(InvariantError):
            bm.append_slots(seq, 5)

    def test_cannot_swap_out_without_room(self):
        """Swapping needs a host pool large enough for the whole table."""
        no_host = BlockManager(num_gpu_blocks=4, block_size=4)
        small_host = BlockManager(num_gpu_blocks=4,
                                  block_size=4,
                                  num_cpu_blocks=1)
        seq1 = make_seq([1, 2, 3, 4, 5])
        seq2 = make_seq([1, 2, 3, 4, 5])
        no_host.allocate(seq1)
        small_host.allocate(seq2)

        assert not no_host.can_swap_out(seq1)
        assert not small_host.can_swap_out(seq2)

    def test_free_swapped_sequence(self):
        """Freeing a swapped sequence returns its host blocks."""
        bm = BlockManager(num_gpu_blocks=4, block_size=4, num_cpu_blocks=4)
        seq = make_seq([1, 2, 3, 4, 5])
        bm.allocate(seq)
        bm.swap_out(seq)

        bm.free(seq)

        assert not bm.is_swapped(seq)
        assert bm.num_free_cpu_blocks == 4
        assert bm.num_free_blocks == 4


class TestPrefixCaching:
    """Test cases for prefix caching logic."""

    def test_uncomputed_blocks_are_not_shared(self):
        """Blocks are only published once their KV entries exist."""
        bm = BlockManager(num_gpu_blocks=10,
                          block_size=4,
                          enable_prefix_caching=True)
        seq1 = make_seq([1, 2, 3, 4, 5, 6, 7, 8])
        bm.allocate(seq1)

        seq2 = make_seq([1, 2, 3, 4, 5, 6, 7, 8])
        bm.allocate(seq2)

        assert seq2.num_cached_tokens == 0
        assert set(seq1.block_table).isdisjoint(seq2.block_table)

    def test_prefix_caching_hit(self):
        """Test that identical computed prefixes share blocks."""
        bm = BlockManager(num_gpu_blocks=10,
                          block_size=4,
                          enable_prefix_caching=True)
        seq1 = make_seq([1, 2, 3, 4, 5, 6, 7, 8])
        bm.allocate(seq1)
        seq1.num_computed_tokens = 8
        bm.cache_computed_blocks(seq1)

        seq2 = make_seq([1, 2, 3, 4, 5, 6, 7, 8])
        bm.allocate(seq2)

        assert seq2.block_table == seq1.block_table
        assert bm.gpu_pool.ref_count(seq1.block_table[0]) == 2
        assert seq2.num_cached_tokens == 8
        # The last token is recomputed to produce logits.
        assert seq2.num_computed_tokens == 7
        assert bm.num_used_blocks == 2

    def test_miss_stops_later_hits(self):
        """After the first mismatching block every later block misses."""
        bm = BlockManager(num_gpu_blocks=10,
                          block_size=4,
                          enable_prefix_caching=True)
        seq1 = make_seq([1, 2, 3, 4, 5, 6, 7, 8])
        bm.allocate(seq1)
        seq1.num_computed_tokens = 8
        bm.cache_computed_blocks(seq1)

        seq2 = make_seq([9, 9, 9, 9, 5, 6, 7, 8])
        bm.allocate(seq2)

        assert seq2.num_cached_tokens == 0
        assert set(seq1.block_table).isdisjoint(seq2.block_table)

    def test_caching_across_deallocations(self):
        """Freed computed blocks can be revived from the free list."""
        bm = BlockManager(num_gpu_blocks=10,
                          block_size=4,
                          enable_prefix_caching=True)
        seq1 = make_seq([1, 2, 3, 4, 5])
        bm.allocate(seq1)
        seq1.num_computed_tokens = 5
        first_block = seq1.block_table[0]
        bm.free(seq1)
        assert bm.num_free_blocks == 10

        seq2 = make_seq([1, 2, 3, 4, 6])
        bm.allocate(seq2)

        assert seq2.block_table[0] == first_block
        assert seq2.num_cached_tokens == 4
        assert seq2.num_computed_tokens == 4
        assert bm.num_free_blocks == 8

    def test_cache_invalidation_on_reuse(self):
        """Reusing a cached free block for new content drops the entry."""
        bm = BlockManager(num_gpu_blocks=2,
                          block_size=4,
                          enable_prefix_caching=True)
        seq1 = make_seq([1, 2, 3, 4])
        bm.allocate(seq1)
        seq1.num_computed_tokens = 4
        bm.free(seq1)

        seq2 = make_seq([5, 6, 7, 8, 9])
        bm.allocate(seq2)
        bm.free(seq2)

        seq3 = make_seq([1, 2, 3, 4])
        bm.allocate(seq3)
        assert seq3.num_cached_tokens == 0

    def test_disabled_caching_never_shares(self):
        """Without prefix caching identical prompts get distinct blocks."""
        bm = BlockManager(num_gpu_blocks=10, block_size=4)
        seq1 = make_seq([1, 2, 3, 4])
        bm.allocate(seq1)
        seq1.num_computed_tokens = 4
        bm.cache_computed_blocks(seq1)

        seq2 = make_seq([1, 2, 3, 4])
        bm.allocate(seq2)

        assert seq2.block_table != seq1.block_table
        assert len(bm.gpu_pool.hash_to_block_id) == 0
