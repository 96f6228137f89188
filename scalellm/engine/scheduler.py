"""Scheduler module for continuous batching over a paged KV cache.

This module provides the Scheduler class. Every iteration it decides which
sequences run, preempts sequences when the block pool cannot cover the
running set, re-admits preempted sequences before any new request, builds
the batch, hands it to the executor and commits the produced tokens.

The scheduler is driven by a single thread and is the only mutator of its
queues, of sequence status and of the block pool.
"""

from bisect import bisect_right
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from scalellm.config import Config
from scalellm.engine.batch import Batch, BatchBuilder
from scalellm.engine.block_manager import BlockManager
from scalellm.engine.executor import ExecutorBase, SamplerOutput
from scalellm.engine.sequence import FinishReason, Sequence, SequenceStatus
from scalellm.exceptions import (AdmissionRejectedError, EngineError,
                                 InvariantError)
from scalellm.outputs import SequenceOutput, StepResult
from scalellm.utils.logger_utils import get_logger

logger = get_logger(__name__)

__all__ = ['Scheduler', 'SchedulerStats']


@dataclass(frozen=True)
class SchedulerStats:
    """Snapshot of scheduler state taken between two iterations."""

    iteration: int = 0
    num_waiting: int = 0
    num_running: int = 0
    num_preempted: int = 0
    num_total_blocks: int = 0
    num_free_blocks: int = 0
    num_free_cpu_blocks: int = 0
    num_preemptions: int = 0
    num_finished: int = 0

    @property
    def num_used_blocks(self) -> int:
        return self.num_total_blocks - self.num_free_blocks

    @property
    def block_usage(self) -> float:
        if self.num_total_blocks == 0:
            return 0.0
        return self.num_used_blocks / self.num_total_blocks


def _insert_by_arrival(queue, sequence: Sequence) -> None:
    keys = [s.sort_key for s in queue]
    queue.insert(bisect_right(keys, sequence.sort_key), sequence)


class Scheduler:
    """Schedules sequences for execution and manages KV cache allocation.

    Each call to schedule():
    1. Reserves the blocks every RUNNING sequence needs for its next
       token. If the pool cannot cover them all, the latest-arrived
       RUNNING sequence is preempted, repeatedly, until it can.
    2. Re-admits PREEMPTED sequences in arrival order. The head of the
       queue is never bypassed.
    3. Admits WAITING sequences, first come first served, but only once
       no sequence is PREEMPTED.
    4. Builds the batch from the RUNNING sequences.

    Attributes:
        max_num_seqs: Maximum number of RUNNING sequences.
        max_num_batched_tokens: Maximum total tokens per batch.
        max_seq_len: Maximum length of any sequence.
        eos: End-of-sequence token ID for generation termination.
        preemption_mode: 'recompute' or 'swap'.
        block_manager: Manages KV cache block allocation.
        batch_builder: Packs RUNNING sequences into batches.
        executor: Engine boundary used by step().
        waiting: Sequences awaiting their first admission (FIFO).
        running: Sequences holding device blocks, in arrival order.
        preempted: Evicted sequences awaiting re-admission, in arrival
            order.
    """

    def __init__(self,
                 config: Config,
                 executor: Optional[ExecutorBase] = None) -> None:
        """Initialize the scheduler.

        Args:
            config: Engine configuration containing scheduling parameters.
            executor: Engine boundary. Only required by step().
        """
        self.config: Config = config
        self.max_num_seqs: int = config.max_num_seqs
        self.max_num_batched_tokens: int = config.max_num_batched_tokens
        self.max_seq_len: int = config.max_seq_len
        self.eos: int = config.eos
        self.preemption_mode: str = config.preemption_mode
        self.block_manager: BlockManager = BlockManager(
            config.num_gpu_blocks,
            config.block_size,
            num_cpu_blocks=config.num_cpu_blocks,
            enable_prefix_caching=config.enable_prefix_caching)
        self.batch_builder: BatchBuilder = BatchBuilder(
            self.block_manager, self.max_seq_len)
        self.executor: Optional[ExecutorBase] = executor

        self.waiting: Deque[Sequence] = deque()
        self.running: List[Sequence] = []
        self.preempted: List[Sequence] = []

        # Live (non-terminal) sequences by request ID.
        self._requests: Dict[str, Sequence] = {}
        # Outputs produced outside an engine step (cancel, reject).
        self._pending_outputs: List[SequenceOutput] = []

        self._iteration: int = 0
        self._num_preempted_last: int = 0
        self._num_preemptions: int = 0
        self._num_finished: int = 0
        self._stats: SchedulerStats = SchedulerStats()
        self._update_stats()

    # Queue management

    def is_finished(self) -> bool:
        """True if no sequence is waiting, running or preempted."""
        return not self.waiting and not self.running and not self.preempted

    def has_unfinished(self) -> bool:
        return not self.is_finished()

    def get_sequence(self, request_id: str) -> Optional[Sequence]:
        return self._requests.get(request_id)

    def check_admission(self, sequence: Sequence) -> None:
        """Reject a request that can never be served.

        Raises:
            AdmissionRejectedError: If the request ID is already in use, or
                check_capacity() rejects the prompt.
        """
        if sequence.request_id in self._requests:
            raise AdmissionRejectedError(
                f'Request {sequence.request_id!r} is already in flight')
        self.check_capacity(sequence)

    def check_capacity(self, sequence: Sequence) -> None:
        """Reject a prompt that is too long for the engine.

        Only reads configuration, so any thread may call it.

        Raises:
            AdmissionRejectedError: If the prompt leaves no room for a
                single generated token within the maximum sequence length
                (which is bounded by the block pool's capacity).
        """
        if sequence.num_prompt_tokens >= self.max_seq_len:
            num_blocks = self.block_manager.num_required_blocks(
                sequence.num_prompt_tokens + 1)
            raise AdmissionRejectedError(
                f'Prompt of request {sequence.request_id!r} has '
                f'{sequence.num_prompt_tokens} tokens and needs {num_blocks} '
                f'blocks; the maximum sequence length is {self.max_seq_len} '
                f'tokens ({self.block_manager.num_total_blocks} blocks of '
                f'{self.block_manager.block_size} tokens)')

    def add(self, sequence: Sequence) -> None:
        """Add a new sequence to the waiting queue.

        Args:
            sequence: Sequence to add for processing.

        Raises:
            AdmissionRejectedError: See check_admission(). The sequence is
                not enqueued.
        """
        try:
            self.check_admission(sequence)
        except AdmissionRejectedError as e:
            logger.warning(f'Rejected request: {e}')
            raise
        sequence.status = SequenceStatus.WAITING
        _insert_by_arrival(self.waiting, sequence)
        self._requests[sequence.request_id] = sequence

    def abort(self, request_id: str) -> Optional[SequenceOutput]:
        """Cancel a request and release its blocks immediately.

        Unknown or already finished requests are ignored, so aborting
        twice has the same effect as aborting once.

        Returns:
            The final output of the cancelled request, or None if nothing
            was cancelled. The output is also delivered by the next step().
        """
        sequence = self._requests.get(request_id)
        if sequence is None:
            return None

        self._remove_from_queue(sequence)
        output = self._finish(sequence, FinishReason.CANCELLED)
        self._pending_outputs.append(output)
        logger.debug(f'Cancelled request {request_id!r}')
        return output

    def release_all(
        self,
        reason: FinishReason = FinishReason.CANCELLED
    ) -> List[SequenceOutput]:
        """Finish every live request with ``reason``. Used by shutdown.

        Afterwards every block of both pools is free.
        """
        outputs = []
        for sequence in list(self._requests.values()):
            self._remove_from_queue(sequence)
            outputs.append(self._finish(sequence, reason))
        self._pending_outputs.extend(outputs)
        self._update_stats()
        return outputs

    def _remove_from_queue(self, sequence: Sequence) -> None:
        if sequence.status == SequenceStatus.WAITING:
            self.waiting.remove(sequence)
        elif sequence.status == SequenceStatus.RUNNING:
            self.running.remove(sequence)
        elif sequence.status == SequenceStatus.PREEMPTED:
            self.preempted.remove(sequence)
        else:
            raise InvariantError(
                f'Sequence {sequence.request_id} is {sequence.status.name} '
                f'but still registered as live')

    # Scheduling

    def schedule(self) -> Batch:
        """Decide the work of the next iteration.

        Returns:
            The batch to execute. It may be empty when nothing can run.
        """
        blocks_to_swap_in: Dict[int, int] = {}
        blocks_to_swap_out: Dict[int, int] = {}
        self._num_preempted_last = 0

        self._reserve_running(blocks_to_swap_out)

        reserved_blocks = sum(
            self.block_manager.num_append_blocks(seq,
                                                 len(seq) + 1)
            for seq in self.running)
        num_batched_tokens = sum(seq.num_uncomputed_tokens
                                 for seq in self.running)

        # Re-admission of preempted sequences, strictly in arrival order.
        while self.preempted:
            sequence = self.preempted[0]
            if not self._can_admit(sequence, reserved_blocks,
                                   num_batched_tokens):
                break
            self.preempted.pop(0)
            if self.block_manager.is_swapped(sequence):
                blocks_to_swap_in.update(
                    self.block_manager.swap_in(sequence))
            else:
                self.block_manager.allocate(sequence)
            reserved_blocks, num_batched_tokens = self._start_running(
                sequence, reserved_blocks, num_batched_tokens)
            logger.debug(f'Resumed request {sequence.request_id!r} '
                         f'(preempted {sequence.num_preemptions} time(s))')

        # New requests only once nothing preempted is left behind.
        while self.waiting and not self.preempted:
            sequence = self.waiting[0]
            if not self._can_admit(sequence, reserved_blocks,
                                   num_batched_tokens):
                break
            self.waiting.popleft()
            self.block_manager.allocate(sequence)
            reserved_blocks, num_batched_tokens = self._start_running(
                sequence, reserved_blocks, num_batched_tokens)

        batch, _, rejected = self.batch_builder.build(
            self.running, self.max_num_batched_tokens, self.max_num_seqs)
        # step() finishes a sequence at max_seq_len with LENGTH, so only
        # callers driving schedule() directly reach this.
        for sequence in rejected:
            self.running.remove(sequence)
            self._pending_outputs.append(
                self._finish(sequence,
                             FinishReason.REJECTED,
                             error='Sequence reached the maximum length'))

        batch.blocks_to_swap_in = blocks_to_swap_in
        batch.blocks_to_swap_out = blocks_to_swap_out
        return batch

    def _reserve_running(self, blocks_to_swap_out: Dict[int, int]) -> None:
        """Preempt the latest arrivals until every running sequence can
        grow by its next token."""
        while self.running:
            demand = sum(
                self.block_manager.num_append_blocks(seq,
                                                     len(seq) + 1)
                for seq in self.running)
            if demand <= self.block_manager.num_free_blocks:
                return
            self._preempt(self.running.pop(), blocks_to_swap_out)

    def _can_admit(self, sequence: Sequence, reserved_blocks: int,
                   num_batched_tokens: int) -> bool:
        if len(self.running) >= self.max_num_seqs:
            return False
        num_new_tokens = (sequence.num_uncomputed_tokens
                          if self.block_manager.is_swapped(sequence) else
                          len(sequence))
        if num_batched_tokens + num_new_tokens > self.max_num_batched_tokens:
            return False
        num_blocks = max(
            len(sequence.block_table),
            self.block_manager.num_required_blocks(len(sequence) + 1))
        available = self.block_manager.num_free_blocks - reserved_blocks
        return num_blocks <= available

    def _start_running(self, sequence: Sequence, reserved_blocks: int,
                       num_batched_tokens: int):
        sequence.status = SequenceStatus.RUNNING
        _insert_by_arrival(self.running, sequence)
        reserved_blocks += self.block_manager.num_append_blocks(
            sequence,
            len(sequence) + 1)
        num_batched_tokens += sequence.num_uncomputed_tokens
        return reserved_blocks, num_batched_tokens

    def _preempt(self, sequence: Sequence,
                 blocks_to_swap_out: Dict[int, int]) -> None:
        """Preempt a running sequence due to cache memory constraints.

        In swap mode the block table moves to the host pool when it has
        room; otherwise the blocks are freed and the whole history is
        recomputed on re-admission. Committed tokens are kept either way.
        """
        sequence.num_preemptions += 1
        self._num_preempted_last += 1
        self._num_preemptions += 1

        if (self.preemption_mode == 'swap'
                and self.block_manager.can_swap_out(sequence)):
            blocks_to_swap_out.update(self.block_manager.swap_out(sequence))
            mode = 'swap'
        else:
            self.block_manager.free(sequence)
            sequence.num_computed_tokens = 0
            mode = 'recompute'

        sequence.status = SequenceStatus.PREEMPTED
        _insert_by_arrival(self.preempted, sequence)
        logger.info(f'Preempted request {sequence.request_id!r} ({mode}); '
                    f'{self.block_manager.num_free_blocks} blocks free, '
                    f'{len(self.running)} running')

    # Committing engine results

    def postprocess(self, batch: Batch,
                    outputs: List[SamplerOutput]) -> List[SequenceOutput]:
        """Commit the tokens produced for ``batch``.

        Appends each new token to its sequence, evaluates stop conditions,
        and releases the blocks of every sequence that finished.

        Args:
            batch: The batch that was executed.
            outputs: One SamplerOutput per sequence, in batch order.

        Returns:
            One incremental output per sequence of the batch.
        """
        if len(outputs) != len(batch):
            return self.fail_batch(
                batch,
                EngineError(f'Executor returned {len(outputs)} results for '
                            f'a batch of {len(batch)} sequences'))

        results: List[SequenceOutput] = []
        for sequence, output in zip(batch.sequences, outputs):
            if sequence.status != SequenceStatus.RUNNING:
                raise InvariantError(
                    f'Sequence {sequence.request_id} left RUNNING while '
                    f'its batch was executing')

            was_prefill = sequence.is_prefill
            sequence.num_computed_tokens = len(sequence)
            if not output.success:
                self.running.remove(sequence)
                results.append(
                    self._finish(sequence,
                                 FinishReason.ERROR,
                                 error='Engine step failed for this sequence'))
                continue

            sequence.append_token(output.token_id)
            if was_prefill:
                self.block_manager.cache_computed_blocks(sequence)

            reason = self._check_stop(sequence, output.token_id)
            if reason is not None:
                self.running.remove(sequence)
                results.append(self._finish(sequence, reason))
            else:
                results.append(
                    SequenceOutput(sequence.request_id,
                                   sequence.take_new_tokens()))
        return results

    def _check_stop(self, sequence: Sequence,
                    token_id: int) -> Optional[FinishReason]:
        if token_id == self.eos and not sequence.ignore_eos:
            return FinishReason.STOP
        if token_id in sequence.stop_token_ids:
            return FinishReason.STOP
        if sequence.stop_sequences:
            completion = sequence.completion_token_ids
            for stop in sequence.stop_sequences:
                if completion[-len(stop):] == stop:
                    return FinishReason.STOP
        if sequence.num_completion_tokens >= sequence.max_tokens:
            return FinishReason.LENGTH
        if len(sequence) >= self.max_seq_len:
            return FinishReason.LENGTH
        return None

    def fail_batch(self, batch: Batch,
                   error: BaseException) -> List[SequenceOutput]:
        """Finish every sequence of a failed batch with an error.

        Partial batch state cannot be resumed safely, so nothing is
        retried.
        """
        logger.error(f'Engine step failed for {len(batch)} sequence(s): '
                     f'{error}')
        results: List[SequenceOutput] = []
        for sequence in batch.sequences:
            if sequence.status != SequenceStatus.RUNNING:
                continue
            self.running.remove(sequence)
            results.append(
                self._finish(sequence, FinishReason.ERROR, error=str(error)))
        self._drop_block_ops(batch)
        return results

    def _drop_block_ops(self, batch: Batch) -> None:
        """Fall back to recomputation for sequences whose swap never ran.

        A failed batch may not have copied any block, so host blocks of a
        swapped-out sequence and device blocks of a swapped-in one hold no
        valid KV.
        """
        swapped_out = set(batch.blocks_to_swap_out.values())
        for sequence in self.preempted:
            if (self.block_manager.is_swapped(sequence)
                    and swapped_out.intersection(sequence.block_table)):
                self.block_manager.free(sequence)
                sequence.num_computed_tokens = 0
                logger.warning(f'Request {sequence.request_id!r} lost its '
                               f'swapped blocks; it will be recomputed')

        swapped_in = set(batch.blocks_to_swap_in.values())
        for sequence in list(self.running):
            if swapped_in.intersection(sequence.block_table):
                self.running.remove(sequence)
                # Unwritten blocks must not reach the prefix cache.
                sequence.num_computed_tokens = 0
                self.block_manager.free(sequence)
                sequence.status = SequenceStatus.PREEMPTED
                _insert_by_arrival(self.preempted, sequence)
                logger.warning(f'Request {sequence.request_id!r} lost its '
                               f'swapped-in blocks; it will be recomputed')

    def _finish(self,
                sequence: Sequence,
                reason: FinishReason,
                error: Optional[str] = None) -> SequenceOutput:
        """Move a sequence to its terminal state and free its blocks.

        The caller has already removed it from its queue.
        """
        if sequence.block_table:
            self.block_manager.free(sequence)
        sequence.status = (SequenceStatus.CANCELLED if reason
                           == FinishReason.CANCELLED else
                           SequenceStatus.FINISHED)
        sequence.finish_reason = reason
        sequence.error = error
        self._requests.pop(sequence.request_id, None)
        self._num_finished += 1
        logger.debug(f'Request {sequence.request_id!r} finished: '
                     f'{reason.value}, {sequence.num_completion_tokens} '
                     f'tokens generated')
        return SequenceOutput(sequence.request_id,
                              sequence.take_new_tokens(),
                              finish_reason=reason,
                              error=error)

    # Iteration

    def step(self) -> StepResult:
        """Run one full iteration: schedule, execute, commit.

        Returns:
            The incremental outputs of the iteration, including requests
            cancelled or rejected since the previous iteration.

        Raises:
            RuntimeError: If the scheduler has no executor.
        """
        if self.executor is None:
            raise RuntimeError('Scheduler.step() requires an executor')

        batch = self.schedule()
        result = StepResult(num_preempted=self._num_preempted_last)
        outputs = self._pending_outputs
        self._pending_outputs = []

        if not batch.is_empty or batch.has_block_ops:
            try:
                sampler_outputs = self.executor.execute(batch)
            except Exception as e:
                outputs.extend(self.fail_batch(batch, e))
            else:
                outputs.extend(self.postprocess(batch, sampler_outputs))
            result.num_prefill_tokens = batch.num_prefill_tokens
            result.num_decode_tokens = batch.num_decode_tokens

        self._iteration += 1
        self._update_stats()
        result.outputs = outputs
        return result

    def take_pending_outputs(self) -> List[SequenceOutput]:
        outputs = self._pending_outputs
        self._pending_outputs = []
        return outputs

    # Introspection

    def stats(self) -> SchedulerStats:
        """Snapshot of the state after the last completed iteration."""
        return self._stats

    def _update_stats(self) -> None:
        self._stats = SchedulerStats(
            iteration=self._iteration,
            num_waiting=len(self.waiting),
            num_running=len(self.running),
            num_preempted=len(self.preempted),
            num_total_blocks=self.block_manager.num_total_blocks,
            num_free_blocks=self.block_manager.num_free_blocks,
            num_free_cpu_blocks=self.block_manager.num_free_cpu_blocks,
            num_preemptions=self._num_preemptions,
            num_finished=self._num_finished,
        )

    def check_invariants(self) -> None:
        """Verify queue membership and block pool conservation.

        Raises:
            InvariantError: If any sequence sits in the wrong queue, or
                the pool's free count disagrees with the live block tables.
        """
        queued = ([(s, SequenceStatus.WAITING) for s in self.waiting] +
                  [(s, SequenceStatus.RUNNING) for s in self.running] +
                  [(s, SequenceStatus.PREEMPTED) for s in self.preempted])
        seen = set()
        for sequence, status in queued:
            if sequence.seq_id in seen:
                raise InvariantError(
                    f'Sequence {sequence.request_id} is queued twice')
            seen.add(sequence.seq_id)
            if sequence.status != status:
                raise InvariantError(
                    f'Sequence {sequence.request_id} is '
                    f'{sequence.status.name} but queued as {status.name}')
            if (status == SequenceStatus.RUNNING
                    and sequence.capacity < len(sequence)):
                raise InvariantError(
                    f'Sequence {sequence.request_id} holds '
                    f'{len(sequence)} tokens in {sequence.capacity} slots')
        if len(seen) != len(self._requests):
            raise InvariantError(
                f'{len(self._requests)} live requests but {len(seen)} '
                f'queued sequences')

        gpu_blocks = set()
        for sequence, _ in queued:
            if not self.block_manager.is_swapped(sequence):
                gpu_blocks.update(sequence.block_table)
        expected_free = self.block_manager.num_total_blocks - len(gpu_blocks)
        if self.block_manager.num_free_blocks != expected_free:
            raise InvariantError(
                f'{self.block_manager.num_free_blocks} free blocks, '
                f'expected {expected_free}')
