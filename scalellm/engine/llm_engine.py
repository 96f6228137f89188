"""LLM Engine module for serving generation requests.

This module provides the LLMEngine class which owns the scheduler and
the executor and drives the serving loop. Requests and cancellations may
come from any thread: they are posted on a queue that the scheduling
thread drains once per iteration, so the scheduler, the sequences and the
block pool are only ever touched by one thread.

Results are delivered through two callbacks, ``on_tokens`` for incremental
tokens and ``on_complete`` once a request reaches a terminal state. Both
run on the scheduling thread.
"""

import queue
import threading
from dataclasses import fields
from time import perf_counter
from typing import Callable, Dict, List, Optional, Set, Union

from tqdm.auto import tqdm

from scalellm.config import Config
from scalellm.engine.executor import ExecutorBase
from scalellm.engine.scheduler import Scheduler, SchedulerStats
from scalellm.engine.sequence import FinishReason, Sequence
from scalellm.exceptions import (AdmissionRejectedError, EngineError,
                                 InvariantError)
from scalellm.outputs import SequenceOutput, StepResult
from scalellm.sampling_params import SamplingParams
from scalellm.utils.logger_utils import get_logger, set_log_level

logger = get_logger(__name__)

__all__ = ['LLMEngine']

TokensCallback = Callable[[str, List[int]], None]
CompleteCallback = Callable[[str, FinishReason], None]

_ADD = 'add'
_CANCEL = 'cancel'


class LLMEngine:
    """Serving engine for continuous-batching generation.

    The engine can be driven two ways: by calling step() repeatedly from
    one thread, or by start(), which runs the same loop on a background
    thread until shutdown().

    Attributes:
        config: Engine configuration.
        executor: Engine boundary that runs batches.
        scheduler: Scheduler managing sequence queues and KV cache blocks.
        on_tokens: Called with (request_id, new_token_ids) whenever a
            request produced tokens.
        on_complete: Called with (request_id, finish_reason) exactly once
            per accepted request.
    """

    def __init__(self,
                 executor: ExecutorBase,
                 config: Optional[Config] = None,
                 on_tokens: Optional[TokensCallback] = None,
                 on_complete: Optional[CompleteCallback] = None,
                 **kwargs) -> None:
        """Initialize the engine.

        Args:
            executor: Engine boundary used to run every batch.
            config: Engine configuration. If omitted, one is built from
                the keyword arguments that name Config fields.
            on_tokens: Incremental token callback.
            on_complete: Completion callback.
            **kwargs: Configuration parameters (see Config class). Unknown
                keys are ignored.

        Raises:
            ValueError: If the configuration is invalid.
        """
        if config is None:
            # Filter kwargs to only include valid Config parameters
            config_fields: set = {field.name for field in fields(Config)}
            config_kwargs: Dict = {
                k: v
                for k, v in kwargs.items() if k in config_fields
            }
            config = Config(**config_kwargs)
        set_log_level(config.log_level)

        self.config: Config = config
        self.executor: ExecutorBase = executor
        self.scheduler: Scheduler = Scheduler(config, executor)
        self.on_tokens: Optional[TokensCallback] = on_tokens
        self.on_complete: Optional[CompleteCallback] = on_complete

        self._commands: queue.Queue = queue.Queue()
        self._lock: threading.Lock = threading.Lock()
        self._idle: threading.Condition = threading.Condition(self._lock)
        # Accepted requests whose completion has not been delivered yet.
        self._live: Set[str] = set()
        self._accepting: bool = True
        self._closed: bool = False

        self._step_lock: threading.Lock = threading.Lock()
        self._stop_event: threading.Event = threading.Event()
        self._wakeup: threading.Event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._loop_error: Optional[BaseException] = None

        self._stats: SchedulerStats = self.scheduler.stats()
        logger.info(f'Engine ready: {config.num_gpu_blocks} blocks of '
                    f'{config.block_size} tokens, max_num_seqs='
                    f'{config.max_num_seqs}, max_num_batched_tokens='
                    f'{config.max_num_batched_tokens}, preemption_mode='
                    f'{config.preemption_mode!r}')

    # Request intake (any thread)

    def new_request(self,
                    prompt_token_ids: List[int],
                    sampling_params: Optional[SamplingParams] = None,
                    request_id: Optional[str] = None) -> str:
        """Submit a generation request.

        Args:
            prompt_token_ids: The prompt as token IDs.
            sampling_params: SamplingParams controlling generation behavior.
                Defaults to SamplingParams() if not provided.
            request_id: Caller-chosen identifier. Generated if omitted.

        Returns:
            The request ID used in every callback for this request.

        Raises:
            AdmissionRejectedError: If the prompt can never fit, or the
                request ID is already in flight. No callback is invoked.
            RuntimeError: If the engine is shutting down.
        """
        sequence = Sequence(prompt_token_ids,
                            sampling_params,
                            block_size=self.config.block_size,
                            request_id=request_id)
        with self._lock:
            if not self._accepting:
                raise RuntimeError('Engine is shutting down, '
                                   'no new requests are accepted')
            if sequence.request_id in self._live:
                raise AdmissionRejectedError(
                    f'Request {sequence.request_id!r} is already in flight')
            try:
                self.scheduler.check_capacity(sequence)
            except AdmissionRejectedError as e:
                logger.warning(f'Rejected request: {e}')
                raise
            self._live.add(sequence.request_id)
            self._commands.put((_ADD, sequence))
        self._wakeup.set()
        return sequence.request_id

    def cancel(self, request_id: str) -> None:
        """Cancel a request at the next iteration boundary.

        Cancelling an unknown or already completed request does nothing.
        """
        self._commands.put((_CANCEL, request_id))
        self._wakeup.set()

    # Scheduling loop (one thread)

    def step(self) -> StepResult:
        """Execute one iteration and deliver its outputs.

        This method:
        1. Applies the requests and cancellations posted since the last
           iteration
        2. Schedules, executes and commits one batch
        3. Invokes the callbacks for every output

        Returns:
            The iteration's StepResult.
        """
        with self._step_lock:
            outputs = self._apply_commands()
            result = self.scheduler.step()
            result.outputs = outputs + result.outputs
            self._stats = self.scheduler.stats()
            self._deliver(result.outputs)
            return result

    def _apply_commands(self) -> List[SequenceOutput]:
        outputs: List[SequenceOutput] = []
        while True:
            try:
                command, payload = self._commands.get_nowait()
            except queue.Empty:
                return outputs
            if command == _ADD:
                try:
                    self.scheduler.add(payload)
                except AdmissionRejectedError as e:
                    outputs.append(
                        SequenceOutput(payload.request_id,
                                       finish_reason=FinishReason.REJECTED,
                                       error=str(e)))
            elif command == _CANCEL:
                self.scheduler.abort(payload)

    def _deliver(self, outputs: List[SequenceOutput]) -> None:
        for output in outputs:
            if output.new_token_ids and self.on_tokens is not None:
                self.on_tokens(output.request_id, output.new_token_ids)
            if output.finished:
                if self.on_complete is not None:
                    self.on_complete(output.request_id, output.finish_reason)
                with self._lock:
                    self._live.discard(output.request_id)
                    if not self._live:
                        self._idle.notify_all()

    def _has_work(self) -> bool:
        with self._lock:
            return bool(self._live) or not self._commands.empty()

    def _run_loop(self) -> None:
        logger.info('Scheduling loop started')
        try:
            while not self._stop_event.is_set():
                self._wakeup.clear()
                if not self._has_work():
                    self._wakeup.wait(timeout=0.05)
                    continue
                self.step()
        except Exception as e:
            logger.exception(f'Scheduling loop failed: {e}')
            with self._lock:
                self._loop_error = e
                self._idle.notify_all()
        logger.info('Scheduling loop stopped')

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Run the scheduling loop on a background thread."""
        if self._closed:
            raise RuntimeError('Engine has been shut down')
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop,
                                        name='scalellm-scheduler',
                                        daemon=True)
        self._thread.start()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every accepted request has completed.

        Without a background loop the iterations run on the calling thread.

        Args:
            timeout: Maximum seconds to wait for the background loop.
                None waits indefinitely.

        Returns:
            True if nothing is in flight anymore, False on timeout.

        Raises:
            EngineError: If the background loop died.
        """
        if not self.is_running and self._loop_error is None:
            while self._has_work():
                self.step()
            return True

        with self._lock:
            done = self._idle.wait_for(
                lambda: not self._live or self._loop_error is not None,
                timeout)
            if self._loop_error is not None:
                raise EngineError('Scheduling loop failed') from (
                    self._loop_error)
        return done

    def shutdown(self,
                 cancel_running: bool = False,
                 timeout: Optional[float] = None) -> None:
        """Stop the engine and release the block pool.

        New requests are refused from this point on. In-flight requests
        either run to completion or, with ``cancel_running``, are cancelled
        at the next iteration boundary. Requests still in flight after
        ``timeout`` seconds are cancelled as well.

        Args:
            cancel_running: Cancel in-flight requests instead of finishing
                them.
            timeout: Maximum seconds to wait for in-flight requests.

        Raises:
            EngineError: If the background loop died. The pool is released
                and the executor shut down before this is raised.
            InvariantError: If blocks are still allocated afterwards.
        """
        with self._lock:
            if self._closed:
                return
            self._accepting = False
            live = list(self._live)
        logger.info(f'Shutting down engine with {len(live)} request(s) in '
                    f'flight (cancel_running={cancel_running})')

        loop_error: Optional[EngineError] = None
        if cancel_running:
            for request_id in live:
                self.cancel(request_id)
        try:
            if not self.drain(timeout):
                with self._lock:
                    remaining = list(self._live)
                logger.warning(f'Timed out after {timeout}s, cancelling '
                               f'{len(remaining)} request(s)')
                for request_id in remaining:
                    self.cancel(request_id)
                self.drain()
        except EngineError as e:
            loop_error = e
            logger.error('Scheduling loop is dead, cancelling the requests '
                         'still in flight')

        self._stop_event.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

        with self._step_lock:
            outputs = self._apply_commands()
            self.scheduler.release_all()
            outputs.extend(self.scheduler.take_pending_outputs())
            self._stats = self.scheduler.stats()
        try:
            if loop_error is None:
                self._deliver(outputs)
            else:
                # The callbacks already failed once; only forget the requests.
                with self._lock:
                    self._live.clear()
                    self._idle.notify_all()
        finally:
            self._closed = True
            self.executor.shutdown()

        num_free = self.scheduler.block_manager.num_free_blocks
        num_total = self.scheduler.block_manager.num_total_blocks
        if num_free != num_total:
            raise InvariantError(f'{num_total - num_free} blocks still '
                                 f'allocated after shutdown')
        logger.info('Engine shut down')
        if loop_error is not None:
            raise loop_error

    # Introspection

    def get_stats(self) -> SchedulerStats:
        """Snapshot of the state after the last completed iteration."""
        return self._stats

    def is_finished(self) -> bool:
        """Check if all accepted requests have completed.

        Returns:
            True if no request is waiting, running or preempted.
        """
        return not self._has_work()

    # Offline batch API

    def generate(
        self,
        prompts: List[List[int]],
        sampling_params: Union[SamplingParams, List[SamplingParams],
                               None] = None,
        use_tqdm: bool = True,
    ) -> List[Dict[str, Union[str, List[int], FinishReason]]]:
        """Generate completions for multiple prompts on the calling thread.

        Args:
            prompts: List of token ID lists to generate from.
            sampling_params: Sampling parameters for generation.
                If a single SamplingParams is provided, it applies to
                all prompts.
                If a list, it should match the length of prompts.
                Defaults to SamplingParams() for all prompts if not provided.
            use_tqdm: Whether to show a progress bar. Default: True.

        Returns:
            List of dictionaries, one per prompt in input order, containing:
            - 'token_ids': The list of generated token IDs
            - 'finish_reason': Why generation stopped

        Raises:
            RuntimeError: If the background loop is running.
            AdmissionRejectedError: If a prompt can never fit. Prompts
                submitted before it keep running.
        """
        if self.is_running:
            raise RuntimeError(
                'generate() drives the engine itself; call it without start()')

        # Normalize sampling parameters to list
        if sampling_params is None:
            sampling_params_list: List[SamplingParams] = [
                SamplingParams() for _ in prompts
            ]
        elif not isinstance(sampling_params, list):
            sampling_params_list = [sampling_params] * len(prompts)
        else:
            sampling_params_list = sampling_params
        if len(sampling_params_list) != len(prompts):
            raise ValueError(
                f'Got {len(sampling_params_list)} sampling params for '
                f'{len(prompts)} prompts')

        request_ids: List[str] = [
            self.new_request(prompt, sp)
            for prompt, sp in zip(prompts, sampling_params_list)
        ]
        pending: Set[str] = set(request_ids)
        token_ids: Dict[str, List[int]] = {rid: [] for rid in request_ids}
        reasons: Dict[str, FinishReason] = {}

        pbar = None
        if use_tqdm:
            pbar = tqdm(total=len(prompts),
                        desc='Generating',
                        dynamic_ncols=True)

        prefill_throughput: float = 0.0
        decode_throughput: float = 0.0
        while pending:
            t: float = perf_counter()
            result = self.step()
            elapsed: float = perf_counter() - t

            # Update throughput metrics
            if pbar is not None and elapsed > 0:
                if result.num_prefill_tokens:
                    prefill_throughput = result.num_prefill_tokens / elapsed
                if result.num_decode_tokens:
                    decode_throughput = result.num_decode_tokens / elapsed
                pbar.set_postfix({
                    'Prefill': f'{int(prefill_throughput)}token/s',
                    'Decode': f'{int(decode_throughput)}token/s',
                })

            for output in result.outputs:
                if output.request_id not in token_ids:
                    continue
                token_ids[output.request_id].extend(output.new_token_ids)
                if output.finished:
                    reasons[output.request_id] = output.finish_reason
                    pending.discard(output.request_id)
                    if pbar is not None:
                        pbar.update(1)

        if pbar is not None:
            pbar.close()

        return [{
            'token_ids': token_ids[rid],
            'finish_reason': reasons[rid]
        } for rid in request_ids]
