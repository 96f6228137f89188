"""
Example of serving a toy bigram model with the scalellm engine.

This script demonstrates how to:
1. Wrap a torch model in a ModelExecutor
2. Run the scheduling loop on a background thread
3. Stream tokens through callbacks while requests arrive concurrently
4. Shut the engine down cleanly
"""

import threading
from typing import Dict, List

import torch
from torch import nn

from scalellm import FinishReason, LLMEngine, ModelExecutor, SamplingParams
from scalellm.engine.batch import Batch
from scalellm.utils.logger_utils import get_logger

logger = get_logger('__main__')

VOCAB_SIZE = 64


class BigramModel(nn.Module):
    """Next-token logits from the current token only."""

    def __init__(self, vocab_size: int) -> None:
        super().__init__()
        self.table = nn.Embedding(vocab_size, vocab_size)

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        return self.table(input_ids)


def main():
    torch.manual_seed(0)
    model = BigramModel(VOCAB_SIZE).eval()

    def model_fn(batch: Batch, tensors: Dict[str, torch.Tensor]):
        # One row per token; the executor keeps the last row of each
        # sequence.
        return model(tensors['input_ids'])

    def cache_ops_fn(batch: Batch) -> None:
        logger.info(f'KV cache ops: swap_out={batch.blocks_to_swap_out} '
                    f'swap_in={batch.blocks_to_swap_in} '
                    f'copy={batch.blocks_to_copy}')

    outputs: Dict[str, List[int]] = {}
    done = threading.Event()
    lock = threading.Lock()
    num_requests = 8

    def on_tokens(request_id: str, token_ids: List[int]) -> None:
        with lock:
            outputs.setdefault(request_id, []).extend(token_ids)

    def on_complete(request_id: str, reason: FinishReason) -> None:
        logger.info(f'{request_id} finished ({reason.value}): '
                    f'{outputs.get(request_id, [])}')
        with lock:
            outputs.setdefault(request_id, [])
            if len(outputs) == num_requests:
                done.set()

    engine = LLMEngine(ModelExecutor(model_fn, cache_ops_fn=cache_ops_fn),
                       on_tokens=on_tokens,
                       on_complete=on_complete,
                       block_size=4,
                       num_gpu_blocks=12,
                       num_cpu_blocks=16,
                       max_model_len=32,
                       preemption_mode='swap')
    engine.start()

    sampling_params = SamplingParams(temperature=0.8,
                                     max_tokens=16,
                                     ignore_eos=True)
    for i in range(num_requests):
        prompt = [(i * 7 + j) % VOCAB_SIZE for j in range(3 + i)]
        engine.new_request(prompt, sampling_params, request_id=f'req-{i}')

    done.wait(timeout=60)
    stats = engine.get_stats()
    logger.info(f'{stats.num_finished} requests finished, '
                f'{stats.num_preemptions} preemptions')
    engine.shutdown()


if __name__ == '__main__':
    main()
