"""Main LLM interface module.

This module provides the LLM class, the text-in, text-out interface on top
of LLMEngine. It owns a Hugging Face tokenizer, takes the EOS token from
it and decodes completions.
"""

from typing import Dict, List, Optional, Union

from transformers import AutoTokenizer, PreTrainedTokenizerBase

from scalellm.engine.executor import ExecutorBase
from scalellm.engine.llm_engine import LLMEngine
from scalellm.engine.sequence import FinishReason
from scalellm.sampling_params import SamplingParams


class LLM(LLMEngine):
    """Text interface for the scalellm engine.

    Example Usage:
        >>> from scalellm import LLM, SamplingParams
        >>>
        >>> llm = LLM('Qwen/Qwen2.5-0.5B', executor, num_gpu_blocks=512)
        >>> outputs = llm.generate(
        ...     ['Once upon a time', 'The future of AI is'],
        ...     SamplingParams(temperature=0.7, max_tokens=128))
        >>> for output in outputs:
        ...     print(output['text'])

    Attributes:
        tokenizer: HuggingFace tokenizer for encoding/decoding text.
    """

    def __init__(self, model: str, executor: ExecutorBase, **kwargs) -> None:
        """Initialize the LLM.

        Args:
            model: Name or path of a Hugging Face model whose tokenizer
                is loaded.
            executor: Engine boundary used to run every batch.
            **kwargs: Passed through to LLMEngine. ``eos`` defaults to
                the tokenizer's EOS token.
        """
        self.tokenizer: PreTrainedTokenizerBase = (
            AutoTokenizer.from_pretrained(model, use_fast=True))
        if 'eos' not in kwargs and 'config' not in kwargs:
            eos = self.tokenizer.eos_token_id
            kwargs['eos'] = eos if eos is not None else -1
        self.model: str = model
        super().__init__(executor, **kwargs)

    def add_request(self,
                    prompt: Union[str, List[int]],
                    sampling_params: Optional[SamplingParams] = None,
                    request_id: Optional[str] = None) -> str:
        """Submit a text or token ID prompt.

        Returns:
            The request ID.
        """
        if isinstance(prompt, str):
            prompt_tokens: List[int] = self.tokenizer.encode(prompt)
        else:
            prompt_tokens = prompt
        return self.new_request(prompt_tokens, sampling_params, request_id)

    def decode(self, token_ids: List[int]) -> str:
        return self.tokenizer.decode(token_ids, skip_special_tokens=True)

    def generate(
        self,
        prompts: Union[List[str], List[List[int]]],
        sampling_params: Union[SamplingParams, List[SamplingParams],
                               None] = None,
        use_tqdm: bool = True,
    ) -> List[Dict[str, Union[str, List[int], FinishReason]]]:
        """Generate text completions for multiple prompts.

        Returns:
            List of dictionaries, one per prompt, containing:
            - 'text': The decoded text completion
            - 'token_ids': The list of generated token IDs
            - 'finish_reason': Why generation stopped
        """
        prompt_tokens: List[List[int]] = [
            self.tokenizer.encode(prompt)
            if isinstance(prompt, str) else prompt for prompt in prompts
        ]
        outputs = super().generate(prompt_tokens, sampling_params, use_tqdm)
        for output in outputs:
            output['text'] = self.decode(output['token_ids'])
        return outputs
