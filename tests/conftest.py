"""Pytest configuration and shared fixtures for scalellm tests.

This module provides common test utilities and fixtures for all test modules.
"""

import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scalellm.engine.batch import Batch  # noqa: E402
from scalellm.engine.executor import ExecutorBase, SamplerOutput  # noqa: E402


class FakeExecutor(ExecutorBase):
    """Deterministic executor used in place of a model.

    By default every sequence receives ``next_token`` (7 unless given).
    ``token_fn`` may compute the token from the sequence instead. Every
    executed batch is recorded in ``batches``.
    """

    def __init__(self,
                 next_token: int = 7,
                 token_fn: Optional[Callable] = None,
                 fail_on_call: Optional[int] = None) -> None:
        self.next_token = next_token
        self.token_fn = token_fn
        self.fail_on_call = fail_on_call
        self.batches: List[Batch] = []
        self.num_calls = 0
        self.shutdown_called = False

    def execute(self, batch: Batch) -> List[SamplerOutput]:
        self.num_calls += 1
        self.batches.append(batch)
        if self.fail_on_call is not None and self.num_calls == self.fail_on_call:
            raise RuntimeError('device lost')
        outputs = []
        for seq in batch.sequences:
            token = (self.token_fn(seq)
                     if self.token_fn is not None else self.next_token)
            outputs.append(SamplerOutput(token_id=token))
        return outputs

    def shutdown(self) -> None:
        self.shutdown_called = True


@pytest.fixture
def fake_executor():
    """Provide a FakeExecutor that always samples token 7."""
    return FakeExecutor()


@pytest.fixture
def sample_token_ids():
    """Provide sample token IDs for testing."""
    return [1, 2, 3, 4, 5, 6, 7, 8, 9, 10]


@pytest.fixture
def default_sampling_params():
    """Provide default sampling parameters for testing."""
    from scalellm.sampling_params import SamplingParams
    return SamplingParams(temperature=0.8, max_tokens=128)


@pytest.fixture(autouse=True)
def reset_sequence_counter():
    """Reset the global sequence counter before each test.

    This ensures that sequence IDs start from 0 for each test,
    making tests more predictable.
    """
    from itertools import count

    from scalellm.engine.sequence import Sequence

    # Save original counter
    original_counter = Sequence.counter

    # Reset to new counter
    Sequence.counter = count()

    yield

    # Restore original counter
    Sequence.counter = original_counter


# Configure pytest markers
def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        'markers',
        "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line('markers',
                            'integration: marks tests as integration tests')


# Test discovery configuration
def pytest_collection_modifyitems(config, items):
    """Modify test items during collection."""
    for item in items:
        if 'slow' in item.nodeid:
            item.add_marker(pytest.mark.slow)
        if 'threaded' in item.nodeid:
            item.add_marker(pytest.mark.integration)
