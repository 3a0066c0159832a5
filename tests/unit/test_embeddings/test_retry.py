"""
Tests for retry with exponential backoff.
"""

from __future__ import annotations

import pytest

from hybrid_retrieval.core.config import EmbeddingConfig
from hybrid_retrieval.embeddings.exceptions import EmbeddingFatalError, EmbeddingTransientError
from hybrid_retrieval.embeddings.retry import RetryPolicy, retry_with_backoff


class _Recorder:
    """Fake sleep recording requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _Flaky:
    """Operation failing with the given errors before returning ``result``."""

    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self._errors = list(errors)
        self._result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._result


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_exponential_delays(self) -> None:
        sleep = _Recorder()
        operation = _Flaky([EmbeddingTransientError("503", status_code=503)] * 4)
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=30.0)

        await retry_with_backoff(operation, policy, sleep=sleep)

        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_delay_is_capped(self) -> None:
        sleep = _Recorder()
        operation = _Flaky([EmbeddingTransientError("503", status_code=503)] * 4)
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0)

        await retry_with_backoff(operation, policy, sleep=sleep)

        assert sleep.delays == [1.0, 2.0, 4.0, 5.0]

    def test_single_attempt_floor(self) -> None:
        retrying = RetryPolicy(max_attempts=0).retrying()

        assert retrying.stop.max_attempt_number == 1

    def test_from_config(self) -> None:
        config = EmbeddingConfig(
            _env_file=None, max_retries=5, retry_base_delay=0.5, retry_max_delay=4.0
        )

        assert RetryPolicy.from_config(config) == RetryPolicy(5, 0.5, 4.0)


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self) -> None:
        sleep = _Recorder()
        operation = _Flaky([EmbeddingTransientError("429", status_code=429)] * 2)

        result = await retry_with_backoff(operation, RetryPolicy(max_attempts=3), sleep=sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self) -> None:
        sleep = _Recorder()
        errors = [EmbeddingTransientError(f"503 #{i}", status_code=503) for i in range(3)]
        operation = _Flaky(errors)

        with pytest.raises(EmbeddingTransientError, match="503 #2"):
            await retry_with_backoff(operation, RetryPolicy(max_attempts=3), sleep=sleep)

        assert operation.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self) -> None:
        sleep = _Recorder()
        operation = _Flaky([EmbeddingFatalError("413", status_code=413, batch_too_large=True)])

        with pytest.raises(EmbeddingFatalError):
            await retry_with_backoff(operation, RetryPolicy(max_attempts=3), sleep=sleep)

        assert operation.calls == 1
        assert sleep.delays == []
