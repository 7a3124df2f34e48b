# tests/unit/transfer/test_unit_retry.py — v1
"""Tests for the fixed-backoff retry policy."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from imagebuilder.config.settings import Settings
from imagebuilder.core.errors import TransientNetworkError
from imagebuilder.transfer.retry import RetryPolicy, http_status, is_retryable, with_retry


class ServiceError(Exception):
    """Shaped like oci.exceptions.ServiceError."""

    def __init__(self, status: int) -> None:
        super().__init__(f"service error {status}")
        self.status = status


class ClientError(Exception):
    """Shaped like botocore.exceptions.ClientError."""

    def __init__(self, status: int) -> None:
        super().__init__(f"client error {status}")
        self.response = {"Error": {"Code": "X"}, "ResponseMetadata": {"HTTPStatusCode": status}}


class TestHttpStatus:
    def test_oci_style(self):
        assert http_status(ServiceError(503)) == 503

    def test_botocore_style(self):
        assert http_status(ClientError(429)) == 429

    def test_plain_error(self):
        assert http_status(OSError("disk")) is None

    def test_is_retryable(self):
        assert is_retryable(ServiceError(500))
        assert is_retryable(ClientError(504))
        assert not is_retryable(ServiceError(404))
        assert not is_retryable(ServiceError(401))
        assert not is_retryable(ValueError("bad"))


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 5
        assert policy.backoff_s == 10.0
        assert policy.retryable_statuses == {429, 500, 502, 503, 504}

    def test_from_settings(self):
        settings = Settings(_env_file=None, retry_max_attempts=3, retry_backoff_secs=2.5)
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_attempts == 3
        assert policy.backoff_s == 2.5


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        fn = AsyncMock(return_value="ok")
        sleep = AsyncMock()
        assert await with_retry(fn, 1, key="v", sleep=sleep) == "ok"
        fn.assert_awaited_once_with(1, key="v")
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self):
        fn = AsyncMock(side_effect=[ServiceError(503), ClientError(429), "done"])
        sleep = AsyncMock()
        assert await with_retry(fn, operation="upload part", sleep=sleep) == "done"
        assert fn.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [10.0, 10.0]

    @pytest.mark.asyncio
    async def test_exhausted(self, caplog):
        fn = AsyncMock(side_effect=ServiceError(503))
        sleep = AsyncMock()
        with pytest.raises(TransientNetworkError) as exc_info:
            await with_retry(fn, operation="upload part 3/10", sleep=sleep)

        assert fn.await_count == 5
        assert [c.args[0] for c in sleep.await_args_list] == [10.0] * 4
        error = exc_info.value
        assert error.attempts == 5
        assert error.status == 503
        assert error.operation == "upload part 3/10"
        assert isinstance(error.__cause__, ServiceError)
        assert "attempt 1/5" in caplog.text

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        fn = AsyncMock(side_effect=ServiceError(404))
        sleep = AsyncMock()
        with pytest.raises(ServiceError):
            await with_retry(fn, sleep=sleep)
        assert fn.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_errors_are_not_retried(self):
        fn = AsyncMock(side_effect=OSError("read failed"))
        with pytest.raises(OSError):
            await with_retry(fn, sleep=AsyncMock())
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_custom_policy(self):
        fn = AsyncMock(side_effect=ServiceError(500))
        sleep = AsyncMock()
        policy = RetryPolicy(max_attempts=2, backoff_s=0.5)
        with pytest.raises(TransientNetworkError):
            await with_retry(fn, policy=policy, sleep=sleep)
        assert fn.await_count == 2
        assert [c.args[0] for c in sleep.await_args_list] == [0.5]
