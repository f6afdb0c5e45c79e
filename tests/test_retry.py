"""Tests for gateway error classification and read retries."""

import pytest

from grouppay.engine.retry import (
    AuthError,
    BankBusinessError,
    ConfigurationError,
    TransportError,
    is_retryable_execute_error,
    with_retry,
)


class TestExecuteClassification:
    @pytest.mark.parametrize("status", [408, 500, 502, 503, 504])
    def test_allow_listed_transport_codes(self, status):
        assert is_retryable_execute_error(TransportError("x", status_code=status))

    @pytest.mark.parametrize("status", [None, 400, 401, 404, 409])
    def test_other_transport_codes(self, status):
        assert not is_retryable_execute_error(TransportError("x", status_code=status))

    def test_custom_allow_list(self):
        error = TransportError("x", status_code=429)
        assert not is_retryable_execute_error(error)
        assert is_retryable_execute_error(error, {429})

    @pytest.mark.parametrize(
        "error",
        [
            BankBusinessError("Insufficient balance", error_code="51", status_code=200),
            AuthError("Token rejected", status_code=503),
            ConfigurationError("Missing key"),
        ],
    )
    def test_non_transport_errors_never_retry(self, error):
        assert not is_retryable_execute_error(error)


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransportError("Bad gateway", status_code=502)
            return "ok"

        assert await with_retry(flaky, max_retries=2, base_delay=0) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = []

        async def down():
            calls.append(1)
            raise AuthError("Token endpoint down", status_code=503)

        with pytest.raises(AuthError):
            await with_retry(down, max_retries=2, base_delay=0)
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_does_not_retry_business_errors(self):
        calls = []

        async def rejected():
            calls.append(1)
            raise BankBusinessError("Unknown transaction")

        with pytest.raises(BankBusinessError):
            await with_retry(rejected, max_retries=5, base_delay=0)
        assert len(calls) == 1
