"""Tests for bounded, cancellable polling."""

from __future__ import annotations

import asyncio

import pytest

from keymanager.config import ConfigurationError
from keymanager.wait import (
    PollCancelledError,
    PollConfigurationError,
    PollTimeoutError,
    until,
)


class CountingPredicate:
    """Predicate that turns true on a given invocation."""

    def __init__(self, true_on: int | None) -> None:
        self.true_on = true_on
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        return self.true_on is not None and self.calls >= self.true_on


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class TestUntil:
    """Tests for until()."""

    @pytest.mark.asyncio
    async def test_returns_on_first_success(self) -> None:
        """Test that a true predicate returns without sleeping."""
        predicate = CountingPredicate(true_on=1)
        sleep = RecordingSleep()

        await until(0.5, 3, predicate, sleep=sleep)

        assert predicate.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_success_on_last_attempt(self) -> None:
        """Test three invocations with two sleeps in between."""
        predicate = CountingPredicate(true_on=3)
        sleep = RecordingSleep()

        await until(0.1, 3, predicate, sleep=sleep)

        assert predicate.calls == 3
        assert sleep.delays == [0.1, 0.1]

    @pytest.mark.asyncio
    async def test_timeout_has_no_trailing_sleep(self) -> None:
        """Test that exhaustion raises after max_attempts without a final sleep."""
        predicate = CountingPredicate(true_on=None)
        sleep = RecordingSleep()

        with pytest.raises(PollTimeoutError) as exc_info:
            await until(0.2, 4, predicate, operation="root key activation", sleep=sleep)

        assert predicate.calls == 4
        assert len(sleep.delays) == 3
        assert exc_info.value.attempts == 4
        assert exc_info.value.budget_seconds == pytest.approx(0.8)
        assert "root key activation" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_names_key(self) -> None:
        """Test that the timeout error carries the key ID."""
        with pytest.raises(PollTimeoutError) as exc_info:
            await until(0, 2, CountingPredicate(None), key_id="kid-0001", sleep=RecordingSleep())

        assert exc_info.value.key_id == "kid-0001"
        assert "kid-0001" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_zero_attempts_times_out_without_invoking(self) -> None:
        """Test that a zero attempt budget never calls the predicate."""
        predicate = CountingPredicate(true_on=1)

        with pytest.raises(PollTimeoutError):
            await until(0.1, 0, predicate)

        assert predicate.calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("interval", "attempts"), [(-1, 3), (0.1, -1), (-0.5, -2)])
    async def test_negative_parameters_rejected(self, interval: float, attempts: int) -> None:
        """Test that negative parameters fail before the predicate runs."""
        predicate = CountingPredicate(true_on=1)

        with pytest.raises(PollConfigurationError):
            await until(interval, attempts, predicate)

        assert predicate.calls == 0

    @pytest.mark.asyncio
    async def test_configuration_error_is_configuration_error(self) -> None:
        """Test that invalid parameters are reported as configuration errors."""
        with pytest.raises(ConfigurationError):
            await until(-1, 1, CountingPredicate(1))

    @pytest.mark.asyncio
    async def test_predicate_error_propagates(self) -> None:
        """Test that predicate exceptions are not retried."""
        calls = 0

        async def failing() -> bool:
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await until(0, 5, failing, sleep=RecordingSleep())

        assert calls == 1

    @pytest.mark.asyncio
    async def test_real_sleep_with_zero_interval(self) -> None:
        """Test the default sleep path completes with a zero interval."""
        predicate = CountingPredicate(true_on=2)

        await until(0, 2, predicate)

        assert predicate.calls == 2


class TestUntilCancellation:
    """Tests for cancel_event handling."""

    @pytest.mark.asyncio
    async def test_cancel_before_first_attempt(self) -> None:
        """Test that a set event stops the wait before any invocation."""
        event = asyncio.Event()
        event.set()
        predicate = CountingPredicate(true_on=1)

        with pytest.raises(PollCancelledError) as exc_info:
            await until(0.1, 3, predicate, cancel_event=event)

        assert predicate.calls == 0
        assert exc_info.value.attempts == 0

    @pytest.mark.asyncio
    async def test_cancel_during_interval(self) -> None:
        """Test that setting the event interrupts a long interval."""
        event = asyncio.Event()
        predicate = CountingPredicate(true_on=None)

        async def cancel_soon() -> None:
            await asyncio.sleep(0.01)
            event.set()

        task = asyncio.create_task(cancel_soon())
        with pytest.raises(PollCancelledError) as exc_info:
            await asyncio.wait_for(
                until(30, 10, predicate, operation="root key destruction", cancel_event=event),
                timeout=5,
            )
        await task

        assert predicate.calls == 1
        assert exc_info.value.operation == "root key destruction"

    @pytest.mark.asyncio
    async def test_unset_event_does_not_cancel(self) -> None:
        """Test that an unset event behaves like a plain sleep."""
        event = asyncio.Event()
        predicate = CountingPredicate(true_on=3)

        await until(0, 3, predicate, cancel_event=event)

        assert predicate.calls == 3
