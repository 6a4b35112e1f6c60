"""Tests for ollama_steward.poller module."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import MOCK_MODEL


def make_poller(**kwargs):
    from ollama_steward.poller import AdaptiveStatusPoller

    return AdaptiveStatusPoller(MagicMock(), **kwargs)


class TestIntervalRules:
    """Tests for AdaptiveStatusPoller.apply_status."""

    def test_growth_after_three_identical(self):
        """Test the third identical status grows the interval by 1.5."""
        from ollama_steward.poller import ServerStatus

        poller = make_poller()
        intervals = [poller.apply_status(ServerStatus.RUNNING) for _ in range(5)]

        assert intervals == [5.0, 5.0, 7.5, 11.25, 16.875]
        assert poller.state.consecutive_same_status_count == 3

    def test_growth_capped_at_ceiling(self):
        """Test the interval never exceeds 300s."""
        from ollama_steward.poller import ServerStatus

        poller = make_poller()
        for _ in range(40):
            interval = poller.apply_status(ServerStatus.RUNNING)
            assert interval <= 300.0
        assert interval == 300.0

    def test_change_halves_interval(self):
        """Test a status change halves the interval."""
        from ollama_steward.poller import ServerStatus

        poller = make_poller()
        poller.state.interval_seconds = 120.0
        poller.state.last_status = ServerStatus.RUNNING

        assert poller.apply_status(ServerStatus.NOT_RUNNING) == 60.0
        assert poller.state.consecutive_same_status_count == 1

    def test_shrink_floor(self):
        """Test shrinking never goes below 5s."""
        from ollama_steward.poller import ServerStatus

        poller = make_poller()
        poller.state.interval_seconds = 6.0
        poller.state.last_status = ServerStatus.RUNNING

        assert poller.apply_status(ServerStatus.NOT_RUNNING) == 5.0

    def test_error_forces_medium_interval(self):
        """Test an error status pins the interval to 30s."""
        from ollama_steward.poller import ServerStatus

        poller = make_poller()
        poller.state.interval_seconds = 300.0
        poller.state.last_status = ServerStatus.RUNNING

        assert poller.apply_status(ServerStatus.ERROR) == 30.0
        assert poller.apply_status(ServerStatus.ERROR) == 30.0

    def test_phases(self):
        """Test the phase follows stability."""
        from ollama_steward.poller import PollPhase, ServerStatus

        poller = make_poller()
        poller.apply_status(ServerStatus.NOT_RUNNING)
        assert poller.phase() == PollPhase.CHECKING
        poller.apply_status(ServerStatus.NOT_RUNNING)
        poller.apply_status(ServerStatus.NOT_RUNNING)
        assert poller.phase() == PollPhase.STABLE_UNHEALTHY


class TestPolling:
    """Tests for poll_once and the polling loop."""

    @pytest.mark.asyncio
    async def test_running_update(self):
        """Test a healthy check reports model count and default model."""
        from ollama_steward.poller import ServerStatus
        from ollama_steward.schema import HealthReport, HealthStatus, ServerModel

        changes = []
        poller = make_poller(on_status_change=changes.append, default_model=MOCK_MODEL)
        poller.health.check_health = AsyncMock(
            return_value=HealthReport(status=HealthStatus.HEALTHY, models=[ServerModel(name=MOCK_MODEL)])
        )

        update = await poller.poll_once()

        assert update.status == ServerStatus.RUNNING
        assert update.model_count == 1
        assert update.default_model_present is True
        assert changes == [update]

    @pytest.mark.asyncio
    async def test_unreachable_is_not_running(self):
        """Test ServerUnreachable classifies as not_running."""
        from ollama_steward.errors import ConnectionRefused, ServerUnreachable
        from ollama_steward.poller import ServerStatus

        poller = make_poller()
        poller.health.check_health = AsyncMock(side_effect=ServerUnreachable(ConnectionRefused("x")))

        update = await poller.poll_once()
        assert update.status == ServerStatus.NOT_RUNNING

    @pytest.mark.asyncio
    async def test_other_failure_is_error(self):
        """Test unexpected failures classify as error with the medium interval."""
        from ollama_steward.poller import ServerStatus

        poller = make_poller()
        poller.health.check_health = AsyncMock(side_effect=RuntimeError("boom"))

        update = await poller.poll_once()
        assert update.status == ServerStatus.ERROR
        assert update.interval_seconds == 30.0

    @pytest.mark.asyncio
    async def test_callback_only_on_change(self):
        """Test repeated identical statuses notify once."""
        from ollama_steward.errors import ServerUnreachable

        changes = []
        poller = make_poller(on_status_change=changes.append)
        poller.health.check_health = AsyncMock(side_effect=ServerUnreachable())

        for _ in range(3):
            await poller.poll_once()
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_disabled_checks_once(self):
        """Test a disabled poller checks once and arms no loop."""
        from ollama_steward.errors import ServerUnreachable

        poller = make_poller(enabled=False)
        poller.health.check_health = AsyncMock(side_effect=ServerUnreachable())

        await poller.start()

        assert not poller.running
        assert poller.health.check_health.await_count == 1

    @pytest.mark.asyncio
    async def test_loop_rearms_and_stops(self):
        """Test the loop polls on its interval and stop() cancels it."""
        import asyncio

        from ollama_steward.errors import ServerUnreachable

        poller = make_poller(min_interval=0.01)
        poller.health.check_health = AsyncMock(side_effect=ServerUnreachable())

        await poller.start()
        await asyncio.sleep(0.1)
        await poller.stop()
        count = poller.health.check_health.await_count
        await asyncio.sleep(0.05)

        assert count >= 3
        assert poller.health.check_health.await_count == count
        assert not poller.running

    @pytest.mark.asyncio
    async def test_poke_checks_without_waiting(self):
        """Test poke() runs the next check immediately instead of after the interval."""
        import asyncio

        from ollama_steward.errors import ServerUnreachable

        poller = make_poller(min_interval=60.0)
        poller.health.check_health = AsyncMock(side_effect=ServerUnreachable())

        await poller.start()
        poller.poke()
        await asyncio.sleep(0.05)
        await poller.stop()

        assert poller.health.check_health.await_count == 2
