"""Tests for utilization sources and the background poller."""

import asyncio
from unittest.mock import patch

import pytest

from fleetguard.app.services.utilization import (
    CpuUtilizationSource,
    StaticUtilizationSource,
    UtilizationPoller,
    UtilizationSource,
)


class FlakySource(UtilizationSource):
    """Returns queued values, raising any queued exception."""

    def __init__(self, *values):
        self.values = list(values)

    def current_utilization(self) -> float:
        value = self.values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


class TestSources:
    """Tests for utilization sources."""

    def test_static_source(self):
        source = StaticUtilizationSource(0.4)
        assert source.current_utilization() == 0.4

        source.value = 0.9
        assert source.current_utilization() == 0.9

    def test_cpu_source_scales_and_clamps(self):
        with patch("fleetguard.app.services.utilization.psutil.cpu_percent") as cpu_percent:
            source = CpuUtilizationSource()
            cpu_percent.assert_called_once_with(interval=None)

            cpu_percent.return_value = 55.0
            assert source.current_utilization() == pytest.approx(0.55)

            cpu_percent.return_value = 150.0
            assert source.current_utilization() == 1.0


class TestUtilizationPoller:
    """Tests for the background poller."""

    def test_poll_updates_latest(self):
        poller = UtilizationPoller(FlakySource(0.3, 0.6), interval=1)

        assert poller.latest == 0.0
        assert poller.poll() == 0.3
        assert poller.poll() == 0.6
        assert poller.latest == 0.6

    def test_failed_sample_keeps_previous_value(self):
        poller = UtilizationPoller(FlakySource(0.3, OSError("no /proc")), interval=1)

        poller.poll()
        assert poller.poll() == 0.3

    def test_interval_defaults_to_settings(self):
        with patch("fleetguard.app.services.utilization.settings") as mock_settings:
            mock_settings.utilization_poll_interval_seconds = 3.0
            poller = UtilizationPoller(StaticUtilizationSource())

        assert poller.interval == 3.0

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        source = StaticUtilizationSource(0.5)
        poller = UtilizationPoller(source, interval=0.01)

        await poller.start()
        assert poller.latest == 0.5

        source.value = 0.9
        await asyncio.sleep(0.1)
        assert poller.latest == 0.9

        await poller.stop()
        assert poller._task is None

        source.value = 0.1
        await asyncio.sleep(0.05)
        assert poller.latest == 0.9

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        poller = UtilizationPoller(StaticUtilizationSource(0.5), interval=10)

        await poller.start()
        task = poller._task
        await poller.start()
        assert poller._task is task

        await poller.stop()
        await poller.stop()
