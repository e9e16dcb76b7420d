"""Tests for the connectivity monitor."""

import asyncio

from rcclient.connectivity import ConnectivityMonitor


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def topics(events):
    return [e["topic"] for e in events]


class TestWithoutLoop:
    """Reports outside an event loop are committed immediately."""

    def test_edges_only(self, bus, recorder):
        """Repeated reports of the same state publish nothing."""
        monitor = ConnectivityMonitor(bus)

        monitor.report(True)
        monitor.report(True)
        monitor.report(False)

        assert topics(recorder) == ["online", "offline"]
        assert monitor.online is False

    def test_offline_for(self, bus):
        """Offline duration is measured from the committed transition."""
        clock = FakeClock()
        monitor = ConnectivityMonitor(bus, initial=True, clock=clock)
        assert monitor.offline_for() == 0.0

        monitor.set_online(False)
        clock.now += 42

        assert monitor.offline_for() == 42
        monitor.set_online(True)
        assert monitor.offline_for() == 0.0


class TestDebounce:
    """Tests for the debounce window."""

    def test_commits_after_window(self, bus, recorder):
        """A state that holds through the window is committed once."""

        async def scenario():
            monitor = ConnectivityMonitor(bus, debounce=0.05)
            monitor.report(True)
            monitor.report(True)
            assert monitor.online is False
            await asyncio.sleep(0.1)
            return monitor

        monitor = asyncio.run(scenario())

        assert monitor.online is True
        assert topics(recorder) == ["online"]

    def test_flapping_is_ignored(self, bus, recorder):
        """online then offline inside the window publishes nothing."""

        async def scenario():
            monitor = ConnectivityMonitor(bus, debounce=0.05)
            monitor.report(True)
            await asyncio.sleep(0.01)
            monitor.report(False)
            await asyncio.sleep(0.1)
            return monitor

        monitor = asyncio.run(scenario())

        assert monitor.online is False
        assert recorder == []

    def test_set_online_bypasses_window(self, bus, recorder):
        """set_online commits at once and cancels a pending report."""

        async def scenario():
            monitor = ConnectivityMonitor(bus, debounce=0.05)
            monitor.report(True)
            monitor.set_online(False)
            monitor.set_online(True)
            await asyncio.sleep(0.1)
            return monitor

        monitor = asyncio.run(scenario())

        assert monitor.online is True
        assert topics(recorder) == ["online"]


class TestProbe:
    """Tests for the liveness probe."""

    def test_check_reports_probe_result(self, bus, recorder):
        """check() feeds the probe result through report()."""
        results = iter([True, False])
        monitor = ConnectivityMonitor(bus, debounce=0, probe=lambda: next(results))

        async def scenario():
            assert await monitor.check() is True
            assert monitor.online is True
            assert await monitor.check() is False

        asyncio.run(scenario())

        assert topics(recorder) == ["online", "offline"]

    def test_probe_loop(self, bus, recorder):
        """start() polls the probe until close()."""
        calls = []

        def probe():
            calls.append(1)
            return True

        async def scenario():
            monitor = ConnectivityMonitor(bus, debounce=0, probe=probe, probe_interval=0.01)
            monitor.start()
            await asyncio.sleep(0.05)
            await monitor.close()

        asyncio.run(scenario())

        assert len(calls) >= 2
        assert topics(recorder) == ["online"]

    def test_no_probe(self, bus):
        """Without a probe, check() returns the current state."""
        monitor = ConnectivityMonitor(bus, initial=True)
        assert asyncio.run(monitor.check()) is True
