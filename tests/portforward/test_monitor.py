"""
Tests for the health monitor and idle reaper.
"""

import asyncio
from datetime import timedelta

import pytest

from infradesk.services.portforward import (
    ForwardMonitor,
    ForwardStatus,
    ForwardTarget,
    HealthMonitor,
    IdleReaper,
    NoReadyBackend,
    PortAllocator,
    PortForwardManager,
    tcp_probe,
)
from infradesk.services.portforward.models import utcnow
from tests.fakes import FakeEstablisher, free_port


TARGET = ForwardTarget("backup", "mysql", 3306)


def make_manager(establisher):
    return PortForwardManager(establisher, allocator=PortAllocator(40000, 40009, check_bindable=False))


async def healthy_probe(host, port, timeout):
    return None


async def refused_probe(host, port, timeout):
    raise ConnectionRefusedError(f"connect to {host}:{port} refused")


class TestTcpProbe:

    @pytest.mark.asyncio
    async def test_probe_succeeds_against_listener(self):
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            await tcp_probe("127.0.0.1", port, 2.0)
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_probe_fails_on_closed_port(self):
        with pytest.raises(OSError):
            await tcp_probe("127.0.0.1", free_port(), 2.0)


class TestHealthMonitor:

    @pytest.mark.asyncio
    async def test_failed_probe_demotes_to_error(self, fake_establisher):
        manager = make_manager(fake_establisher)
        forward = await manager.get_or_create("conn-1", TARGET)
        monitor = HealthMonitor(manager, interval=30, prober=refused_probe)

        demoted = await monitor.run_once()

        assert [f.id for f in demoted] == [forward.id]
        failed = manager.get(forward.id)
        assert failed.status == ForwardStatus.ERROR
        assert failed.last_error.startswith("Health check failed:")
        assert "refused" in failed.last_error

    @pytest.mark.asyncio
    async def test_healthy_forwards_stay_active(self, fake_establisher):
        manager = make_manager(fake_establisher)
        forward = await manager.get_or_create("conn-1", TARGET)
        monitor = HealthMonitor(manager, prober=healthy_probe)

        assert await monitor.run_once() == []
        assert manager.get(forward.id).status == ForwardStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_slow_probe_counts_as_failure(self, fake_establisher):
        async def hanging_probe(host, port, timeout):
            raise asyncio.TimeoutError()

        manager = make_manager(fake_establisher)
        forward = await manager.get_or_create("conn-1", TARGET)
        monitor = HealthMonitor(manager, probe_timeout=2.0, prober=hanging_probe)

        await monitor.run_once()
        assert "within 2s" in manager.get(forward.id).last_error

    @pytest.mark.asyncio
    async def test_only_active_forwards_are_probed(self):
        probed = []

        async def recording_probe(host, port, timeout):
            probed.append(port)

        establisher = FakeEstablisher(error=NoReadyBackend("backup", "mysql"))
        manager = make_manager(establisher)
        with pytest.raises(NoReadyBackend):
            await manager.get_or_create("conn-1", TARGET)

        await HealthMonitor(manager, prober=recording_probe).run_once()
        assert probed == []


class TestIdleReaper:

    @pytest.mark.asyncio
    async def test_reaps_forward_idle_past_timeout(self, fake_establisher):
        manager = make_manager(fake_establisher)
        forward = await manager.get_or_create("conn-1", TARGET)
        reaper = IdleReaper(manager, idle_timeout=600)

        reaped = await reaper.run_once(now=utcnow() + timedelta(minutes=11))

        assert [f.id for f in reaped] == [forward.id]
        assert reaped[0].status == ForwardStatus.STOPPED
        assert manager.list() == []
        assert manager.allocator.leased() == set()
        assert fake_establisher.tunnels[0].closed

    @pytest.mark.asyncio
    async def test_recently_used_forward_is_kept(self, fake_establisher):
        manager = make_manager(fake_establisher)
        forward = await manager.get_or_create("conn-1", TARGET)
        reaper = IdleReaper(manager, idle_timeout=600)

        assert await reaper.run_once(now=utcnow() + timedelta(minutes=5)) == []
        assert manager.get(forward.id).status == ForwardStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_touch_postpones_reaping(self, fake_establisher):
        manager = make_manager(fake_establisher)
        forward = await manager.get_or_create("conn-1", TARGET)
        manager.registry.touch(forward.id, now=utcnow() + timedelta(minutes=8))
        reaper = IdleReaper(manager, idle_timeout=600)

        assert await reaper.run_once(now=utcnow() + timedelta(minutes=11)) == []

    @pytest.mark.asyncio
    async def test_error_forward_reaped_after_retention(self):
        establisher = FakeEstablisher(error=NoReadyBackend("backup", "mysql"))
        manager = make_manager(establisher)
        with pytest.raises(NoReadyBackend):
            await manager.get_or_create("conn-1", TARGET)
        reaper = IdleReaper(manager, idle_timeout=600, error_retention=1800)

        assert await reaper.run_once(now=utcnow() + timedelta(minutes=20)) == []
        reaped = await reaper.run_once(now=utcnow() + timedelta(minutes=31))
        assert len(reaped) == 1
        assert manager.list() == []

    @pytest.mark.asyncio
    async def test_error_retention_disabled(self):
        establisher = FakeEstablisher(error=NoReadyBackend("backup", "mysql"))
        manager = make_manager(establisher)
        with pytest.raises(NoReadyBackend):
            await manager.get_or_create("conn-1", TARGET)
        reaper = IdleReaper(manager, idle_timeout=600, error_retention=0)

        assert await reaper.run_once(now=utcnow() + timedelta(days=1)) == []
        assert manager.get_by_connection("conn-1").status == ForwardStatus.ERROR

    @pytest.mark.asyncio
    async def test_new_request_after_reap_creates_fresh_forward(self, fake_establisher):
        manager = make_manager(fake_establisher)
        first = await manager.get_or_create("conn-1", TARGET)
        await IdleReaper(manager, idle_timeout=600).run_once(now=utcnow() + timedelta(minutes=11))

        second = await manager.get_or_create("conn-1", TARGET)
        assert second.id != first.id
        assert second.status == ForwardStatus.ACTIVE


class TestForwardMonitor:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, fake_establisher):
        manager = make_manager(fake_establisher)
        monitor = ForwardMonitor(
            HealthMonitor(manager, interval=0.01, prober=healthy_probe),
            IdleReaper(manager, interval=0.01)
        )

        monitor.start()
        assert monitor.running
        await asyncio.sleep(0.05)
        await monitor.stop()
        assert not monitor.running

    @pytest.mark.asyncio
    async def test_loop_demotes_dead_forward(self, fake_establisher):
        manager = make_manager(fake_establisher)
        forward = await manager.get_or_create("conn-1", TARGET)
        monitor = ForwardMonitor(
            HealthMonitor(manager, interval=0.01, prober=refused_probe),
            IdleReaper(manager, interval=60)
        )

        monitor.start()
        try:
            for _ in range(100):
                if manager.get(forward.id).status == ForwardStatus.ERROR:
                    break
                await asyncio.sleep(0.01)
        finally:
            await monitor.stop()

        assert manager.get(forward.id).status == ForwardStatus.ERROR
