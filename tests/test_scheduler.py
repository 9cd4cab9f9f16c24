"""同步调度器测试."""

import asyncio
from datetime import timedelta

import pytest

from conftest import CORPORATION_ID, T0, FakeClock, make_members
from corpsync.core.esi import ESIAuthError
from corpsync.core.kv import MemoryKeyValueStore
from corpsync.core.service import SyncService
from corpsync.core.state import AlreadyRunningError, SyncStateTracker
from corpsync.models.resource import Resource
from corpsync.models.sync import ProcessType, SyncProcessConfig, SyncResult
from corpsync.scheduler import (
    IntervalTooShortError,
    SyncFailedError,
    SyncScheduler,
    UnknownProcessError,
)
from corpsync.scheduler.sync_scheduler import CONFIGS_KEY


def _config(
    process_id: str = "members",
    process_type: ProcessType = ProcessType.MEMBERS,
    interval_minutes: int = 60,
    enabled: bool = True,
) -> SyncProcessConfig:
    return SyncProcessConfig(
        process_id=process_id,
        process_type=process_type,
        interval_minutes=interval_minutes,
        enabled=enabled,
    )


class BlockingRunner:
    """阻塞直到放行的假执行入口，用于观察并发数."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.calls: list[str] = []
        self.release = asyncio.Event()

    async def run_sync_process(
        self, process_id, process_type, corporation_id, credential, storage_sink=None
    ) -> SyncResult:
        self.calls.append(process_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        await self.release.wait()
        self.active -= 1
        return SyncResult(success=True)

    def cancel_sync(self, process_id: str) -> bool:
        return False


class TestDueTimes:
    """到期判断测试."""

    async def test_hourly_members_scenario(
        self, service: SyncService, fetch_client, clock: FakeClock
    ) -> None:
        """上次运行 T，间隔 60 分钟：T+59 不运行，T+61 运行."""
        fetch_client.records[Resource.CORPORATION_MEMBERS] = make_members(2)
        scheduler = service.scheduler
        await scheduler.schedule_process(_config())
        await scheduler.run_process_now(
            "members", ProcessType.MEMBERS, CORPORATION_ID, "token"
        )
        assert scheduler.get_next_run_time("members") == T0 + timedelta(minutes=60)

        assert await scheduler.tick(T0 + timedelta(minutes=59)) == []

        clock.advance(61)
        assert await scheduler.tick() == ["members"]
        await scheduler.wait_idle()

        assert len(service.tracker.get_sync_history("members")) == 2
        assert scheduler.get_next_run_time("members") == T0 + timedelta(minutes=121)

    async def test_never_run_process_waits_one_interval(
        self, service: SyncService
    ) -> None:
        """从未运行过的进程在调度一个间隔后到期."""
        scheduler = service.scheduler
        await scheduler.schedule_process(_config())

        assert await scheduler.tick(T0 + timedelta(minutes=59)) == []
        assert await scheduler.tick(T0 + timedelta(minutes=60)) == ["members"]
        await scheduler.wait_idle()

    async def test_disabled_process_is_never_dispatched(
        self, service: SyncService, clock: FakeClock
    ) -> None:
        """停用的进程永远不会被派发."""
        scheduler = service.scheduler
        await scheduler.schedule_process(_config(enabled=False))

        assert scheduler.get_next_run_time("members") is None
        assert await scheduler.tick(T0 + timedelta(days=30)) == []

        clock.advance(100)
        await scheduler.toggle_process("members", True)
        assert scheduler.get_next_run_time("members") == clock.now + timedelta(
            minutes=60
        )

    async def test_running_process_is_not_dispatched(
        self, service: SyncService
    ) -> None:
        scheduler = service.scheduler
        await scheduler.schedule_process(_config())
        await service.tracker.start_sync("members")

        assert await scheduler.tick(T0 + timedelta(hours=2)) == []

    async def test_repeated_tick_does_not_double_dispatch(
        self, service: SyncService
    ) -> None:
        """派发后尚未开始运行时，下一次 tick 不会重复派发."""
        scheduler = service.scheduler
        await scheduler.schedule_process(_config())
        due = T0 + timedelta(hours=2)

        assert await scheduler.tick(due) == ["members"]
        assert await scheduler.tick(due) == []
        await scheduler.wait_idle()

    async def test_next_run_recomputed_after_failure(
        self, service: SyncService, fetch_client, clock: FakeClock
    ) -> None:
        """失败后同样按上次运行时间重新计算下次运行."""
        fetch_client.errors[Resource.CORPORATION_MEMBERS] = ESIAuthError("expired")
        scheduler = service.scheduler
        await scheduler.schedule_process(_config())

        clock.advance(60)
        assert await scheduler.tick() == ["members"]
        await scheduler.wait_idle()

        assert service.tracker.get_sync_status("members").status == "error"
        assert scheduler.get_next_run_time("members") == T0 + timedelta(minutes=120)


class TestConfiguration:
    """调度配置测试."""

    async def test_interval_below_minimum_is_rejected(
        self, service: SyncService
    ) -> None:
        scheduler = service.scheduler
        with pytest.raises(IntervalTooShortError):
            await scheduler.schedule_process(_config(interval_minutes=10))

        await scheduler.schedule_process(_config())
        with pytest.raises(IntervalTooShortError):
            await scheduler.update_interval("members", 10)
        assert scheduler.get_process_config("members").interval_minutes == 60

    async def test_update_interval_recomputes_next_run(
        self, service: SyncService
    ) -> None:
        scheduler = service.scheduler
        await scheduler.schedule_process(_config())
        await scheduler.update_interval("members", 240)

        assert scheduler.get_next_run_time("members") == T0 + timedelta(minutes=240)
        status = service.tracker.get_sync_status("members")
        assert status.next_run_time == T0 + timedelta(minutes=240)

    async def test_unknown_process(self, service: SyncService) -> None:
        with pytest.raises(UnknownProcessError):
            await service.scheduler.toggle_process("nope", True)
        with pytest.raises(UnknownProcessError):
            await service.scheduler.unschedule_process("nope")

    async def test_unschedule_clears_next_run(self, service: SyncService) -> None:
        scheduler = service.scheduler
        await scheduler.schedule_process(_config())
        await scheduler.unschedule_process("members")

        assert scheduler.get_scheduled_processes() == []
        assert service.tracker.get_sync_status("members").next_run_time is None

    async def test_configs_survive_restart(
        self, service: SyncService, kv_store: MemoryKeyValueStore
    ) -> None:
        """调度配置持久化后可以恢复."""
        await service.scheduler.schedule_process(_config())
        await service.scheduler.schedule_process(
            _config("wallet", ProcessType.WALLET, 1440, enabled=False)
        )
        assert len(await kv_store.get(CONFIGS_KEY)) == 2

        restored = SyncScheduler(service, service.tracker, kv_store)
        configs = await restored.load_configs()

        assert {c.process_id for c in configs} == {"members", "wallet"}
        assert restored.get_process_config("wallet").enabled is False


class TestManualRun:
    """手动触发测试."""

    async def test_run_now_bypasses_disabled(
        self, service: SyncService, fetch_client
    ) -> None:
        fetch_client.records[Resource.CORPORATION_MEMBERS] = make_members(4)
        await service.scheduler.schedule_process(_config(enabled=False))

        result = await service.scheduler.run_process_now(
            "members", ProcessType.MEMBERS, CORPORATION_ID, "token"
        )
        assert result.items_processed == 4

    async def test_run_now_failure_raises(
        self, service: SyncService, fetch_client
    ) -> None:
        """手动同步失败时抛出 SyncFailedError."""
        fetch_client.errors[Resource.CORPORATION_ASSETS] = ESIAuthError("expired")

        with pytest.raises(SyncFailedError) as exc_info:
            await service.scheduler.run_process_now(
                "assets", ProcessType.ASSETS, CORPORATION_ID, "token"
            )

        assert exc_info.value.result.error_type == "auth"
        assert service.tracker.get_sync_status("assets").status == "error"

    async def test_run_now_when_running(self, service: SyncService) -> None:
        await service.tracker.start_sync("members")
        with pytest.raises(AlreadyRunningError):
            await service.scheduler.run_process_now(
                "members", ProcessType.MEMBERS, CORPORATION_ID, "token"
            )


class TestDispatch:
    """派发测试."""

    async def test_concurrent_syncs_are_bounded(
        self, tracker: SyncStateTracker, clock: FakeClock
    ) -> None:
        """同时运行的定时同步不超过上限."""
        runner = BlockingRunner()
        scheduler = SyncScheduler(
            runner,
            tracker,
            credential_provider=lambda _config: "token",
            default_corporation_id=CORPORATION_ID,
            min_interval_minutes=1,
            max_concurrent_syncs=3,
            clock=clock,
        )
        for i in range(5):
            await scheduler.schedule_process(_config(f"p{i}", interval_minutes=1))

        assert len(await scheduler.tick(T0 + timedelta(minutes=1))) == 5
        for _ in range(10):
            await asyncio.sleep(0)
        assert runner.peak == 3

        runner.release.set()
        await scheduler.wait_idle()
        assert sorted(runner.calls) == [f"p{i}" for i in range(5)]
        assert runner.peak == 3

    async def test_missing_credential_skips_run(
        self, tracker: SyncStateTracker, clock: FakeClock
    ) -> None:
        """没有凭证时跳过本次运行并顺延."""
        runner = BlockingRunner()
        scheduler = SyncScheduler(
            runner,
            tracker,
            default_corporation_id=CORPORATION_ID,
            min_interval_minutes=1,
            clock=clock,
        )
        await scheduler.schedule_process(_config())

        clock.advance(60)
        assert await scheduler.tick() == ["members"]
        await scheduler.wait_idle()

        assert runner.calls == []
        assert scheduler.get_next_run_time("members") == clock.now + timedelta(
            minutes=60
        )

    async def test_start_and_stop(self, service: SyncService) -> None:
        scheduler = service.scheduler
        scheduler.start()
        assert scheduler.is_running() is True

        await scheduler.stop()
        assert scheduler.is_running() is False
