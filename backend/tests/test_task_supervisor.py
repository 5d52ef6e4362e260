"""Tests for background task supervision."""
import asyncio

from herald.services.task_supervisor import TaskSupervisor


async def test_crashed_task_is_restarted():
    runs = []

    async def flaky():
        runs.append(1)
        if len(runs) == 1:
            raise RuntimeError("boom")
        await asyncio.sleep(3600)

    supervisor = TaskSupervisor()
    supervisor.register_task("flaky", flaky)
    await asyncio.sleep(0)

    assert supervisor.restart_dead_tasks() == ["flaky"]
    await asyncio.sleep(0)
    assert len(runs) == 2
    assert supervisor.is_running("flaky")
    assert supervisor.restart_counts == {"flaky": 1}

    await supervisor.stop()
    assert supervisor.task_names == []


async def test_cancelled_task_stays_down():
    async def forever():
        await asyncio.sleep(3600)

    supervisor = TaskSupervisor()
    task = supervisor.register_task("forever", forever)
    await asyncio.sleep(0)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert supervisor.restart_dead_tasks() == []
    assert not supervisor.is_running("forever")
    await supervisor.stop()


async def test_monitor_loop_restarts_tasks():
    runs = []

    async def short_lived():
        runs.append(1)

    supervisor = TaskSupervisor()
    supervisor.register_task("short", short_lived)
    await supervisor.start_monitoring(check_interval=0.01)
    await asyncio.sleep(0.1)
    await supervisor.stop()

    assert len(runs) > 1
