import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from api.schedules.dispatcher import ScheduleDispatcher
from api.schedules.jobs import ScheduleJobSupervisor
from api.schedules.models import SchedulePayload
from api.schedules.scheduler import ScheduleDispatchScheduler
from api.schedules.services import create_schedule
from shared.database.workflow_models import ScheduleStatus, WorkflowSchedule
import worker.tasks.schedules as worker_schedule_tasks

NOW = datetime(2026, 5, 4, 10, 30, 0, 500000, tzinfo=timezone.utc)


class RecordingQueue:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.payloads = []

    async def __call__(self, payload):
        if payload.schedule_id in self.fail_for:
            raise ConnectionError("broker unavailable")
        self.payloads.append(payload)


@pytest.mark.asyncio
async def test_dispatch_selects_due_schedules_only(db):
    overdue = await create_schedule("wf-a", cron_expression="*/15 * * * *", next_run_at=NOW - timedelta(minutes=3))
    on_time = await create_schedule("wf-b", next_run_at=NOW)
    await create_schedule("wf-c", next_run_at=NOW + timedelta(milliseconds=1))
    disabled = await create_schedule("wf-d", next_run_at=NOW - timedelta(days=1))
    await WorkflowSchedule.filter(id=disabled.id).update(status=ScheduleStatus.DISABLED)
    queue = RecordingQueue()
    dispatcher = ScheduleDispatcher(strategy="queue", queue_dispatch=queue)

    result = await dispatcher.dispatch_due(NOW)

    assert result.executed_count == 2
    assert result.failed_dispatches == []
    assert {payload.schedule_id for payload in queue.payloads} == {overdue.id, on_time.id}
    assert all(payload.now == NOW for payload in queue.payloads)

    claimed = await WorkflowSchedule.get(id=overdue.id)
    assert claimed.last_ran_at == NOW
    assert claimed.next_run_at == datetime(2026, 5, 4, 10, 45, tzinfo=timezone.utc)
    assert (await WorkflowSchedule.get(id=on_time.id)).next_run_at > NOW


@pytest.mark.asyncio
async def test_dispatch_twice_runs_each_schedule_once(db):
    await create_schedule("wf-a", cron_expression="0 * * * *", next_run_at=NOW)
    queue = RecordingQueue()
    dispatcher = ScheduleDispatcher(strategy="queue", queue_dispatch=queue)

    first, second = await asyncio.gather(dispatcher.dispatch_due(NOW), dispatcher.dispatch_due(NOW))

    assert len(queue.payloads) == 1
    assert first.executed_count + second.executed_count >= 1


@pytest.mark.asyncio
async def test_failed_handoff_does_not_stop_batch(db):
    schedules = [await create_schedule(f"wf-{index}", next_run_at=NOW - timedelta(seconds=index)) for index in range(3)]
    broken = schedules[1]
    queue = RecordingQueue(fail_for={broken.id})
    dispatcher = ScheduleDispatcher(strategy="queue", queue_dispatch=queue)

    result = await dispatcher.dispatch_due(NOW)

    assert result.executed_count == 3
    assert result.failed_dispatches == [broken.id]
    assert {payload.schedule_id for payload in queue.payloads} == {schedules[0].id, schedules[2].id}

    released = await WorkflowSchedule.get(id=broken.id)
    assert released.next_run_at == broken.next_run_at
    assert released.last_ran_at is None

    queue.fail_for.clear()
    retry = await dispatcher.dispatch_due(NOW)

    assert retry.executed_count == 1
    assert queue.payloads[-1].schedule_id == broken.id


@pytest.mark.asyncio
async def test_no_due_schedules(db):
    await create_schedule("wf-later", next_run_at=NOW + timedelta(hours=1))

    result = await ScheduleDispatcher(strategy="queue", queue_dispatch=RecordingQueue()).dispatch_due(NOW)

    assert result.executed_count == 0
    assert result.failed_dispatches == []


@pytest.mark.asyncio
async def test_queue_strategy_enqueues_taskiq_job(db, monkeypatch):
    schedule = await create_schedule("wf-queued", block_id="start", next_run_at=NOW)
    sent = []

    async def fake_kiq(payload):
        sent.append(payload)

    monkeypatch.setattr(worker_schedule_tasks.execute_schedule, "kiq", fake_kiq)

    result = await ScheduleDispatcher(strategy="queue").dispatch_due(NOW)

    assert result.executed_count == 1
    assert len(sent) == 1
    payload = SchedulePayload.from_json(sent[0])
    assert payload.schedule_id == schedule.id
    assert payload.workflow_id == "wf-queued"
    assert payload.block_id == "start"


@pytest.mark.asyncio
async def test_direct_strategy_runs_on_supervisor(db):
    await create_schedule("wf-direct-1", next_run_at=NOW)
    await create_schedule("wf-direct-2", next_run_at=NOW)
    ran = []

    async def job(payload):
        ran.append(payload.workflow_id)
        if payload.workflow_id == "wf-direct-2":
            raise RuntimeError("run exploded")
        return object()

    supervisor = ScheduleJobSupervisor(job, concurrency=2)
    dispatcher = ScheduleDispatcher(strategy="direct", supervisor=supervisor)

    result = await dispatcher.dispatch_due(NOW)
    await supervisor.join()

    assert result.executed_count == 2
    assert result.failed_dispatches == []
    assert sorted(ran) == ["wf-direct-1", "wf-direct-2"]
    assert (supervisor.completed, supervisor.failed) == (1, 1)
    await supervisor.shutdown()


@pytest.mark.asyncio
async def test_scheduler_loop_ticks_until_stopped():
    ticks = []

    class FakeDispatcher:
        strategy = "queue"

        async def dispatch_due(self, now=None):
            ticks.append(now)
            if len(ticks) == 1:
                raise RuntimeError("database hiccup")

    scheduler = ScheduleDispatchScheduler(interval_seconds=0.01, dispatcher=FakeDispatcher())

    await scheduler.start()
    await asyncio.sleep(0.1)
    assert scheduler.running
    await scheduler.stop()

    assert not scheduler.running
    assert len(ticks) >= 2


def _payload(workflow_id):
    return SchedulePayload(schedule_id=f"s-{workflow_id}", workflow_id=workflow_id, now=NOW)


@pytest.mark.asyncio
async def test_supervisor_queue_is_bounded():
    release = asyncio.Event()

    async def job(payload):
        await release.wait()
        return object()

    supervisor = ScheduleJobSupervisor(job, concurrency=1, max_pending=1)
    await supervisor.submit(_payload("wf-1"))
    await asyncio.sleep(0)
    await supervisor.submit(_payload("wf-2"))

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(supervisor.submit(_payload("wf-3")), timeout=0.05)
    assert supervisor.pending == 1

    release.set()
    await supervisor.shutdown()
    assert supervisor.completed == 2


def test_supervisor_serves_jobs_on_a_new_event_loop():
    ran = []

    async def job(payload):
        ran.append(payload.workflow_id)

    supervisor = ScheduleJobSupervisor(job, concurrency=1)

    async def submit_and_wait(workflow_id):
        await supervisor.submit(_payload(workflow_id))
        await asyncio.wait_for(supervisor.join(), timeout=1)

    first = asyncio.new_event_loop()
    first.run_until_complete(submit_and_wait("wf-first"))
    first.close()

    second = asyncio.new_event_loop()
    try:
        second.run_until_complete(submit_and_wait("wf-second"))
        second.run_until_complete(supervisor.shutdown())
    finally:
        second.close()

    assert ran == ["wf-first", "wf-second"]
