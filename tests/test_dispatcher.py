import pytest
from taskflow_engine.models.run import RunStatus
from taskflow_engine.services.orchestrator import RunResult
from taskflow_engine.services.run_dispatcher import RunDispatcher


@pytest.mark.asyncio
async def test_dispatches_runs_left_queued(make_runtime, session_factory):
    executed = []

    async def handler(ctx):
        executed.append(ctx.run_id)
        return RunResult(output="caught up")

    runtime = make_runtime(handler)
    flow = await runtime.flows.create_flow(
        account_id="acc-1", user_id="user-1", task="Ping", triggers=["event.every|ping|"]
    )
    # Created but never launched, as after a restart
    first = await runtime.orchestrator.create_run(flow, "event.every|ping|")
    second = await runtime.orchestrator.create_run(flow, "event.every|ping|")

    dispatcher = RunDispatcher(session_factory, runtime.orchestrator, interval_seconds=60, max_concurrent=1)

    # Still inside the grace period
    assert await dispatcher.dispatch_queued_runs() == 0
    assert executed == []

    assert await dispatcher.dispatch_queued_runs(grace_seconds=0) == 2
    assert sorted(executed) == sorted([first.id, second.id])
    for run_id in (first.id, second.id):
        assert (await runtime.store.get_run(run_id)).status == RunStatus.COMPLETED.value

    # Nothing left to pick up
    assert await dispatcher.dispatch_queued_runs(grace_seconds=0) == 0
