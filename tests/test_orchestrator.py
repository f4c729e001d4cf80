import asyncio
import pytest
from taskflow_engine.models.run import RunStatus
from taskflow_engine.services.orchestrator import RunResult
from taskflow_engine.services.task_agent import TaskAgent


async def start_run(runtime, **flow_kwargs):
    values = {"account_id": "acc-1", "user_id": "user-1", "task": "Find a restaurant", "triggers": ["event.every|x|"]}
    values.update(flow_kwargs)
    flow = await runtime.flows.create_flow(**values)
    run = await runtime.orchestrator.create_run(flow, "event.every|x|")
    runtime.orchestrator.launch(run.id)
    await runtime.orchestrator.wait_idle()
    return flow, await runtime.store.get_run(run.id)


@pytest.mark.asyncio
async def test_handler_result_completes_run(make_runtime):
    async def handler(ctx):
        node = await ctx.start_node("lookup", node_input=ctx.input)
        await ctx.set_live_status("Looking things up", node_id=node.id)
        await ctx.start_thread("lookup", node_id=node.id, data={"source": "web"})
        await ctx.complete_node(node.id, output="found it")
        return RunResult(output="Table booked", structured_output={"restaurant": "Nobu"}, reasoning="asked nobody")

    runtime = make_runtime(handler)
    _, run = await start_run(runtime)

    assert run.status == RunStatus.COMPLETED.value
    assert run.output == "Table booked"
    assert run.structured_output == {"restaurant": "Nobu"}
    assert run.reasoning == "asked nobody"
    assert run.started_at is not None and run.completed_at is not None
    assert run.working_on_node_id is None

    chart = await runtime.queries.run_chart(run.id)
    assert [(node.name, node.status, node.output) for node in chart.nodes] == [("lookup", "completed", "found it")]
    assert chart.nodes[0].live_status == "Looking things up"
    assert [thread.data for thread in chart.threads] == [{"source": "web"}]


@pytest.mark.asyncio
async def test_failure_keeps_partial_structured_output(make_runtime):
    async def handler(ctx):
        await ctx.start_node("scrape")
        await ctx.save_structured_output({"pagesScraped": 3})
        raise RuntimeError("browser crashed")

    runtime = make_runtime(handler)
    _, run = await start_run(runtime)

    assert run.status == RunStatus.ERROR.value
    assert run.error == "RuntimeError: browser crashed"
    assert run.structured_output == {"pagesScraped": 3}

    node = await runtime.store.get_node(run.working_on_node_id)
    assert node.status == RunStatus.ERROR.value
    assert node.error == "RuntimeError: browser crashed"


@pytest.mark.asyncio
async def test_ensemble_exhaustion_is_fatal_to_run(make_runtime, fake_provider):
    async def handler(ctx):
        node = await ctx.start_node("think")
        await ctx.call_llm([{"role": "user", "content": "hi"}], models=["broken"], max_attempts=2, node_id=node.id)
        return RunResult(output="unreachable")

    runtime = make_runtime(handler)
    flow, run = await start_run(runtime)

    assert run.status == RunStatus.ERROR.value
    assert run.error.startswith("All 2 LLM attempts failed")
    assert fake_provider.models_called == ["broken", "broken"]

    calls, total = await runtime.queries.llm_calls_page(flow.id, "acc-1")
    assert total == 2
    for call in calls:
        assert call.call_metadata["runId"] == run.id
        assert call.call_metadata["nodeId"] == run.working_on_node_id


@pytest.mark.asyncio
async def test_returning_nothing_without_a_question_errors(make_runtime):
    async def handler(ctx):
        return None

    runtime = make_runtime(handler)
    _, run = await start_run(runtime)

    assert run.status == RunStatus.ERROR.value
    assert "without a result" in run.error


@pytest.mark.asyncio
async def test_run_level_question_suspends_and_resumes(make_runtime):
    invocations = []

    async def handler(ctx):
        invocations.append(dict(ctx.state))
        if not ctx.state.get("asked"):
            await ctx.save_state(asked=True)
            await ctx.ask_user({"question": "Which city?"})
            return None
        conversation = await ctx.conversation()
        return RunResult(output=f"Booked in {conversation[-1]['content']}")

    runtime = make_runtime(handler)
    flow, run = await start_run(runtime)

    assert run.status == RunStatus.ASK_USER_FOR_INPUT.value
    view = await runtime.queries.active_run_status(flow.id)
    assert view.run_status == RunStatus.ASK_USER_FOR_INPUT
    assert view.input_wait["question"] == "Which city?"

    await runtime.input_waits.submit_input(run.id, view.input_wait["id"], [{"role": "user", "content": "Lisbon"}])
    await runtime.orchestrator.wait_idle()

    run = await runtime.store.get_run(run.id)
    assert run.status == RunStatus.COMPLETED.value
    assert run.output == "Booked in Lisbon"
    assert invocations == [{}, {"asked": True}]


@pytest.mark.asyncio
async def test_task_agent_asks_at_node_level_and_finishes(make_runtime, fake_provider):
    fake_provider.answer(
        "task-model",
        {"action": "ask_user", "question": "For how many people?"},
        {"action": "complete", "output": "Booked for 4", "structured_output": {"guests": 4}, "reasoning": "done"}
    )
    runtime = make_runtime(TaskAgent(models=["task-model"], max_attempts=1))
    flow, run = await start_run(runtime)

    # The run itself keeps running; its node is the one waiting
    assert run.status == RunStatus.RUNNING.value
    view = await runtime.queries.active_run_status(flow.id)
    assert view.run_status == RunStatus.ASK_USER_FOR_INPUT
    assert view.input_wait["nodeId"] == run.working_on_node_id
    assert view.input_wait["runId"] == run.id

    await runtime.input_waits.submit_input(
        run.id, view.input_wait["id"], [{"role": "user", "content": "Four"}], node_id=view.input_wait["nodeId"]
    )
    await runtime.orchestrator.wait_idle()

    run = await runtime.store.get_run(run.id)
    assert run.status == RunStatus.COMPLETED.value
    assert run.output == "Booked for 4"
    assert run.structured_output == {"guests": 4}

    second_prompt = fake_provider.calls[1][1]
    contents = [message["content"] for message in second_prompt]
    assert "For how many people?" in contents
    assert "Four" in contents

    view = await runtime.queries.active_run_status(flow.id)
    assert view.run_id is None


@pytest.mark.asyncio
async def test_terminal_run_is_not_executed_again(make_runtime):
    calls = []

    async def handler(ctx):
        calls.append(ctx.run_id)
        return RunResult(output="once")

    runtime = make_runtime(handler)
    _, run = await start_run(runtime)
    await runtime.orchestrator.execute_run(run.id)

    assert calls == [run.id]


@pytest.mark.asyncio
async def test_answer_before_handler_returns_resumes_run(make_runtime):
    asked = asyncio.Event()
    release = asyncio.Event()
    waits = []

    async def handler(ctx):
        node_id = ctx.state.get("nodeId")
        if node_id is None:
            node = await ctx.start_node("schedule")
            await ctx.save_state(nodeId=node.id)
            waits.append(await ctx.ask_user({"question": "Which day?"}, node_id=node.id))
            asked.set()
            # Still unwinding when the answer lands
            await release.wait()
            return None
        answer = (await ctx.conversation(node_id))[-1]["content"]
        await ctx.complete_node(node_id, output=answer)
        return RunResult(output=f"Scheduled for {answer}")

    runtime = make_runtime(handler)
    flow = await runtime.flows.create_flow(
        account_id="acc-1", user_id="user-1", task="Book a meeting", triggers=["event.every|x|"]
    )
    run = await runtime.orchestrator.create_run(flow, "event.every|x|")
    runtime.orchestrator.launch(run.id)

    await asyncio.wait_for(asked.wait(), timeout=2)
    await runtime.input_waits.submit_input(
        run.id, waits[0]["id"], [{"role": "user", "content": "Friday"}], node_id=waits[0]["nodeId"]
    )
    release.set()
    await runtime.orchestrator.wait_idle()

    run = await runtime.store.get_run(run.id)
    assert run.status == RunStatus.COMPLETED.value
    assert run.output == "Scheduled for Friday"
    node = await runtime.store.get_node(waits[0]["nodeId"])
    assert node.status == RunStatus.COMPLETED.value
