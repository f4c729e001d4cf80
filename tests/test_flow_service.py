from datetime import datetime, timedelta
import pytest
from taskflow_engine.config.settings import settings
from taskflow_engine.models.flow import FlowStatus
from taskflow_engine.services.exceptions import (
    EnsembleExhausted, InvalidFlowStatus, InvalidTransition, InvalidTriggerFormat, NotFound
)
from taskflow_engine.services.flow_service import validate_trigger_proposal
from taskflow_engine.services.orchestrator import RunResult


async def finish(ctx):
    return RunResult(output="done")


@pytest.fixture
def ladders(monkeypatch):
    monkeypatch.setattr(settings, "generator_models", "gen-a,gen-b")
    monkeypatch.setattr(settings, "trigger_models", "trig-a,trig-b")
    monkeypatch.setattr(settings, "generator_max_attempts", 2)
    monkeypatch.setattr(settings, "trigger_max_attempts", 2)
    monkeypatch.setattr(settings, "agent_event_triggers", {"gmail": ["gmail.new_email"]})


@pytest.mark.asyncio
async def test_generate_flow_names_schedules_and_tags_calls(make_runtime, fake_provider, ladders):
    fake_provider.answer("gen-a", {"readable_name": "Morning digest", "readable_description": "Daily inbox summary"})
    fake_provider.answer("trig-a", {"triggers": ["every morning"]})
    fake_provider.answer("trig-b", {
        "triggers": ["crontab|0 9 * * *|"],
        "readableDescriptionOfTriggers": "Every day at 9:00"
    })
    runtime = make_runtime(finish)

    flow = await runtime.flows.generate_flow(
        account_id="acc-1", user_id="user-1", init_message="Summarize my inbox every morning",
        agent_codes=["gmail"], timezone_offset_seconds=7200
    )

    assert flow.readable_name == "Morning digest"
    assert flow.readable_description == "Daily inbox summary"
    assert flow.triggers == ["crontab|0 9 * * *|"]
    assert flow.status == FlowStatus.ACTIVE.value
    assert flow.flow_metadata["initMessage"] == "Summarize my inbox every morning"
    assert flow.flow_metadata["agent_codes"] == ["gmail"]
    assert flow.flow_metadata["readableDescriptionOfTriggers"] == "Every day at 9:00"
    assert runtime.scheduler.armed_triggers(flow.id) == ["crontab|0 9 * * *|"]

    assert fake_provider.models_called == ["gen-a", "trig-a", "trig-b"]
    trigger_prompt = fake_provider.calls[1][1][1]["content"]
    assert "gmail.new_email" in trigger_prompt
    assert "UTC+02:00" in trigger_prompt

    calls, total = await runtime.queries.llm_calls_page(flow.id, "acc-1")
    assert total == 3
    assert {call.status for call in calls} == {"succeeded", "failed"}
    assert len({call.call_metadata["generator"] for call in calls}) == 1
    for call in calls:
        assert call.call_metadata["flowId"] == flow.id


@pytest.mark.asyncio
async def test_generate_flow_fails_when_no_model_proposes_triggers(make_runtime, fake_provider, ladders):
    fake_provider.answer("gen-a", {"readable_name": "Digest"})
    fake_provider.answer("trig-a", {"triggers": []})
    fake_provider.answer("trig-b", {"triggers": ["hourly|x|"]})
    runtime = make_runtime(finish)

    with pytest.raises(EnsembleExhausted):
        await runtime.flows.generate_flow(account_id="acc-1", user_id="user-1", init_message="Do it")

    flows = await runtime.queries.flows_before("acc-1", datetime.utcnow() + timedelta(days=1))
    assert flows == []


def test_trigger_proposal_validation():
    assert validate_trigger_proposal({"triggers": ["once|0|", "event.every|slack.message|"]}) is True
    assert validate_trigger_proposal({"triggers": "once|0|"}) is False
    assert validate_trigger_proposal(["once|0|"]) is False
    with pytest.raises(ValueError):
        validate_trigger_proposal({"triggers": []})
    with pytest.raises(ValueError):
        validate_trigger_proposal({"triggers": ["crontab|61 * * * *|"]})


@pytest.mark.asyncio
async def test_create_flow_normalizes_and_defaults_triggers(runtime):
    flow = await runtime.flows.create_flow(
        account_id="acc-1", user_id="user-1", task="Ping", triggers=["crontab|0  9 * * 1", " event.every|ping|"]
    )
    assert flow.triggers == ["crontab|0 9 * * 1|", "event.every|ping|"]

    default = await runtime.flows.create_flow(account_id="acc-1", user_id="user-1", task="Ping", triggers=[])
    assert default.triggers == ["once|0|"]


@pytest.mark.asyncio
async def test_create_flow_rejects_invalid_trigger(runtime):
    with pytest.raises(InvalidTriggerFormat):
        await runtime.flows.create_flow(
            account_id="acc-1", user_id="user-1", task="Ping", triggers=["once|0|", "weekly|monday|"]
        )


@pytest.mark.asyncio
async def test_status_change_records_previous_status(runtime):
    flow = await runtime.flows.create_flow(
        account_id="acc-1", user_id="user-1", task="Ping", triggers=["event.every|ping|"]
    )

    paused = await runtime.flows.change_flow_status(flow.id, "acc-1", "inactive")
    assert paused.status == FlowStatus.INACTIVE.value
    assert paused.previous_status == FlowStatus.ACTIVE.value
    assert not runtime.scheduler.is_armed(flow.id)

    # Same status again is a no-op
    again = await runtime.flows.change_flow_status(flow.id, "acc-1", "inactive")
    assert again.previous_status == FlowStatus.ACTIVE.value

    resumed = await runtime.flows.change_flow_status(flow.id, "acc-1", "active")
    assert resumed.previous_status == FlowStatus.INACTIVE.value
    assert runtime.scheduler.armed_triggers(flow.id) == ["event.every|ping|"]


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["error", "paused", ""])
async def test_status_change_rejects_unsupported_status(runtime, status):
    flow = await runtime.flows.create_flow(
        account_id="acc-1", user_id="user-1", task="Ping", triggers=["event.every|ping|"]
    )
    with pytest.raises(InvalidFlowStatus) as exc_info:
        await runtime.flows.change_flow_status(flow.id, "acc-1", status)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_status_change_checks_ownership(runtime):
    flow = await runtime.flows.create_flow(
        account_id="acc-1", user_id="user-1", task="Ping", triggers=["event.every|ping|"]
    )
    with pytest.raises(NotFound):
        await runtime.flows.change_flow_status(flow.id, "acc-2", "inactive")


@pytest.mark.asyncio
async def test_archive_rules(runtime):
    flow = await runtime.flows.create_flow(
        account_id="acc-1", user_id="user-1", task="Ping", triggers=["event.every|ping|"]
    )

    with pytest.raises(InvalidTransition):
        await runtime.flows.archive_flow(flow.id, "acc-1")

    await runtime.flows.change_flow_status(flow.id, "acc-1", "inactive")
    archived = await runtime.flows.archive_flow(flow.id, "acc-1")
    assert archived.is_archived
    assert archived.status == FlowStatus.INACTIVE.value

    with pytest.raises(InvalidTransition):
        await runtime.flows.change_flow_status(flow.id, "acc-1", "active")
    assert not runtime.scheduler.is_armed(flow.id)
