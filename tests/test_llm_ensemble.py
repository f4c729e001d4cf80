import asyncio
import pytest
from taskflow_engine.database.repositories import LLMCallRepository
from taskflow_engine.services.exceptions import EnsembleExhausted, ProviderFailure
from taskflow_engine.services.llm_ensemble import CorrelationKey, LLMEnsemble, parse_json_response

MESSAGES = [{"role": "user", "content": "Name this flow"}]
METADATA = {"usecase": "generator", "accountId": "acc-1"}


async def attempts_for(session_factory, correlation):
    async with session_factory() as session:
        records = await LLMCallRepository(session).get_by_correlation(correlation.key, correlation.value)
    return sorted(records, key=lambda record: record.attempt)


@pytest.mark.asyncio
async def test_falls_back_along_the_ladder(ensemble, fake_provider, session_factory):
    fake_provider.answer("model-a", ProviderFailure("model-a", "down"))
    fake_provider.answer("model-b", "this is not json")
    fake_provider.answer("model-c", {"readable_name": "Inbox digest"})
    correlation = CorrelationKey.new("generator")

    result = await ensemble.call(MESSAGES, ["model-a", "model-b", "model-c"], METADATA,
                                 max_attempts=5, correlation=correlation)

    assert result == {"readable_name": "Inbox digest"}
    assert fake_provider.models_called == ["model-a", "model-b", "model-c"]

    records = await attempts_for(session_factory, correlation)
    assert [(r.model, r.status) for r in records] == [
        ("model-a", "failed"), ("model-b", "failed"), ("model-c", "succeeded")
    ]
    assert [r.attempt for r in records] == [1, 2, 3]
    for record in records:
        assert record.call_metadata["generator"] == correlation.value
        assert record.call_metadata["usecase"] == "generator"
        assert record.account_id == "acc-1"


@pytest.mark.asyncio
async def test_single_attempt_never_leaves_first_model(ensemble, fake_provider, session_factory):
    fake_provider.answer("model-a", ProviderFailure("model-a", "down"))
    fake_provider.answer("model-b", {"ok": True})
    correlation = CorrelationKey.new("generator")

    with pytest.raises(EnsembleExhausted) as exc_info:
        await ensemble.call(MESSAGES, ["model-a", "model-b", "model-c"], METADATA,
                            max_attempts=1, correlation=correlation)

    assert fake_provider.models_called == ["model-a"]
    assert exc_info.value.attempts == 1
    assert len(exc_info.value.failures) == 1
    records = await attempts_for(session_factory, correlation)
    assert [(r.model, r.status) for r in records] == [("model-a", "failed")]


@pytest.mark.asyncio
async def test_ladder_wraps_when_attempts_exceed_models(ensemble, fake_provider):
    fake_provider.answer("model-a", ProviderFailure("model-a", "down"), {"ok": 1})
    fake_provider.answer("model-b", ProviderFailure("model-b", "down"))

    result = await ensemble.call(MESSAGES, ["model-a", "model-b"], METADATA, max_attempts=4)

    assert result == {"ok": 1}
    assert fake_provider.models_called == ["model-a", "model-b", "model-a"]


@pytest.mark.asyncio
async def test_exhaustion_reports_last_error(ensemble, fake_provider):
    with pytest.raises(EnsembleExhausted) as exc_info:
        await ensemble.call(MESSAGES, ["model-a", "model-b"], METADATA, max_attempts=3)

    assert fake_provider.models_called == ["model-a", "model-b", "model-a"]
    assert "model-a" in exc_info.value.message
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_validator_rejection_advances_the_ladder(ensemble, fake_provider):
    fake_provider.answer("model-a", {"triggers": []})
    fake_provider.answer("model-b", {"triggers": ["once|0|"]})

    result = await ensemble.call(
        MESSAGES, ["model-a", "model-b"], METADATA, max_attempts=2,
        validator=lambda result: bool(result["triggers"])
    )

    assert result == {"triggers": ["once|0|"]}


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(fake_provider, session_factory, no_backoff):
    class SlowProvider:
        async def complete(self, model, messages):
            if model == "slow":
                await asyncio.sleep(1)
            return '{"fast": true}'

    ensemble = LLMEnsemble(SlowProvider(), session_factory, backoff=no_backoff, timeout=0.05)
    result = await ensemble.call(MESSAGES, ["slow", "fast"], METADATA, max_attempts=2)
    assert result == {"fast": True}


@pytest.mark.asyncio
async def test_text_format_returns_raw_answer(ensemble, fake_provider):
    fake_provider.answer("model-a", "plain words")
    result = await ensemble.call(MESSAGES, ["model-a"], METADATA, max_attempts=1, response_format="text")
    assert result == "plain words"


@pytest.mark.asyncio
async def test_rejects_empty_ladder(ensemble):
    with pytest.raises(ValueError):
        await ensemble.call(MESSAGES, [], METADATA, max_attempts=1)
    with pytest.raises(ValueError):
        await ensemble.call(MESSAGES, ["model-a"], METADATA, max_attempts=0)


@pytest.mark.asyncio
async def test_enrichment_touches_only_matching_pair(ensemble, fake_provider, session_factory):
    fake_provider.answer("model-a", {"ok": True})
    tagged = CorrelationKey.new("generator")
    other = CorrelationKey.new("generator")

    await ensemble.call(MESSAGES, ["model-a"], METADATA, max_attempts=1, correlation=tagged)
    await ensemble.call(MESSAGES, ["model-a"], METADATA, max_attempts=1, correlation=tagged)
    await ensemble.call(MESSAGES, ["model-a"], METADATA, max_attempts=1, correlation=other)

    updated = await ensemble.update_metadata_of_llm_call("generator", tagged.value, {"flowId": "flow-1"})
    assert updated == 2

    for record in await attempts_for(session_factory, tagged):
        assert record.call_metadata["flowId"] == "flow-1"
    for record in await attempts_for(session_factory, other):
        assert "flowId" not in record.call_metadata


def test_correlation_keys_are_unique():
    assert CorrelationKey.new("generator") != CorrelationKey.new("generator")
    key = CorrelationKey("runId", "run-1")
    assert key.as_metadata() == {"runId": "run-1"}


def test_parse_json_response_tolerates_fences():
    assert parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_response('  {"a": 2} ') == {"a": 2}


@pytest.mark.asyncio
async def test_enrichment_finds_calls_tagged_only_through_metadata(ensemble, fake_provider, session_factory):
    fake_provider.answer("model-a", {"ok": True})
    for value in ("123", "123", "999"):
        await ensemble.call(MESSAGES, ["model-a"], {"usecase": "generator", "generator": value}, max_attempts=1)

    updated = await ensemble.update_metadata_of_llm_call("generator", 123, {"flowId": "flow-1"})
    assert updated == 2

    async with session_factory() as session:
        repository = LLMCallRepository(session)
        tagged = await repository.get_by_metadata("generator", "123")
        untouched = await repository.get_by_metadata("generator", "999")
    assert [record.call_metadata["flowId"] for record in tagged] == ["flow-1", "flow-1"]
    assert "flowId" not in untouched[0].call_metadata


@pytest.mark.asyncio
async def test_enrichment_by_a_pair_other_than_the_correlation(ensemble, fake_provider, session_factory):
    fake_provider.answer("model-a", {"ok": True})
    metadata = {"usecase": "task", "accountId": "acc-1", "flowId": "flow-1", "runId": "run-1"}
    await ensemble.call(MESSAGES, ["model-a"], metadata, max_attempts=1, correlation=CorrelationKey("runId", "run-1"))

    assert await ensemble.update_metadata_of_llm_call("flowId", "flow-1", {"reviewed": True}) == 1

    async with session_factory() as session:
        records = await LLMCallRepository(session).get_by_metadata("runId", "run-1")
    assert records[0].call_metadata["reviewed"] is True
