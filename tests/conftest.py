import json
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from taskflow_engine.database.connection import init_db
from taskflow_engine.services.exceptions import ProviderFailure
from taskflow_engine.services.llm_ensemble import LLMEnsemble
from taskflow_engine.services.runtime import TaskflowRuntime
from taskflow_engine.utils.rate_limiter import ExponentialBackoff


class FakeProvider:
    """Scripted completion provider.

    ``script`` maps a model name to what it answers: a string, an exception
    to raise, or a list of those consumed one call at a time (the last entry
    repeats). Models missing from the script fail.
    """

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.calls = []

    def answer(self, model, *responses):
        self.script[model] = list(responses)

    async def complete(self, model, messages):
        self.calls.append((model, messages))
        response = self.script.get(model, ProviderFailure(model, "unavailable"))
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, (dict, list)):
            return json.dumps(response)
        return response

    @property
    def models_called(self):
        return [model for model, _ in self.calls]


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'taskflow.db'}", echo=False)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def no_backoff():
    return ExponentialBackoff(base_delay=0, max_delay=0)


@pytest.fixture
def ensemble(fake_provider, session_factory, no_backoff):
    return LLMEnsemble(fake_provider, session_factory, backoff=no_backoff, timeout=5)


@pytest.fixture
async def make_runtime(session_factory, fake_provider, no_backoff):
    runtimes = []

    def factory(handler=None):
        runtime = TaskflowRuntime(
            session_factory=session_factory,
            provider=fake_provider,
            handler=handler,
            backoff=no_backoff,
            timezone="UTC"
        )
        runtimes.append(runtime)
        return runtime

    yield factory

    for runtime in runtimes:
        await runtime.stop()


@pytest.fixture
def runtime(make_runtime):
    return make_runtime()
