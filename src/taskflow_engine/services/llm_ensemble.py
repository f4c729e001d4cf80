"""Ordered multi-model call ensemble with retry, fallback and attempt auditing.

One logical request is tried against an ordered model ladder. Attempt ``i``
uses ``models[i % len(models)]``: each failure advances to the next model and
the ladder wraps around when there are more attempts than models. Every
attempt is written to ``llm_calls`` tagged with the caller's metadata and a
correlation key, so calls made before the entity they belong to exists (a
flow being generated, say) can be linked to it afterwards with
``enrich``/``update_metadata_of_llm_call``.
"""
import asyncio
import json
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from taskflow_engine.clients.llm_client import CompletionProvider
from taskflow_engine.config.logging import get_logger
from taskflow_engine.config.settings import settings
from taskflow_engine.database.repositories import LLMCallRepository
from taskflow_engine.models.llm_call import LLMCallStatus
from taskflow_engine.services.exceptions import EnsembleExhausted, ProviderFailure
from taskflow_engine.utils.rate_limiter import ExponentialBackoff

logger = get_logger("llm")

JSON_FORMAT = "json"
TEXT_FORMAT = "text"

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass(frozen=True)
class CorrelationKey:
    """Unique key/value pair stamped on every attempt of a logical call."""

    key: str
    value: str

    @classmethod
    def new(cls, key: str) -> "CorrelationKey":
        return cls(key=key, value=f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}")

    def as_metadata(self) -> Dict[str, str]:
        return {self.key: self.value}


def parse_json_response(text: str) -> Any:
    """Parse a model's JSON answer, tolerating a surrounding code fence."""
    body = text.strip()
    match = _FENCE.match(body)
    if match:
        body = match.group(1)
    return json.loads(body)


class LLMEnsemble:
    def __init__(
        self,
        provider: CompletionProvider,
        session_factory: async_sessionmaker,
        backoff: Optional[ExponentialBackoff] = None,
        timeout: Optional[float] = None
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.backoff = backoff or ExponentialBackoff(
            base_delay=settings.llm_retry_base_delay,
            max_delay=settings.llm_retry_max_delay
        )
        self.timeout = timeout or settings.llm_timeout_seconds

    async def call(
        self,
        messages: List[Dict[str, str]],
        models: List[str],
        metadata: Dict[str, Any],
        max_attempts: int,
        response_format: str = JSON_FORMAT,
        validator: Optional[Callable[[Any], Any]] = None,
        correlation: Optional[CorrelationKey] = None
    ) -> Any:
        """Run one logical request down the model ladder.

        Args:
            messages: Chat messages (``role``/``content`` dicts)
            models: Ordered fallback ladder; order is used exactly as given
            metadata: Correlation metadata recorded on every attempt; should
                carry a ``usecase`` tag
            max_attempts: Total attempts across all models
            response_format: ``"json"`` to parse the answer as JSON, ``"text"``
                to return it verbatim
            validator: Optional shape check; raising ``ValueError`` or returning
                ``False`` fails the attempt
            correlation: Unique key/value pair for later enrichment; minted if
                not given

        Returns:
            The parsed (or raw) result of the first valid attempt.

        Raises:
            EnsembleExhausted: every attempt failed.
        """
        if not models:
            raise ValueError("At least one model is required")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        correlation = correlation or CorrelationKey.new("llmCallId")
        call_metadata = {**metadata, **correlation.as_metadata()}
        failures: List[ProviderFailure] = []

        for attempt in range(max_attempts):
            model = models[attempt % len(models)]
            started = time.monotonic()
            raw: Optional[str] = None
            try:
                raw = await asyncio.wait_for(self.provider.complete(model, messages), timeout=self.timeout)
                result = self._check_shape(model, raw, response_format, validator)
            except asyncio.TimeoutError:
                failure = ProviderFailure(model, f"Timed out after {self.timeout}s")
            except ProviderFailure as e:
                failure = e
            except Exception as e:
                failure = ProviderFailure(model, f"{type(e).__name__}: {e}")
            else:
                await self._record(attempt, model, call_metadata, correlation, messages,
                                   LLMCallStatus.SUCCEEDED, started, response=raw)
                if attempt > 0:
                    logger.info("LLM call succeeded after fallback", model=model, attempt=attempt + 1,
                                usecase=metadata.get("usecase"))
                return result

            failures.append(failure)
            await self._record(attempt, model, call_metadata, correlation, messages,
                               LLMCallStatus.FAILED, started, response=raw, error=failure.message)
            logger.warning("LLM attempt failed",
                           model=model,
                           attempt=attempt + 1,
                           max_attempts=max_attempts,
                           usecase=metadata.get("usecase"),
                           error=failure.message)

            if attempt + 1 < max_attempts:
                await self.backoff.wait(attempt)

        logger.error("All LLM attempts exhausted", attempts=max_attempts, models=models,
                     usecase=metadata.get("usecase"))
        raise EnsembleExhausted(max_attempts, failures)

    def _check_shape(self, model: str, raw: str, response_format: str, validator) -> Any:
        if response_format == JSON_FORMAT:
            try:
                result = parse_json_response(raw)
            except json.JSONDecodeError as e:
                raise ProviderFailure(model, f"Expected JSON: {e}")
        else:
            result = raw

        if validator is not None:
            try:
                verdict = validator(result)
            except (ValueError, TypeError, KeyError) as e:
                raise ProviderFailure(model, f"Response failed validation: {e}")
            if verdict is False:
                raise ProviderFailure(model, "Response failed validation")
        return result

    async def _record(
        self,
        attempt: int,
        model: str,
        metadata: Dict[str, Any],
        correlation: CorrelationKey,
        messages: List[Dict[str, str]],
        status: LLMCallStatus,
        started: float,
        response: Optional[str] = None,
        error: Optional[str] = None
    ) -> None:
        async with self.session_factory() as session:
            await LLMCallRepository(session).create(
                account_id=metadata.get("accountId"),
                call_metadata=metadata,
                correlation_key=correlation.key,
                correlation_value=str(correlation.value),
                usecase=metadata.get("usecase"),
                model=model,
                attempt=attempt + 1,
                status=status.value,
                error=error,
                messages=messages,
                response=response,
                duration_ms=int((time.monotonic() - started) * 1000)
            )

    async def update_metadata_of_llm_call(
        self,
        unique_key_in_metadata: str,
        unique_val_in_metadata: Any,
        metadata_to_update: Dict[str, Any]
    ) -> int:
        """Merge ``metadata_to_update`` into every call whose metadata holds the key/value pair."""
        async with self.session_factory() as session:
            updated = await LLMCallRepository(session).update_metadata(
                unique_key_in_metadata, str(unique_val_in_metadata), metadata_to_update
            )
        logger.info("LLM call metadata enriched",
                    key=unique_key_in_metadata,
                    value=str(unique_val_in_metadata),
                    updated=updated,
                    fields=list(metadata_to_update.keys()))
        return updated

    async def enrich(self, correlation: CorrelationKey, patch: Dict[str, Any]) -> int:
        return await self.update_metadata_of_llm_call(correlation.key, correlation.value, patch)
