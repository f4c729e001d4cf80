import httpx
from typing import Dict, List, Optional, Protocol, runtime_checkable
from taskflow_engine.config.settings import settings
from taskflow_engine.config.logging import get_logger
from taskflow_engine.services.exceptions import ProviderFailure
from taskflow_engine.utils.rate_limiter import RateLimiter, RateLimitedHTTPClient


@runtime_checkable
class CompletionProvider(Protocol):
    """Anything that can turn chat messages into a completion for a named model."""

    async def complete(self, model: str, messages: List[Dict[str, str]]) -> str: ...


class OpenAICompatibleClient:
    """Chat completions against an OpenAI-compatible gateway.

    Every model of a fallback ladder is addressed through the same gateway;
    the gateway routes by model name.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        rate_limit_per_minute: Optional[int] = None
    ):
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.llm_api_key
        self.timeout = timeout or settings.llm_timeout_seconds
        self.http = RateLimitedHTTPClient(
            RateLimiter(max_calls=rate_limit_per_minute or settings.llm_rate_limit_per_minute, time_window=60.0)
        )
        self.logger = get_logger("llm.client")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(self, model: str, messages: List[Dict[str, str]]) -> str:
        payload = {"model": model, "messages": messages}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                response = await self.http.request(
                    client, "post",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers()
                )
        except httpx.HTTPStatusError as e:
            raise ProviderFailure(model, f"HTTP {e.response.status_code}: {e.response.text[:200]}")
        except httpx.HTTPError as e:
            raise ProviderFailure(model, f"{type(e).__name__}: {e}")

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderFailure(model, f"Malformed completion response: {e}")

        if not isinstance(content, str) or not content.strip():
            raise ProviderFailure(model, "Empty completion")

        self.logger.debug("Completion received", model=model, chars=len(content))
        return content
