import json
import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Union
import httpx
import logging

from docsorter.services.errors import (
    CapacityExceeded,
    GatewayError,
    GatewayTimeout,
    MalformedResponse,
    RetriesExhausted,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

VALID_ROLES = ("system", "user", "assistant")

# Status codes worth another attempt
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class InferenceClient:
    """
    Client for an OpenAI-compatible chat completions backend.

    Enforces a concurrency ceiling, a hard per-request timeout and
    exponential backoff between attempts.
    """

    def __init__(self, base_url: str = "https://api.openai.com/v1", api_key: str = "",
                 model: str = "gpt-3.5-turbo", timeout: float = 30.0, max_tokens: int = 500,
                 temperature: float = 0.1, max_retries: int = 3, base_delay: float = 1.0,
                 max_delay: float = 10.0, max_concurrent: int = 3, health_path: str = "/health"):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_concurrent = max(1, max_concurrent)
        self.health_path = health_path
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._active = 0
        self.requests_sent = 0

        logger.info(f"InferenceClient configured with base_url: {self.base_url}, model: {self.model}, max_concurrent: {self.max_concurrent}")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "InferenceClient":
        return cls(**config)

    @property
    def active_requests(self) -> int:
        return self._active

    def _get_api_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _generate_curl_command(self, url: str, payload: Dict[str, Any]) -> str:
        """Generate curl command equivalent of the HTTP request (API key redacted)."""
        json_payload = json.dumps(payload, indent=2)
        auth = " \\\n  -H 'Authorization: Bearer ***'" if self.api_key else ""
        return f"curl -X POST '{url}' \\\n  -H 'Content-Type: application/json'{auth} \\\n  -d '{json_payload}'"

    def retry_delay(self, attempt: int) -> float:
        """Backoff before the next attempt: base * 2^(attempt-1), capped."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    @staticmethod
    def _validate_messages(messages: List[Dict[str, str]]) -> None:
        if not messages or not isinstance(messages, list):
            raise ValueError("Messages array is required and must not be empty")
        for message in messages:
            if not message.get("role") or not message.get("content"):
                raise ValueError("Each message must have role and content properties")
            if message["role"] not in VALID_ROLES:
                raise ValueError("Message role must be system, user, or assistant")

    def _build_request_payload(self, messages: List[Dict[str, str]], model: Optional[str] = None,
                               max_tokens: Optional[int] = None, temperature: Optional[float] = None,
                               top_p: float = 1.0, frequency_penalty: float = 0.0,
                               presence_penalty: float = 0.0,
                               stop: Optional[Union[str, List[str]]] = None) -> Dict[str, Any]:
        payload = {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "top_p": top_p,
            "frequency_penalty": frequency_penalty,
            "presence_penalty": presence_penalty,
        }
        if stop:
            payload["stop"] = stop
        return payload

    @staticmethod
    def _format_response(data: Dict[str, Any]) -> Dict[str, Any]:
        """Map the wire response to {content, usage, model, choices}."""
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise MalformedResponse("Invalid API response: no choices found")

        message = choices[0].get("message") or {}
        usage = data.get("usage") or {}
        return {
            "content": message.get("content") or "",
            "usage": {
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
            },
            "model": data.get("model"),
            "choices": choices,
        }

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Single HTTP round trip. Maps transport failures onto gateway errors."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=self._get_headers())
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"Inference request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            try:
                error_body = e.response.text[:500]
            except Exception:
                error_body = "Could not read response body"
            if status in RETRYABLE_STATUS_CODES:
                raise TransientNetworkError(f"Inference HTTP error {status}: {error_body}") from e
            # 400/401/403/404 will not be fixed by retrying
            raise GatewayError(f"Inference request rejected ({status}): {error_body}") from e
        except httpx.RequestError as e:
            raise TransientNetworkError(f"Inference request failed: {e}") from e
        except ValueError as e:
            raise MalformedResponse(f"Failed to parse API response: {e}") from e

    async def _request_with_retry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self._get_api_url()
        request_id = id(payload)
        logger.debug(f"Inference request (curl equivalent):\n{self._generate_curl_command(url, payload)}")

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            start_time = time.time()
            try:
                self.requests_sent += 1
                data = await asyncio.wait_for(self._post(url, payload), timeout=self.timeout)
                response = self._format_response(data)
                latency_ms = int((time.time() - start_time) * 1000)
                logger.info(f"Inference response: model={response['model'] or payload['model']}, request_id={request_id}, latency_ms={latency_ms}, total_tokens={response['usage']['total_tokens']}")
                return response

            except asyncio.TimeoutError:
                last_error = GatewayTimeout(f"Inference request exceeded {self.timeout}s")
            except (GatewayTimeout, TransientNetworkError) as e:
                last_error = e

            logger.warning(f"Inference request failed (attempt {attempt}/{self.max_retries}): {last_error}")
            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay(attempt))

        raise RetriesExhausted(
            f"Inference request failed after {self.max_retries} attempts: {last_error}",
            attempts=self.max_retries,
            last_error=last_error,
        )

    async def chat(self, messages: List[Dict[str, str]], model: Optional[str] = None,
                   max_tokens: Optional[int] = None, temperature: Optional[float] = None,
                   top_p: float = 1.0, frequency_penalty: float = 0.0, presence_penalty: float = 0.0,
                   stop: Optional[Union[str, List[str]]] = None,
                   bypass_concurrency: bool = False) -> Dict[str, Any]:
        """
        Send one chat completion request.

        A call made while every slot is taken fails with CapacityExceeded.
        With bypass_concurrency the call waits for a slot instead, which is
        how the batch driver self-throttles at the same ceiling.

        Returns:
            {content, usage, model, choices}
        """
        self._validate_messages(messages)

        if not bypass_concurrency and self._semaphore.locked():
            raise CapacityExceeded(f"Maximum concurrent requests exceeded ({self.max_concurrent})")

        payload = self._build_request_payload(
            messages, model=model, max_tokens=max_tokens, temperature=temperature,
            top_p=top_p, frequency_penalty=frequency_penalty,
            presence_penalty=presence_penalty, stop=stop,
        )

        async with self._semaphore:
            self._active += 1
            try:
                return await self._request_with_retry(payload)
            finally:
                self._active -= 1

    async def check_health(self) -> bool:
        """Liveness probe. Expects {status, timestamp} from the backend."""
        url = f"{self.base_url}{self.health_path}"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(url, headers=self._get_headers())
                response.raise_for_status()
                data = response.json()
                reachable = isinstance(data, dict) and "status" in data
                logger.info(f"Inference backend health: status={data.get('status') if isinstance(data, dict) else None}")
                return reachable
        except Exception as e:
            logger.error(f"Inference health check failed: {e}")
            return False


def health_payload() -> Dict[str, str]:
    """Body of a liveness response."""
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}
