"""Tests for the inference client."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from docsorter.services.errors import (
    CapacityExceeded,
    GatewayError,
    GatewayTimeout,
    MalformedResponse,
    RetriesExhausted,
    TransientNetworkError,
)
from docsorter.services.inference_client import InferenceClient, health_payload
from conftest import chat_completion

MESSAGES = [
    {"role": "system", "content": "Extract metadata."},
    {"role": "user", "content": "INVOICE 123"},
]

_RealAsyncClient = httpx.AsyncClient


def mock_transport(handler):
    """Route the client's httpx.AsyncClient through a MockTransport."""
    def factory(**kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)
    return patch.object(httpx, "AsyncClient", side_effect=factory)


class TestPayload:
    def test_request_payload(self, inference_client):
        payload = inference_client._build_request_payload(MESSAGES)

        assert payload == {
            "model": "test-model",
            "messages": MESSAGES,
            "max_tokens": 500,
            "temperature": 0.1,
            "top_p": 1.0,
            "frequency_penalty": 0.0,
            "presence_penalty": 0.0,
        }

    def test_overrides_and_stop(self, inference_client):
        payload = inference_client._build_request_payload(
            MESSAGES, model="other", max_tokens=50, temperature=0.0, stop=["\n\n"]
        )

        assert payload["model"] == "other"
        assert payload["max_tokens"] == 50
        assert payload["temperature"] == 0.0
        assert payload["stop"] == ["\n\n"]

    def test_headers(self, inference_client):
        assert inference_client._get_headers()["Authorization"] == "Bearer test-key"
        assert "Authorization" not in InferenceClient(api_key="")._get_headers()

    def test_api_url(self, inference_client):
        assert inference_client._get_api_url() == "http://inference.test/v1/chat/completions"

    def test_curl_command_redacts_key(self, inference_client):
        curl = inference_client._generate_curl_command("http://x", {"model": "m"})

        assert "test-key" not in curl
        assert "Bearer ***" in curl

    @pytest.mark.parametrize("messages", [
        [],
        [{"role": "user"}],
        [{"role": "tool", "content": "x"}],
    ])
    def test_invalid_messages(self, inference_client, messages):
        with pytest.raises(ValueError):
            inference_client._validate_messages(messages)

    def test_format_response(self):
        formatted = InferenceClient._format_response(chat_completion({"a": 1}))

        assert json.loads(formatted["content"]) == {"a": 1}
        assert formatted["usage"] == {"prompt_tokens": 120, "completion_tokens": 40, "total_tokens": 160}
        assert formatted["model"] == "gpt-3.5-turbo"
        assert len(formatted["choices"]) == 1

    def test_format_response_without_choices(self):
        with pytest.raises(MalformedResponse):
            InferenceClient._format_response({"choices": []})


class TestRetry:
    def test_backoff_is_exponential_and_capped(self):
        client = InferenceClient(base_delay=1.0, max_delay=3.0)

        assert [client.retry_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_success(self, inference_client):
        with patch.object(inference_client, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = chat_completion({"docType": "Invoice"})

            result = await inference_client.chat(MESSAGES)

        assert json.loads(result["content"]) == {"docType": "Invoice"}
        url, payload = mock_post.await_args.args
        assert url == "http://inference.test/v1/chat/completions"
        assert payload["messages"] == MESSAGES
        assert inference_client.active_requests == 0

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, inference_client):
        with patch.object(inference_client, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = [TransientNetworkError("503"), chat_completion({"ok": True})]

            result = await inference_client.chat(MESSAGES)

        assert json.loads(result["content"]) == {"ok": True}
        assert mock_post.await_count == 2
        assert inference_client.requests_sent == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, inference_client):
        with patch.object(inference_client, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = TransientNetworkError("connection reset")

            with pytest.raises(RetriesExhausted) as exc_info:
                await inference_client.chat(MESSAGES)

        assert mock_post.await_count == 3
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientNetworkError)

    @pytest.mark.asyncio
    async def test_backoff_delays_between_attempts(self):
        client = InferenceClient(max_retries=3, base_delay=1.0, max_delay=10.0)
        with patch.object(client, "_post", new_callable=AsyncMock) as mock_post, \
                patch("docsorter.services.inference_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            mock_post.side_effect = TransientNetworkError("429")

            with pytest.raises(RetriesExhausted):
                await client.chat(MESSAGES)

        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_rejected_request_is_not_retried(self, inference_client):
        with patch.object(inference_client, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = GatewayError("Inference request rejected (401)")

            with pytest.raises(GatewayError) as exc_info:
                await inference_client.chat(MESSAGES)

        assert not isinstance(exc_info.value, RetriesExhausted)
        assert mock_post.await_count == 1

    @pytest.mark.asyncio
    async def test_malformed_response_is_not_retried(self, inference_client):
        with patch.object(inference_client, "_post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = {"choices": []}

            with pytest.raises(MalformedResponse):
                await inference_client.chat(MESSAGES)

        assert mock_post.await_count == 1

    @pytest.mark.asyncio
    async def test_per_request_timeout(self):
        client = InferenceClient(timeout=0.05, max_retries=2, base_delay=0)

        async def hang(url, payload):
            await asyncio.sleep(5)

        with patch.object(client, "_post", side_effect=hang):
            with pytest.raises(RetriesExhausted) as exc_info:
                await client.chat(MESSAGES)

        assert isinstance(exc_info.value.last_error, GatewayTimeout)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_call_over_ceiling_fails_fast(self, inference_client):
        release = asyncio.Event()

        async def held(url, payload):
            await release.wait()
            return chat_completion({"ok": True})

        with patch.object(inference_client, "_post", side_effect=held):
            tasks = [asyncio.create_task(inference_client.chat(MESSAGES)) for _ in range(4)]
            for _ in range(5):
                await asyncio.sleep(0)

            assert inference_client.active_requests == 3
            release.set()
            results = await asyncio.gather(*tasks, return_exceptions=True)

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], CapacityExceeded)
        assert inference_client.active_requests == 0

    @pytest.mark.asyncio
    async def test_bypass_waits_for_a_slot(self, inference_client):
        release = asyncio.Event()

        async def held(url, payload):
            await release.wait()
            return chat_completion({"ok": True})

        with patch.object(inference_client, "_post", side_effect=held):
            tasks = [
                asyncio.create_task(inference_client.chat(MESSAGES, bypass_concurrency=True))
                for _ in range(5)
            ]
            for _ in range(5):
                await asyncio.sleep(0)

            assert inference_client.active_requests == 3
            release.set()
            results = await asyncio.gather(*tasks)

        assert len(results) == 5


class TestTransport:
    @pytest.mark.asyncio
    async def test_post_success(self, inference_client):
        def handler(request):
            assert request.headers["Authorization"] == "Bearer test-key"
            assert json.loads(request.content)["model"] == "test-model"
            return httpx.Response(200, json=chat_completion({"ok": True}))

        with mock_transport(handler):
            result = await inference_client.chat(MESSAGES)

        assert json.loads(result["content"]) == {"ok": True}

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, inference_client):
        with mock_transport(lambda request: httpx.Response(503, text="overloaded")):
            with pytest.raises(TransientNetworkError):
                await inference_client._post(inference_client._get_api_url(), {})

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, inference_client):
        with mock_transport(lambda request: httpx.Response(429, text="slow down")):
            with pytest.raises(TransientNetworkError):
                await inference_client._post(inference_client._get_api_url(), {})

    @pytest.mark.asyncio
    async def test_auth_error_is_not_transient(self, inference_client):
        with mock_transport(lambda request: httpx.Response(401, text="bad key")):
            with pytest.raises(GatewayError) as exc_info:
                await inference_client._post(inference_client._get_api_url(), {})

        assert type(exc_info.value) is GatewayError

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, inference_client):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with mock_transport(handler):
            with pytest.raises(TransientNetworkError):
                await inference_client._post(inference_client._get_api_url(), {})

    @pytest.mark.asyncio
    async def test_transport_timeout(self, inference_client):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with mock_transport(handler):
            with pytest.raises(GatewayTimeout):
                await inference_client._post(inference_client._get_api_url(), {})

    @pytest.mark.asyncio
    async def test_non_json_body_is_malformed(self, inference_client):
        with mock_transport(lambda request: httpx.Response(200, text="<html>")):
            with pytest.raises(MalformedResponse):
                await inference_client._post(inference_client._get_api_url(), {})


class TestHealth:
    def test_health_payload(self):
        payload = health_payload()

        assert payload["status"] == "OK"
        assert "timestamp" in payload

    @pytest.mark.asyncio
    async def test_check_health(self, inference_client):
        def handler(request):
            assert request.url.path == "/v1/health"
            return httpx.Response(200, json=health_payload())

        with mock_transport(handler):
            assert await inference_client.check_health() is True

    @pytest.mark.asyncio
    async def test_check_health_failure(self, inference_client):
        with mock_transport(lambda request: httpx.Response(500)):
            assert await inference_client.check_health() is False

    @pytest.mark.asyncio
    async def test_check_health_requires_status(self, inference_client):
        with mock_transport(lambda request: httpx.Response(200, json={"ok": True})):
            assert await inference_client.check_health() is False
