"""Tests for the generation client, structured parsing and the call pool."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.core.exceptions import ConfigurationError, GenerationError
from app.generation.client import OpenAIGenerationClient
from app.generation.parsing import extract_json, parse_structured
from app.generation.pool import GenerationPool
from app.generation.types import CallStatus, GenerationRequest
from app.schemas.generation import EntityAnnotation, RelationshipAnnotation


def _mock_async_client(MockClient, response=None, side_effect=None):
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    MockClient.return_value = mock_client
    return mock_client


# ===========================================================================
# Structured parsing
# ===========================================================================


class TestExtractJson:
    def test_plain_object(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_block(self):
        assert extract_json('```json\n{"a": [1, 2]}\n```') == {"a": [1, 2]}

    def test_prose_around_object(self):
        text = 'Here is the annotation you asked for: {"association": "places"} Hope this helps.'
        assert extract_json(text) == {"association": "places"}

    def test_array(self):
        assert extract_json("result: [1, 2, 3]") == [1, 2, 3]

    def test_garbage_raises_generation_error(self):
        with pytest.raises(GenerationError) as exc_info:
            extract_json("I cannot help with that.")
        assert exc_info.value.raw == "I cannot help with that."


class TestParseStructured:
    def test_valid_payload(self):
        parsed = parse_structured(
            '{"business_name": "Order", "description": "A purchase", "confidence": 0.9}', EntityAnnotation
        )
        assert parsed.business_name == "Order"
        assert parsed.aliases == []
        assert parsed.question is None

    def test_association_is_snake_cased(self):
        parsed = parse_structured('{"association": "Placed By"}', RelationshipAnnotation)
        assert parsed.association == "placed_by"

    def test_schema_violation_raises_generation_error(self):
        with pytest.raises(GenerationError) as exc_info:
            parse_structured('{"business_name": "Order", "description": "x", "confidence": 3}', EntityAnnotation)
        assert "EntityAnnotation" in exc_info.value.message
        assert "confidence" in exc_info.value.message

    def test_missing_field_raises_generation_error(self):
        with pytest.raises(GenerationError):
            parse_structured('{"description": "no name"}', EntityAnnotation)


# ===========================================================================
# Pool
# ===========================================================================


class TestGenerationPool:
    @pytest.mark.asyncio
    async def test_outcomes_in_input_order(self):
        async def worker(n):
            await asyncio.sleep(0.01 * (5 - n))
            return n * 10

        outcomes = await GenerationPool(max_concurrent=5).run(range(5), worker)

        assert [o.item for o in outcomes] == [0, 1, 2, 3, 4]
        assert [o.value for o in outcomes] == [0, 10, 20, 30, 40]
        assert all(o.ok for o in outcomes)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        async def worker(n):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return n

        await GenerationPool(max_concurrent=2).run(range(6), worker)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self):
        async def worker(n):
            if n == 1:
                raise GenerationError("bad output")
            return n

        outcomes = await GenerationPool(max_concurrent=3).run([0, 1, 2], worker)

        assert [o.status for o in outcomes] == [CallStatus.SUCCESS, CallStatus.FAILED, CallStatus.SUCCESS]
        assert outcomes[1].error == "bad output"

    @pytest.mark.asyncio
    async def test_timeout_is_reported_per_item(self):
        async def worker(n):
            if n == 0:
                await asyncio.sleep(1)
            return n

        outcomes = await GenerationPool(max_concurrent=2, call_timeout=0.05).run([0, 1], worker)

        assert outcomes[0].status == CallStatus.TIMEOUT
        assert outcomes[1].ok

    @pytest.mark.asyncio
    async def test_cancellation_stops_queued_calls(self):
        started = []

        async def worker(n):
            started.append(n)
            await asyncio.sleep(1)
            return n

        pool = GenerationPool(max_concurrent=1, call_timeout=None)
        task = asyncio.create_task(pool.run(range(5), worker))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.05)
        assert started == [0]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        async def worker(n):
            return n

        assert await GenerationPool().run([], worker) == []


# ===========================================================================
# OpenAI client
# ===========================================================================


@pytest.fixture
def openai_client():
    return OpenAIGenerationClient(api_key="sk-test-fake-key", model="gpt-4o-mini", timeout=5.0)


class TestOpenAIGenerationClient:
    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            OpenAIGenerationClient(api_key="")

    @pytest.mark.asyncio
    async def test_complete_success(self, openai_client):
        mock_resp = MagicMock()
        mock_resp.status_code = 200
        mock_resp.json.return_value = {
            "choices": [{"message": {"content": '{"association": "places"}'}, "finish_reason": "stop"}],
            "model": "gpt-4o-mini",
            "usage": {"prompt_tokens": 40, "completion_tokens": 12},
        }
        mock_resp.raise_for_status = MagicMock()

        with patch("app.generation.client.httpx.AsyncClient") as MockClient:
            mock_client = _mock_async_client(MockClient, response=mock_resp)
            result = await openai_client.complete(
                GenerationRequest(user_prompt="Annotate", system_prompt="You are a modeller", purpose="test")
            )

        assert result.text == '{"association": "places"}'
        assert result.input_tokens == 40
        assert result.output_tokens == 12

        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["model"] == "gpt-4o-mini"
        assert payload["messages"][0] == {"role": "system", "content": "You are a modeller"}
        assert payload["messages"][1] == {"role": "user", "content": "Annotate"}
        assert payload["response_format"] == {"type": "json_object"}
        headers = mock_client.post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer sk-test-fake-key"

    @pytest.mark.asyncio
    async def test_rate_limited(self, openai_client):
        mock_resp = MagicMock()
        mock_resp.status_code = 429
        mock_resp.text = "Rate limit reached"

        with patch("app.generation.client.httpx.AsyncClient") as MockClient:
            _mock_async_client(MockClient, response=mock_resp)
            with pytest.raises(GenerationError, match="Rate limited"):
                await openai_client.complete(GenerationRequest(user_prompt="Hi"))

    @pytest.mark.asyncio
    async def test_timeout(self, openai_client):
        with patch("app.generation.client.httpx.AsyncClient") as MockClient:
            _mock_async_client(MockClient, side_effect=httpx.ReadTimeout("read timed out"))
            with pytest.raises(GenerationError, match="timed out"):
                await openai_client.complete(GenerationRequest(user_prompt="Hi"))

    @pytest.mark.asyncio
    async def test_malformed_payload(self, openai_client):
        mock_resp = MagicMock()
        mock_resp.status_code = 200
        mock_resp.text = '{"choices": []}'
        mock_resp.json.return_value = {"choices": []}
        mock_resp.raise_for_status = MagicMock()

        with patch("app.generation.client.httpx.AsyncClient") as MockClient:
            _mock_async_client(MockClient, response=mock_resp)
            with pytest.raises(GenerationError, match="Malformed"):
                await openai_client.complete(GenerationRequest(user_prompt="Hi"))
