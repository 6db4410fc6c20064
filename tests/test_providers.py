import json

import httpx
import pytest
import respx

from callcore.errors import ClassificationTierFailure
from callcore.providers import GenerativeClient, SearchCandidate, SemanticSearchClient


SEARCH_URL = "https://search.example.com"
LLM_URL = "https://llm.example.com/v1"


class TestSemanticSearchClient:
    @pytest.mark.asyncio
    async def test_returns_candidates_best_first(self):
        with respx.mock:
            client = SemanticSearchClient(base_url=SEARCH_URL, api_key="k")
            route = respx.post(f"{SEARCH_URL}/search").mock(
                return_value=httpx.Response(200, json={"candidates": [
                    {"scenario_id": "hours", "score": 0.41},
                    {"scenario_id": "ac-down", "score": 0.89},
                ]})
            )
            result = await client.search("acme", "my AC is down")
            assert result == [SearchCandidate("ac-down", 0.89), SearchCandidate("hours", 0.41)]
            body = json.loads(route.calls[0].request.content)
            assert body == {"tenant_id": "acme", "text": "my AC is down", "top_k": 3}
            assert route.calls[0].request.headers.get("x-api-key") == "k"

    @pytest.mark.asyncio
    async def test_empty_response(self):
        with respx.mock:
            client = SemanticSearchClient(base_url=SEARCH_URL)
            respx.post(f"{SEARCH_URL}/search").mock(return_value=httpx.Response(200, json={}))
            assert await client.search("acme", "hello") == []

    @pytest.mark.asyncio
    async def test_http_error_is_tier_failure(self):
        with respx.mock:
            client = SemanticSearchClient(base_url=SEARCH_URL)
            respx.post(f"{SEARCH_URL}/search").mock(return_value=httpx.Response(502))
            with pytest.raises(ClassificationTierFailure) as exc:
                await client.search("acme", "hello")
            assert exc.value.tier == "semantic"

    @pytest.mark.asyncio
    async def test_malformed_candidate_is_tier_failure(self):
        with respx.mock:
            client = SemanticSearchClient(base_url=SEARCH_URL)
            respx.post(f"{SEARCH_URL}/search").mock(
                return_value=httpx.Response(200, json={"candidates": [{"score": 0.9}]})
            )
            with pytest.raises(ClassificationTierFailure):
                await client.search("acme", "hello")


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestGenerativeClient:
    @pytest.mark.asyncio
    async def test_parses_json_completion(self):
        with respx.mock:
            client = GenerativeClient(api_key="sk-test", base_url=LLM_URL)
            route = respx.post(f"{LLM_URL}/chat/completions").mock(
                return_value=httpx.Response(200, json=_completion(json.dumps({
                    "scenario_id": "",
                    "intent": "warranty_question",
                    "category": "GENERAL",
                    "response": "Let me have someone check your warranty.",
                    "confidence": 0.6,
                })))
            )
            parsed = await client.complete("is my unit under warranty", {"tenant_id": "acme"})
            assert parsed["intent"] == "warranty_question"
            req = route.calls[0].request
            assert req.headers.get("authorization") == "Bearer sk-test"
            body = json.loads(req.content)
            assert body["response_format"] == {"type": "json_object"}
            assert body["messages"][-1] == {"role": "user", "content": "is my unit under warranty"}

    @pytest.mark.asyncio
    async def test_non_json_content_is_tier_failure(self):
        with respx.mock:
            client = GenerativeClient(api_key="sk-test", base_url=LLM_URL)
            respx.post(f"{LLM_URL}/chat/completions").mock(
                return_value=httpx.Response(200, json=_completion("Sure, I can help!"))
            )
            with pytest.raises(ClassificationTierFailure) as exc:
                await client.complete("hi", {})
            assert exc.value.tier == "generative"

    @pytest.mark.asyncio
    async def test_json_array_is_tier_failure(self):
        with respx.mock:
            client = GenerativeClient(api_key="sk-test", base_url=LLM_URL)
            respx.post(f"{LLM_URL}/chat/completions").mock(
                return_value=httpx.Response(200, json=_completion("[1, 2]"))
            )
            with pytest.raises(ClassificationTierFailure):
                await client.complete("hi", {})

    @pytest.mark.asyncio
    async def test_rate_limit_is_tier_failure(self):
        with respx.mock:
            client = GenerativeClient(api_key="sk-test", base_url=LLM_URL)
            respx.post(f"{LLM_URL}/chat/completions").mock(return_value=httpx.Response(429))
            with pytest.raises(ClassificationTierFailure):
                await client.complete("hi", {})
