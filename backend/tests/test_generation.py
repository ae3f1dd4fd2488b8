from __future__ import annotations

import json

import httpx
import pytest

import app.ai.generation as generation
from app.ai.generation import (
    DESCRIPTION_SYSTEM_PROMPT,
    TITLE_SYSTEM_PROMPT,
    GenerationError,
    ImageGenerator,
    TextGenerator,
    normalize_title,
)
from app.core.settings import Settings


def _settings(**env) -> Settings:
    base = {"GOOGLE_API_KEY": "g-key", "IMAGE_API_KEY": "img-key"}
    base.update(env)
    return Settings(**base)


class _FakeLLM:
    calls: list[dict] = []
    reply = "Baking Bread At Home"

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs

    async def ainvoke(self, messages):
        _FakeLLM.calls.append({"kwargs": self.kwargs, "messages": messages})

        class _Res:
            content = _FakeLLM.reply

        return _Res()


@pytest.fixture(autouse=True)
def _reset_fake_llm():
    _FakeLLM.calls = []
    _FakeLLM.reply = "Baking Bread At Home"
    yield


def test_normalize_title_strips_quotes_and_clamps() -> None:
    assert normalize_title('  "Baking   Bread At Home"  ') == "Baking Bread At Home"
    assert normalize_title("Title: Sourdough Basics\nSecond line") == "Sourdough Basics"
    assert len(normalize_title("word " * 60)) <= 100
    assert normalize_title("   ") == ""


@pytest.mark.asyncio
async def test_title_uses_fixed_prompt_and_transcript(monkeypatch) -> None:
    monkeypatch.setattr(generation, "ChatGoogleGenerativeAI", _FakeLLM)
    _FakeLLM.reply = '"Baking Bread At Home"'

    title = await TextGenerator(_settings()).generate_title("today we bake bread")

    assert title == "Baking Bread At Home"
    call = _FakeLLM.calls[0]
    assert call["kwargs"]["api_key"] == "g-key"
    assert call["messages"][0].content == TITLE_SYSTEM_PROMPT
    assert call["messages"][1].content == "today we bake bread"


@pytest.mark.asyncio
async def test_description_uses_description_prompt(monkeypatch) -> None:
    monkeypatch.setattr(generation, "ChatGoogleGenerativeAI", _FakeLLM)
    _FakeLLM.reply = "A short video about bread."

    text = await TextGenerator(_settings()).generate_description("today we bake bread")

    assert text == "A short video about bread."
    assert _FakeLLM.calls[0]["messages"][0].content == DESCRIPTION_SYSTEM_PROMPT


@pytest.mark.asyncio
async def test_empty_generation_is_an_error(monkeypatch) -> None:
    monkeypatch.setattr(generation, "ChatGoogleGenerativeAI", _FakeLLM)
    _FakeLLM.reply = "   "

    with pytest.raises(GenerationError):
        await TextGenerator(_settings()).generate_title("today we bake bread")


@pytest.mark.asyncio
async def test_gemini_key_is_used_when_google_key_missing(monkeypatch) -> None:
    monkeypatch.setattr(generation, "ChatGoogleGenerativeAI", _FakeLLM)
    settings = Settings(GEMINI_API_KEY="gem-key")
    settings.google_api_key = None

    await TextGenerator(settings).generate_title("x")

    assert _FakeLLM.calls[0]["kwargs"]["api_key"] == "gem-key"


def _patch_http(monkeypatch, handler) -> None:
    real_client = httpx.AsyncClient

    def _client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(generation.httpx, "AsyncClient", _client)


@pytest.mark.asyncio
async def test_image_generation_returns_first_url(monkeypatch) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"url": "https://images.example.test/1.png"}]})

    _patch_http(monkeypatch, handler)
    settings = _settings(IMAGE_API_BASE_URL="https://images.example.test/api/v4")

    url = await ImageGenerator(settings).generate("a loaf of bread")

    assert url == "https://images.example.test/1.png"
    assert seen["url"] == "https://images.example.test/api/v4/images/generations"
    assert seen["auth"] == "Bearer img-key"
    assert seen["body"] == {"model": "cogview-4-250304", "prompt": "a loaf of bread", "size": "1792x1024"}


@pytest.mark.asyncio
async def test_image_generation_without_url_fails(monkeypatch) -> None:
    _patch_http(monkeypatch, lambda request: httpx.Response(200, json={"data": []}))

    with pytest.raises(GenerationError):
        await ImageGenerator(_settings()).generate("a loaf of bread")


@pytest.mark.asyncio
async def test_image_generation_http_error_fails(monkeypatch) -> None:
    _patch_http(monkeypatch, lambda request: httpx.Response(500, json={"error": "boom"}))

    with pytest.raises(GenerationError):
        await ImageGenerator(_settings()).generate("a loaf of bread")
