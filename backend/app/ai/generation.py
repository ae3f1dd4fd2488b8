from __future__ import annotations

import re

import httpx
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from app.core.settings import Settings

TITLE_MAX_CHARS = 100
DESCRIPTION_MAX_CHARS = 200

TITLE_SYSTEM_PROMPT = (
    "Your task is to generate an SEO-focused title for a YouTube video based on its transcript. "
    "Please follow these guidelines:\n"
    "- Be concise but descriptive, using relevant keywords to improve discoverability.\n"
    "- Highlight the most compelling or unique aspect of the video content.\n"
    "- Avoid jargon or overly complex language unless it directly supports searchability.\n"
    "- Use action-oriented phrasing or clear value propositions where applicable.\n"
    "- Ensure the title is 3-8 words long and no more than 100 characters.\n"
    "- ONLY return the title as plain text. Do not add quotes or any additional formatting."
)

DESCRIPTION_SYSTEM_PROMPT = (
    "Your task is to summarize the transcript of a video. Please follow these guidelines:\n"
    "- Be brief. Condense the content into a summary that captures the key points and main ideas "
    "without losing important details.\n"
    "- Avoid jargon or overly complex language unless necessary for the context.\n"
    "- Focus on the most critical information, ignoring filler, repetitive statements, or irrelevant tangents.\n"
    "- ONLY return the summary, no other text, annotations, or comments.\n"
    "- Aim for a summary that is 3-5 sentences long and no more than 200 characters."
)


class GenerationError(RuntimeError):
    pass


def normalize_title(text: str) -> str:
    """Strip quotes/markdown noise and collapse whitespace; clamp to the title column limit."""
    raw = (text or "").strip()
    # Models sometimes answer with several lines; the first non-empty one is the title.
    for line in raw.splitlines():
        if line.strip():
            raw = line
            break
    raw = raw.strip().strip("\"'`“”‘’*#").strip()
    raw = re.sub(r"^(title\s*:\s*)", "", raw, flags=re.IGNORECASE)
    raw = re.sub(r"\s+", " ", raw).strip()
    return raw[:TITLE_MAX_CHARS].rstrip()


def normalize_description(text: str) -> str:
    return re.sub(r"[ \t]+", " ", (text or "").strip())


class TextGenerator:
    """
    Gemini-backed text generation for video metadata.
    Explicitly selects api_key and passes it to the model (no implicit env fallback).
    """

    def __init__(self, settings: Settings):
        self._settings = settings

    def _effective_api_key(self) -> str:
        # Prefer a single configured key. If both are set, GOOGLE_API_KEY wins.
        key = (self._settings.google_api_key or "").strip() or (self._settings.gemini_api_key or "").strip()
        if not key:
            raise ValueError("Missing Gemini API key. Set GOOGLE_API_KEY (preferred) or GEMINI_API_KEY.")
        return key

    async def _complete(self, *, system_prompt: str, user_content: str) -> str:
        llm = ChatGoogleGenerativeAI(
            model=self._settings.gemini_model,
            api_key=self._effective_api_key(),
            temperature=float(self._settings.generation_temperature),
        )
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_content)]
        try:
            res = await llm.ainvoke(messages)
        except Exception as e:
            raise GenerationError(f"Text generation failed: {e}") from e
        content = getattr(res, "content", "") or ""
        if isinstance(content, list):
            # Multi-part responses: keep the text parts only.
            content = "".join(p if isinstance(p, str) else str((p or {}).get("text") or "") for p in content)
        return str(content).strip()

    async def generate_title(self, transcript: str) -> str:
        title = normalize_title(await self._complete(system_prompt=TITLE_SYSTEM_PROMPT, user_content=transcript))
        if not title:
            raise GenerationError("Text generation returned an empty title")
        return title

    async def generate_description(self, transcript: str) -> str:
        description = normalize_description(
            await self._complete(system_prompt=DESCRIPTION_SYSTEM_PROMPT, user_content=transcript)
        )
        if not description:
            raise GenerationError("Text generation returned an empty description")
        return description


class ImageGenerator:
    """OpenAI-style `images/generations` client (bearer auth). Returns a temporary image URL."""

    def __init__(self, settings: Settings):
        self._settings = settings

    async def generate(self, prompt: str) -> str:
        api_key = (self._settings.image_api_key or "").strip()
        if not api_key:
            raise ValueError("Missing image API key. Set IMAGE_API_KEY.")
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValueError("Prompt is required")

        url = f"{self._settings.image_api_base_url.rstrip('/')}/images/generations"
        body = {"model": self._settings.image_model, "prompt": prompt, "size": self._settings.image_size}
        try:
            async with httpx.AsyncClient(timeout=float(self._settings.image_timeout_seconds)) as client:
                res = await client.post(url, json=body, headers={"Authorization": f"Bearer {api_key}"})
                res.raise_for_status()
                data = res.json() or {}
        except httpx.HTTPError as e:
            raise GenerationError(f"Image generation failed: {e}") from e

        items = data.get("data") if isinstance(data, dict) else None
        first = items[0] if isinstance(items, list) and items else {}
        image_url = str((first or {}).get("url") or "").strip()
        if not image_url:
            raise GenerationError("Image generation returned no URL")
        return image_url
