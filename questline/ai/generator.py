"""Narrative content generation through an OpenAI-compatible chat endpoint (OpenRouter by default)."""

from __future__ import annotations

import json
import logging
from typing import Any, Final, Literal, Protocol

import openai
from openai import AsyncOpenAI

from questline.config import Settings
from questline.core.exceptions import ContentGenerationError

ContentKind = Literal["adventure_briefing", "welcome_message", "chapter_story", "mission_order"]

_SYSTEM_PROMPT: Final[str] = "You are the game master of a cozy household adventure. Chores are quests. Answer with a single JSON object and nothing else."

# Minimal per-kind instructions; every kind returns at least `title` and `markdown`.
_INSTRUCTIONS: Final[dict[str, str]] = {
  "adventure_briefing": "Write the opening briefing for this adventure. Keys: title, markdown, tone.",
  "welcome_message": "Welcome the player to the game in two or three sentences. Keys: title, markdown.",
  "chapter_story": "Tell the story of the finished chapter from its completed quests. Keys: title, markdown, highlights (list of strings).",
  "mission_order": "Turn this household quest into a short mission order. Keys: title, markdown, objectives (list of strings), estimated_minutes (integer).",
}


class ContentGenerator(Protocol):
  """External collaborator producing structured narrative content."""

  model: str

  async def generate_json(self, kind: ContentKind, context: dict[str, Any]) -> dict[str, Any]:
    """Return the generated object for `kind`; raise ContentGenerationError when nothing usable comes back."""
    ...


def strip_json_fences(content: str) -> str:
  """Drop a ```json fenced block wrapper if the model added one."""
  text = content.strip()
  if text.startswith("```"):
    text = text.split("\n", 1)[1] if "\n" in text else ""
    if text.rstrip().endswith("```"):
      text = text.rstrip()[:-3]
  return text.strip()


class OpenRouterContentGenerator(ContentGenerator):
  """ContentGenerator backed by the openai SDK."""

  def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
    if client is None and not settings.llm_api_key:
      raise ValueError("QUESTLINE_LLM_API_KEY is required for content generation")
    self.model = settings.llm_model
    self._client = client or AsyncOpenAI(api_key=settings.llm_api_key, base_url=settings.llm_base_url, timeout=settings.llm_timeout_seconds)

  async def generate_json(self, kind: ContentKind, context: dict[str, Any]) -> dict[str, Any]:
    logger = logging.getLogger("questline.ai.generator")
    instruction = _INSTRUCTIONS.get(kind)
    if instruction is None:
      raise ValueError(f"Unsupported content kind: {kind}")

    prompt = f"{instruction}\n\nContext:\n{json.dumps(context, ensure_ascii=False, default=str)}"
    try:
      response = await self._client.chat.completions.create(
        model=self.model,
        messages=[{"role": "system", "content": _SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
        response_format={"type": "json_object"},
      )
    except openai.OpenAIError as exc:
      logger.warning("Content generation call failed kind=%s model=%s: %s", kind, self.model, exc)
      raise ContentGenerationError(f"Content generation failed for {kind}.", details={"model": self.model}) from exc

    content = response.choices[0].message.content if response.choices else None
    if response.usage:
      logger.info("Content generated kind=%s model=%s prompt_tokens=%s completion_tokens=%s", kind, self.model, response.usage.prompt_tokens, response.usage.completion_tokens)

    try:
      parsed = json.loads(strip_json_fences(content or ""))
    except json.JSONDecodeError as exc:
      raise ContentGenerationError(f"Model returned invalid JSON for {kind}.", details={"model": self.model}) from exc
    if not isinstance(parsed, dict):
      raise ContentGenerationError(f"Model returned a non-object for {kind}.", details={"model": self.model})
    return parsed


class UnconfiguredContentGenerator(ContentGenerator):
  """Placeholder used when no LLM key is configured; jobs needing content fail and are retried."""

  model = "unconfigured"

  async def generate_json(self, kind: ContentKind, context: dict[str, Any]) -> dict[str, Any]:
    raise ContentGenerationError("Content generation is not configured (QUESTLINE_LLM_API_KEY is missing).")


def build_content_generator(settings: Settings) -> ContentGenerator:
  if not settings.llm_api_key:
    return UnconfiguredContentGenerator()
  return OpenRouterContentGenerator(settings)
