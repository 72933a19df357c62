"""OpenAI provider implementation for recipe text and DALL-E images."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Final, cast

import httpx
import openai
from openai import AsyncOpenAI

from recipegen.ai.errors import TransientProviderError
from recipegen.ai.json_parser import parse_json_with_fallback, strip_json_fences
from recipegen.ai.providers.base import AIModel, GeneratedImage, Provider, SimpleModelResponse, StructuredModelResponse
from recipegen.config import Settings

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)


def _usage(response: Any) -> dict[str, int] | None:
  if not getattr(response, "usage", None):
    return None
  return {"prompt_tokens": response.usage.prompt_tokens, "completion_tokens": response.usage.completion_tokens, "total_tokens": response.usage.total_tokens}


class OpenAIModel(AIModel):
  """OpenAI chat and image model client."""

  def __init__(self, name: str, *, client: AsyncOpenAI, image_model: str = "dall-e-3", image_size: str = "1024x1024", image_quality: str = "hd", http_client: httpx.AsyncClient | None = None) -> None:
    self.name: str = name
    self.supports_structured_output = True
    self._client = client
    self._image_model = image_model
    self._image_size = image_size
    self._image_quality = image_quality
    self._http_client = http_client

  async def generate(self, prompt: str) -> SimpleModelResponse:
    """Generate a text response."""
    try:
      response = await self._client.chat.completions.create(model=self.name, messages=[{"role": "user", "content": prompt}])
    except _TRANSIENT_ERRORS as exc:
      raise TransientProviderError(f"OpenAI text generation failed: {exc}", provider="openai") from exc

    content = response.choices[0].message.content or ""
    logger.debug("OpenAI response:\n%s", content)
    return SimpleModelResponse(content=content, usage=_usage(response))

  async def generate_structured(self, prompt: str, schema: dict[str, Any]) -> StructuredModelResponse:
    """Generate JSON output constrained by a JSON schema."""
    schema_str = json.dumps(schema, indent=2)
    system_msg = f"You are a professional chef and nutritionist that outputs valid JSON.\nYou MUST strictly output JSON adhering to this schema:\n```json\n{schema_str}\n```\nOutput valid JSON only, no markdown formatting."

    try:
      response = await self._client.chat.completions.create(
        model=self.name,
        messages=[{"role": "system", "content": system_msg}, {"role": "user", "content": prompt}],
        response_format={"type": "json_schema", "json_schema": {"name": "recipe_batch", "schema": schema}},
      )
    except _TRANSIENT_ERRORS as exc:
      raise TransientProviderError(f"OpenAI structured generation failed: {exc}", provider="openai") from exc

    content = response.choices[0].message.content or "{}"
    logger.debug("OpenAI structured response (raw):\n%s", content)
    try:
      parsed = cast(dict[str, Any], parse_json_with_fallback(strip_json_fences(content)))
    except json.JSONDecodeError as exc:
      # Malformed JSON is usually a one-off sampling defect; let the stage retry it.
      raise TransientProviderError(f"OpenAI returned invalid JSON: {exc}", provider="openai") from exc
    return StructuredModelResponse(content=parsed, usage=_usage(response))

  async def generate_image(self, prompt: str) -> GeneratedImage:
    """Generate one image and return its bytes together with the temporary URL."""
    try:
      response = await self._client.images.generate(model=self._image_model, prompt=prompt, n=1, size=self._image_size, quality=self._image_quality)
    except _TRANSIENT_ERRORS as exc:
      raise TransientProviderError(f"OpenAI image generation failed: {exc}", provider="openai") from exc

    if not response.data:
      raise TransientProviderError("OpenAI returned no image data", provider="openai")
    image = response.data[0]
    if image.b64_json:
      return GeneratedImage(image_bytes=base64.b64decode(image.b64_json), source_url=None, revised_prompt=image.revised_prompt)
    if not image.url:
      raise TransientProviderError("OpenAI returned neither image bytes nor a URL", provider="openai")

    image_bytes = await self._download(image.url)
    return GeneratedImage(image_bytes=image_bytes, source_url=image.url, revised_prompt=image.revised_prompt)

  async def _download(self, url: str) -> bytes:
    try:
      if self._http_client is not None:
        response = await self._http_client.get(url)
      else:
        async with httpx.AsyncClient(timeout=30.0) as client:
          response = await client.get(url)
      response.raise_for_status()
    except httpx.HTTPError as exc:
      raise TransientProviderError(f"Downloading generated image failed: {exc}", provider="openai") from exc
    return response.content


class OpenAIProvider(Provider):
  """OpenAI provider."""

  _DEFAULT_MODEL: Final[str] = "gpt-4o"

  def __init__(self, settings: Settings) -> None:
    self.name: str = "openai"
    if not settings.openai_api_key:
      raise ValueError("OPENAI_API_KEY environment variable is required")
    self._settings = settings
    self._client = AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)

  def get_model(self, model: str | None = None) -> AIModel:
    """Return an OpenAI model client."""
    settings = self._settings
    return OpenAIModel(model or settings.recipe_model or self._DEFAULT_MODEL, client=self._client, image_model=settings.image_model, image_size=settings.image_size, image_quality=settings.image_quality)
