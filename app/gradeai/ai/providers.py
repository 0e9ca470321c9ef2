"""
Vision provider clients.

Every provider takes the prepared page images plus the analysis prompt and returns a
VisionAnalysisResult. Provider failures (missing key, HTTP error, unparsable answer)
come back as a failed result so one broken provider never sinks the others; the
consensus step decides what to do when all of them fail.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any

from app.gradeai.ai.prompts import VISION_SYSTEM_PROMPT
from app.gradeai.ai.types import PageImage, VisionAnalysisResult, empty_result

logger = logging.getLogger(__name__)

CLAUDE_MODEL = "claude-sonnet-4-20250514"
GEMINI_MODEL = "gemini-2.0-flash"
MISTRAL_MODEL = "pixtral-large-latest"
MISTRAL_BASE_URL = "https://api.mistral.ai"
MAX_OUTPUT_TOKENS = 4096

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class ProviderError(RuntimeError):
    pass


class MistralRateLimited(ProviderError):
    pass


def extract_json_object(text: str) -> dict[str, Any]:
    """First fenced ```json block, else the outermost {...} span of a model answer."""
    candidates = []
    fenced = _FENCED_JSON_RE.search(text or "")
    if fenced:
        candidates.append(fenced.group(1))
    outer = _JSON_OBJECT_RE.search(text or "")
    if outer:
        candidates.append(outer.group(0))
    if not candidates:
        raise ProviderError("Invalid response format - no JSON found")

    last_err: Exception | None = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate.strip())
        except json.JSONDecodeError as e:
            last_err = e
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ProviderError(f"Invalid JSON in model response: {last_err}")


class VisionProvider:
    name = ""

    def is_configured(self) -> bool:
        raise NotImplementedError

    def _complete(self, images: list[PageImage], prompt: str) -> str:
        raise NotImplementedError

    def analyze(self, images: list[PageImage], prompt: str) -> VisionAnalysisResult:
        started = time.monotonic()
        total_kb = sum(i.size_kb for i in images)
        logger.info("[%s] Starting vision analysis: %d pages, %.0f KB", self.name, len(images), total_kb)

        if not self.is_configured():
            logger.error("[%s] API key not configured", self.name)
            return empty_result(self.name, "API key not configured", _elapsed_ms(started), len(images))

        try:
            text = self._complete(images, prompt)
            payload = extract_json_object(text)
        except Exception as e:
            logger.exception("[%s] Vision analysis failed", self.name)
            return empty_result(self.name, str(e) or e.__class__.__name__, _elapsed_ms(started), len(images))

        result = VisionAnalysisResult.from_payload(
            self.name, payload, duration_ms=_elapsed_ms(started), pages=len(images), raw_text=text
        )
        logger.info(
            "[%s] Done in %dms: grade=%s (%s) subject=%s",
            self.name,
            result.duration_ms,
            result.grade.value or "NOT FOUND",
            result.grade.confidence,
            result.subject or "NOT FOUND",
        )
        return result


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _page_label(img: PageImage, total: int) -> str:
    return f"[Page {img.page_number} of {total}]"


@dataclass
class ClaudeVisionProvider(VisionProvider):
    api_key: str
    timeout_seconds: float = 55.0
    model: str = CLAUDE_MODEL
    name = "claude"

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _client(self):
        from anthropic import Anthropic

        return Anthropic(api_key=self.api_key, timeout=self.timeout_seconds, max_retries=1)

    def _complete(self, images: list[PageImage], prompt: str) -> str:
        content: list[dict[str, Any]] = []
        for img in images:
            content.append(
                {"type": "image", "source": {"type": "base64", "media_type": img.mime_type, "data": img.base64}}
            )
            content.append({"type": "text", "text": _page_label(img, len(images))})
        content.append({"type": "text", "text": prompt})

        message = self._client().messages.create(
            model=self.model,
            max_tokens=MAX_OUTPUT_TOKENS,
            system=VISION_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": content}],
        )
        return _first_text_block(message)

    def complete_json(
        self,
        prompt: str,
        *,
        image_base64: str | None = None,
        max_tokens: int = MAX_OUTPUT_TOKENS,
        temperature: float = 0.3,
    ) -> dict[str, Any]:
        """Single text (optionally one image) prompt whose answer must be a JSON object."""
        if not self.is_configured():
            raise ProviderError("ANTHROPIC_API_KEY not configured")
        if image_base64:
            content: Any = [
                {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": image_base64}},
                {"type": "text", "text": prompt},
            ]
        else:
            content = prompt
        from anthropic import APIError

        try:
            message = self._client().messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": content}],
            )
        except APIError as e:
            raise ProviderError(f"Claude request failed: {e}") from e
        return extract_json_object(_first_text_block(message))


def _first_text_block(message) -> str:
    for block in message.content:
        if getattr(block, "type", None) == "text":
            return block.text
    raise ProviderError("No text response from Claude")


@dataclass
class GeminiVisionProvider(VisionProvider):
    api_key: str
    timeout_seconds: float = 55.0
    model: str = GEMINI_MODEL
    name = "gemini"

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _complete(self, images: list[PageImage], prompt: str) -> str:
        import google.generativeai as genai

        genai.configure(api_key=self.api_key)
        model = genai.GenerativeModel(self.model, system_instruction=VISION_SYSTEM_PROMPT)

        parts: list[Any] = []
        for img in images:
            parts.append({"mime_type": img.mime_type, "data": base64.b64decode(img.base64)})
            parts.append(_page_label(img, len(images)))
        parts.append(prompt)

        response = model.generate_content(
            parts,
            generation_config={"temperature": 0.2, "max_output_tokens": MAX_OUTPUT_TOKENS},
            request_options={"timeout": self.timeout_seconds},
        )
        text = response.text
        if not text:
            raise ProviderError("No text response from Gemini")
        return text


@dataclass
class MistralVisionProvider(VisionProvider):
    api_key: str
    timeout_seconds: float = 55.0
    model: str = MISTRAL_MODEL
    base_url: str = MISTRAL_BASE_URL
    retries: int = 2
    name = "mistral"

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def request_json(self, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        data = json.dumps(body).encode("utf-8") if body is not None else None

        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            req = urllib.request.Request(url, data=data, method="POST" if data is not None else "GET")
            req.add_header("Authorization", f"Bearer {self.api_key}")
            req.add_header("Accept", "application/json")
            if data is not None:
                req.add_header("Content-Type", "application/json")
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
            except urllib.error.HTTPError as e:
                if e.code == 429:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = MistralRateLimited("Rate limited (429)")
                    continue
                body_text = e.read().decode("utf-8", errors="ignore")
                raise ProviderError(f"HTTP {e.code} from Mistral: {body_text[:300]}") from e
            except urllib.error.URLError as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
            try:
                return json.loads(raw.decode("utf-8"))
            except json.JSONDecodeError as e:
                raise ProviderError(f"Invalid JSON from Mistral ({path})") from e
        raise ProviderError(f"Mistral request failed after retries: {last_err}")

    def _complete(self, images: list[PageImage], prompt: str) -> str:
        content: list[dict[str, Any]] = []
        for img in images:
            content.append({"type": "image_url", "image_url": f"data:{img.mime_type};base64,{img.base64}"})
            content.append({"type": "text", "text": _page_label(img, len(images))})
        content.append({"type": "text", "text": prompt})

        data = self.request_json(
            "/v1/chat/completions",
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": VISION_SYSTEM_PROMPT},
                    {"role": "user", "content": content},
                ],
                "max_tokens": MAX_OUTPUT_TOKENS,
                "temperature": 0.2,
            },
        )
        choices = data.get("choices") or []
        text = ((choices[0] or {}).get("message") or {}).get("content") if choices else None
        if not text:
            raise ProviderError("No text response from Mistral")
        return text


def build_provider(name: str, config: dict) -> VisionProvider:
    timeout = float(config.get("VISION_PROVIDER_TIMEOUT_SECONDS") or 55.0)
    if name == "claude":
        return ClaudeVisionProvider(api_key=config.get("ANTHROPIC_API_KEY") or "", timeout_seconds=timeout)
    if name == "gemini":
        return GeminiVisionProvider(api_key=config.get("GOOGLE_API_KEY") or "", timeout_seconds=timeout)
    if name == "mistral":
        return MistralVisionProvider(api_key=config.get("MISTRAL_API_KEY") or "", timeout_seconds=timeout)
    raise ValueError(f"Unknown vision provider: {name!r}")


def enabled_providers(config: dict, names: list[str] | None = None) -> list[VisionProvider]:
    """Providers with an API key whose VISION_<NAME>_ENABLED flag is not switched off."""
    out = []
    for name in names or ["claude", "gemini", "mistral"]:
        if config.get(f"VISION_{name.upper()}_ENABLED") is False:
            continue
        provider = build_provider(name, config)
        if provider.is_configured():
            out.append(provider)
    return out
