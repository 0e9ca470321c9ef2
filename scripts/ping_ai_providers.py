#!/usr/bin/env python
"""
Check that each configured vision provider accepts its API key.

Lists the provider's models (no image analysis, no tokens billed) and prints
one line per provider. Exit code 1 when any configured provider fails.

Usage:
    python scripts/ping_ai_providers.py
    python scripts/ping_ai_providers.py --provider gemini
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.gradeai.ai.providers import (
    ClaudeVisionProvider,
    GeminiVisionProvider,
    MistralVisionProvider,
    ProviderError,
    build_provider,
)
from app.gradeai.ai.types import PROVIDER_NAMES
from app.gradeai.config import load_config


def list_models(provider) -> list[str]:
    if isinstance(provider, ClaudeVisionProvider):
        from anthropic import APIError

        try:
            return [m.id for m in provider._client().models.list(limit=20).data]
        except APIError as e:
            raise ProviderError(str(e)) from e
    if isinstance(provider, GeminiVisionProvider):
        import google.generativeai as genai
        from google.api_core.exceptions import GoogleAPIError

        genai.configure(api_key=provider.api_key)
        try:
            return [m.name for m in genai.list_models()]
        except GoogleAPIError as e:
            raise ProviderError(str(e)) from e
    if isinstance(provider, MistralVisionProvider):
        data = provider.request_json("/v1/models")
        return [m.get("id", "?") for m in data.get("data") or []]
    raise ProviderError(f"Don't know how to ping {provider.name}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Ping AI vision providers")
    parser.add_argument("--provider", choices=PROVIDER_NAMES, action="append", help="Limit to one provider (repeatable)")
    args = parser.parse_args()

    load_dotenv()
    config = load_config()
    failures = 0
    for name in args.provider or PROVIDER_NAMES:
        provider = build_provider(name, config)
        if not provider.is_configured():
            print(f"{name:8s} SKIP  (no API key)")
            continue
        try:
            models = list_models(provider)
        except ProviderError as e:
            failures += 1
            print(f"{name:8s} FAIL  {e}")
            continue
        marker = "model available" if any(provider.model in m for m in models) else f"model {provider.model} not listed"
        print(f"{name:8s} OK    {len(models)} models, {marker}")

    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
