from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

from app.gradeai.ai.consensus import merge_vision_results
from app.gradeai.ai.prompts import build_vision_prompt
from app.gradeai.ai.providers import VisionProvider, enabled_providers
from app.gradeai.ai.types import ConsensusResult, PageImage, VisionAnalysisResult, empty_result

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 55.0


class NoProvidersConfigured(RuntimeError):
    pass


def run_providers(
    providers: list[VisionProvider],
    images: list[PageImage],
    prompt: str,
    *,
    timeout: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
) -> list[VisionAnalysisResult]:
    """Run all providers in parallel; a provider that overruns the timeout counts as failed."""
    started = time.monotonic()
    pool = ThreadPoolExecutor(max_workers=len(providers), thread_name_prefix="vision")
    try:
        futures = [(p, pool.submit(p.analyze, images, prompt)) for p in providers]
        results: list[VisionAnalysisResult] = []
        for provider, future in futures:
            remaining = max(0.0, timeout - (time.monotonic() - started))
            try:
                results.append(future.result(timeout=remaining))
            except FutureTimeoutError:
                logger.warning("[%s] timed out after %.0fs", provider.name, timeout)
                results.append(
                    empty_result(provider.name, f"Timeout after {timeout:.0f}s", int(timeout * 1000), len(images))
                )
            except Exception as e:
                logger.exception("[%s] crashed", provider.name)
                results.append(
                    empty_result(provider.name, str(e), int((time.monotonic() - started) * 1000), len(images))
                )
        return results
    finally:
        # stragglers keep running in the background; their results are discarded
        pool.shutdown(wait=False, cancel_futures=True)


def analyze_test_with_multi_vision(
    images: list[PageImage],
    *,
    config: dict,
    providers: list[VisionProvider] | None = None,
    provider_names: list[str] | None = None,
    evidence_text: str | None = None,
    timeout: float | None = None,
) -> ConsensusResult:
    if not images:
        raise ValueError("No page images to analyze")

    active = providers if providers is not None else enabled_providers(config, provider_names)
    if not active:
        raise NoProvidersConfigured("No AI vision providers available. Please configure API keys.")

    per_provider_timeout = timeout or float(
        config.get("VISION_PROVIDER_TIMEOUT_SECONDS") or DEFAULT_PROVIDER_TIMEOUT_SECONDS
    )
    logger.info(
        "Multi-vision analysis: %d pages via %s (timeout %.0fs)",
        len(images),
        ", ".join(p.name for p in active),
        per_provider_timeout,
    )
    prompt = build_vision_prompt(evidence_text)
    results = run_providers(active, images, prompt, timeout=per_provider_timeout)
    return merge_vision_results(results)
