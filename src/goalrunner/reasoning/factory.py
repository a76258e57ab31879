"""Build the configured reasoning service."""

from __future__ import annotations

from goalrunner.config import ReasoningSettings
from goalrunner.reasoning.base import ReasoningService
from goalrunner.reasoning.http_client import HttpReasoningService
from goalrunner.reasoning.offline import OfflineReasoningService


def build_reasoning_service(settings: ReasoningSettings) -> ReasoningService:
    if settings.provider == "http":
        return HttpReasoningService(
            base_url=settings.base_url,
            model=settings.model,
            api_key=settings.api_key,
            timeout_seconds=settings.timeout_seconds,
        )
    return OfflineReasoningService()
