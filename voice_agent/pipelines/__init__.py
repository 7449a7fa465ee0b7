"""Capability interfaces, provider adapters and per-call assembly."""

from .base import LLMComponent, STTComponent, TTSComponent
from .orchestrator import CallComponents, PipelineOrchestrator, select_tts_provider

__all__ = [
    "STTComponent",
    "LLMComponent",
    "TTSComponent",
    "CallComponents",
    "PipelineOrchestrator",
    "select_tts_provider",
]
