"""
Per-call component assembly.

The orchestrator turns configuration into a fresh set of capability adapters
for each call and routes synthesis to a provider based on the dialled number.
Factories are injectable so tests can swap in fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..config import AppConfig, TTSConfig
from ..errors import ConfigurationError
from ..logging_config import get_logger
from .base import LLMComponent, STTComponent, TTSComponent
from .deepgram import DeepgramSTTAdapter
from .elevenlabs import ElevenLabsTTSAdapter
from .heypixa import HeyPixaTTSAdapter
from .openai import OpenAICompatibleLLMAdapter

logger = get_logger(__name__)

TTS_ELEVENLABS = "elevenlabs"
TTS_HEYPIXA = "heypixa"


@dataclass
class CallComponents:
    stt: STTComponent
    llm: LLMComponent
    tts: TTSComponent


def normalize_number(number: Optional[str]) -> str:
    """Digits only, so '+91 80354 51536' and '918035451536' compare equal."""
    return "".join(ch for ch in (number or "") if ch.isdigit())


def select_tts_provider(tts_config: TTSConfig, called_number: Optional[str]) -> str:
    dialled = normalize_number(called_number)
    if dialled:
        if dialled == normalize_number(tts_config.elevenlabs_number):
            return TTS_ELEVENLABS
        if dialled == normalize_number(tts_config.heypixa_number):
            return TTS_HEYPIXA
    return tts_config.provider


class PipelineOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        *,
        stt_factory: Optional[Callable[[AppConfig], STTComponent]] = None,
        llm_factory: Optional[Callable[[AppConfig], LLMComponent]] = None,
        tts_factories: Optional[Dict[str, Callable[[AppConfig], TTSComponent]]] = None,
    ):
        self.config = config
        self._stt_factory = stt_factory or (
            lambda cfg: DeepgramSTTAdapter(cfg.deepgram, sample_rate_hz=cfg.telephony.inbound_sample_rate_hz)
        )
        self._llm_factory = llm_factory or OpenAICompatibleLLMAdapter.from_config
        self._tts_factories: Dict[str, Callable[[AppConfig], TTSComponent]] = {
            TTS_ELEVENLABS: lambda cfg: ElevenLabsTTSAdapter(cfg.elevenlabs),
            TTS_HEYPIXA: lambda cfg: HeyPixaTTSAdapter(cfg.heypixa),
        }
        if tts_factories:
            self._tts_factories.update(tts_factories)

    def build_stt(self) -> STTComponent:
        return self._stt_factory(self.config)

    def build_llm(self) -> LLMComponent:
        return self._llm_factory(self.config)

    def build_tts(self, called_number: Optional[str]) -> TTSComponent:
        provider = select_tts_provider(self.config.tts, called_number)
        factory = self._tts_factories.get(provider)
        if factory is None:
            raise ConfigurationError(f"No TTS adapter registered for provider: {provider}")
        return factory(self.config)

    def create_components(self, called_number: Optional[str]) -> CallComponents:
        components = CallComponents(
            stt=self.build_stt(),
            llm=self.build_llm(),
            tts=self.build_tts(called_number),
        )
        logger.info(
            "Call components assembled",
            called_number=called_number,
            tts_provider=components.tts.provider_name,
            llm_provider=getattr(components.llm, "provider_name", type(components.llm).__name__),
        )
        return components
