"""
Configuration models for the Plivo voice agent.

Pydantic v2 models; every field has a default so ``AppConfig()`` describes a
runnable (if unauthenticated) service.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

SUPPORTED_TELEPHONY_RATES = (8000, 16000)
HEYPIXA_CHECKPOINTS = ("V1", "V2", "V3")

DEFAULT_SYSTEM_PROMPT = "तुम एक हिंदी असिस्टेंट हो। केवल हिंदी देवनागरी में संक्षिप्त उत्तर दो।"
DEFAULT_FALLBACK_REPLY = "माफ़ कीजिए, कृपया फिर से कहें।"


class ServerConfig(BaseModel):
    # Public host used in the webhook <Stream> URL (host[:port], no scheme)
    host: str = Field(default="localhost:3000")
    bind_host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)


class TelephonyConfig(BaseModel):
    auth_id: Optional[str] = Field(default=None)
    auth_token: Optional[str] = Field(default=None)
    inbound_sample_rate_hz: int = Field(default=8000)
    outbound_sample_rate_hz: int = Field(default=8000)
    content_type: str = Field(default="audio/x-l16")

    @field_validator("inbound_sample_rate_hz", "outbound_sample_rate_hz")
    @classmethod
    def _supported_rate(cls, value: int) -> int:
        if value not in SUPPORTED_TELEPHONY_RATES:
            raise ValueError(f"telephony sample rate must be one of {SUPPORTED_TELEPHONY_RATES}, got {value}")
        return value

    @property
    def stream_content_type(self) -> str:
        """Value of the webhook <Stream contentType=...> attribute."""
        return f"{self.content_type};rate={self.outbound_sample_rate_hz}"


class AudioConfig(BaseModel):
    resample_quality: str = Field(default="lanczos")  # lanczos | linear
    lanczos_a: int = Field(default=3)
    silence_pad_ms: int = Field(default=100)

    @field_validator("resample_quality")
    @classmethod
    def _known_quality(cls, value: str) -> str:
        value = (value or "").lower()
        if value not in ("lanczos", "linear"):
            raise ValueError(f"resample_quality must be 'lanczos' or 'linear', got {value!r}")
        return value


class TurnConfig(BaseModel):
    silence_timeout_ms: int = Field(default=500)
    interrupt_grace_ms: int = Field(default=300)


class EchoConfig(BaseModel):
    echo_window_ms: int = Field(default=4000)
    similarity_enabled: bool = Field(default=True)
    similarity_hold_ms: int = Field(default=8000)
    prefix_words: int = Field(default=3)
    min_interrupt_chars: int = Field(default=3)


class SessionConfig(BaseModel):
    history_limit: int = Field(default=20)
    connect_timeout_sec: float = Field(default=10.0)
    greeting: Optional[str] = Field(default=None)


class DeepgramConfig(BaseModel):
    api_key: Optional[str] = Field(default=None)
    base_url: str = Field(default="wss://api.deepgram.com/v1/listen")
    model: str = Field(default="nova-2")
    language: str = Field(default="hi")
    encoding: str = Field(default="linear16")
    punctuate: bool = Field(default=True)
    interim_results: bool = Field(default=True)
    endpointing_ms: int = Field(default=300)
    utterance_end_ms: int = Field(default=1000)


class LLMConfig(BaseModel):
    provider: str = Field(default="openai")  # openai | cerebras
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    max_tokens: int = Field(default=500)
    max_retries: int = Field(default=3)
    backoff_base_sec: float = Field(default=1.0)
    request_timeout_sec: float = Field(default=15.0)
    fallback_reply: str = Field(default=DEFAULT_FALLBACK_REPLY)


class OpenAIConfig(BaseModel):
    api_key: Optional[str] = Field(default=None)
    base_url: str = Field(default="https://api.openai.com/v1")
    model: str = Field(default="gpt-4.1-nano-2025-04-14")


class CerebrasConfig(BaseModel):
    api_key: Optional[str] = Field(default=None)
    base_url: str = Field(default="https://api.cerebras.ai/v1")
    model: str = Field(default="llama-3.3-70b")


class TTSConfig(BaseModel):
    provider: str = Field(default="heypixa")  # heypixa | elevenlabs
    elevenlabs_number: Optional[str] = Field(default="918035451536")
    heypixa_number: Optional[str] = Field(default="912268093678")

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = (value or "").lower()
        if value not in ("heypixa", "elevenlabs"):
            raise ValueError(f"tts.provider must be 'heypixa' or 'elevenlabs', got {value!r}")
        return value


class ElevenLabsVoiceSettings(BaseModel):
    stability: float = Field(default=0.5)
    similarity_boost: float = Field(default=0.75)
    style: float = Field(default=0.0)
    use_speaker_boost: bool = Field(default=True)


class ElevenLabsConfig(BaseModel):
    api_key: Optional[str] = Field(default=None)
    base_url: str = Field(default="wss://api.elevenlabs.io/v1/text-to-speech")
    voice_id: str = Field(default="gWIZtiCcYnvLguTazwbO")
    model_id: str = Field(default="eleven_turbo_v2_5")
    output_format: str = Field(default="pcm_16000")
    sample_rate_hz: int = Field(default=16000)
    voice_settings: ElevenLabsVoiceSettings = Field(default_factory=ElevenLabsVoiceSettings)
    chunk_length_schedule: List[int] = Field(default_factory=lambda: [50])


class HeyPixaConfig(BaseModel):
    endpoints: Dict[str, str] = Field(
        default_factory=lambda: {"V1": "wss://hindi.heypixa.ai/api/v1/ws/synthesize", "V2": "", "V3": ""}
    )
    active_checkpoint: str = Field(default="V1")
    voice: str = Field(default="neha")
    top_p: float = Field(default=0.95)
    repetition_penalty: float = Field(default=1.3)
    sample_rate_hz: int = Field(default=32000)

    @property
    def active_endpoint(self) -> Optional[str]:
        return self.endpoints.get(self.active_checkpoint) or None


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    to_file: bool = Field(default=False)
    file_path: str = Field(default="voice-agent.log")


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    telephony: TelephonyConfig = Field(default_factory=TelephonyConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    echo: EchoConfig = Field(default_factory=EchoConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    deepgram: DeepgramConfig = Field(default_factory=DeepgramConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    cerebras: CerebrasConfig = Field(default_factory=CerebrasConfig)
    tts: TTSConfig = Field(default_factory=TTSConfig)
    elevenlabs: ElevenLabsConfig = Field(default_factory=ElevenLabsConfig)
    heypixa: HeyPixaConfig = Field(default_factory=HeyPixaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
