"""
Error taxonomy for call sessions and capability adapters.

Only CapabilityConnectionError on the recognizer is fatal to a call session;
every other error is contained to the turn (or the message) that raised it.
"""

from typing import Optional


class VoiceAgentError(Exception):
    """Base class for all voice agent errors."""


class ConfigurationError(VoiceAgentError):
    """Configuration is missing or inconsistent."""


class CapabilityConnectionError(VoiceAgentError):
    """A capability socket failed to open or closed unexpectedly."""

    def __init__(self, capability: str, message: str):
        super().__init__(f"{capability}: {message}")
        self.capability = capability


class RateLimitedError(VoiceAgentError):
    """The language model rejected a request with HTTP 429."""

    def __init__(self, retry_after: Optional[float] = None):
        super().__init__("rate limited")
        self.retry_after = retry_after


class MalformedMessageError(VoiceAgentError):
    """A payload from the transport or a capability could not be understood."""


class TransportNotOpenError(VoiceAgentError):
    """Attempted to send on a telephony socket that is not open."""


class SynthesisError(VoiceAgentError):
    """The synthesis provider reported a failure for the current utterance."""
