"""
Plivo Voice Agent.

Real-time orchestration core for a telephony voice agent: caller audio is
streamed to speech recognition, finalized turns go to a language model, and
the reply is synthesized, resampled and played back on the live call.
"""

__version__ = "1.0.0"
