"""
Exceptions for the voice session pipeline.

Every capability error is converted to one of these at the component
boundary so the session controller can decide between a client-visible
fallback and a logged, session-local error.
"""


class VoiceSessionError(Exception):
    """Base class for all voice session errors."""
    pass


class ProviderError(VoiceSessionError):
    """
    Raised by a concrete provider when the remote capability answers with
    an error status or a payload that cannot be used.
    """

    def __init__(self, provider: str, message: str, status: int = None):
        self.provider = provider
        self.status = status
        prefix = f"{provider} error"
        if status is not None:
            prefix += f" (status {status})"
        super().__init__(f"{prefix}: {message}")


class LinkConnectError(VoiceSessionError):
    """Transcription capability unreachable, rejected the handshake or timed out."""
    pass


class LinkClosedUnexpectedly(VoiceSessionError):
    """
    Raised to the link error callback once automatic reconnection gave up.

    Carries the number of consecutive failed attempts.
    """

    def __init__(self, attempts: int, last_error: Exception = None):
        self.attempts = attempts
        self.last_error = last_error
        msg = f"Transcription link closed and {attempts} reconnect attempt(s) failed"
        if last_error is not None:
            msg += f": {last_error}"
        super().__init__(msg)


class SynthesisFailure(VoiceSessionError):
    """Speech synthesis for one sentence failed."""
    pass


class SynthesisTimeout(SynthesisFailure):
    """No audio arrived within the synthesis timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"TTS timeout - no audio received within {timeout:.1f}s")


class InferenceStreamFailure(VoiceSessionError):
    """The model stream failed to open or broke off mid-response."""
    pass


class QueueClosedError(VoiceSessionError):
    """Submission to a synthesis queue that has been closed."""
    pass
