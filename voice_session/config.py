"""
Voice Session Configuration

Configuration dataclass for the voice session service with environment
variable loading and validation.

Groups:
    - Speech-to-text (Deepgram live listen)
    - Text-to-speech (Deepgram speak)
    - Language model (OpenAI-compatible chat completions)
    - Sentence buffering and turn handling
    - Server settings
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant in a voice conversation with the user. "
    "Keep your responses conversational and concise. "
    "Do not identify yourself as any specific company or brand."
)

VALID_TURN_POLICIES = ("cancel", "sequential")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class SessionConfig:
    """
    Configuration for the voice session service.

    Defaults reproduce the reference deployment: nova-2 recognition on
    16kHz mono linear16 audio, aura-arcas-en synthesis at 24kHz, 5s link
    open timeout, 100ms reconnect delay and a 10s synthesis timeout.
    """

    # Deepgram (shared by STT and TTS)
    deepgram_api_key: Optional[str] = None

    # Speech-to-text
    stt_model: str = "nova-2"
    stt_language: str = "en-US"
    stt_sample_rate: int = 16000
    stt_channels: int = 1
    stt_encoding: str = "linear16"
    stt_connect_timeout: float = 5.0
    stt_reconnect_delay: float = 0.1
    stt_max_reconnect_attempts: int = 5
    stt_audio_backlog_chunks: int = 50

    # Text-to-speech
    tts_model: str = "aura-arcas-en"
    tts_encoding: str = "linear16"
    tts_sample_rate: int = 24000
    tts_timeout: float = 10.0

    # Language model
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Sentence buffering
    sentence_max_chars: int = 200
    sentence_soft_limit: int = 120

    # Turn handling
    turn_policy: str = "cancel"
    session_idle_timeout: float = 300.0

    # Service settings
    mock_providers: bool = False
    host: str = "0.0.0.0"
    port: int = 8787
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "SessionConfig":
        """
        Load configuration from environment variables.

        Environment variables:
            - DEEPGRAM_API_KEY: Deepgram key for STT and TTS
            - STT_MODEL / STT_LANGUAGE / STT_SAMPLE_RATE / STT_CHANNELS / STT_ENCODING
            - STT_CONNECT_TIMEOUT: Seconds to wait for the listen socket to open (default: 5.0)
            - STT_RECONNECT_DELAY: Fixed delay before an automatic reconnect (default: 0.1)
            - STT_MAX_RECONNECT_ATTEMPTS: Consecutive failures before giving up (default: 5)
            - STT_AUDIO_BACKLOG_CHUNKS: Audio chunks held while reconnecting (default: 50)
            - TTS_MODEL / TTS_ENCODING / TTS_SAMPLE_RATE
            - TTS_TIMEOUT: Per-sentence synthesis timeout (default: 10.0)
            - LLM_BASE_URL / LLM_API_KEY / LLM_MODEL / LLM_SYSTEM_PROMPT
            - SENTENCE_MAX_CHARS: Hard cap for an unpunctuated sentence (default: 200)
            - SENTENCE_SOFT_LIMIT: Length after which , ; : also end a sentence (default: 120)
            - TURN_POLICY: cancel | sequential (default: cancel)
            - SESSION_IDLE_TIMEOUT: Seconds without client frames before closing (default: 300)
            - MOCK_PROVIDERS: Use offline mock providers (default: false)
            - VOICE_SESSION_HOST / VOICE_SESSION_PORT / LOG_LEVEL

        Returns:
            SessionConfig instance with values from environment or defaults
        """
        return SessionConfig(
            deepgram_api_key=os.getenv("DEEPGRAM_API_KEY"),

            stt_model=os.getenv("STT_MODEL", "nova-2"),
            stt_language=os.getenv("STT_LANGUAGE", "en-US"),
            stt_sample_rate=int(os.getenv("STT_SAMPLE_RATE", "16000")),
            stt_channels=int(os.getenv("STT_CHANNELS", "1")),
            stt_encoding=os.getenv("STT_ENCODING", "linear16"),
            stt_connect_timeout=float(os.getenv("STT_CONNECT_TIMEOUT", "5.0")),
            stt_reconnect_delay=float(os.getenv("STT_RECONNECT_DELAY", "0.1")),
            stt_max_reconnect_attempts=int(os.getenv("STT_MAX_RECONNECT_ATTEMPTS", "5")),
            stt_audio_backlog_chunks=int(os.getenv("STT_AUDIO_BACKLOG_CHUNKS", "50")),

            tts_model=os.getenv("TTS_MODEL", "aura-arcas-en"),
            tts_encoding=os.getenv("TTS_ENCODING", "linear16"),
            tts_sample_rate=int(os.getenv("TTS_SAMPLE_RATE", "24000")),
            tts_timeout=float(os.getenv("TTS_TIMEOUT", "10.0")),

            llm_base_url=os.getenv("LLM_BASE_URL", "https://api.openai.com/v1"),
            llm_api_key=os.getenv("LLM_API_KEY"),
            llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            system_prompt=os.getenv("LLM_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),

            sentence_max_chars=int(os.getenv("SENTENCE_MAX_CHARS", "200")),
            sentence_soft_limit=int(os.getenv("SENTENCE_SOFT_LIMIT", "120")),

            turn_policy=os.getenv("TURN_POLICY", "cancel").lower(),
            session_idle_timeout=float(os.getenv("SESSION_IDLE_TIMEOUT", "300")),

            mock_providers=_env_bool("MOCK_PROVIDERS", "false"),
            host=os.getenv("VOICE_SESSION_HOST", "0.0.0.0"),
            port=int(os.getenv("VOICE_SESSION_PORT", "8787")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def __post_init__(self):
        """
        Validate configuration after initialization.

        Raises:
            ValueError: If any validation fails
        """
        if self.stt_sample_rate <= 0:
            raise ValueError(f"Invalid stt_sample_rate: {self.stt_sample_rate}. Must be positive.")
        if self.stt_channels <= 0:
            raise ValueError(f"Invalid stt_channels: {self.stt_channels}. Must be positive.")
        if self.tts_sample_rate <= 0:
            raise ValueError(f"Invalid tts_sample_rate: {self.tts_sample_rate}. Must be positive.")

        if self.stt_connect_timeout <= 0:
            raise ValueError(f"Invalid stt_connect_timeout: {self.stt_connect_timeout}. Must be positive.")
        if self.tts_timeout <= 0:
            raise ValueError(f"Invalid tts_timeout: {self.tts_timeout}. Must be positive.")
        if self.stt_reconnect_delay < 0:
            raise ValueError(f"Invalid stt_reconnect_delay: {self.stt_reconnect_delay}. Must not be negative.")
        if self.stt_max_reconnect_attempts <= 0:
            raise ValueError(
                f"Invalid stt_max_reconnect_attempts: {self.stt_max_reconnect_attempts}. Must be positive."
            )
        if self.stt_audio_backlog_chunks < 0:
            raise ValueError(
                f"Invalid stt_audio_backlog_chunks: {self.stt_audio_backlog_chunks}. Must not be negative."
            )

        if self.sentence_max_chars <= 0:
            raise ValueError(f"Invalid sentence_max_chars: {self.sentence_max_chars}. Must be positive.")
        if self.sentence_soft_limit > self.sentence_max_chars:
            logger.warning(
                f"sentence_soft_limit {self.sentence_soft_limit} exceeds sentence_max_chars "
                f"{self.sentence_max_chars}. Clamping."
            )
            self.sentence_soft_limit = self.sentence_max_chars

        if self.turn_policy not in VALID_TURN_POLICIES:
            raise ValueError(
                f"Invalid turn_policy: {self.turn_policy}. Must be one of: {list(VALID_TURN_POLICIES)}"
            )

        self.log_level = self.log_level.upper()
        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {self.log_level}. Must be one of: {list(VALID_LOG_LEVELS)}")

        if not self.mock_providers:
            if not self.deepgram_api_key:
                logger.warning("DEEPGRAM_API_KEY not set - speech recognition and synthesis will fail")
            if not self.llm_api_key:
                logger.warning("LLM_API_KEY not set - requests to the model endpoint are unauthenticated")

        logger.info(
            f"SessionConfig loaded: stt={self.stt_model}@{self.stt_sample_rate}Hz, "
            f"tts={self.tts_model}@{self.tts_sample_rate}Hz, llm={self.llm_model}, "
            f"turn_policy={self.turn_policy}, mock={self.mock_providers}"
        )
