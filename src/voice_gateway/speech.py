"""
Speech I/O for the voice gateway.

Recognition and synthesis are external OpenAI-compatible services:
- listen(): POST {stt_url}/v1/audio/transcriptions, bounded by a hard timeout
  that resolves to an empty transcript instead of raising
- speak(): POST {tts_url}/v1/audio/speech; when that fails, a local
  synthesizer command is run, retried up to ``fallback_repeats`` times
"""

import asyncio
import shutil
import time
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from shared.config import HomeConfig, get_config
from shared.errors import SpeechTimeoutError, TransientIOError

logger = structlog.get_logger(__name__)


@dataclass
class SpeechResult:
    """How an utterance was voiced."""
    engine: str  # "primary", "local" or "none"
    audio: Optional[bytes] = None
    attempts: int = 0

    @property
    def spoken(self) -> bool:
        return self.engine != "none"


class SpeechClient:
    """Client for the STT/TTS services with a local synthesis fallback."""

    def __init__(
        self,
        stt_url: str,
        tts_url: str,
        voice: str = "default",
        local_command: str = "espeak",
        fallback_repeats: int = 2,
        listen_timeout_ms: int = 8000,
        http_timeout: float = 30.0
    ):
        self.stt_url = stt_url.rstrip("/")
        self.tts_url = tts_url.rstrip("/")
        self.voice = voice
        self.local_command = local_command
        self.fallback_repeats = max(1, fallback_repeats)
        self.listen_timeout_ms = listen_timeout_ms
        self.client = httpx.AsyncClient(timeout=http_timeout)

    @classmethod
    def from_config(cls, config: Optional[HomeConfig] = None) -> "SpeechClient":
        config = config or get_config()
        return cls(
            stt_url=config.stt_url,
            tts_url=config.tts_url,
            voice=config.tts_voice,
            local_command=config.local_tts_command,
            fallback_repeats=config.speech_fallback_repeats,
            listen_timeout_ms=config.listen_timeout_ms,
            http_timeout=config.http_timeout_seconds,
        )

    # =========================================================================
    # Recognition
    # =========================================================================

    async def listen(self, audio: bytes, timeout_ms: Optional[int] = None) -> str:
        """
        Transcribe audio, returning "" on empty input or timeout.

        Service failures other than a timeout raise TransientIOError.
        """
        if not audio:
            logger.debug("speech_listen_empty")
            return ""

        try:
            return await self._transcribe_within(audio, timeout_ms or self.listen_timeout_ms)
        except SpeechTimeoutError as e:
            logger.warning("speech_listen_timeout", detail=e.detail)
            return ""

    async def _transcribe_within(self, audio: bytes, timeout_ms: int) -> str:
        try:
            return await asyncio.wait_for(self._transcribe(audio), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise SpeechTimeoutError(detail=f"no transcript within {timeout_ms} ms")

    async def _transcribe(self, audio: bytes) -> str:
        start = time.time()
        try:
            response = await self.client.post(
                f"{self.stt_url}/v1/audio/transcriptions",
                files={'file': ('audio.wav', audio, 'audio/wav')},
                data={'model': 'whisper-1', 'language': 'en'},
            )
        except httpx.RequestError as e:
            logger.error("speech_transcribe_error", error=str(e))
            raise TransientIOError("stt", detail=str(e))

        if response.status_code != 200:
            logger.error("speech_stt_error", status=response.status_code, response=response.text[:200])
            raise TransientIOError("stt", detail=f"HTTP {response.status_code}")

        text = (response.json().get('text') or '').strip()
        logger.info(
            "speech_transcribe_complete",
            text=text[:100],
            stt_duration_ms=int((time.time() - start) * 1000)
        )
        return text

    # =========================================================================
    # Synthesis
    # =========================================================================

    async def speak(self, text: str) -> SpeechResult:
        """Synthesize ``text``; fall back to the local synthesizer on failure."""
        if not text or not text.strip():
            return SpeechResult(engine="none")

        audio = await self._synthesize(text)
        if audio is not None:
            return SpeechResult(engine="primary", audio=audio, attempts=1)

        for attempt in range(1, self.fallback_repeats + 1):
            if await self._speak_locally(text):
                logger.info("speech_local_fallback_used", attempt=attempt)
                return SpeechResult(engine="local", attempts=attempt)

        logger.error("speech_unavailable", attempts=self.fallback_repeats)
        return SpeechResult(engine="none", attempts=self.fallback_repeats)

    async def _synthesize(self, text: str) -> Optional[bytes]:
        try:
            response = await self.client.post(
                f"{self.tts_url}/v1/audio/speech",
                json={'model': 'tts-1', 'input': text, 'voice': self.voice},
            )
        except httpx.RequestError as e:
            logger.warning("speech_tts_error", error=str(e))
            return None

        if response.status_code != 200 or not response.content:
            logger.warning("speech_tts_failed", status=response.status_code)
            return None
        return response.content

    async def _speak_locally(self, text: str) -> bool:
        if shutil.which(self.local_command) is None:
            logger.warning("speech_local_command_missing", command=self.local_command)
            return False
        try:
            process = await asyncio.create_subprocess_exec(
                self.local_command,
                text,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return await process.wait() == 0
        except OSError as e:
            logger.warning("speech_local_error", command=self.local_command, error=str(e))
            return False

    async def close(self):
        await self.client.aclose()
