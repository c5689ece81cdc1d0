"""Voice assistant loop: listen, interpret, dispatch, speak."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from shared.errors import TransientIOError

from home_control.action_dispatcher import GENERIC_ERROR_RESPONSE
from home_control.service import CommandOutcome, HomeControlService
from voice_gateway.speech import SpeechClient, SpeechResult

logger = structlog.get_logger(__name__)

NOTHING_HEARD_RESPONSE = "I didn't catch that. Please try again."


@dataclass
class VoiceTurn:
    transcript: str
    response_text: str
    outcome: Optional[CommandOutcome] = None
    speech: Optional[SpeechResult] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.outcome.to_dict() if self.outcome else {'success': False}
        data.update({
            'transcript': self.transcript,
            'response_text': self.response_text,
            'speech_engine': self.speech.engine if self.speech else None,
        })
        return data


class VoiceAssistant:
    """One voice turn at a time against the home control service."""

    def __init__(
        self,
        service: HomeControlService,
        speech: SpeechClient,
        voice_response_enabled: bool = True
    ):
        self.service = service
        self.speech = speech
        self.voice_response_enabled = voice_response_enabled

    async def handle_audio(
        self,
        audio: bytes,
        owner: Optional[str] = None,
        timeout_ms: Optional[int] = None
    ) -> VoiceTurn:
        try:
            transcript = await self.speech.listen(audio, timeout_ms)
        except TransientIOError as e:
            logger.error("voice_turn_stt_unavailable", error=e.message, detail=e.detail)
            return await self._reply(VoiceTurn(transcript="", response_text=GENERIC_ERROR_RESPONSE))

        if not transcript:
            return await self._reply(VoiceTurn(transcript="", response_text=NOTHING_HEARD_RESPONSE))

        return await self.handle_text(transcript, owner)

    async def handle_text(self, text: str, owner: Optional[str] = None) -> VoiceTurn:
        outcome = await self.service.handle_command(text, owner)
        turn = VoiceTurn(transcript=text, response_text=outcome.response_text, outcome=outcome)
        logger.info(
            "voice_turn_handled",
            transcript=text[:100],
            success=outcome.result.success,
            reason=outcome.result.reason
        )
        return await self._reply(turn)

    async def _reply(self, turn: VoiceTurn) -> VoiceTurn:
        if self.voice_response_enabled:
            turn.speech = await self.speech.speak(turn.response_text)
        return turn
