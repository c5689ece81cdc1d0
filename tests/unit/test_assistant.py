"""
Unit tests for VoiceAssistant turns.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
sys.path.insert(0, 'src')

from shared.errors import TransientIOError
from home_control.action_dispatcher import GENERIC_ERROR_RESPONSE
from home_control.service import HomeControlService
from voice_gateway.assistant import NOTHING_HEARD_RESPONSE, VoiceAssistant
from voice_gateway.speech import SpeechResult


@pytest.fixture
def service(inventory, devices, test_config, channel):
    return HomeControlService(inventory, devices, config=test_config, channel=channel)


@pytest.fixture
def speech():
    speech = MagicMock()
    speech.listen = AsyncMock(return_value="turn off all lights")
    speech.speak = AsyncMock(return_value=SpeechResult(engine="primary", audio=b"x", attempts=1))
    return speech


class TestVoiceAssistant:
    """Tests for listen, dispatch and speak turns."""

    @pytest.mark.asyncio
    async def test_audio_turn_speaks_response(self, service, speech, inventory):
        assistant = VoiceAssistant(service, speech)

        turn = await assistant.handle_audio(b"audio")

        assert turn.transcript == "turn off all lights"
        assert turn.outcome.result.success is True
        speech.speak.assert_awaited_once_with("Turning off all lights.")
        assert turn.to_dict()['speech_engine'] == "primary"
        room = await inventory.get_room("kitchen")
        assert room.find_appliance("kitchen-light").status is False

    @pytest.mark.asyncio
    async def test_nothing_heard(self, service, speech):
        speech.listen.return_value = ""
        assistant = VoiceAssistant(service, speech)

        turn = await assistant.handle_audio(b"audio")

        assert turn.response_text == NOTHING_HEARD_RESPONSE
        assert turn.outcome is None
        assert turn.to_dict()['success'] is False

    @pytest.mark.asyncio
    async def test_stt_outage(self, service, speech):
        speech.listen.side_effect = TransientIOError("stt", "HTTP 503")
        assistant = VoiceAssistant(service, speech)

        turn = await assistant.handle_audio(b"audio")

        assert turn.response_text == GENERIC_ERROR_RESPONSE
        speech.speak.assert_awaited_once_with(GENERIC_ERROR_RESPONSE)

    @pytest.mark.asyncio
    async def test_voice_response_disabled(self, service, speech):
        assistant = VoiceAssistant(service, speech, voice_response_enabled=False)

        turn = await assistant.handle_text("who are you")

        assert turn.speech is None
        speech.speak.assert_not_awaited()
