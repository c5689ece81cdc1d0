"""
Hearth Voice Gateway

HTTP surface over the home control core: text and audio commands, direct
appliance updates, reconciliation, security controls and the backend-origin
canonical change webhook.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from prometheus_client import Counter, Histogram, generate_latest
from pydantic import BaseModel, Field
from starlette.responses import Response

from shared.config import HomeConfig, get_config
from shared.errors import NotFoundError, register_exception_handlers
from shared.logging_config import configure_logging

from home_control.service import HomeControlService
from voice_gateway.assistant import VoiceAssistant
from voice_gateway.speech import SpeechClient

logger = configure_logging("voice-gateway")

# Metrics
command_counter = Counter(
    'hearth_commands_total',
    'Handled commands by outcome',
    ['source', 'status', 'reason']
)
command_duration = Histogram(
    'hearth_command_duration_seconds',
    'Command handling duration in seconds',
    ['source'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0]
)
reconcile_counter = Counter(
    'hearth_reconciliations_total',
    'Reconciliation requests by outcome',
    ['status']
)


class CommandRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Utterance as text")
    owner: Optional[str] = Field(None, description="Owner whose rooms are addressed")
    speak: bool = Field(False, description="Also voice the response")


class ApplianceUpdateRequest(BaseModel):
    fields: Dict[str, Any] = Field(..., description="State fields to merge into the appliance")


class CanonicalChangeRequest(BaseModel):
    room_id: Optional[str] = None


def create_app(
    service: Optional[HomeControlService] = None,
    speech: Optional[SpeechClient] = None,
    config: Optional[HomeConfig] = None
) -> FastAPI:
    """Build the app; tests inject a prebuilt service and speech client."""
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting voice gateway service")
        owns_service = service is None
        if owns_service:
            config.validate_or_exit("voice-gateway")
        app.state.service = service or HomeControlService.from_config(config)
        app.state.speech = speech or SpeechClient.from_config(config)
        app.state.assistant = VoiceAssistant(
            app.state.service,
            app.state.speech,
            voice_response_enabled=config.voice_response_enabled,
        )
        await app.state.service.start()

        yield

        logger.info("Stopping voice gateway service")
        await app.state.service.close()
        await app.state.speech.close()

    app = FastAPI(
        title="Hearth Voice Gateway",
        description="Voice and HTTP control surface for the Hearth home control core",
        version="0.1.0",
        lifespan=lifespan
    )
    register_exception_handlers(app)

    @app.post("/v1/commands")
    async def run_command(body: CommandRequest, request: Request):
        """Interpret and execute a text command."""
        start = time.time()
        assistant: VoiceAssistant = request.app.state.assistant
        if body.speak:
            turn = await assistant.handle_text(body.text, body.owner)
            result = turn.to_dict()
            success, reason = turn.outcome.result.success, turn.outcome.result.reason
        else:
            outcome = await request.app.state.service.handle_command(body.text, body.owner)
            result = outcome.to_dict()
            success, reason = outcome.result.success, outcome.result.reason

        command_counter.labels(source="text", status="success" if success else "failure", reason=reason or "").inc()
        command_duration.labels(source="text").observe(time.time() - start)
        return result

    @app.post("/v1/voice")
    async def run_voice(
        request: Request,
        audio: UploadFile = File(...),
        owner: Optional[str] = Form(None),
        timeout_ms: Optional[int] = Form(None)
    ):
        """Transcribe an uploaded recording and execute it as a command."""
        start = time.time()
        data = await audio.read()
        turn = await request.app.state.assistant.handle_audio(data, owner, timeout_ms)

        success = bool(turn.outcome and turn.outcome.result.success)
        reason = turn.outcome.result.reason if turn.outcome else "no_transcript"
        command_counter.labels(source="voice", status="success" if success else "failure", reason=reason or "").inc()
        command_duration.labels(source="voice").observe(time.time() - start)
        return turn.to_dict()

    @app.get("/v1/rooms/{room_id}")
    async def get_room(room_id: str, request: Request):
        room = await request.app.state.service.store.get_room(room_id)
        return room.model_dump(mode="json")

    @app.patch("/v1/rooms/{room_id}/appliances/{appliance_id}")
    async def update_appliance(room_id: str, appliance_id: str, body: ApplianceUpdateRequest, request: Request):
        """Merge state fields into one appliance (and its canonical device)."""
        result = await request.app.state.service.update_appliance(room_id, appliance_id, body.fields)
        return result.to_dict()

    @app.post("/v1/rooms/{room_id}/sync")
    async def sync_room(room_id: str, request: Request):
        """Pull canonical device state back into the room."""
        result = await request.app.state.service.reconcile(room_id)
        reconcile_counter.labels(status="admitted" if result.admitted else "denied").inc()
        return result.to_dict()

    @app.get("/v1/security")
    async def get_security(request: Request):
        return request.app.state.service.security.get_status()

    @app.post("/v1/security/{action}")
    async def security_action(action: str, request: Request):
        """lock, unlock, away, home or cancel-auto-lock."""
        security = request.app.state.service.security
        handlers = {
            "lock": security.lock_door,
            "unlock": security.unlock_door,
            "away": security.set_away,
            "home": security.set_home,
            "cancel-auto-lock": security.cancel_auto_lock,
        }
        handler = handlers.get(action)
        if handler is None:
            raise NotFoundError("Unknown security action", detail=action)

        changed = await handler()
        return {"action": action, "changed": changed, **security.get_status()}

    @app.post("/v1/canonical-devices/{device_id}/changed", status_code=202)
    async def canonical_changed(device_id: str, request: Request, body: Optional[CanonicalChangeRequest] = None):
        """Webhook for changes made to a canonical device outside this process."""
        room_id = body.room_id if body else None
        await request.app.state.service.notify_canonical_changed(device_id, room_id)
        return {"accepted": True, "device_id": device_id}

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        service: HomeControlService = request.app.state.service
        return {
            "status": "healthy",
            "service": "voice-gateway",
            "version": "0.1.0",
            "backend": service.config.backend,
            "security_phase": service.security.phase.value,
            "subscribers": service.channel.get_subscriber_count(),
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type="text/plain")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_config().gateway_port)
