"""FastAPI routes for placing and inspecting appointment calls."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException

from agents.errors import AssistantError
from agents.schemas import CallSession, CallState
from api.dependencies import get_capabilities, get_repository, get_twilio_cfg, get_twilio_client
from api.schemas import CallResponse, CreateCallRequest, HealthResponse
from api.twilio_routes import router as twilio_router
from config.settings import get_settings
from db.repository import CallRepository
from integrations.twilio_client import TwilioConfig, place_call
from telephony.preflight import Capabilities, can_stream

LOGGER = logging.getLogger(__name__)

router = APIRouter()
router.include_router(twilio_router)


def _to_response(call: CallSession) -> CallResponse:
    return CallResponse(
        call_id=call.id,
        state=call.state,
        retries=call.retries,
        call_sid=call.call_sid,
        last_call_status=call.last_call_status,
        proposed_time=call.proposed_time,
        final_time=call.final_time,
        failure_reason=call.failure_reason,
        transcript=call.transcript,
    )


@router.get("/health", response_model=HealthResponse)
async def health(capabilities: Capabilities = Depends(get_capabilities)) -> HealthResponse:
    settings = get_settings()
    return HealthResponse(
        media_streams=settings.twilio_enable_media_streams and can_stream(capabilities),
        missing_capabilities=capabilities.missing,
    )


@router.post("/calls", response_model=CallResponse, status_code=201)
async def create_call(
    payload: CreateCallRequest,
    x_api_key: Annotated[str | None, Header()] = None,
    repo: CallRepository = Depends(get_repository),
    twilio_client=Depends(get_twilio_client),
    cfg: TwilioConfig = Depends(get_twilio_cfg),
) -> CallResponse:
    settings = get_settings()
    if settings.calls_api_key and x_api_key != settings.calls_api_key:
        raise HTTPException(status_code=401, detail="Unauthorized")

    call = CallSession(
        id=uuid.uuid4().hex,
        user_id=payload.user_id,
        user_name=payload.user_name,
        reason=payload.reason,
        contact=payload.contact,
        extra_details=payload.extra_details,
        phone_number=payload.phone_number,
    )
    streaming = payload.streaming and settings.twilio_enable_media_streams

    try:
        await repo.create(call)
        # The Twilio REST client is synchronous.
        call_sid = await asyncio.to_thread(
            place_call,
            twilio_client,
            cfg,
            to_number=payload.phone_number,
            call_id=call.id,
            streaming=streaming,
        )
        await repo.update(call.id, {"call_sid": call_sid, "last_call_status": "queued"})
        stored = await repo.get(call.id)
    except AssistantError as exc:
        LOGGER.exception("Placing call failed: %s", exc)
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    except Exception as exc:
        LOGGER.exception("Twilio rejected call %s: %s", call.id, exc)
        await repo.update_if_active(call.id, {"state": CallState.FAILED, "failure_reason": f"Call could not be placed: {exc}"})
        raise HTTPException(status_code=502, detail="Call could not be placed.") from exc

    return _to_response(stored)


@router.get("/calls/{call_id}", response_model=CallResponse)
async def get_call(call_id: str, repo: CallRepository = Depends(get_repository)) -> CallResponse:
    try:
        call = await repo.get(call_id)
    except AssistantError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    return _to_response(call)
