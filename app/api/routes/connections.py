"""Connection lifecycle and messaging routes for a tenant."""

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from app.api.deps import get_tenant_runtime
from app.api.schemas.bridge import (
    BotStateResponse,
    MergeDuplicatesResponse,
    RefreshContactsResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from app.core.tenant_context import tenant_scope
from app.domain.errors import NotConnectedError, SendError, UnresolvableIdentityError
from app.domain.models.connection import ConnectionStatusEvent
from app.domain.models.events import ContactsChangedEvent, NewMessageEvent
from app.domain.services.bot_config_service import BotSettings
from app.domain.services.tenant_registry import TenantContext

logger = logging.getLogger(__name__)

router = APIRouter()

TenantRuntime = Annotated[TenantContext, Depends(get_tenant_runtime)]


def _bot_state(bot_settings: BotSettings) -> BotStateResponse:
    return BotStateResponse(
        auto_reply_enabled=bot_settings.auto_reply_enabled,
        bot_paused=bot_settings.bot_paused,
    )


@router.get("/{tenant_id}/connection", response_model=ConnectionStatusEvent)
async def get_connection_status(context: TenantRuntime) -> ConnectionStatusEvent:
    """Get the current connection status, including any QR payload."""
    return context.status()


@router.post("/{tenant_id}/start", response_model=ConnectionStatusEvent)
async def start_connection(context: TenantRuntime) -> ConnectionStatusEvent:
    """Start the tenant's session using its stored credentials, if any."""
    try:
        return await context.start()
    except Exception as e:
        logger.error(f"Failed to start tenant {context.tenant_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to start session: {e}",
        )


@router.post("/{tenant_id}/reconnect", response_model=ConnectionStatusEvent)
async def reconnect(context: TenantRuntime) -> ConnectionStatusEvent:
    """Tear down the current session and open a new one."""
    try:
        return await context.reconnect()
    except Exception as e:
        logger.error(f"Failed to reconnect tenant {context.tenant_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to reconnect: {e}",
        )


@router.post("/{tenant_id}/disconnect", response_model=ConnectionStatusEvent)
async def disconnect(context: TenantRuntime) -> ConnectionStatusEvent:
    """Log out and forget the stored credentials."""
    return await context.disconnect()


@router.post("/{tenant_id}/pause", response_model=BotStateResponse)
async def pause_bot(context: TenantRuntime) -> BotStateResponse:
    """Stop automated replies. Messages keep being stored."""
    return _bot_state(await context.pause())


@router.post("/{tenant_id}/resume", response_model=BotStateResponse)
async def resume_bot(context: TenantRuntime) -> BotStateResponse:
    return _bot_state(await context.resume())


@router.post("/{tenant_id}/contacts/refresh", response_model=RefreshContactsResponse)
async def refresh_contacts(context: TenantRuntime) -> RefreshContactsResponse:
    """Re-resolve display names and avatars of every contact."""
    try:
        result = await context.refresh_contact_names()
    except NotConnectedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return RefreshContactsResponse(**result)


@router.post("/{tenant_id}/contacts/merge-duplicates", response_model=MergeDuplicatesResponse)
async def merge_duplicate_contacts(context: TenantRuntime) -> MergeDuplicatesResponse:
    """Merge contacts that were stored more than once for the same party."""
    contact_ids = await context.merge_duplicate_contacts()
    return MergeDuplicatesResponse(merged_groups=len(contact_ids), contact_ids=contact_ids)


@router.post(
    "/{tenant_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(request: SendMessageRequest, context: TenantRuntime) -> SendMessageResponse:
    """Send a manual message to a contact."""
    if not request.address and request.contact_id is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Either address or contact_id is required",
        )
    try:
        contact, message = await context.send_message(request.address, request.body, request.contact_id)
    except NotConnectedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except UnresolvableIdentityError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except SendError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return SendMessageResponse(contact=contact, message=message)


@router.websocket("/{tenant_id}/events")
async def tenant_events(websocket: WebSocket, tenant_id: int) -> None:
    """Push connection status, new messages and contact changes to a client.

    The current connection status is sent first. Incoming frames are read
    only to notice the client going away.
    """
    registry = getattr(websocket.app.state, "registry", None)
    context = registry.get(tenant_id) if registry is not None else None
    if context is None:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    logger.info(f"Event stream opened for tenant {tenant_id}")

    async def pump() -> None:
        with tenant_scope(tenant_id):
            await websocket.send_json(context.status().model_dump(mode="json"))
            async for event in context.bus.stream(NewMessageEvent, ContactsChangedEvent, ConnectionStatusEvent):
                await websocket.send_json(event.model_dump(mode="json"))

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Event stream closed for tenant {tenant_id}")
    finally:
        pump_task.cancel()
        try:
            await pump_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Event stream for tenant {tenant_id} ended with error: {e}")
