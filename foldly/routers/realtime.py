import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from foldly.db.session import get_db
from foldly.dependencies import get_bus
from foldly.logger import get_logger
from foldly.services.auth_service import AuthService
from foldly.services.realtime_service import RealtimeBus, Subscription, authorize_channels

router = APIRouter(prefix="/realtime", tags=["realtime"])

logger = get_logger(__name__)


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        event = await subscription.get()
        await websocket.send_json(event.to_dict())


@router.websocket("/ws")
async def realtime_ws(
        websocket: WebSocket,
        token: str = Query(...),
        channels: str = Query(...),
        db: AsyncSession = Depends(get_db),
        bus: RealtimeBus = Depends(get_bus),
):
    try:
        user = await AuthService.verify_token(token, db)
        allowed = await authorize_channels(db, user.id, [c for c in channels.split(",") if c])
    except (HTTPException, PermissionError) as e:
        logger.info("Rejected realtime connection: %s", e)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if not allowed:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    subscription = bus.subscribe(allowed)
    pump = asyncio.create_task(_pump(websocket, subscription))
    logger.debug("User %s subscribed to %s", user.id, allowed)

    try:
        while True:
            # Clients only ever send keep-alives.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        pump.cancel()
        subscription.close()
