import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.config import WS_PING_INTERVAL_SECONDS
from app.models.ems import LocationReport
from app.services import location_tracker, request_store
from app.services.errors import AlreadyTerminal, DispatchError
from app.services.event_bus import event_bus, parse_topic

logger = logging.getLogger(__name__)
router = APIRouter()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Client messages on the event stream carry nothing; only a disconnect matters
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/ems")
async def event_stream(websocket: WebSocket, topic: str = "all-active", after: int | None = None):
    """WebSocket for real-time dispatch events.

    Topics: ``all-active`` (dispatch dashboards), ``request:<id>`` (one case),
    ``mine:<actorRef>`` (a patient's or paramedic's own requests). On a
    request topic the current snapshot is sent first; pass ``after=<sequence>``
    to also receive buffered events missed since that sequence.
    """
    await websocket.accept()

    try:
        kind, key = parse_topic(topic)
    except ValueError as exc:
        await websocket.send_json({"type": "error", "message": str(exc)})
        await websocket.close()
        return

    if kind == "request":
        request = await request_store.get_request(key)
        if request is None:
            await websocket.send_json({"type": "error", "message": f"Request {key} not found"})
            await websocket.close()
            return
        await websocket.send_json({"type": "snapshot", "request": request.model_dump(mode="json")})

    subscription = event_bus.subscribe(topic, after=after)
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
    logger.info("Event stream client connected to %s", topic)

    try:
        while not disconnected.done():
            next_event = asyncio.create_task(subscription.get())
            done, _ = await asyncio.wait(
                {next_event, disconnected},
                timeout=WS_PING_INTERVAL_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if next_event in done:
                payload = next_event.result().model_dump(mode="json")
            else:
                # Queue.get leaves the item queued when cancelled
                next_event.cancel()
                if disconnected.done():
                    break
                payload = {"type": "ping"}

            try:
                await websocket.send_json(payload)
            except Exception:
                logger.debug("Failed to send event to stream client")
                break
    except WebSocketDisconnect:
        pass
    finally:
        disconnected.cancel()
        event_bus.unsubscribe(subscription)
        logger.info("Event stream client disconnected from %s", topic)


@router.websocket("/ws/ems/{request_id}/location")
async def location_stream(websocket: WebSocket, request_id: str, actor_ref: str):
    """WebSocket for a device streaming its position on one request.

    Client messages: ``{"type": "location", "lat", "lng", "accuracy"?, "timestamp"}``
    and ``{"type": "end"}``. Each location is answered with an ack; business
    errors are reported without closing, except once the request is terminal.
    """
    await websocket.accept()

    try:
        while True:
            msg = await websocket.receive_json()
            if not isinstance(msg, dict):
                await websocket.send_json({"type": "error", "message": "Expected a JSON object"})
                continue
            msg_type = msg.get("type")
            if msg_type == "end":
                break
            if msg_type != "location":
                await websocket.send_json({"type": "error", "message": f"Unknown message type {msg_type!r}"})
                continue

            try:
                report = LocationReport(
                    actor_ref=actor_ref,
                    location={"lat": msg.get("lat"), "lng": msg.get("lng"), "accuracy": msg.get("accuracy")},
                    timestamp=msg.get("timestamp"),
                )
                ack = await location_tracker.report_location(
                    request_id, report.actor_ref, report.location, report.timestamp
                )
            except ValidationError as exc:
                await websocket.send_json({
                    "type": "error",
                    "message": "Invalid location sample",
                    "errors": [err["msg"] for err in exc.errors()],
                })
                continue
            except AlreadyTerminal as exc:
                await websocket.send_json({"type": "error", **exc.to_dict()})
                break
            except DispatchError as exc:
                await websocket.send_json({"type": "error", **exc.to_dict()})
                continue

            await websocket.send_json({"type": "ack", **ack.model_dump(mode="json")})
    except WebSocketDisconnect:
        logger.info("Location stream for %s (%s) disconnected", request_id, actor_ref)
        return

    await websocket.close()
