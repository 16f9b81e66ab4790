"""Realtime WebSocket gateway."""

import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from lockgate.auth import extract_bearer, verify_channel_token
from lockgate.engine import LockGateError, UnauthorizedError
from lockgate.models import ChannelErrorCode, Holder
from lockgate.observability.trace import set_trace_id
from lockgate.realtime.hub import Connection, dashboard_room
from lockgate.services import LockServices
from lockgate.utils.time import utc_now

logger = logging.getLogger("lockgate.realtime")

# Application close code telling the client not to reconnect.
AUTH_FAILED_CLOSE_CODE = 4401

router = APIRouter()


async def _send_error(services: LockServices, connection: Connection, code: ChannelErrorCode, message: str) -> None:
    await services.hub.send(connection, "error", {"code": code.value, "message": message})


def _record_ids(data: dict[str, Any], key: str = "record_ids") -> list[str]:
    values = data.get(key) or []
    if not isinstance(values, list):
        return []
    return [str(v) for v in values if v]


@router.websocket("/v1/realtime")
async def realtime_endpoint(websocket: WebSocket):
    """
    Persistent per-session channel.

    Auth failure is answered with an AUTH_FAILED error frame and close code
    4401 so clients stop reconnecting and re-authenticate out of band.
    """
    services: LockServices = websocket.app.state.services
    settings = services.settings
    set_trace_id()

    await websocket.accept()

    params = websocket.query_params
    token = params.get("token") or extract_bearer(websocket.headers.get("authorization"))
    try:
        identity = verify_channel_token(
            token,
            settings,
            dev_user_id=params.get("user_id"),
            dev_display_name=params.get("display_name"),
            dev_tenant_id=params.get("tenant_id"),
        )
    except UnauthorizedError as e:
        logger.warning(f"Realtime connection rejected: {e.message}")
        await websocket.send_json(
            {"event": "error", "data": {"code": ChannelErrorCode.AUTH_FAILED.value, "message": e.message}}
        )
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return

    hub = services.hub
    connection = await hub.connect(websocket, identity)
    connection.session_id = params.get("session_id")

    await hub.send(
        connection,
        "connection:status",
        {"status": "connected", "message": "Successfully connected to real-time server"},
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await _send_error(services, connection, ChannelErrorCode.INVALID_EVENT, "Frames must be JSON")
                continue
            await _dispatch(services, connection, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection)
        await _release_on_disconnect(services, connection)


async def _dispatch(services: LockServices, connection: Connection, frame: Any) -> None:
    hub = services.hub
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        await _send_error(services, connection, ChannelErrorCode.INVALID_EVENT, "Missing event name")
        return

    event = frame["event"]
    data = frame.get("data") or {}
    if not isinstance(data, dict):
        data = {}

    if event == "heartbeat":
        await _handle_heartbeat(services, connection, data)
    elif event == "dashboard:join":
        await _handle_dashboard_join(services, connection, data)
    elif event == "records:watch":
        hub.watch(connection, _record_ids(data))
        await hub.send(connection, "records:watching", {"record_ids": sorted(connection.watched or [])})
    elif event == "records:unwatch":
        hub.unwatch(connection, _record_ids(data))
        await hub.send(
            connection,
            "records:watching",
            {"record_ids": None if connection.watched is None else sorted(connection.watched)},
        )
    else:
        await _send_error(services, connection, ChannelErrorCode.INVALID_EVENT, f"Unknown event: {event}")


async def _handle_heartbeat(services: LockServices, connection: Connection, data: dict[str, Any]) -> None:
    """Renew every lease the session reports holding, then acknowledge."""
    session_id = data.get("session_id") or connection.session_id
    record_ids = _record_ids(data, "active_record_locks")
    renewed: list[str] = []
    lost: list[str] = []

    if session_id:
        connection.session_id = str(session_id)

    if record_ids and connection.session_id:
        holder = Holder(
            holder_id=connection.identity.user_id,
            session_id=connection.session_id,
            display_name=connection.identity.display_name,
        )
        try:
            async with services.lock_manager_scope() as manager:
                result = await manager.heartbeat(connection.tenant_id, holder, record_ids)
            renewed, lost = result.renewed, result.lost
        except LockGateError as e:
            await _send_error(services, connection, ChannelErrorCode.SERVER_ERROR, e.message)
            return
    elif record_ids:
        lost = record_ids

    await services.hub.send(
        connection,
        "heartbeat:ack",
        {"timestamp": utc_now().isoformat(), "renewed": renewed, "lost": lost},
    )


async def _handle_dashboard_join(services: LockServices, connection: Connection, data: dict[str, Any]) -> None:
    user_id = data.get("user_id")
    if user_id != connection.identity.user_id:
        logger.warning(f"Client {connection.connection_id} attempted to join room for different user")
        await _send_error(services, connection, ChannelErrorCode.INVALID_EVENT, "Cannot join room for different user")
        return

    room = dashboard_room(connection.tenant_id, connection.identity.user_id)
    await services.hub.join_room(connection, room)
    await services.hub.send(
        connection,
        "dashboard:joined",
        {"room": room, "timestamp": utc_now().isoformat()},
    )


async def _release_on_disconnect(services: LockServices, connection: Connection) -> None:
    """Best-effort release of the session's leases; expiry covers failures."""
    if not services.settings.release_on_disconnect or not connection.session_id:
        return
    holder = Holder(
        holder_id=connection.identity.user_id,
        session_id=connection.session_id,
        display_name=connection.identity.display_name,
    )
    try:
        async with services.lock_manager_scope() as manager:
            await manager.release_session(connection.tenant_id, holder)
    except Exception as e:
        logger.warning(
            f"Could not release leases of session {connection.session_id} on disconnect: {e}"
        )
