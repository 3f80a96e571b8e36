"""
Device control API.

Thin HTTP layer over SessionLifecycleManager:
  - POST /api/device/create
  - GET  /api/device/{device_id}/qr
  - POST /api/message/send
  - POST /api/device/{device_id}/disconnect
  - GET  /api/device/{device_id}/status
  - POST /api/device/{device_id}/sync

Errors are returned as {"error": <message>, "success": false}.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from backend.base import BackendError
from bridge.errors import BridgeError, DeviceNotFoundError, InvalidRequestError
from bridge.lifecycle import SessionLifecycleManager
from infra.bootstrap import InfraBootstrap

from .schemas import CreateDeviceRequest, SendMessageRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["devices"])


def get_manager() -> SessionLifecycleManager:
    """Lifecycle manager of the process-wide bootstrap."""
    return InfraBootstrap.get_instance().get_manager()


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "success": False})


def bridge_error_response(error: Exception) -> JSONResponse:
    """Map a bridge or backend failure onto its HTTP status."""
    if isinstance(error, InvalidRequestError):
        return error_response(400, str(error))
    if isinstance(error, DeviceNotFoundError):
        return error_response(404, str(error))
    return error_response(500, str(error))


@router.post("/device/create")
async def create_device(
    request: CreateDeviceRequest,
    manager: SessionLifecycleManager = Depends(get_manager),
):
    if not request.device_id:
        return error_response(400, "deviceId is required")

    try:
        result = await manager.create(request.device_id, request.credentials())
    except BridgeError as e:
        return bridge_error_response(e)

    return {
        "success": True,
        "message": "Connection created",
        "deviceId": request.device_id,
        "waitingForQR": result.pairing_pending,
    }


@router.get("/device/{device_id}/qr")
async def get_qr_code(
    device_id: str,
    manager: SessionLifecycleManager = Depends(get_manager),
):
    qr_code = manager.pairing_code(device_id)
    if not qr_code:
        return error_response(404, "QR code not found or device already connected")
    return {"qrCode": qr_code}


@router.post("/message/send")
async def send_message(
    request: SendMessageRequest,
    manager: SessionLifecycleManager = Depends(get_manager),
):
    if not request.device_id or not request.to or not request.message:
        return error_response(400, "deviceId, to, and message are required")

    try:
        await manager.send_message(request.device_id, request.to, request.message)
    except BridgeError as e:
        return bridge_error_response(e)

    return {"success": True, "message": "Message sent"}


@router.post("/device/{device_id}/disconnect")
async def disconnect_device(
    device_id: str,
    manager: SessionLifecycleManager = Depends(get_manager),
):
    try:
        await manager.disconnect(device_id)
    except BridgeError as e:
        return bridge_error_response(e)

    return {"success": True, "message": "Device disconnected"}


@router.get("/device/{device_id}/status")
async def device_status(
    device_id: str,
    manager: SessionLifecycleManager = Depends(get_manager),
):
    view = manager.status(device_id)
    return {
        "connected": view.connected,
        "hasQR": view.has_qr,
        "battery": view.battery,
        "phone": view.phone,
    }


@router.post("/device/{device_id}/sync")
async def sync_device(
    device_id: str,
    manager: SessionLifecycleManager = Depends(get_manager),
):
    try:
        result = await manager.sync(device_id)
    except (BridgeError, BackendError) as e:
        return bridge_error_response(e)

    return {
        "success": True,
        "phone": result.phone,
        "battery": result.battery,
        "status": result.status,
    }
