from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from registry.dependencies import (
    client_ip,
    get_devices,
    get_identity,
    get_poll_handler,
    read_json_object,
)
from registry.devices import REQUIRED_REGISTER_FIELDS, DeviceRegistry
from registry.errors import InvalidArgument, Unauthorized
from registry.identity import DeviceIdentityStore
from registry.protocol import PollHandler

router = APIRouter(prefix="/api", tags=["device"])


def _device_id(payload: Dict[str, Any]) -> str:
    device_id = payload.get("deviceId")
    if not isinstance(device_id, str) or not device_id.strip():
        raise Unauthorized()
    return device_id.strip()


@router.post("/register")
async def register(
    request: Request,
    identity: DeviceIdentityStore = Depends(get_identity),
    devices: DeviceRegistry = Depends(get_devices),
):
    payload = await read_json_object(request)
    missing = [
        name for name in REQUIRED_REGISTER_FIELDS
        if not isinstance(payload.get(name), str) or not payload[name].strip()
    ]
    if missing:
        raise InvalidArgument(f"Missing required fields: {', '.join(missing)}")

    device_id = payload["deviceId"].strip()
    auth = await run_in_threadpool(identity.authenticate, device_id, payload["secret"])
    await run_in_threadpool(devices.register, device_id, payload, client_ip(request))
    return JSONResponse({"ok": True, "deviceId": device_id, "bootstrapped": auth.is_new_claim})


@router.post("/heartbeat")
async def heartbeat(
    request: Request,
    identity: DeviceIdentityStore = Depends(get_identity),
    devices: DeviceRegistry = Depends(get_devices),
):
    payload = await read_json_object(request)
    device_id = _device_id(payload)
    await run_in_threadpool(identity.authenticate, device_id, payload.get("secret"), allow_bootstrap=False)
    await run_in_threadpool(devices.touch, device_id, client_ip(request), activate=True)
    return JSONResponse({"ok": True})


@router.post("/poll")
async def poll(request: Request, handler: PollHandler = Depends(get_poll_handler)):
    payload = await read_json_object(request)
    device_id = _device_id(payload)

    results = payload.get("results")
    if results is None:
        results = []
    elif not isinstance(results, list):
        raise InvalidArgument("results must be a list")

    outcome = await run_in_threadpool(
        handler.poll,
        device_id,
        payload.get("secret"),
        payload.get("maxCount"),
        results,
        client_ip(request),
    )
    return JSONResponse(outcome.to_response())


@router.post("/rotate-secret")
async def rotate_secret(request: Request, identity: DeviceIdentityStore = Depends(get_identity)):
    payload = await read_json_object(request)
    device_id = _device_id(payload)
    await run_in_threadpool(identity.rotate_secret, device_id, payload.get("secret"), payload.get("newSecret"))
    return JSONResponse({"ok": True})
