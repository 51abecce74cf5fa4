from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from registry.dependencies import get_devices, get_queue, read_json_object, require_admin
from registry.devices import DeviceRegistry
from registry.queue import CommandQueue

router = APIRouter(prefix="/admin/api", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/devices")
async def list_devices(
    q: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 25,
    devices: DeviceRegistry = Depends(get_devices),
):
    q = (q or "").strip() or None
    status = (status or "").strip() or None
    items, total = await run_in_threadpool(devices.search, q, status, page, limit)
    return JSONResponse(
        {
            "ok": True,
            "items": [d.to_dict() for d in items],
            "total": total,
            "page": max(1, page),
            "limit": max(1, min(200, limit)),
        }
    )


@router.get("/devices/{device_id}")
async def device_detail(device_id: str, devices: DeviceRegistry = Depends(get_devices)):
    device = await run_in_threadpool(devices.get, device_id)
    return JSONResponse({"ok": True, "device": device.to_dict()})


@router.get("/devices/{device_id}/events")
async def device_events(device_id: str, limit: int = 50, devices: DeviceRegistry = Depends(get_devices)):
    events = await run_in_threadpool(devices.events, device_id, limit)
    return JSONResponse({"ok": True, "events": [e.to_dict() for e in events]})


@router.get("/devices/{device_id}/notes")
async def device_notes(device_id: str, devices: DeviceRegistry = Depends(get_devices)):
    notes = await run_in_threadpool(devices.notes, device_id)
    return JSONResponse({"ok": True, "notes": [n.to_dict() for n in notes]})


@router.post("/devices/{device_id}/notes")
async def add_note(device_id: str, request: Request, devices: DeviceRegistry = Depends(get_devices)):
    payload = await read_json_object(request)
    note = await run_in_threadpool(devices.add_note, device_id, payload.get("note"), payload.get("createdBy"))
    return JSONResponse({"ok": True, "note": note.to_dict()})


@router.post("/devices/{device_id}/status")
async def set_status(device_id: str, request: Request, devices: DeviceRegistry = Depends(get_devices)):
    payload = await read_json_object(request)
    device = await run_in_threadpool(devices.set_status, device_id, payload.get("status"), "admin")
    return JSONResponse({"ok": True, "device": device.to_dict()})


@router.post("/devices/{device_id}/commands")
async def enqueue_command(device_id: str, request: Request, queue: CommandQueue = Depends(get_queue)):
    payload = await read_json_object(request)
    cmd_id = await run_in_threadpool(
        queue.enqueue,
        device_id,
        payload.get("kind"),
        payload.get("payload", {}),
        created_by=payload.get("createdBy") if isinstance(payload.get("createdBy"), str) else "admin",
    )
    return JSONResponse({"ok": True, "id": cmd_id})


@router.get("/devices/{device_id}/commands")
async def list_commands(
    device_id: str,
    status: Optional[str] = None,
    limit: int = 50,
    queue: CommandQueue = Depends(get_queue),
):
    commands = await run_in_threadpool(queue.list_for_device, device_id, status or None, limit)
    return JSONResponse({"ok": True, "commands": [c.to_dict() for c in commands]})


@router.get("/commands/{command_id}")
async def command_detail(command_id: str, queue: CommandQueue = Depends(get_queue)):
    command = await run_in_threadpool(queue.get, command_id)
    return JSONResponse({"ok": True, "command": command.to_dict()})
