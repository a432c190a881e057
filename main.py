from contextlib import asynccontextmanager
import asyncio
import logging

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.responses import JSONResponse
from starlette.requests import Request
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

import dispatch
import location
from config import LOG_LEVEL
from db import init_db
from errors import ServiceError, ValidationError
from geo import validate_point
from geocoding import geocoder
from realtime import feed

logger = logging.getLogger(__name__)

FEED_TABLES = ("requests", "mechanics")


@asynccontextmanager
async def lifespan(app):
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    yield
    await location.stop_all()


async def service_error(request: Request, exc: ServiceError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _json(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("body must be JSON")
    if not isinstance(payload, dict):
        raise ValidationError("body must be a JSON object")
    return payload


def _int_param(request: Request, name: str) -> int:
    return int(request.path_params[name])


def _require(payload: dict, *keys):
    for k in keys:
        if payload.get(k) is None:
            raise ValidationError(f"missing {k}")


def _as_id(payload: dict, key: str, required: bool = True):
    """Ids arrive as JSON numbers or numeric strings; the service only sees ints."""
    value = payload.get(key)
    if value is None:
        if required:
            raise ValidationError(f"missing {key}")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{key} must be an integer")


# ────────────────────────── requests ────────────────────────────────────────

async def create_request(request: Request):
    payload = dispatch.normalize_payload(await _json(request))
    _require(payload, "customer_id", "car_type", "description")
    req = await run_in_threadpool(
        dispatch.create_request,
        customer_id=_as_id(payload, "customer_id"),
        car_type=payload["car_type"],
        description=payload["description"],
        lat=payload.get("customer_lat"),
        lng=payload.get("customer_lng"),
        mechanic_id=_as_id(payload, "mechanic_id", required=False),
        customer_name=payload.get("customer_name"),
        customer_phone=payload.get("customer_phone"),
    )
    return JSONResponse(dispatch.serialize_request(req), status_code=201)


async def get_request(request: Request):
    req = await run_in_threadpool(dispatch.get_request, _int_param(request, "request_id"))
    return JSONResponse(dispatch.serialize_request(req))


async def edit_request(request: Request):
    payload = dispatch.normalize_payload(await _json(request))
    req = await run_in_threadpool(
        dispatch.edit_request,
        _int_param(request, "request_id"),
        _as_id(payload, "customer_id"),
        car_type=payload.get("car_type"),
        description=payload.get("description"),
    )
    return JSONResponse(dispatch.serialize_request(req))


def _status_action(operation):
    async def handler(request: Request):
        payload = await _json(request)
        req = await run_in_threadpool(operation, _int_param(request, "request_id"),
                                      _as_id(payload, "mechanic_id"))
        return JSONResponse(dispatch.serialize_request(req))
    return handler


async def update_request_location(request: Request):
    payload = await _json(request)
    _require(payload, "lat", "lng")
    req = await run_in_threadpool(
        dispatch.update_request_location,
        _int_param(request, "request_id"),
        payload["lat"],
        payload["lng"],
        is_mechanic=bool(payload.get("is_mechanic", False)),
    )
    return JSONResponse(dispatch.serialize_request(req))


# ────────────────────────── customers ───────────────────────────────────────

async def create_customer(request: Request):
    payload = await _json(request)
    _require(payload, "auth_id", "name", "phone", "car_type")
    customer = await run_in_threadpool(
        dispatch.create_customer,
        payload["auth_id"], payload["name"], payload["phone"], payload["car_type"],
        email=payload.get("email"),
    )
    return JSONResponse(dispatch.serialize_customer(customer), status_code=201)


async def get_customer(request: Request):
    customer = await run_in_threadpool(dispatch.get_customer, _int_param(request, "customer_id"))
    return JSONResponse(dispatch.serialize_customer(customer))


async def update_customer(request: Request):
    payload = await _json(request)
    customer = await run_in_threadpool(
        dispatch.update_customer_profile, _int_param(request, "customer_id"), payload)
    return JSONResponse(dispatch.serialize_customer(customer))


async def customer_requests(request: Request):
    rows = await run_in_threadpool(dispatch.get_customer_requests, _int_param(request, "customer_id"))
    return JSONResponse([dispatch.serialize_request(r) for r in rows])


# ────────────────────────── mechanics ───────────────────────────────────────

async def create_mechanic(request: Request):
    payload = await _json(request)
    _require(payload, "auth_id", "name", "phone", "specialization")
    mechanic = await run_in_threadpool(
        dispatch.create_mechanic,
        payload["auth_id"], payload["name"], payload["phone"], payload["specialization"],
    )
    return JSONResponse(dispatch.serialize_mechanic(mechanic), status_code=201)


async def get_mechanic(request: Request):
    mechanic = await run_in_threadpool(dispatch.get_mechanic, _int_param(request, "mechanic_id"))
    return JSONResponse(dispatch.serialize_mechanic(mechanic))


async def update_mechanic(request: Request):
    payload = await _json(request)
    mechanic = await run_in_threadpool(
        dispatch.update_mechanic_profile, _int_param(request, "mechanic_id"), payload)
    return JSONResponse(dispatch.serialize_mechanic(mechanic))


async def mechanic_requests(request: Request):
    status = request.query_params.get("status")
    rows = await run_in_threadpool(dispatch.get_mechanic_requests, _int_param(request, "mechanic_id"), status)
    return JSONResponse([dispatch.serialize_request(r) for r in rows])


async def list_mechanics(request: Request):
    params = request.query_params
    online_only = params.get("online", "").lower() in ("1", "true", "yes")
    near = None
    if "lat" in params or "lng" in params:
        _require(dict(params), "lat", "lng")
        near = (params["lat"], params["lng"])
    rows = await run_in_threadpool(dispatch.list_mechanics, online_only=online_only, near=near)
    return JSONResponse(rows)


async def mechanic_location(request: Request):
    payload = await _json(request)
    _require(payload, "lat", "lng")
    res = await run_in_threadpool(location.publish_mechanic_location,
                                  _int_param(request, "mechanic_id"), payload["lat"], payload["lng"])
    return JSONResponse(res)


# ────────────────────────── auth / geocoding ────────────────────────────────

async def auth_profile(request: Request):
    res = await run_in_threadpool(dispatch.resolve_profile, request.path_params["auth_id"])
    return JSONResponse(res)


async def reverse_geocode(request: Request):
    params = request.query_params
    _require(dict(params), "lat", "lng")
    res = await geocoder.reverse(params["lat"], params["lng"], kind=params.get("kind", "customer"))
    return JSONResponse(res)


# ────────────────────────── websockets ──────────────────────────────────────

def _filter_value(value: str):
    return int(value) if value.lstrip("-").isdigit() else value


async def feed_socket(websocket: WebSocket):
    """Stream change events for one table; query params filter on columns (?mechanic_id=3)."""
    table = websocket.path_params["table"]
    if table not in FEED_TABLES:
        await websocket.close(code=1008)
        return
    filter = {k: _filter_value(v) for k, v in websocket.query_params.items()}
    # subscribe before accepting so nothing written after the handshake is missed
    sub = feed.subscribe(table, filter)
    receiver = getter = None
    try:
        await websocket.accept()
        receiver = asyncio.ensure_future(websocket.receive())
        getter = asyncio.ensure_future(sub.get())
        while True:
            done, _ = await asyncio.wait({receiver, getter}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                await websocket.send_json(getter.result())
                getter = asyncio.ensure_future(sub.get())
            if receiver in done:
                if receiver.result()["type"] == "websocket.disconnect":
                    break
                # clients have nothing to say on this socket; keep listening for close
                receiver = asyncio.ensure_future(websocket.receive())
    except WebSocketDisconnect:
        pass
    finally:
        for task in (receiver, getter):
            if task is not None:
                task.cancel()
        feed.unsubscribe(sub)


async def broadcast_socket(websocket: WebSocket):
    """Mechanic app streams GPS fixes; the server writes them on the profile's cadence.

    Messages: {"lat": .., "lng": ..} updates the current fix, {"profile": "map"}
    switches cadence. Each write is acknowledged with {"published": ...}.
    """
    mechanic_id = _int_param(websocket, "mechanic_id")
    profile = websocket.query_params.get("profile", "dashboard")
    try:
        location.cadence_for(profile)
        await run_in_threadpool(dispatch.get_mechanic, mechanic_id)
    except ServiceError:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    fix = {}
    written = asyncio.Queue()

    async def current_fix():
        return fix.get("point")

    def on_publish(res):
        written.put_nowait(res)

    broadcaster = location.broadcaster_for(mechanic_id, current_fix, profile)
    broadcaster.on_publish = on_publish
    broadcaster.start()
    sender = asyncio.ensure_future(_forward(websocket, written))
    try:
        while True:
            message = await websocket.receive_json()
            try:
                if not isinstance(message, dict):
                    raise ValidationError("message must be a JSON object")
                if "profile" in message:
                    location.broadcaster_for(mechanic_id, current_fix, message["profile"])
                if "lat" in message or "lng" in message:
                    first = "point" not in fix
                    fix["point"] = validate_point(message.get("lat"), message.get("lng"))
                    if first:
                        # publish the first fix now instead of waiting out the cadence
                        broadcaster.set_profile(broadcaster.profile)
            except ServiceError as e:
                await websocket.send_json({"error": e.message})
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        await location.stop_broadcaster(mechanic_id)


async def _forward(websocket: WebSocket, written: asyncio.Queue):
    while True:
        res = await written.get()
        await websocket.send_json({"published": res})


routes = [
    Route("/requests", create_request, methods=["POST"]),
    Route("/requests/{request_id:int}", get_request, methods=["GET"]),
    Route("/requests/{request_id:int}", edit_request, methods=["PATCH"]),
    Route("/requests/{request_id:int}/accept", _status_action(dispatch.accept_request), methods=["POST"]),
    Route("/requests/{request_id:int}/decline", _status_action(dispatch.decline_request), methods=["POST"]),
    Route("/requests/{request_id:int}/arrive", _status_action(dispatch.mark_arrived), methods=["POST"]),
    Route("/requests/{request_id:int}/complete", _status_action(dispatch.complete_request), methods=["POST"]),
    Route("/requests/{request_id:int}/location", update_request_location, methods=["POST"]),
    Route("/customers", create_customer, methods=["POST"]),
    Route("/customers/{customer_id:int}", get_customer, methods=["GET"]),
    Route("/customers/{customer_id:int}", update_customer, methods=["PATCH"]),
    Route("/customers/{customer_id:int}/requests", customer_requests, methods=["GET"]),
    Route("/mechanics", list_mechanics, methods=["GET"]),
    Route("/mechanics", create_mechanic, methods=["POST"]),
    Route("/mechanics/{mechanic_id:int}", get_mechanic, methods=["GET"]),
    Route("/mechanics/{mechanic_id:int}", update_mechanic, methods=["PATCH"]),
    Route("/mechanics/{mechanic_id:int}/requests", mechanic_requests, methods=["GET"]),
    Route("/mechanics/{mechanic_id:int}/location", mechanic_location, methods=["POST"]),
    Route("/auth/{auth_id}/profile", auth_profile, methods=["GET"]),
    Route("/geocode/reverse", reverse_geocode, methods=["GET"]),
    WebSocketRoute("/ws/mechanics/{mechanic_id:int}/broadcast", broadcast_socket),
    WebSocketRoute("/ws/{table}", feed_socket),
]

app = Starlette(debug=False, routes=routes, lifespan=lifespan,
                exception_handlers={ServiceError: service_error})
