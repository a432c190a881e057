"""Request service: every read and write of the requests table goes through here.

Status changes are serialized per request with an application lock and
guarded by an optimistic version check, so two mechanics racing to accept
the same request cannot both win.
"""
from typing import List, Optional, Tuple
from datetime import datetime
import logging

from sqlalchemy import update, func
from sqlmodel import select

import lifecycle
from db import get_session, get_lock, run_with_retry
from errors import Conflict, Forbidden, NotFound, ValidationError
from geo import distance_label_km, validate_point
from models import Customer, Mechanic, ServiceRequest, _now
from realtime import feed, INSERT, UPDATE

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 5


# ────────────────────────── serialization ───────────────────────────────────

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_request(r: ServiceRequest) -> dict:
    return {
        "id": r.id,
        "customer_id": r.customer_id,
        "mechanic_id": r.mechanic_id,
        "customer_name": r.customer_name,
        "customer_phone": r.customer_phone,
        "car_type": r.car_type,
        "description": r.description,
        "customer_lat": r.customer_lat,
        "customer_lng": r.customer_lng,
        # legacy readers look for lat/lng
        "lat": r.customer_lat,
        "lng": r.customer_lng,
        "mechanic_lat": r.mechanic_lat,
        "mechanic_lng": r.mechanic_lng,
        "status": r.status,
        "version": r.version,
        "created_at": _iso(r.created_at),
        "updated_at": _iso(r.updated_at),
        "accepted_at": _iso(r.accepted_at),
        "declined_at": _iso(r.declined_at),
        "arrived_at": _iso(r.arrived_at),
        "completed_at": _iso(r.completed_at),
    }


def serialize_customer(c: Customer) -> dict:
    return {
        "id": c.id,
        "auth_id": c.auth_id,
        "name": c.name,
        "email": c.email,
        "phone": c.phone,
        "car_type": c.car_type,
        "lat": c.lat,
        "lng": c.lng,
        "created_at": _iso(c.created_at),
    }


def serialize_mechanic(m: Mechanic, near: Optional[Tuple[float, float]] = None) -> dict:
    out = {
        "id": m.id,
        "name": m.name,
        "phone": m.phone,
        "specialization": m.specialization,
        "lat": m.lat,
        "lng": m.lng,
        "online": m.online,
        "is_available": m.is_available,
        "rating": m.rating,
        "location_updated_at": _iso(m.location_updated_at),
    }
    if near is not None:
        if m.lat is not None and m.lng is not None:
            out["distance_km"] = distance_label_km(near, (m.lat, m.lng))
        else:
            out["distance_km"] = None
    return out


def normalize_payload(payload: dict) -> dict:
    """Map legacy field names onto the canonical ones.

    issue -> description, lat/lng -> customer_lat/customer_lng. Canonical keys
    win when both are present.
    """
    out = dict(payload)
    if "issue" in out:
        issue = out.pop("issue")
        out.setdefault("description", issue)
    if "lat" in out or "lng" in out:
        lat, lng = out.pop("lat", None), out.pop("lng", None)
        out.setdefault("customer_lat", lat)
        out.setdefault("customer_lng", lng)
    if out.get("status") is not None:
        out["status"] = lifecycle.normalize_status(out["status"])
    return out


def _require_text(name: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def _optional_point(lat, lng) -> Optional[Tuple[float, float]]:
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise ValidationError("lat and lng must be given together")
    return validate_point(lat, lng)


def _publish(r: ServiceRequest, type_: str = UPDATE):
    feed.publish("requests", type_, serialize_request(r))


# ────────────────────────── customers / mechanics ───────────────────────────

CUSTOMER_PROFILE_FIELDS = ("name", "phone", "car_type")
MECHANIC_PROFILE_FIELDS = ("name", "phone", "specialization")
MECHANIC_FLAGS = ("online", "is_available")


def _auth_taken(session, auth_id: str) -> bool:
    return (session.exec(select(Customer).where(Customer.auth_id == auth_id)).first() is not None
            or session.exec(select(Mechanic).where(Mechanic.auth_id == auth_id)).first() is not None)


def create_customer(auth_id: str, name: str, phone: str, car_type: str,
                    email: Optional[str] = None) -> Customer:
    customer = Customer(
        auth_id=_require_text("auth_id", auth_id),
        name=_require_text("name", name),
        phone=_require_text("phone", phone),
        car_type=_require_text("car_type", car_type),
        email=email.strip() if isinstance(email, str) and email.strip() else None,
    )
    customer = run_with_retry(_insert_party, customer)
    logger.info("customer %s registered (auth %s)", customer.id, customer.auth_id)
    return customer


def create_mechanic(auth_id: str, name: str, phone: str, specialization: str) -> Mechanic:
    mechanic = Mechanic(
        auth_id=_require_text("auth_id", auth_id),
        name=_require_text("name", name),
        phone=_require_text("phone", phone),
        specialization=_require_text("specialization", specialization),
        is_available=True,
    )
    mechanic = run_with_retry(_insert_party, mechanic)
    logger.info("mechanic %s registered (auth %s)", mechanic.id, mechanic.auth_id)
    feed.publish("mechanics", INSERT, serialize_mechanic(mechanic))
    return mechanic


def _insert_party(row):
    with get_session() as session:
        # one profile per auth account, whatever the role
        if _auth_taken(session, row.auth_id):
            raise Conflict("a profile already exists for this account")
        session.add(row)
        session.commit()
        session.refresh(row)
        return row


def update_customer_profile(customer_id: int, changes: dict) -> Customer:
    values = _profile_values(changes, CUSTOMER_PROFILE_FIELDS)
    return run_with_retry(_apply_profile, Customer, customer_id, values)


def update_mechanic_profile(mechanic_id: int, changes: dict) -> Mechanic:
    values = _profile_values(changes, MECHANIC_PROFILE_FIELDS, MECHANIC_FLAGS)
    mechanic = run_with_retry(_apply_profile, Mechanic, mechanic_id, values)
    feed.publish("mechanics", UPDATE, serialize_mechanic(mechanic))
    return mechanic


def _profile_values(changes: dict, text_fields, flag_fields=()) -> dict:
    unknown = set(changes) - set(text_fields) - set(flag_fields)
    if unknown:
        raise ValidationError(f"cannot update {', '.join(sorted(unknown))}")
    values = {}
    for name in text_fields:
        if changes.get(name) is not None:
            values[name] = _require_text(name, changes[name])
    for name in flag_fields:
        if changes.get(name) is not None:
            if not isinstance(changes[name], bool):
                raise ValidationError(f"{name} must be true or false")
            values[name] = changes[name]
    if not values:
        raise ValidationError("nothing to update")
    return values


def _apply_profile(model, row_id, values):
    with get_session() as session:
        row = session.get(model, row_id)
        if not row:
            raise NotFound(f"{model.__tablename__[:-1]} not found")
        for name, value in values.items():
            setattr(row, name, value)
        session.add(row)
        session.commit()
        session.refresh(row)
        return row


def get_customer(customer_id: int) -> Customer:
    with get_session() as session:
        customer = session.get(Customer, customer_id)
        if not customer:
            raise NotFound("customer not found")
        return customer


def get_mechanic(mechanic_id: int) -> Mechanic:
    with get_session() as session:
        mechanic = session.get(Mechanic, mechanic_id)
        if not mechanic:
            raise NotFound("mechanic not found")
        return mechanic


def get_customer_by_auth(auth_id: str) -> Optional[Customer]:
    with get_session() as session:
        return session.exec(select(Customer).where(Customer.auth_id == auth_id)).first()


def get_mechanic_by_auth(auth_id: str) -> Optional[Mechanic]:
    with get_session() as session:
        return session.exec(select(Mechanic).where(Mechanic.auth_id == auth_id)).first()


def resolve_profile(auth_id: str) -> dict:
    """Role lookup at sign-in: customer profile first, then mechanic."""
    customer = get_customer_by_auth(auth_id)
    if customer:
        return {"role": "customer", "profile": serialize_customer(customer)}
    mechanic = get_mechanic_by_auth(auth_id)
    if mechanic:
        return {"role": "mechanic", "profile": serialize_mechanic(mechanic)}
    raise NotFound("no profile found for this account")


# ────────────────────────── creation / edits ────────────────────────────────

def create_request(customer_id: int, car_type: str, description: str,
                   lat: Optional[float] = None, lng: Optional[float] = None,
                   mechanic_id: Optional[int] = None,
                   customer_name: Optional[str] = None,
                   customer_phone: Optional[str] = None) -> ServiceRequest:
    car_type = _require_text("car_type", car_type)
    description = _require_text("description", description)
    point = _optional_point(lat, lng)
    req = run_with_retry(_insert_request, customer_id, car_type, description, point,
                         mechanic_id, customer_name, customer_phone)
    logger.info("request %s created by customer %s (mechanic=%s)", req.id, customer_id, mechanic_id)
    _publish(req, INSERT)
    return req


def _insert_request(customer_id, car_type, description, point, mechanic_id,
                    customer_name, customer_phone) -> ServiceRequest:
    with get_session() as session:
        customer = session.get(Customer, customer_id)
        if not customer:
            raise NotFound("customer not found")
        if mechanic_id is not None and not session.get(Mechanic, mechanic_id):
            raise NotFound("mechanic not found")
        if point is not None:
            # the customer's location is only captured when a request is sent
            customer.lat, customer.lng = point
            session.add(customer)
        req = ServiceRequest(
            customer_id=customer_id,
            mechanic_id=mechanic_id,
            customer_name=customer_name or customer.name,
            customer_phone=customer_phone or customer.phone,
            car_type=car_type,
            description=description,
            customer_lat=point[0] if point else None,
            customer_lng=point[1] if point else None,
            status=lifecycle.PENDING,
        )
        session.add(req)
        session.commit()
        session.refresh(req)
        return req


def edit_request(request_id: int, customer_id: int, car_type: Optional[str] = None,
                 description: Optional[str] = None) -> ServiceRequest:
    values = {}
    if car_type is not None:
        values["car_type"] = _require_text("car_type", car_type)
    if description is not None:
        values["description"] = _require_text("description", description)
    if not values:
        raise ValidationError("nothing to update")
    lock = get_lock(f"request:{request_id}")
    if not lock.acquire(timeout=LOCK_TIMEOUT):
        raise Conflict("request is busy, try again")
    try:
        req = run_with_retry(_apply_edit, request_id, customer_id, values)
    finally:
        lock.release()
    logger.info("request %s edited by customer %s", request_id, customer_id)
    _publish(req)
    return req


def _apply_edit(request_id, customer_id, values) -> ServiceRequest:
    with get_session() as session:
        req = session.get(ServiceRequest, request_id)
        if not req:
            raise NotFound("request not found")
        if req.customer_id != customer_id:
            raise Forbidden("request belongs to another customer")
        if req.status != lifecycle.PENDING:
            raise Conflict(f"request is {req.status} and can no longer be edited")
        stmt = (
            update(ServiceRequest)
            .where(ServiceRequest.id == request_id,
                   ServiceRequest.version == req.version,
                   ServiceRequest.status == lifecycle.PENDING)
            .values(version=req.version + 1, updated_at=_now(), **values)
        )
        if session.execute(stmt).rowcount != 1:
            session.rollback()
            raise Conflict("request was modified concurrently")
        session.commit()
        session.refresh(req)
        return req


# ────────────────────────── status transitions ──────────────────────────────

def accept_request(request_id: int, mechanic_id: int) -> ServiceRequest:
    """Assign the mechanic and mark the request accepted in one write.

    Fails with Conflict when another mechanic accepted first or when this
    mechanic still has an unresolved active request.
    """
    mech_lock = get_lock(f"mechanic:{mechanic_id}")
    if not mech_lock.acquire(timeout=LOCK_TIMEOUT):
        raise Conflict("mechanic is busy, try again")
    try:
        return _transition(request_id, mechanic_id, lifecycle.ACCEPTED)
    finally:
        mech_lock.release()


def decline_request(request_id: int, mechanic_id: int) -> ServiceRequest:
    return _transition(request_id, mechanic_id, lifecycle.DECLINED)


def mark_arrived(request_id: int, mechanic_id: int) -> ServiceRequest:
    return _transition(request_id, mechanic_id, lifecycle.ARRIVED)


def complete_request(request_id: int, mechanic_id: int) -> ServiceRequest:
    return _transition(request_id, mechanic_id, lifecycle.COMPLETED)


def transition(request_id: int, mechanic_id: int, status: str) -> ServiceRequest:
    """Dispatch a raw status value (aliases allowed) to the matching operation."""
    target = lifecycle.normalize_status(status)
    ops = {
        lifecycle.ACCEPTED: accept_request,
        lifecycle.DECLINED: decline_request,
        lifecycle.ARRIVED: mark_arrived,
        lifecycle.COMPLETED: complete_request,
    }
    if target not in ops:
        raise ValidationError(f"cannot set status to {target}")
    return ops[target](request_id, mechanic_id)


def _transition(request_id: int, mechanic_id: int, target: str) -> ServiceRequest:
    lock = get_lock(f"request:{request_id}")
    if not lock.acquire(timeout=LOCK_TIMEOUT):
        raise Conflict("request is busy, try again")
    try:
        req, previous = run_with_retry(_apply_transition, request_id, mechanic_id, target)
    finally:
        lock.release()
    logger.info("request %s: %s -> %s (mechanic %s)", request_id, previous, req.status, mechanic_id)
    _publish(req)
    return req


def _apply_transition(request_id: int, mechanic_id: int, target: str):
    with get_session() as session:
        req = session.get(ServiceRequest, request_id)
        if not req:
            raise NotFound("request not found")
        mechanic = session.get(Mechanic, mechanic_id)
        if not mechanic:
            raise NotFound("mechanic not found")
        previous = req.status
        target = lifecycle.check_transition(previous, target)

        if previous == lifecycle.PENDING:
            # a request sent to a specific mechanic is only theirs to answer
            if req.mechanic_id is not None and req.mechanic_id != mechanic_id:
                raise Forbidden("request is addressed to another mechanic")
            if target == lifecycle.DECLINED and req.mechanic_id is None:
                raise Forbidden("request is not addressed to this mechanic")
        elif req.mechanic_id != mechanic_id:
            raise Forbidden("only the assigned mechanic can update this request")

        now = _now()
        values = {
            "status": target,
            "version": req.version + 1,
            "updated_at": now,
            lifecycle.TIMESTAMP_FIELDS[target]: now,
        }
        if target == lifecycle.ACCEPTED:
            active = session.exec(
                select(func.count())
                .select_from(ServiceRequest)
                .where(ServiceRequest.mechanic_id == mechanic_id,
                       ServiceRequest.status.in_(lifecycle.ACTIVE_STATUSES),
                       ServiceRequest.id != request_id)
            ).one()
            if active:
                raise Conflict("mechanic already has an active request")
            values.update(mechanic_id=mechanic_id,
                          mechanic_lat=mechanic.lat,
                          mechanic_lng=mechanic.lng)
        elif target == lifecycle.DECLINED:
            values["mechanic_id"] = None

        stmt = (
            update(ServiceRequest)
            .where(ServiceRequest.id == request_id,
                   ServiceRequest.version == req.version,
                   ServiceRequest.status == previous)
            .values(**values)
        )
        if session.execute(stmt).rowcount != 1:
            session.rollback()
            raise Conflict("request was modified concurrently")
        session.commit()
        session.refresh(req)
        return req, previous


# ────────────────────────── location on a request ───────────────────────────

def update_request_location(request_id: int, lat: float, lng: float,
                            is_mechanic: bool = False) -> ServiceRequest:
    lat, lng = validate_point(lat, lng)
    req = run_with_retry(_apply_location, request_id, lat, lng, is_mechanic)
    _publish(req)
    return req


def _apply_location(request_id, lat, lng, is_mechanic) -> ServiceRequest:
    with get_session() as session:
        req = session.get(ServiceRequest, request_id)
        if not req:
            raise NotFound("request not found")
        if lifecycle.is_terminal(req.status):
            raise Conflict(f"request is {req.status}")
        if is_mechanic:
            req.mechanic_lat, req.mechanic_lng = lat, lng
        else:
            req.customer_lat, req.customer_lng = lat, lng
        req.updated_at = _now()
        session.add(req)
        session.commit()
        session.refresh(req)
        return req


# ────────────────────────── queries ─────────────────────────────────────────

def _newest_first(stmt):
    return stmt.order_by(ServiceRequest.created_at.desc(), ServiceRequest.id.desc())


def get_request(request_id: int) -> ServiceRequest:
    with get_session() as session:
        req = session.get(ServiceRequest, request_id)
        if not req:
            raise NotFound("request not found")
        return req


def get_customer_requests(customer_id: int) -> List[ServiceRequest]:
    with get_session() as session:
        if not session.get(Customer, customer_id):
            raise NotFound("customer not found")
        stmt = select(ServiceRequest).where(ServiceRequest.customer_id == customer_id)
        return list(session.exec(_newest_first(stmt)).all())


def get_customer_requests_by_auth(auth_id: str) -> List[ServiceRequest]:
    customer = get_customer_by_auth(auth_id)
    if not customer:
        return []
    return get_customer_requests(customer.id)


def get_mechanic_requests(mechanic_id: int, status: Optional[str] = None) -> List[ServiceRequest]:
    with get_session() as session:
        if not session.get(Mechanic, mechanic_id):
            raise NotFound("mechanic not found")
        stmt = select(ServiceRequest).where(ServiceRequest.mechanic_id == mechanic_id)
        if status is not None:
            stmt = stmt.where(ServiceRequest.status == lifecycle.normalize_status(status))
        return list(session.exec(_newest_first(stmt)).all())


def get_pending_requests_for_mechanic(mechanic_id: int) -> List[ServiceRequest]:
    return get_mechanic_requests(mechanic_id, lifecycle.PENDING)


def get_active_requests_for_mechanic(mechanic_id: int) -> List[ServiceRequest]:
    with get_session() as session:
        stmt = select(ServiceRequest).where(
            ServiceRequest.mechanic_id == mechanic_id,
            ServiceRequest.status.in_(lifecycle.ACTIVE_STATUSES),
        )
        return list(session.exec(_newest_first(stmt)).all())


def list_mechanics(online_only: bool = False,
                   near: Optional[Tuple[float, float]] = None) -> List[dict]:
    """Flat mechanic list. `near` only adds a display distance; order is by id."""
    if near is not None:
        near = validate_point(*near)
    with get_session() as session:
        stmt = select(Mechanic)
        if online_only:
            stmt = stmt.where(Mechanic.online == True)  # noqa: E712
        rows = session.exec(stmt.order_by(Mechanic.id)).all()
        return [serialize_mechanic(m, near) for m in rows]
