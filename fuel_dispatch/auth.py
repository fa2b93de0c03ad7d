import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from jose import jwt, JWTError

from fuel_dispatch.config import JWT_SECRET, JWT_ALGORITHM
from fuel_dispatch.schemas import Order, Role


@dataclass(frozen=True)
class Caller:
    id: str
    role: Role
    name: Optional[str] = None
    trace_id: str = field(default_factory=lambda: str(uuid.uuid4()))


# -------------------------
# Capability predicates
# -------------------------
def is_owner(caller: Caller, order: Order) -> bool:
    return caller.role is Role.CUSTOMER and order.customer_id == caller.id


def is_assigned_driver(caller: Caller, order: Order) -> bool:
    return caller.role is Role.DRIVER and order.driver_id is not None and order.driver_id == caller.id


def is_admin(caller: Caller, order: Optional[Order] = None) -> bool:
    return caller.role is Role.ADMIN


def can_view(caller: Caller, order: Order) -> bool:
    return is_admin(caller) or is_owner(caller, order) or is_assigned_driver(caller, order)


# -------------------------
# JWT helpers
# -------------------------
def decode_jwt_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


def caller_from_token(token: str, trace_id: Optional[str] = None) -> Optional[Caller]:
    payload = decode_jwt_token(token)
    if not payload or not payload.get("sub"):
        return None
    try:
        role = Role(payload.get("role"))
    except ValueError:
        return None
    return Caller(
        id=str(payload["sub"]),
        role=role,
        name=payload.get("name"),
        trace_id=trace_id or str(uuid.uuid4()),
    )


def create_access_token(user_id: str, role: Role, name: Optional[str] = None) -> str:
    claims = {"sub": user_id, "role": role.value}
    if name:
        claims["name"] = name
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_user(request: Request) -> Caller:
    auth = request.headers.get("Authorization") or request.headers.get("authorization")
    trace_id = getattr(request.state, "trace_id", None) or str(uuid.uuid4())

    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="No token provided, access denied")

    caller = caller_from_token(auth.split(" ", 1)[1].strip(), trace_id=trace_id)
    if caller is None:
        raise HTTPException(status_code=401, detail="Token is not valid")
    return caller
