# ============================================================
# Rota API Router
# ------------------------------------------------------------
# REST endpoints for resources (check-in / check-out / release),
# the weekly schedule and the usage log.
#
# Identity comes from the X-Holder-* headers set by the auth
# gateway in front of the service; this service does not
# authenticate anyone itself.
# ============================================================
from contextlib import contextmanager
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlmodel import Session

from rota import config
from rota.errors import RotaError
from rota.feed import ChangeFeed
from rota.gate import blocks_for_resource
from rota.machine import Holder, ResourceStateMachine
from rota.models import (
    AccessRead,
    BlockCreate,
    BlockRead,
    CheckOutRequest,
    ResourceCreate,
    ResourceCredentials,
    ResourceRead,
    ResourceUpdate,
    UsageLogEntry,
    utcnow,
)
from rota.repository import ResourceRepository, UsageLogRepository
from rota.schedule import ScheduleService

router = APIRouter()


# FastAPI dependencies: one DB Session per request, auto-closed
def get_session():
    with Session(config.get_engine()) as s:
        yield s


# the feed is owned by the application (app.state.feed)
def get_feed(request: Request) -> ChangeFeed:
    return request.app.state.feed


def get_clock():
    return utcnow


def get_bootstrap_open() -> bool:
    return config.BOOTSTRAP_OPEN


def current_holder(
    x_holder_id: Optional[str] = Header(None),
    x_holder_name: str = Header(""),
    x_holder_admin: str = Header(""),
) -> Holder:
    if not x_holder_id:
        raise HTTPException(401, "missing holder identity")
    return Holder(id=x_holder_id, name=x_holder_name, is_admin=x_holder_admin.lower() in ("1", "true", "yes"))


def require_admin(holder: Holder = Depends(current_holder)) -> Holder:
    if not holder.is_admin:
        raise HTTPException(403, "administrators only")
    return holder


def get_machine(
    s: Session = Depends(get_session),
    f: ChangeFeed = Depends(get_feed),
    clock=Depends(get_clock),
    bootstrap_open: bool = Depends(get_bootstrap_open),
) -> ResourceStateMachine:
    return ResourceStateMachine(s, f, bootstrap_open=bootstrap_open, clock=clock)


def get_schedule(s: Session = Depends(get_session), f: ChangeFeed = Depends(get_feed)) -> ScheduleService:
    return ScheduleService(s, f)


# Domain errors -> HTTP status carried by the error class
@contextmanager
def domain_errors():
    try:
        yield
    except RotaError as e:
        raise HTTPException(e.status_code, e.message) from e


# ------------------------------------------------------------
# Resources
# ------------------------------------------------------------
@router.get("/v1/resources", response_model=List[ResourceRead])
def list_resources(s: Session = Depends(get_session), _: Holder = Depends(current_holder)):
    return ResourceRepository(s).list()


@router.get("/v1/resources/{resource_id}", response_model=ResourceRead)
def get_resource(resource_id: int, s: Session = Depends(get_session), _: Holder = Depends(current_holder)):
    r = ResourceRepository(s).get(resource_id)
    if not r:
        raise HTTPException(404, "not found")
    return r


@router.post("/v1/resources", response_model=ResourceRead, status_code=201)
def create_resource(
    data: ResourceCreate,
    m: ResourceStateMachine = Depends(get_machine),
    _: Holder = Depends(require_admin),
):
    with domain_errors():
        return m.create_resource(data)


# Admin edit: bypasses the state machine, never a check-in / check-out
@router.patch("/v1/resources/{resource_id}", response_model=ResourceRead)
def edit_resource(
    resource_id: int,
    data: ResourceUpdate,
    m: ResourceStateMachine = Depends(get_machine),
    _: Holder = Depends(require_admin),
):
    with domain_errors():
        return m.admin_edit(resource_id, data)


@router.get("/v1/resources/{resource_id}/access", response_model=AccessRead)
def resource_access(
    resource_id: int,
    m: ResourceStateMachine = Depends(get_machine),
    holder: Holder = Depends(current_holder),
):
    with domain_errors():
        decision = m.access_for(resource_id, holder)
    block = BlockRead.from_block(decision.active_block) if decision.active_block else None
    return AccessRead(resource_id=resource_id, allowed=decision.allowed, bootstrap=decision.bootstrap, active_block=block)


@router.get("/v1/resources/{resource_id}/schedule", response_model=List[BlockRead])
def resource_schedule(
    resource_id: int,
    svc: ScheduleService = Depends(get_schedule),
    _: Holder = Depends(current_holder),
):
    return [BlockRead.from_block(b) for b in blocks_for_resource(svc.list_blocks(), resource_id)]


@router.get("/v1/resources/{resource_id}/credentials", response_model=ResourceCredentials)
def resource_credentials(
    resource_id: int,
    m: ResourceStateMachine = Depends(get_machine),
    holder: Holder = Depends(current_holder),
):
    with domain_errors():
        return m.credentials(resource_id, holder)


# ------------------------------------------------------------
# POST /v1/resources/{id}/checkin - claim the resource
# ------------------------------------------------------------
# 403 when no block covers the caller now, 409 when someone else
# got there first. Not retried: the caller re-reads and decides.
# ------------------------------------------------------------
@router.post("/v1/resources/{resource_id}/checkin", response_model=ResourceRead)
def checkin(
    resource_id: int,
    m: ResourceStateMachine = Depends(get_machine),
    holder: Holder = Depends(current_holder),
):
    with domain_errors():
        return m.check_in(resource_id, holder)


# ------------------------------------------------------------
# POST /v1/resources/{id}/checkout - release + report usage
# ------------------------------------------------------------
# 422 when tokens_used is over the session's block ceiling,
# 409 when the caller is not (or no longer) the holder.
# ------------------------------------------------------------
@router.post("/v1/resources/{resource_id}/checkout", response_model=ResourceRead)
def checkout(
    resource_id: int,
    body: CheckOutRequest,
    m: ResourceStateMachine = Depends(get_machine),
    holder: Holder = Depends(current_holder),
):
    with domain_errors():
        return m.check_out(resource_id, holder, body.tokens_used)


@router.post("/v1/resources/{resource_id}/release", response_model=ResourceRead)
def force_release(
    resource_id: int,
    m: ResourceStateMachine = Depends(get_machine),
    admin: Holder = Depends(require_admin),
):
    with domain_errors():
        return m.force_release(resource_id, admin)


# ------------------------------------------------------------
# Schedule
# ------------------------------------------------------------
@router.get("/v1/schedule", response_model=List[BlockRead])
def list_blocks(svc: ScheduleService = Depends(get_schedule), _: Holder = Depends(current_holder)):
    return [BlockRead.from_block(b) for b in svc.list_blocks()]


@router.get("/v1/schedule/week", response_model=Dict[str, List[BlockRead]])
def week(svc: ScheduleService = Depends(get_schedule), _: Holder = Depends(current_holder)):
    return svc.week_view()


@router.get("/v1/schedule/mine", response_model=List[BlockRead])
def my_blocks(svc: ScheduleService = Depends(get_schedule), holder: Holder = Depends(current_holder)):
    return [BlockRead.from_block(b) for b in svc.blocks_of(holder.id)]


@router.get("/v1/schedule/{block_id}", response_model=BlockRead)
def get_block(block_id: int, svc: ScheduleService = Depends(get_schedule), _: Holder = Depends(current_holder)):
    with domain_errors():
        return BlockRead.from_block(svc.get_block(block_id))


@router.post("/v1/schedule", response_model=BlockRead, status_code=201)
def create_block(data: BlockCreate, svc: ScheduleService = Depends(get_schedule), _: Holder = Depends(require_admin)):
    with domain_errors():
        return BlockRead.from_block(svc.create_block(data))


@router.put("/v1/schedule/{block_id}", response_model=BlockRead)
def update_block(
    block_id: int,
    data: BlockCreate,
    svc: ScheduleService = Depends(get_schedule),
    _: Holder = Depends(require_admin),
):
    with domain_errors():
        return BlockRead.from_block(svc.update_block(block_id, data))


@router.delete("/v1/schedule/{block_id}", status_code=204)
def delete_block(block_id: int, svc: ScheduleService = Depends(get_schedule), _: Holder = Depends(require_admin)):
    with domain_errors():
        svc.delete_block(block_id)


# ------------------------------------------------------------
# Usage log / holders
# ------------------------------------------------------------
@router.get("/v1/usage", response_model=List[UsageLogEntry])
def usage(
    limit: int = Query(50, ge=1, le=500),
    resource_id: Optional[int] = None,
    holder_id: Optional[str] = None,
    s: Session = Depends(get_session),
    _: Holder = Depends(current_holder),
):
    return UsageLogRepository(s).recent(limit, resource_id=resource_id, holder_id=holder_id)


@router.get("/v1/holders")
def holders(svc: ScheduleService = Depends(get_schedule), _: Holder = Depends(require_admin)):
    return svc.known_holders()
