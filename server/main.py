import re
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import require_admin, DeviceAuthorization
from config import config
from device_lookup import get_account, get_device_ids_for_account
from errors import DeviceGroupError, NotFoundError, AccountNotFoundError, DeviceNotFoundError, StorageUnavailableError
from event_retention import RetentionSweeper, SweepMode, SweepResult
from group_directory import (
    all_group_description,
    create_device_group,
    delete_device_group,
    get_all_device_count,
    get_device_count,
    get_group_titles,
    list_groups_for_account,
    list_groups_for_device,
    require_group,
    update_device_group,
)
from group_membership import (
    add_device_to_group,
    add_device_to_universal_group,
    get_all_devices_for_group,
    get_device_ids_for_group,
    remove_device_from_group,
    remove_device_from_universal_group,
    set_all_group_members,
    set_group_members,
)
from models import Account, DeviceGroup, get_db, init_db, normalize_id, is_all_group, DEVICE_GROUP_ALL
from observability import structured_logger, metrics, request_id_var
from schemas import (
    DeviceGroupsResponse,
    DeviceSweepSummary,
    GroupCreate,
    GroupListResponse,
    GroupMembersResponse,
    GroupSummary,
    GroupUpdate,
    MemberRef,
    MembershipChangeResponse,
    SetMembersRequest,
    SetMembersResponse,
    SweepRequest,
    SweepResponse,
)

app = FastAPI(title="Device Groups API")

backend_start_time = datetime.now(timezone.utc)

_ID_SEGMENTS = re.compile(r"/(accounts|groups|devices)/[^/]+")


def _route_template(path: str) -> str:
    """Collapse ids in a path so metrics labels stay bounded"""
    return _ID_SEGMENTS.sub(lambda m: f"/{m.group(1)}/{{id}}", path)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Middleware to generate/extract request_id for correlation across logs.
    Also tracks HTTP request metrics.
    """
    req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(req_id)

    start_time = time.time()

    response = await call_next(request)

    latency_ms = (time.time() - start_time) * 1000
    route = _route_template(request.url.path)

    metrics.inc_counter("http_requests_total", {
        "route": route,
        "method": request.method,
        "status_code": str(response.status_code)
    })

    metrics.observe_histogram("http_request_latency_ms", latency_ms, {
        "route": route
    })

    response.headers["X-Request-ID"] = req_id

    return response


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DeviceGroupError)
async def device_group_error_handler(request: Request, exc: DeviceGroupError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StorageUnavailableError)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError):
    structured_logger.log_event(
        "http.storage_unavailable",
        level="ERROR",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        cause=str(exc.__cause__) if exc.__cause__ else None
    )
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})


@app.on_event("startup")
async def startup_event():
    is_valid, errors, warnings = config.validate()
    for warning in warnings:
        print(f"⚠️  {warning}")
    for error in errors:
        print(f"❌ {error}")

    init_db()
    structured_logger.log_event(
        "server.startup",
        config_valid=is_valid,
        warnings=len(warnings),
        started_at=backend_start_time.isoformat()
    )


def _require_account(db: Session, account_id: str) -> Account:
    account = get_account(db, account_id)
    if account is None:
        raise AccountNotFoundError(normalize_id(account_id))
    return account


def _group_summary(db: Session, group: DeviceGroup, check_account: bool = False,
                   account: Optional[Account] = None) -> GroupSummary:
    return GroupSummary(
        account_id=group.account_id,
        group_id=group.group_id,
        display_name=group.display_name or "",
        description=group.description or "",
        notes=group.notes,
        allow_notify=group.get_allow_notify(check_account, account),
        notify_email=group.notify_email,
        work_order_id=group.work_order_id,
        device_count=get_device_count(db, group),
        universal_device_count=get_all_device_count(db, group),
        last_update_time=group.last_update_time,
        creation_time=group.creation_time
    )


@app.get("/healthz")
async def health_check():
    """
    Liveness check - returns 200 if process is alive.
    Does not check the database.
    """
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()
    return {
        "status": "healthy",
        "uptime_seconds": int(uptime_seconds),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/metrics")
async def prometheus_metrics(admin=Depends(require_admin)):
    """Prometheus-compatible metrics endpoint (requires admin authentication)"""
    structured_logger.log_event("metrics.scrape")

    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )


@app.get("/v1/accounts/{account_id}/groups", response_model=GroupListResponse)
async def list_groups(
    account_id: str,
    include_all: bool = True,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    account = _require_account(db, account_id)
    title, title_plural = get_group_titles()
    return GroupListResponse(
        account_id=account.account_id,
        title=title,
        title_plural=title_plural,
        groups=list_groups_for_account(db, account.account_id, include_all=include_all)
    )


@app.post("/v1/accounts/{account_id}/groups", response_model=GroupSummary, status_code=201)
async def create_group(
    account_id: str,
    payload: GroupCreate,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    account = _require_account(db, account_id)
    fields = payload.model_dump(exclude={"group_id"}, exclude_none=True)
    group = create_device_group(db, account, payload.group_id, **fields)
    return _group_summary(db, group)


@app.get("/v1/accounts/{account_id}/groups/{group_id}", response_model=GroupSummary)
async def get_group(
    account_id: str,
    group_id: str,
    check_account: bool = False,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    account = _require_account(db, account_id)
    if is_all_group(group_id):
        return GroupSummary(
            account_id=account.account_id,
            group_id=DEVICE_GROUP_ALL,
            display_name=all_group_description(account),
            description=all_group_description(account),
            device_count=len(get_device_ids_for_account(db, account.account_id)),
            is_virtual=True
        )
    group = require_group(db, account.account_id, group_id)
    return _group_summary(db, group, check_account, account)


@app.patch("/v1/accounts/{account_id}/groups/{group_id}", response_model=GroupSummary)
async def update_group(
    account_id: str,
    group_id: str,
    payload: GroupUpdate,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    if is_all_group(group_id):
        raise HTTPException(status_code=400, detail="The 'all' DeviceGroup cannot be edited")
    group = require_group(db, account_id, group_id)
    group = update_device_group(db, group, **payload.model_dump(exclude_unset=True))
    return _group_summary(db, group)


@app.delete("/v1/accounts/{account_id}/groups/{group_id}")
async def delete_group(
    account_id: str,
    group_id: str,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    existed = delete_device_group(db, account_id, group_id)
    return {"ok": True, "deleted": existed}


@app.get("/v1/accounts/{account_id}/groups/{group_id}/devices", response_model=GroupMembersResponse)
async def list_group_devices(
    account_id: str,
    group_id: str,
    include_inactive: bool = True,
    limit: int = -1,
    universal: bool = False,
    auth_group: Optional[str] = None,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    """
    Resolve the members of a group.

    auth_group restricts the result to devices of that group, the way a
    user authorized for one device group sees another.
    """
    account_id = normalize_id(account_id)
    group_id = normalize_id(group_id)
    auth = DeviceAuthorization.for_group(db, account_id, auth_group) if auth_group else None

    if universal:
        pairs = get_all_devices_for_group(db, account_id, group_id, auth, include_inactive, limit)
        return GroupMembersResponse(
            account_id=account_id,
            group_id=group_id,
            universal=True,
            members=[MemberRef(device_account_id=a, device_id=d) for a, d in pairs],
            count=len(pairs)
        )

    device_ids = get_device_ids_for_group(db, account_id, group_id, auth, include_inactive, limit)
    return GroupMembersResponse(
        account_id=account_id,
        group_id=group_id,
        device_ids=device_ids,
        count=len(device_ids)
    )


@app.put("/v1/accounts/{account_id}/groups/{group_id}/devices", response_model=SetMembersResponse)
async def replace_group_devices(
    account_id: str,
    group_id: str,
    payload: SetMembersRequest,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    """
    Replace a group's members. A null or empty member list clears the group.
    """
    if is_all_group(group_id):
        raise HTTPException(status_code=400, detail="The 'all' DeviceGroup has no editable members")
    require_group(db, account_id, group_id)

    if payload.universal:
        members = None
        if payload.universal_members is not None:
            members = [(m.device_account_id, m.device_id) for m in payload.universal_members]
        added = set_all_group_members(db, account_id, group_id, members, atomic=payload.atomic)
    else:
        members = payload.members
        added = set_group_members(db, account_id, group_id, members, atomic=payload.atomic)
    return SetMembersResponse(ok=True, added=added, cleared=not members)


@app.post("/v1/accounts/{account_id}/groups/{group_id}/devices/{device_id}",
          response_model=MembershipChangeResponse)
async def add_group_device(
    account_id: str,
    group_id: str,
    device_id: str,
    universal: bool = False,
    device_account_id: Optional[str] = None,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    if universal or device_account_id:
        changed = add_device_to_universal_group(db, account_id, group_id, device_account_id, device_id)
    else:
        changed = add_device_to_group(db, account_id, group_id, device_id)
    return MembershipChangeResponse(ok=True, changed=changed)


@app.delete("/v1/accounts/{account_id}/groups/{group_id}/devices/{device_id}",
            response_model=MembershipChangeResponse)
async def remove_group_device(
    account_id: str,
    group_id: str,
    device_id: str,
    universal: bool = False,
    device_account_id: Optional[str] = None,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    if universal or device_account_id:
        changed = remove_device_from_universal_group(db, account_id, group_id, device_account_id, device_id)
    else:
        changed = remove_device_from_group(db, account_id, group_id, device_id)
    return MembershipChangeResponse(ok=True, changed=changed)


@app.get("/v1/accounts/{account_id}/devices/{device_id}/groups", response_model=DeviceGroupsResponse)
async def list_device_groups(
    account_id: str,
    device_id: str,
    include_all: bool = True,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    groups = list_groups_for_device(db, account_id, device_id, include_all=include_all)
    if groups is None:
        raise DeviceNotFoundError(normalize_id(account_id), normalize_id(device_id))
    return DeviceGroupsResponse(
        account_id=normalize_id(account_id),
        device_id=normalize_id(device_id),
        groups=groups
    )


def _sweep_response(result: SweepResult, output: list) -> SweepResponse:
    return SweepResponse(
        mode=result.mode.value,
        account_id=result.account_id,
        group_id=result.group_id,
        cutoff=result.cutoff,
        total=result.as_int(),
        unknown=result.total.is_unknown,
        aborted=result.aborted,
        error=str(result.error) if result.error else None,
        used_retained_date=result.used_retained_date,
        devices=[
            DeviceSweepSummary(
                device_id=d.device_id,
                count=d.count.value if d.count is not None else None,
                unknown=d.count is not None and d.count.is_unknown,
                elapsed_ms=d.elapsed_ms,
                message=d.message,
                skipped=d.skipped,
                error=d.error
            )
            for d in result.devices
        ],
        output=output
    )


def _run_sweep(db: Session, mode: SweepMode, account_id: str, group_id: str, payload: SweepRequest) -> SweepResponse:
    if not payload.confirm:
        raise HTTPException(status_code=400, detail="confirm=true is required for old-event operations")
    if payload.cutoff > int(time.time()):
        raise HTTPException(status_code=400, detail="cutoff must not be in the future")

    account = _require_account(db, account_id)
    output = []
    sweeper = RetentionSweeper(out=output.append)
    result = sweeper.sweep(db, mode, account, group_id, payload.cutoff, verbose=payload.verbose)
    return _sweep_response(result, output)


# Sweeps sleep between devices, so they run in the threadpool rather than on the event loop
@app.post("/v1/accounts/{account_id}/groups/{group_id}/old-events/count", response_model=SweepResponse)
def count_group_old_events(
    account_id: str,
    group_id: str,
    payload: SweepRequest,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    return _run_sweep(db, SweepMode.COUNT, account_id, group_id, payload)


@app.post("/v1/accounts/{account_id}/groups/{group_id}/old-events/delete", response_model=SweepResponse)
def delete_group_old_events(
    account_id: str,
    group_id: str,
    payload: SweepRequest,
    admin=Depends(require_admin),
    db: Session = Depends(get_db)
):
    return _run_sweep(db, SweepMode.DELETE, account_id, group_id, payload)
