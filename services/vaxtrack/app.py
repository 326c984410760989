import logging
import os
from datetime import datetime
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from sqlalchemy.orm import Session

from services.vaxtrack import models
from services.vaxtrack.audit import find_broken_entry, record_audit
from services.vaxtrack.auth import get_current_account
from services.vaxtrack.db import get_db, init_db
from services.vaxtrack.errors import ErrorKind, OperationResult
from services.vaxtrack.lifecycle import ScheduleLifecycle, resolve_today
from services.vaxtrack.protocol import all_doses
from services.vaxtrack.schemas import (
    AgeResponse,
    AuditLogResponse,
    AuditVerifyResponse,
    Child,
    ChildCreate,
    ChildUpdate,
    DeleteResponse,
    DoseResponse,
    ScheduleItemView,
    ScheduleSummary,
    VaccinationAdministration,
    VaccinationCreate,
    VaccinationRecord,
    VaccinationUpdate,
)
from services.vaxtrack.status import describe_age
from services.vaxtrack.store import SqlRecordStore
from services.vaxtrack.vaccinations import VaccinationRecords

logging.basicConfig(level=os.getenv("VAXTRACK_LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

init_db()

app = FastAPI(title="VaxTrack API")

_HTTP_STATUS = {
    ErrorKind.not_authenticated: 401,
    ErrorKind.not_found: 404,
    ErrorKind.validation_failure: 422,
    ErrorKind.remote_failure: 502,
}


def get_store(db: Session = Depends(get_db)) -> SqlRecordStore:
    return SqlRecordStore(db)


def get_lifecycle(store: SqlRecordStore = Depends(get_store)) -> ScheduleLifecycle:
    return ScheduleLifecycle(store)


def get_vaccinations(lifecycle: ScheduleLifecycle = Depends(get_lifecycle)) -> VaccinationRecords:
    return VaccinationRecords(lifecycle.store, lifecycle.guard, lifecycle)


def _unwrap(result: OperationResult):
    if result.success:
        return result.data
    detail: Any = result.message
    if result.failures:
        detail = {"message": result.message, "failures": [f.model_dump(mode="json") for f in result.failures]}
    raise HTTPException(status_code=_HTTP_STATUS.get(result.error, 500), detail=detail)


def _audit(db: Session, request: Request, account: models.Account, action: str, entity_id: str | None):
    record_audit(db=db, request=request, actor_account_id=account.id, action=action, entity_id=entity_id)
    db.commit()


@app.get("/health", tags=["Monitoring"])
def get_health():
    return {"status": "ok"}


@app.get("/version", tags=["Monitoring"])
def get_version():
    return {"service": "vaxtrack-api", "version": "0.1.0", "time": datetime.utcnow().isoformat()}


@app.get("/protocol", response_model=list[DoseResponse], tags=["Protocol"])
def get_protocol():
    return [DoseResponse(name=d.name, description=d.description, age_months=d.age_months, age_text=d.age_text) for d in all_doses()]


# ------------------------------
# Children
# ------------------------------


@app.post("/children", response_model=Child, tags=["Children"])
async def create_child(
    payload: ChildCreate,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    result = await lifecycle.create_child(account.id, payload)
    if result.data is not None:
        # Audit the child even when its schedule only partially initialized.
        _audit(db, request, account, "children.create", result.data.id)
    return _unwrap(result)


@app.get("/children", response_model=list[Child], tags=["Children"])
async def list_children(
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    return _unwrap(await lifecycle.list_children(account.id))


@app.get("/children/{child_id}", response_model=Child, tags=["Children"])
async def get_child(
    child_id: str,
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    return _unwrap(await lifecycle.get_child(account.id, child_id))


@app.patch("/children/{child_id}", response_model=Child, tags=["Children"])
async def update_child(
    child_id: str,
    payload: ChildUpdate,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    child = _unwrap(await lifecycle.update_child(account.id, child_id, payload.model_dump(by_alias=True, exclude_unset=True)))
    _audit(db, request, account, "children.update", child.id)
    return child


@app.delete("/children/{child_id}", response_model=DeleteResponse, tags=["Children"])
async def delete_child(
    child_id: str,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    deleted_id = _unwrap(await lifecycle.delete_child(account.id, child_id))
    _audit(db, request, account, "children.delete", deleted_id)
    return DeleteResponse(id=deleted_id)


@app.get("/children/{child_id}/age", response_model=AgeResponse, tags=["Children"])
async def get_child_age(
    child_id: str,
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    child = _unwrap(await lifecycle.get_child(account.id, child_id))
    return AgeResponse(child_id=child.id, date_of_birth=child.date_of_birth, age=describe_age(child.date_of_birth, resolve_today(None)))


# ------------------------------
# Schedule
# ------------------------------


@app.get("/children/{child_id}/schedule", response_model=list[ScheduleItemView], tags=["Schedule"])
async def get_child_schedule(
    child_id: str,
    status: str | None = None,
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    return _unwrap(await lifecycle.get_child_schedule(account.id, child_id, status_filter=status))


@app.post("/children/{child_id}/schedule:initialize", response_model=list[ScheduleItemView], tags=["Schedule"])
async def initialize_schedule(
    child_id: str,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    items = _unwrap(await lifecycle.initialize_schedule(account.id, child_id))
    _audit(db, request, account, "schedule.initialize", child_id)
    return items


@app.get("/children/{child_id}/schedule/summary", response_model=ScheduleSummary, tags=["Schedule"])
async def get_schedule_summary(
    child_id: str,
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    return _unwrap(await lifecycle.schedule_summary(account.id, child_id))


@app.patch("/children/{child_id}/schedule/{schedule_id}", response_model=ScheduleItemView, tags=["Schedule"])
async def update_schedule_item(
    child_id: str,
    schedule_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    item = _unwrap(await lifecycle.update_schedule_item(account.id, child_id, schedule_id, payload))
    _audit(db, request, account, "schedule.update", item.id)
    return item


@app.post("/children/{child_id}/schedule/{schedule_id}/record", response_model=VaccinationRecord, tags=["Schedule"])
async def record_vaccination(
    child_id: str,
    schedule_id: str,
    payload: VaccinationAdministration,
    request: Request,
    db: Session = Depends(get_db),
    vaccinations: VaccinationRecords = Depends(get_vaccinations),
    account: models.Account = Depends(get_current_account),
):
    record = _unwrap(await vaccinations.record_vaccination(account.id, child_id, schedule_id, payload))
    _audit(db, request, account, "vaccinations.record", record.id)
    return record


@app.get("/schedules", response_model=list[ScheduleItemView], tags=["Schedule"])
async def get_all_schedules(
    lifecycle: ScheduleLifecycle = Depends(get_lifecycle),
    account: models.Account = Depends(get_current_account),
):
    return _unwrap(await lifecycle.get_all_schedules(account.id))


# ------------------------------
# Vaccination records
# ------------------------------


@app.get("/children/{child_id}/vaccinations", response_model=list[VaccinationRecord], tags=["Vaccinations"])
async def get_child_vaccinations(
    child_id: str,
    vaccinations: VaccinationRecords = Depends(get_vaccinations),
    account: models.Account = Depends(get_current_account),
):
    return _unwrap(await vaccinations.get_child_vaccinations(account.id, child_id))


@app.post("/children/{child_id}/vaccinations", response_model=VaccinationRecord, tags=["Vaccinations"])
async def add_vaccination(
    child_id: str,
    payload: VaccinationCreate,
    request: Request,
    db: Session = Depends(get_db),
    vaccinations: VaccinationRecords = Depends(get_vaccinations),
    account: models.Account = Depends(get_current_account),
):
    record = _unwrap(await vaccinations.add_vaccination(account.id, child_id, payload))
    _audit(db, request, account, "vaccinations.create", record.id)
    return record


@app.patch("/children/{child_id}/vaccinations/{vaccination_id}", response_model=VaccinationRecord, tags=["Vaccinations"])
async def update_vaccination(
    child_id: str,
    vaccination_id: str,
    payload: VaccinationUpdate,
    request: Request,
    db: Session = Depends(get_db),
    vaccinations: VaccinationRecords = Depends(get_vaccinations),
    account: models.Account = Depends(get_current_account),
):
    record = _unwrap(
        await vaccinations.update_vaccination(
            account.id, child_id, vaccination_id, payload.model_dump(by_alias=True, exclude_unset=True)
        )
    )
    _audit(db, request, account, "vaccinations.update", record.id)
    return record


@app.get("/vaccinations", response_model=list[VaccinationRecord], tags=["Vaccinations"])
async def get_all_vaccinations(
    vaccinations: VaccinationRecords = Depends(get_vaccinations),
    account: models.Account = Depends(get_current_account),
):
    return _unwrap(await vaccinations.get_all_vaccinations(account.id))


# ------------------------------
# Audit
# ------------------------------


@app.get("/audit/logs", response_model=list[AuditLogResponse], tags=["Audit"])
def list_audit_logs(db: Session = Depends(get_db), account: models.Account = Depends(get_current_account)):
    # Only the requesting account's entries.
    rows = (
        db.query(models.AuditLog)
        .filter(models.AuditLog.actor_account_id == account.id)
        .order_by(models.AuditLog.ts.asc())
        .all()
    )
    return [
        AuditLogResponse(
            id=r.id,
            actor_account_id=r.actor_account_id,
            action=r.action,
            entity_type=r.entity_type,
            entity_id=r.entity_id,
            ip=r.ip,
            ts=r.ts.isoformat(),
            prev_hash=r.prev_hash,
            entry_hash=r.entry_hash,
        )
        for r in rows
    ]


@app.get("/audit/verify", response_model=AuditVerifyResponse, tags=["Audit"])
def verify_audit(db: Session = Depends(get_db), account: models.Account = Depends(get_current_account)):
    broken = find_broken_entry(db)
    return AuditVerifyResponse(ok=broken is None, broken_entry_id=broken)
