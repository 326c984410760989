"""Hash-chained audit trail of writes made through the HTTP layer.

Each entry hashes its predecessor, so editing or removing a row breaks every
hash after it. The entity type is fixed by the action, never passed in.
"""
import hashlib
import json
from datetime import datetime, timedelta

from fastapi import Request
from sqlalchemy.orm import Session

from services.vaxtrack import models


# action -> record kind it touches
AUDITED_ACTIONS = {
    "children.create": "child",
    "children.update": "child",
    "children.delete": "child",
    "schedule.initialize": "child",
    "schedule.update": "schedule_item",
    "vaccinations.create": "vaccination",
    "vaccinations.update": "vaccination",
    "vaccinations.record": "vaccination",
}


def _canonical(obj) -> str:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def audit_entry_hash(row: models.AuditLog, prev_hash: str | None) -> str:
    payload = {
        "prev_hash": prev_hash,
        "actor": row.actor_account_id,
        "action": row.action,
        "entity": f"{row.entity_type}/{row.entity_id}" if row.entity_id else row.entity_type,
        "ip": row.ip,
        "ts": row.ts.isoformat(),
    }
    return hashlib.sha256(_canonical(payload).encode("utf-8")).hexdigest()


def record_audit(
    *,
    db: Session,
    request: Request | None,
    actor_account_id: str | None,
    action: str,
    entity_id: str | None,
) -> models.AuditLog:
    """Append one entry. Caller commits."""
    if action not in AUDITED_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    last = db.query(models.AuditLog).order_by(models.AuditLog.ts.desc()).first()
    ts = datetime.utcnow()
    if last is not None and ts <= last.ts:
        # The chain is walked in ts order, so ts must strictly increase.
        ts = last.ts + timedelta(microseconds=1)

    row = models.AuditLog(
        actor_account_id=actor_account_id,
        action=action,
        entity_type=AUDITED_ACTIONS[action],
        entity_id=entity_id,
        ip=request.client.host if request is not None and request.client is not None else None,
        ts=ts,
        prev_hash=last.entry_hash if last else None,
    )
    row.entry_hash = audit_entry_hash(row, row.prev_hash)
    db.add(row)
    return row


def find_broken_entry(db: Session) -> str | None:
    """Id of the first entry whose link or hash does not check out, or None."""
    prev = None
    for r in db.query(models.AuditLog).order_by(models.AuditLog.ts.asc()).all():
        if r.prev_hash != prev or r.entry_hash != audit_entry_hash(r, prev):
            return r.id
        prev = r.entry_hash
    return None


def verify_audit_chain(db: Session) -> bool:
    return find_broken_entry(db) is None
