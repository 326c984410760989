"""Vaccination records: the administration history kept alongside schedule items.

Records match schedule items by vaccine name only. They are an audit trail and
never decide a schedule item's status.
"""
import logging
from datetime import date, datetime

from services.vaxtrack.auth import require_account
from services.vaxtrack.errors import NotFound, ValidationFailure, returns_result
from services.vaxtrack.events import Subscription
from services.vaxtrack.lifecycle import (
    ScheduleLifecycle,
    check_record_key,
    resolve_today,
    to_record,
    validate_input,
)
from services.vaxtrack.ownership import OwnershipGuard
from services.vaxtrack.schemas import (
    Child,
    VaccinationAdministration,
    VaccinationCreate,
    VaccinationRecord,
    VaccinationUpdate,
)
from services.vaxtrack.store import RecordStore


logger = logging.getLogger(__name__)


class VaccinationRecords:
    def __init__(self, store: RecordStore, guard: OwnershipGuard | None = None, lifecycle: ScheduleLifecycle | None = None):
        self.store = store
        self.guard = guard or OwnershipGuard(store)
        self.lifecycle = lifecycle or ScheduleLifecycle(store, self.guard)

    @returns_result
    async def add_vaccination(self, account_id: str | None, child_id: str, data, now=None) -> VaccinationRecord:
        child = await self.guard.authorize(account_id, child_id)
        payload = validate_input(VaccinationCreate, data, "vaccination")
        self._check_administered_date(child, payload.date_administered, resolve_today(now))
        return await self._append(child, payload)

    @returns_result
    async def get_child_vaccinations(self, account_id: str | None, child_id: str) -> list[VaccinationRecord]:
        child = await self.guard.authorize(account_id, child_id)
        records = [VaccinationRecord.model_validate(d) for d in await self.store.list_path(f"vaccinations/{child.id}")]
        out = []
        for r in records:
            try:
                self.guard.check_chain(child, r, entity="Vaccination record")
            except NotFound:
                continue
            out.append(r)
        return out

    @returns_result
    async def update_vaccination(
        self, account_id: str | None, child_id: str, vaccination_id: str, updates, now=None
    ) -> VaccinationRecord:
        child = await self.guard.authorize(account_id, child_id)
        check_record_key(vaccination_id, "Vaccination record")
        path = f"vaccinations/{child.id}/{vaccination_id}"
        doc = await self.store.get(path)
        if doc is None:
            raise NotFound("Vaccination record not found")
        record = VaccinationRecord.model_validate(doc)
        self.guard.check_chain(child, record, entity="Vaccination record")

        data = validate_input(VaccinationUpdate, updates, "vaccination update")
        patch = data.model_dump(mode="json", by_alias=True, exclude_unset=True)
        empty = [k for k in ("dateAdministered", "administered") if k in patch and patch[k] is None]
        if empty:
            raise ValidationFailure(f"Fields cannot be empty: {', '.join(empty)}")
        if "dateAdministered" in patch:
            self._check_administered_date(child, data.date_administered, resolve_today(now))
        if not patch:
            return record

        patch["updatedAt"] = datetime.utcnow().isoformat()
        # Nothing is written unless the merged record still reads back.
        merged = validate_input(VaccinationRecord, {**doc, **patch}, "vaccination record")
        await self.store.update(path, patch)
        return merged

    @returns_result
    async def get_all_vaccinations(self, account_id: str | None) -> list[VaccinationRecord]:
        account_id = require_account(account_id)
        live = await self.guard.live_child_ids(account_id)
        docs = await self.store.query_equal("vaccinations", "userId", account_id)
        return [
            VaccinationRecord.model_validate(d)
            for d in self.guard.filter_owned(account_id, docs)
            if d.get("childId") in live
        ]

    @returns_result
    async def record_vaccination(
        self, account_id: str | None, child_id: str, schedule_id: str, administration, now=None
    ) -> VaccinationRecord:
        """Mark a scheduled dose as given and append the matching vaccination record.

        The schedule item is updated first; if that fails nothing is written. If
        the record append fails afterwards the dose stays completed and the
        failure is reported. A dose already completed is not recorded twice.
        """
        child = await self.guard.authorize(account_id, child_id)
        given = validate_input(VaccinationAdministration, administration, "vaccination")
        today = resolve_today(now)
        self._check_administered_date(child, given.date_administered, today)

        check_record_key(schedule_id, "Schedule item")
        current = await self.store.get(f"schedules/{child.id}/{schedule_id}")
        if current is not None and current.get("completed") and current.get("userId") == child.owner_account_id:
            # Correct a recorded dose through update_schedule_item / update_vaccination instead.
            raise ValidationFailure(f"{current.get('vaccineName')} is already recorded as given")

        item = (
            await self.lifecycle.update_schedule_item(
                account_id,
                child.id,
                schedule_id,
                {
                    "completed": True,
                    "dateCompleted": given.date_administered,
                    "administeredBy": given.administered_by,
                    "location": given.location,
                    "batchNumber": given.batch_number,
                    "notes": given.notes,
                },
                today,
            )
        ).unwrap()

        record = await self._append(
            child,
            VaccinationCreate(
                vaccine_name=item.vaccine_name,
                date_administered=given.date_administered,
                batch_number=given.batch_number,
                administered_by=given.administered_by,
                location=given.location,
                notes=given.notes,
                administered=True,
            ),
        )
        logger.info(f"Recorded {item.vaccine_name} for child {child.id}")
        return record

    @returns_result
    async def watch_child_vaccinations(self, account_id: str | None, child_id: str, callback) -> Subscription:
        """Subscribe to one child's vaccination records. Authorization happens once, up front."""
        child = await self.guard.authorize(account_id, child_id)

        def _deliver(snapshot):
            owned = self.guard.filter_owned(child.owner_account_id, snapshot)
            callback([VaccinationRecord.model_validate(d) for d in owned])

        return await self.store.subscribe(f"vaccinations/{child.id}", _deliver)

    async def _append(self, child: Child, payload: VaccinationCreate) -> VaccinationRecord:
        key = await self.store.push_key(f"vaccinations/{child.id}")
        record = VaccinationRecord(
            id=key,
            child_id=child.id,
            owner_account_id=child.owner_account_id,
            vaccine_name=payload.vaccine_name,
            date_administered=payload.date_administered,
            batch_number=payload.batch_number,
            administered_by=payload.administered_by,
            location=payload.location,
            notes=payload.notes,
            administered=payload.administered,
            created_at=datetime.utcnow(),
        )
        await self.store.set(f"vaccinations/{child.id}/{key}", to_record(record))
        return record

    @staticmethod
    def _check_administered_date(child: Child, administered: date, today: date) -> None:
        if administered > today:
            raise ValidationFailure("dateAdministered cannot be in the future")
        if administered < child.date_of_birth:
            raise ValidationFailure("dateAdministered is before the date of birth")
