"""Child and schedule lifecycle.

Every public coroutine takes the caller's account id explicitly and returns an
OperationResult; nothing raises past this boundary except programming errors.
"""
import asyncio
import logging
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from services.vaxtrack.auth import require_account
from services.vaxtrack.errors import (
    EngineError,
    NotFound,
    RemoteFailure,
    SubOperationFailure,
    ValidationFailure,
    returns_result,
)
from services.vaxtrack.events import Subscription
from services.vaxtrack.ownership import OwnershipGuard
from services.vaxtrack.schedule import generate_schedule
from services.vaxtrack.schemas import (
    Child,
    ChildCreate,
    ChildUpdate,
    ScheduleInitStatus,
    ScheduleItem,
    ScheduleItemDraft,
    ScheduleItemPatch,
    ScheduleItemView,
    ScheduleStatus,
    ScheduleSummary,
)
from services.vaxtrack.status import derive_status, next_due, parse_iso_date, summarize_statuses
from services.vaxtrack.store import RecordStore


logger = logging.getLogger(__name__)


def resolve_today(now) -> date:
    return parse_iso_date(now, field="now") if now is not None else date.today()


def validate_input(model_cls: type[BaseModel], data: Any, what: str):
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        details = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ValidationFailure(f"Invalid {what}: {details}")


def to_record(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def check_record_key(key: str, what: str) -> None:
    if not key or "/" in key:
        raise NotFound(f"{what} not found")


def view_item(item: ScheduleItem, today: date) -> ScheduleItemView:
    return ScheduleItemView(**item.model_dump(), status=derive_status(item.due_date, item.completed, today))


class ScheduleLifecycle:
    def __init__(self, store: RecordStore, guard: OwnershipGuard | None = None):
        self.store = store
        self.guard = guard or OwnershipGuard(store)

    # ------------------------------
    # Children
    # ------------------------------

    @returns_result
    async def create_child(self, account_id: str | None, draft, now=None) -> Child:
        """Write the child, then initialize its schedule.

        If initialization fails the child still exists (flagged incomplete); the
        failure result carries it in ``data`` so the caller can retry
        ``initialize_schedule``.
        """
        account_id = require_account(account_id)
        today = resolve_today(now)
        data = validate_input(ChildCreate, draft, "child")
        if data.date_of_birth > today:
            raise ValidationFailure("Date of birth cannot be in the future")

        child_id = await self.store.push_key("children")
        child = Child(
            id=child_id,
            owner_account_id=account_id,
            first_name=data.first_name,
            last_name=data.last_name,
            date_of_birth=data.date_of_birth,
            created_at=datetime.utcnow(),
            schedule_status=ScheduleInitStatus.pending,
        )
        await self.store.set(f"children/{child_id}", to_record(child))
        logger.info(f"Created child {child_id} for account {account_id}")

        init = await self.initialize_schedule(account_id, child_id, today)
        if not init.success:
            latest = await self.store.get(f"children/{child_id}")
            child = Child.model_validate(latest) if latest else child
            raise RemoteFailure(
                f"Child {child_id} created but schedule initialization failed: {init.message}",
                data=child,
                failures=init.failures,
            )
        return child.model_copy(update={"schedule_status": ScheduleInitStatus.complete})

    @returns_result
    async def get_child(self, account_id: str | None, child_id: str) -> Child:
        return await self.guard.authorize(account_id, child_id)

    @returns_result
    async def list_children(self, account_id: str | None) -> list[Child]:
        account_id = require_account(account_id)
        docs = await self.store.query_equal("children", "userId", account_id)
        children = [Child.model_validate(d) for d in self.guard.filter_owned(account_id, docs)]
        return [c for c in children if c.deleted_at is None]

    @returns_result
    async def update_child(self, account_id: str | None, child_id: str, updates) -> Child:
        child = await self.guard.authorize(account_id, child_id)
        data = validate_input(ChildUpdate, updates, "child update")
        patch = data.model_dump(mode="json", by_alias=True, exclude_unset=True)
        empty = [k for k, v in patch.items() if v is None]
        if empty:
            raise ValidationFailure(f"Fields cannot be empty: {', '.join(empty)}")
        if not patch:
            return child

        patch["updatedAt"] = datetime.utcnow().isoformat()
        await self.store.update(f"children/{child.id}", patch)
        return Child.model_validate({**to_record(child), **patch})

    @returns_result
    async def delete_child(self, account_id: str | None, child_id: str) -> str:
        """Cascade delete: tombstone, vaccinations, schedules, then the child itself.

        The tombstone makes the child NotFound before any of its records go, so
        an interrupted delete never exposes a child with half its data. Calling
        delete again finishes an interrupted one.
        """
        child = await self.guard.authorize(account_id, child_id, allow_deleting=True)
        if child.deleted_at is None:
            await self.store.update(f"children/{child.id}", {"deletedAt": datetime.utcnow().isoformat()})

        await self.store.delete(f"vaccinations/{child.id}")
        await self.store.delete(f"schedules/{child.id}")
        await self.store.delete(f"children/{child.id}")
        logger.info(f"Deleted child {child.id} with its schedule and vaccination records")
        return child.id

    @returns_result
    async def watch_children(self, account_id: str | None, callback) -> Subscription:
        """Subscribe to the caller's children. ``callback`` receives a list of Child."""
        account_id = require_account(account_id)

        def _deliver(snapshot):
            owned = self.guard.filter_owned(account_id, snapshot)
            callback([Child.model_validate(d) for d in owned if not d.get("deletedAt")])

        return await self.store.subscribe("children", _deliver)

    # ------------------------------
    # Schedule
    # ------------------------------

    @returns_result
    async def initialize_schedule(self, account_id: str | None, child_id: str, now=None) -> list[ScheduleItemView]:
        """Write one schedule item per protocol dose the child does not have yet.

        Inserts run concurrently and independently. Items already present are
        never regenerated, so calling this again after a partial failure only
        writes the missing doses.
        """
        child = await self.guard.authorize(account_id, child_id)
        today = resolve_today(now)

        existing = self._owned_items(child, await self._load_items(child.id))
        have = {i.vaccine_name for i in existing}
        drafts = generate_schedule(child.date_of_birth, today)
        missing = [d for d in drafts if d.vaccine_name not in have]

        results = await asyncio.gather(*(self._insert_item(child, d) for d in missing), return_exceptions=True)

        written = []
        failures = []
        for draft, res in zip(missing, results):
            if isinstance(res, EngineError):
                failures.append(SubOperationFailure(key=draft.vaccine_name, kind=res.kind, message=res.message))
            elif isinstance(res, Exception):
                failures.append(SubOperationFailure(key=draft.vaccine_name, kind=RemoteFailure.kind, message=str(res)))
            elif isinstance(res, BaseException):
                raise res
            else:
                written.append(res)

        if failures:
            logger.error(
                f"Schedule initialization for child {child.id}: {len(failures)} of {len(missing)} inserts failed "
                f"({', '.join(f.key for f in failures)})"
            )
            await self._mark_schedule(child, ScheduleInitStatus.incomplete)
            raise RemoteFailure(
                f"Schedule initialization failed for {len(failures)} of {len(missing)} doses",
                failures=failures,
            )

        if child.schedule_status != ScheduleInitStatus.complete:
            await self._mark_schedule(child, ScheduleInitStatus.complete)
        logger.info(f"Schedule initialized for child {child.id}: {len(written)} written, {len(existing)} existing")

        order = {d.vaccine_name: idx for idx, d in enumerate(drafts)}
        items = sorted(existing + written, key=lambda i: order.get(i.vaccine_name, len(order)))
        return [view_item(i, today) for i in items]

    @returns_result
    async def get_child_schedule(
        self, account_id: str | None, child_id: str, now=None, status_filter: str | None = None
    ) -> list[ScheduleItemView]:
        child = await self.guard.authorize(account_id, child_id)
        today = resolve_today(now)
        wanted = self._parse_status_filter(status_filter)

        items = self._owned_items(child, await self._load_items(child.id))
        views = sorted((view_item(i, today) for i in items), key=lambda v: v.age_months)
        if wanted is not None:
            views = [v for v in views if v.status == wanted]
        return views

    @returns_result
    async def get_all_schedules(self, account_id: str | None, now=None) -> list[ScheduleItemView]:
        account_id = require_account(account_id)
        today = resolve_today(now)
        live = await self.guard.live_child_ids(account_id)
        docs = await self.store.query_equal("schedules", "userId", account_id)
        return [
            view_item(ScheduleItem.model_validate(d), today)
            for d in self.guard.filter_owned(account_id, docs)
            if d.get("childId") in live
        ]

    @returns_result
    async def schedule_summary(self, account_id: str | None, child_id: str, now=None) -> ScheduleSummary:
        views = (await self.get_child_schedule(account_id, child_id, now)).unwrap()
        return ScheduleSummary(
            child_id=child_id,
            total=len(views),
            counts=summarize_statuses(views),
            next_due=next_due(views),
        )

    @returns_result
    async def update_schedule_item(
        self, account_id: str | None, child_id: str, schedule_id: str, patch, now=None
    ) -> ScheduleItemView:
        child = await self.guard.authorize(account_id, child_id)
        today = resolve_today(now)
        check_record_key(schedule_id, "Schedule item")

        path = f"schedules/{child.id}/{schedule_id}"
        doc = await self.store.get(path)
        if doc is None:
            raise NotFound("Schedule item not found")
        item = ScheduleItem.model_validate(doc)
        self.guard.check_chain(child, item, entity="Schedule item")

        changes = self._validate_item_patch(item, patch, today)
        changes["updatedAt"] = datetime.utcnow().isoformat()
        merged = validate_input(ScheduleItem, {**doc, **changes}, "schedule item")
        await self.store.update(path, changes)
        logger.info(f"Updated schedule item {schedule_id} ({item.vaccine_name}) for child {child.id}")
        return view_item(merged, today)

    # ------------------------------
    # Internals
    # ------------------------------

    async def _insert_item(self, child: Child, draft: ScheduleItemDraft) -> ScheduleItem:
        key = await self.store.push_key(f"schedules/{child.id}")
        item = ScheduleItem(
            id=key,
            child_id=child.id,
            owner_account_id=child.owner_account_id,
            vaccine_name=draft.vaccine_name,
            vaccine_description=draft.vaccine_description,
            age_months=draft.age_months,
            age_text=draft.age_text,
            due_date=draft.due_date,
            completed=False,
            created_at=datetime.utcnow(),
        )
        await self.store.set(f"schedules/{child.id}/{key}", to_record(item))
        return item

    async def _mark_schedule(self, child: Child, status: ScheduleInitStatus) -> None:
        try:
            await self.store.update(f"children/{child.id}", {"scheduleStatus": status.value})
        except RemoteFailure as e:
            # The dose-level outcome is what the caller needs; the flag is advisory.
            logger.error(f"Could not mark schedule {status.value} for child {child.id}: {e.message}")

    async def _load_items(self, child_id: str) -> list[ScheduleItem]:
        return [ScheduleItem.model_validate(d) for d in await self.store.list_path(f"schedules/{child_id}")]

    def _owned_items(self, child: Child, items: list[ScheduleItem]) -> list[ScheduleItem]:
        out = []
        for item in items:
            try:
                self.guard.check_chain(child, item, entity="Schedule item")
            except NotFound:
                continue
            out.append(item)
        return out

    @staticmethod
    def _parse_status_filter(status_filter: str | None) -> ScheduleStatus | None:
        if status_filter is None or status_filter == "all":
            return None
        try:
            return ScheduleStatus(status_filter)
        except ValueError:
            raise ValidationFailure(f"Unknown status filter: {status_filter}")

    @staticmethod
    def _validate_item_patch(item: ScheduleItem, patch, today: date) -> dict[str, Any]:
        if isinstance(patch, BaseModel):
            patch = patch.model_dump(by_alias=True, exclude_unset=True)
        raw = dict(patch)
        # Status is derived on read and never stored.
        raw.pop("status", None)
        data = validate_input(ScheduleItemPatch, raw, "schedule item update")
        fields = data.model_fields_set
        changes = data.model_dump(mode="json", by_alias=True, exclude_unset=True)

        if "completed" in fields and data.completed is None:
            raise ValidationFailure("completed cannot be null")
        completed = data.completed if "completed" in fields else item.completed
        date_completed = data.date_completed if "date_completed" in fields else item.date_completed

        if completed:
            if date_completed is None:
                raise ValidationFailure("dateCompleted is required when marking a dose completed")
            if date_completed > today:
                raise ValidationFailure("dateCompleted cannot be in the future")
        else:
            if "date_completed" in fields and data.date_completed is not None:
                raise ValidationFailure("dateCompleted requires completed=true")
            changes["dateCompleted"] = None
        return changes
