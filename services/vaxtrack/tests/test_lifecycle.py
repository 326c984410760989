from datetime import date

import pytest

from services.vaxtrack.errors import ErrorKind, RemoteFailure
from services.vaxtrack.lifecycle import ScheduleLifecycle
from services.vaxtrack.protocol import all_doses
from services.vaxtrack.schemas import ScheduleInitStatus, ScheduleStatus
from services.vaxtrack.store import SqlRecordStore


TODAY = date(2024, 6, 1)
ALICE = "acct-alice"
BOB = "acct-bob"
DRAFT = {"firstName": "Ada", "lastName": "Lovelace", "dateOfBirth": "2023-01-10"}


class FlakyStore(SqlRecordStore):
    """Rejects schedule inserts for chosen vaccines and deletes under chosen prefixes."""

    def __init__(self, db, fail_vaccines=(), fail_delete_prefix=None):
        super().__init__(db)
        self.fail_vaccines = set(fail_vaccines)
        self.fail_delete_prefix = fail_delete_prefix

    async def set(self, path, value):
        if path.startswith("schedules/") and value.get("vaccineName") in self.fail_vaccines:
            raise RemoteFailure(f"write rejected for {value['vaccineName']}")
        await super().set(path, value)

    async def delete(self, path):
        if self.fail_delete_prefix and path.startswith(self.fail_delete_prefix):
            raise RemoteFailure(f"delete rejected for {path}")
        await super().delete(path)


async def _create(lifecycle, account=ALICE, draft=DRAFT):
    result = await lifecycle.create_child(account, draft, TODAY)
    assert result.success, result.message
    return result.data


@pytest.mark.anyio
async def test_create_child_initializes_full_schedule(lifecycle, store):
    child = await _create(lifecycle)

    assert child.owner_account_id == ALICE
    assert child.date_of_birth == date(2023, 1, 10)
    assert child.schedule_status == ScheduleInitStatus.complete
    assert (await store.get(f"children/{child.id}"))["scheduleStatus"] == "complete"

    items = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()
    assert [i.vaccine_name for i in items] == [d.name for d in all_doses()]
    assert all(i.owner_account_id == ALICE and i.child_id == child.id for i in items)
    assert {i.vaccine_name: i.due_date for i in items}["DPT1"] == date(2023, 3, 10)


@pytest.mark.anyio
async def test_create_child_requires_account(lifecycle):
    result = await lifecycle.create_child(None, DRAFT, TODAY)
    assert not result.success
    assert result.error == ErrorKind.not_authenticated


@pytest.mark.anyio
@pytest.mark.parametrize(
    "draft",
    [
        {"firstName": "Ada", "lastName": "Lovelace", "dateOfBirth": "not-a-date"},
        {"firstName": "", "lastName": "Lovelace", "dateOfBirth": "2023-01-10"},
        {"firstName": "Ada", "lastName": "Lovelace", "dateOfBirth": "2030-01-01"},
        {"firstName": "Ada", "lastName": "Lovelace"},
    ],
)
async def test_create_child_rejects_bad_drafts(lifecycle, store, draft):
    result = await lifecycle.create_child(ALICE, draft, TODAY)
    assert result.error == ErrorKind.validation_failure
    assert await store.list_path("children") == []


@pytest.mark.anyio
async def test_schedule_status_is_derived_on_every_read(lifecycle):
    child = await _create(lifecycle)

    early = {i.vaccine_name: i.status for i in (await lifecycle.get_child_schedule(ALICE, child.id, "2023-03-09")).unwrap()}
    later = {i.vaccine_name: i.status for i in (await lifecycle.get_child_schedule(ALICE, child.id, "2023-04-10")).unwrap()}

    assert early["DPT1"] == ScheduleStatus.upcoming
    assert later["DPT1"] == ScheduleStatus.overdue


@pytest.mark.anyio
async def test_status_filter(lifecycle):
    child = await _create(lifecycle)

    upcoming = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY, "upcoming")).unwrap()
    assert [i.vaccine_name for i in upcoming] == ["DPT Booster", "Measles2"]

    everything = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY, "all")).unwrap()
    assert len(everything) == 12

    bad = await lifecycle.get_child_schedule(ALICE, child.id, TODAY, "late")
    assert bad.error == ErrorKind.validation_failure


@pytest.mark.anyio
async def test_other_account_sees_not_found_everywhere(lifecycle, vaccinations):
    child = await _create(lifecycle)
    item = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()[0]
    missing = await lifecycle.get_child(BOB, "no-such-child")

    attempts = [
        await lifecycle.get_child(BOB, child.id),
        await lifecycle.update_child(BOB, child.id, {"firstName": "Eve"}),
        await lifecycle.get_child_schedule(BOB, child.id, TODAY),
        await lifecycle.initialize_schedule(BOB, child.id, TODAY),
        await lifecycle.update_schedule_item(
            BOB, child.id, item.id, {"completed": True, "dateCompleted": "2023-01-10"}, TODAY
        ),
        await lifecycle.delete_child(BOB, child.id),
        await vaccinations.get_child_vaccinations(BOB, child.id),
        await vaccinations.add_vaccination(BOB, child.id, {"vaccine": "BCG", "dateAdministered": "2023-01-10"}, TODAY),
    ]
    for result in attempts:
        assert not result.success
        assert result.error == ErrorKind.not_found
        assert result.message == missing.message

    # Alice's data is untouched.
    still = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()
    assert len(still) == 12
    assert not any(i.completed for i in still)


@pytest.mark.anyio
async def test_bulk_scans_only_return_own_records(lifecycle):
    a = await _create(lifecycle, ALICE)
    await _create(lifecycle, BOB, {**DRAFT, "firstName": "Bea"})

    assert [c.id for c in (await lifecycle.list_children(ALICE)).unwrap()] == [a.id]
    mine = (await lifecycle.get_all_schedules(ALICE, TODAY)).unwrap()
    assert len(mine) == 12
    assert {i.child_id for i in mine} == {a.id}


@pytest.mark.anyio
async def test_partial_initialization_failure_reports_each_failed_dose(test_db_session):
    flaky = FlakyStore(test_db_session, fail_vaccines={"MMR", "Measles2"})
    lifecycle = ScheduleLifecycle(flaky)

    result = await lifecycle.create_child(ALICE, DRAFT, TODAY)

    assert not result.success
    assert result.error == ErrorKind.remote_failure
    assert sorted(f.key for f in result.failures) == ["MMR", "Measles2"]
    child = result.data
    assert child.schedule_status == ScheduleInitStatus.incomplete

    # Successful writes stay visible; nothing is rolled back.
    items = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()
    assert len(items) == 10
    assert "MMR" not in {i.vaccine_name for i in items}

    # Retry writes only what is missing.
    kept_ids = {i.id for i in items}
    flaky.fail_vaccines.clear()
    retry = await lifecycle.initialize_schedule(ALICE, child.id, TODAY)
    assert retry.success
    assert [i.vaccine_name for i in retry.data] == [d.name for d in all_doses()]
    assert kept_ids <= {i.id for i in retry.data}
    assert (await lifecycle.get_child(ALICE, child.id)).data.schedule_status == ScheduleInitStatus.complete


@pytest.mark.anyio
async def test_initialize_never_regenerates_existing_items(lifecycle, store):
    child = await _create(lifecycle)
    before = {i.id for i in (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()}

    again = await lifecycle.initialize_schedule(ALICE, child.id, TODAY)

    assert again.success
    assert {i.id for i in again.data} == before
    assert len(await store.list_path(f"schedules/{child.id}")) == 12


@pytest.mark.anyio
async def test_completing_a_dose_before_its_due_date(lifecycle):
    child = await _create(lifecycle)
    dpt1 = next(i for i in (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap() if i.vaccine_name == "DPT1")
    assert dpt1.due_date == date(2023, 3, 10)

    result = await lifecycle.update_schedule_item(
        ALICE, child.id, dpt1.id, {"completed": True, "dateCompleted": "2023-03-09"}, "2023-03-09"
    )

    assert result.success, result.message
    assert result.data.status == ScheduleStatus.completed
    assert result.data.date_completed == date(2023, 3, 9)
    assert result.data.updated_at is not None


@pytest.mark.anyio
@pytest.mark.parametrize(
    "patch",
    [
        {"completed": True},
        {"completed": True, "dateCompleted": "2024-07-01"},
        {"dateCompleted": "2023-03-09"},
        {"completed": None},
        {"vaccineName": "Something else"},
        {"dueDate": "2030-01-01"},
        {"completed": True, "dateCompleted": "yesterday"},
    ],
)
async def test_invalid_schedule_patches_are_rejected(lifecycle, store, patch):
    child = await _create(lifecycle)
    item = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()[2]
    before = await store.get(f"schedules/{child.id}/{item.id}")

    result = await lifecycle.update_schedule_item(ALICE, child.id, item.id, patch, TODAY)

    assert result.error == ErrorKind.validation_failure
    assert await store.get(f"schedules/{child.id}/{item.id}") == before


@pytest.mark.anyio
async def test_status_in_patch_is_never_stored(lifecycle, store):
    child = await _create(lifecycle)
    item = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()[0]

    result = await lifecycle.update_schedule_item(ALICE, child.id, item.id, {"status": "completed", "notes": "x"}, TODAY)

    assert result.success
    assert result.data.status == ScheduleStatus.overdue
    stored = await store.get(f"schedules/{child.id}/{item.id}")
    assert "status" not in stored
    assert stored["notes"] == "x"


@pytest.mark.anyio
async def test_uncompleting_clears_date(lifecycle):
    child = await _create(lifecycle)
    item = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()[0]
    await lifecycle.update_schedule_item(ALICE, child.id, item.id, {"completed": True, "dateCompleted": "2023-01-10"}, TODAY)

    result = await lifecycle.update_schedule_item(ALICE, child.id, item.id, {"completed": False}, TODAY)

    assert result.data.completed is False
    assert result.data.date_completed is None
    assert result.data.status == ScheduleStatus.overdue


@pytest.mark.anyio
async def test_unknown_schedule_item(lifecycle):
    child = await _create(lifecycle)
    for key in ("nope", "a/b", ""):
        result = await lifecycle.update_schedule_item(ALICE, child.id, key, {"notes": "x"}, TODAY)
        assert result.error == ErrorKind.not_found


@pytest.mark.anyio
async def test_update_child_merges_and_protects_immutable_fields(lifecycle):
    child = await _create(lifecycle)

    renamed = await lifecycle.update_child(ALICE, child.id, {"firstName": "Augusta"})
    assert renamed.success
    assert renamed.data.first_name == "Augusta"
    assert renamed.data.last_name == "Lovelace"
    assert renamed.data.updated_at is not None

    for patch in ({"dateOfBirth": "2022-01-01"}, {"userId": BOB}, {"firstName": None}):
        result = await lifecycle.update_child(ALICE, child.id, patch)
        assert result.error == ErrorKind.validation_failure

    assert (await lifecycle.get_child(ALICE, child.id)).data.owner_account_id == ALICE


@pytest.mark.anyio
async def test_delete_child_cascades(lifecycle, vaccinations, store):
    child = await _create(lifecycle)
    other = await _create(lifecycle, draft={**DRAFT, "firstName": "Byron"})
    await vaccinations.add_vaccination(ALICE, child.id, {"vaccine": "BCG", "dateAdministered": "2023-01-10"}, TODAY)

    result = await lifecycle.delete_child(ALICE, child.id)

    assert result.success
    assert result.data == child.id
    assert await store.get(f"children/{child.id}") is None
    assert await store.list_path(f"schedules/{child.id}") == []
    assert await store.list_path(f"vaccinations/{child.id}") == []
    assert (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).error == ErrorKind.not_found
    assert {i.child_id for i in (await lifecycle.get_all_schedules(ALICE, TODAY)).unwrap()} == {other.id}


@pytest.mark.anyio
async def test_interrupted_delete_hides_child_and_can_be_finished(test_db_session):
    flaky = FlakyStore(test_db_session, fail_delete_prefix="children/")
    lifecycle = ScheduleLifecycle(flaky)
    child = await _create(lifecycle)

    result = await lifecycle.delete_child(ALICE, child.id)

    assert result.error == ErrorKind.remote_failure
    assert (await lifecycle.get_child(ALICE, child.id)).error == ErrorKind.not_found
    assert (await lifecycle.list_children(ALICE)).data == []
    assert await flaky.list_path(f"schedules/{child.id}") == []

    flaky.fail_delete_prefix = None
    assert (await lifecycle.delete_child(ALICE, child.id)).success
    assert await flaky.get(f"children/{child.id}") is None


@pytest.mark.anyio
async def test_interrupted_delete_hides_leftover_items_from_bulk_scan(test_db_session):
    flaky = FlakyStore(test_db_session, fail_delete_prefix="schedules/")
    lifecycle = ScheduleLifecycle(flaky)
    gone = await _create(lifecycle)
    kept = await _create(lifecycle, draft={**DRAFT, "firstName": "Byron"})

    result = await lifecycle.delete_child(ALICE, gone.id)

    assert result.error == ErrorKind.remote_failure
    assert len(await flaky.list_path(f"schedules/{gone.id}")) == 12
    everything = (await lifecycle.get_all_schedules(ALICE, TODAY)).unwrap()
    assert len(everything) == 12
    assert {i.child_id for i in everything} == {kept.id}


@pytest.mark.anyio
async def test_broken_owner_copy_is_hidden_and_not_writable(lifecycle, store):
    child = await _create(lifecycle)
    item = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()[0]
    await store.update(f"schedules/{child.id}/{item.id}", {"userId": BOB})

    visible = (await lifecycle.get_child_schedule(ALICE, child.id, TODAY)).unwrap()
    assert item.id not in {i.id for i in visible}

    result = await lifecycle.update_schedule_item(ALICE, child.id, item.id, {"notes": "x"}, TODAY)
    assert result.error == ErrorKind.not_found


@pytest.mark.anyio
async def test_schedule_summary(lifecycle):
    child = await _create(lifecycle)

    summary = (await lifecycle.schedule_summary(ALICE, child.id, TODAY)).unwrap()

    assert summary.total == 12
    assert summary.counts == {"upcoming": 2, "due": 0, "overdue": 10, "completed": 0}
    assert summary.next_due.vaccine_name == "BCG"


@pytest.mark.anyio
async def test_watch_children_filters_by_owner_and_stops_after_unsubscribe(lifecycle):
    seen = []
    sub = (await lifecycle.watch_children(ALICE, seen.append)).unwrap()
    assert seen == [[]]

    child = await _create(lifecycle)
    assert [c.id for c in seen[-1]] == [child.id]

    await _create(lifecycle, BOB)
    assert [c.id for c in seen[-1]] == [child.id]

    sub.unsubscribe()
    count = len(seen)
    await _create(lifecycle)
    assert len(seen) == count


@pytest.mark.anyio
async def test_watch_children_requires_account(lifecycle):
    result = await lifecycle.watch_children("", lambda s: None)
    assert result.error == ErrorKind.not_authenticated
    assert result.data is None
