"""Ownership chain: child -> schedule item / vaccination record -> account.

Single-child operations are always authorized against the stored Child. The
``userId`` copied onto schedule items and vaccination records is only used to
filter whole-collection scans.
"""
import logging
from collections.abc import Iterable
from typing import TypeVar

from pydantic import ValidationError

from services.vaxtrack.auth import require_account
from services.vaxtrack.errors import NotFound
from services.vaxtrack.schemas import Child
from services.vaxtrack.store import RecordStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

CHILD_NOT_FOUND = "Child not found"


class OwnershipGuard:
    def __init__(self, store: RecordStore):
        self.store = store

    async def authorize(self, account_id: str | None, child_id: str, *, allow_deleting: bool = False) -> Child:
        """Return the child if the caller owns it.

        Absent, foreign and tombstoned children all fail with the same NotFound.
        """
        account_id = require_account(account_id)
        if not child_id or "/" in child_id:
            raise NotFound(CHILD_NOT_FOUND)

        doc = await self.store.get(f"children/{child_id}")
        if doc is None:
            raise NotFound(CHILD_NOT_FOUND)
        try:
            child = Child.model_validate(doc)
        except ValidationError as e:
            logger.error(f"Unreadable child record {child_id}: {e}")
            raise NotFound(CHILD_NOT_FOUND)

        if child.owner_account_id != account_id:
            raise NotFound(CHILD_NOT_FOUND)
        if child.deleted_at is not None and not allow_deleting:
            raise NotFound(CHILD_NOT_FOUND)
        return child

    async def live_child_ids(self, account_id: str | None) -> set[str]:
        """Ids of the caller's children that are not tombstoned."""
        account_id = require_account(account_id)
        docs = await self.store.query_equal("children", "userId", account_id)
        return {d["id"] for d in docs if d.get("id") and not d.get("deletedAt")}

    @staticmethod
    def filter_owned(account_id: str | None, records: Iterable[T]) -> list[T]:
        """Keep records whose denormalized owner is the caller."""
        account_id = require_account(account_id)
        out = []
        for r in records:
            owner = r.get("userId") if isinstance(r, dict) else getattr(r, "owner_account_id", None)
            if owner == account_id:
                out.append(r)
        return out

    @staticmethod
    def check_chain(child: Child, record, *, entity: str = "Record") -> None:
        """Write-time consistency check between a child and one of its records.

        A mismatch is a data-integrity bug; the record is treated as not found.
        """
        if record.child_id != child.id or record.owner_account_id != child.owner_account_id:
            logger.error(
                f"Ownership chain broken for {entity.lower()} {record.id}: "
                f"child={record.child_id}/{child.id} owner={record.owner_account_id}/{child.owner_account_id}"
            )
            raise NotFound(f"{entity} not found")
