"""Push channel for record changes.

A subscription watches one path (e.g. ``children`` or ``vaccinations/<childId>``)
and receives the full snapshot of that path after every write touching it.
"""
import logging
from collections.abc import Callable
from typing import Any


logger = logging.getLogger(__name__)

Snapshot = list[dict[str, Any]]


class Subscription:
    def __init__(self, feed: "ChangeFeed", path: str, callback: Callable[[Any], None]):
        self.path = path
        self.active = True
        self._feed = feed
        self._callback = callback

    def deliver(self, snapshot) -> None:
        # Checked on every delivery so nothing fires after unsubscribe() returns.
        if not self.active:
            return
        try:
            self._callback(snapshot)
        except Exception as e:
            logger.error(f"Subscriber callback for {self.path} failed: {e}")

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed.remove(self)


class ChangeFeed:
    def __init__(self):
        self._subscriptions: list[Subscription] = []

    def subscribe(self, path: str, callback: Callable[[Any], None]) -> Subscription:
        sub = Subscription(self, path.strip("/"), callback)
        self._subscriptions.append(sub)
        return sub

    def remove(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def matching(self, changed_path: str) -> list[Subscription]:
        """Subscriptions whose watched path overlaps the changed path (ancestor or descendant)."""
        changed = changed_path.strip("/")
        hits = []
        for sub in list(self._subscriptions):
            if (
                sub.path == changed
                or changed.startswith(sub.path + "/")
                or sub.path.startswith(changed + "/")
            ):
                hits.append(sub)
        return hits

    def __len__(self) -> int:
        return len(self._subscriptions)
