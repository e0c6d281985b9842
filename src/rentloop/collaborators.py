"""Collaborator contracts — the narrow interfaces the engine consumes.

Each contract is a ``typing.Protocol``. The in-process implementations
below are for development, the CLI and tests; production wiring supplies
its own.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from rentloop.models.rental import Item

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    """A user-facing message. Delivery is fire-and-forget."""
    type: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class NotificationDispatcher(Protocol):
    def send(self, user_id: str, notification: Notification) -> None:
        ...


@runtime_checkable
class IdentityVerifier(Protocol):
    def is_verified(self, user_id: str) -> bool:
        ...


@runtime_checkable
class ItemCatalog(Protocol):
    def get_item(self, item_id: str) -> Optional[Item]:
        ...


class RecordingDispatcher:
    """Keeps every notification in memory instead of delivering it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.sent: list[tuple[str, Notification]] = []

    def send(self, user_id: str, notification: Notification) -> None:
        with self._lock:
            self.sent.append((user_id, notification))
        logger.debug("Notification %s queued for %s", notification.type, user_id)

    def for_user(self, user_id: str) -> list[Notification]:
        with self._lock:
            return [n for uid, n in self.sent if uid == user_id]

    def types_for(self, user_id: str) -> list[str]:
        return [n.type for n in self.for_user(user_id)]


class StaticIdentityVerifier:
    """Verification signal from a fixed set of user IDs.

    With ``verify_all=True`` every user counts as verified.
    """

    def __init__(
        self,
        verified: Iterable[str] = (),
        verify_all: bool = False,
    ) -> None:
        self._verified = set(verified)
        self._verify_all = verify_all

    def verify(self, user_id: str) -> None:
        self._verified.add(user_id)

    def revoke(self, user_id: str) -> None:
        self._verified.discard(user_id)

    def is_verified(self, user_id: str) -> bool:
        return self._verify_all or user_id in self._verified


class InMemoryItemCatalog:
    """Item reference data held in a dict."""

    def __init__(self, items: Iterable[Item] = ()) -> None:
        self._items: dict[str, Item] = {i.item_id: i for i in items}

    def add(self, item: Item) -> None:
        self._items[item.item_id] = item

    def get_item(self, item_id: str) -> Optional[Item]:
        return self._items.get(item_id)
