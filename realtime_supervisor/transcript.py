"""
Transcript aggregation.

Folds incremental transcript deltas into stable conversation items and keeps
the breadcrumb trail shown alongside them. The :class:`Transcript` is the sole
writer of its items; everything else reads snapshots and listens to its
signals.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from psygnal import Signal
from pydantic import BaseModel, Field

TRANSCRIBING_PLACEHOLDER = "[Transcribing...]"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ItemStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class TranscriptItem(BaseModel):
    """One conversation message as seen by the UI."""

    item_id: str
    role: Literal["user", "assistant"]
    text: str = ""
    status: ItemStatus = ItemStatus.IN_PROGRESS
    created_at: datetime = Field(default_factory=_now)
    placeholder: bool = False

    @property
    def done(self) -> bool:
        return self.status == ItemStatus.DONE


class Breadcrumb(BaseModel):
    """Human-readable log entry surfaced next to the transcript."""

    breadcrumb_id: str = Field(default_factory=lambda: f"crumb_{uuid.uuid4().hex[:12]}")
    title: str
    data: Optional[Any] = None
    created_at: datetime = Field(default_factory=_now)


class Transcript:
    """Ordered conversation items plus breadcrumbs."""

    transcript_updated = Signal(object)
    breadcrumb_added = Signal(object)

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger("Transcript")
        self._items: Dict[str, TranscriptItem] = {}
        self._breadcrumbs: List[Breadcrumb] = []

    # ------------------------------------------------------------------ #
    # Read side
    # ------------------------------------------------------------------ #

    @property
    def items(self) -> List[TranscriptItem]:
        return [item.model_copy() for item in self._items.values()]

    @property
    def breadcrumbs(self) -> List[Breadcrumb]:
        return list(self._breadcrumbs)

    def get(self, item_id: str) -> Optional[TranscriptItem]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def history_messages(self) -> List[Dict[str, Any]]:
        """Message entries in arrival order, shaped for the supervisor."""
        return [
            {
                "type": "message",
                "id": item.item_id,
                "role": item.role,
                "content": item.text,
                "status": item.status.value.lower(),
            }
            for item in self._items.values()
            if not item.placeholder
        ]

    # ------------------------------------------------------------------ #
    # Write side
    # ------------------------------------------------------------------ #

    def add_message(
        self,
        item_id: str,
        role: str,
        text: str = "",
        *,
        done: bool = False,
        placeholder: bool = False,
    ) -> bool:
        """Introduce an item; a second creation for the same id is a no-op."""
        if item_id in self._items:
            self.logger.debug(f"Ignoring duplicate creation for item {item_id}")
            return False
        item = TranscriptItem(
            item_id=item_id,
            role=role,
            text=TRANSCRIBING_PLACEHOLDER if placeholder and not text else text,
            status=ItemStatus.DONE if done else ItemStatus.IN_PROGRESS,
            placeholder=placeholder and not text,
        )
        self._items[item_id] = item
        self.transcript_updated.emit(item.model_copy())
        return True

    def append_delta(self, item_id: str, delta: str, role: str = "assistant") -> bool:
        """Append a streamed fragment, creating the item if it is still unseen."""
        item = self._items.get(item_id)
        if item is None:
            self.logger.debug(f"Delta for unseen item {item_id}; creating it")
            self.add_message(item_id, role, placeholder=True)
            item = self._items[item_id]
        if item.done:
            self.logger.debug(f"Ignoring delta for completed item {item_id}")
            return False
        if not delta:
            return False
        if item.placeholder:
            item.text = delta
            item.placeholder = False
        else:
            item.text += delta
        self.transcript_updated.emit(item.model_copy())
        return True

    def complete(self, item_id: str, text: Optional[str], role: str = "assistant") -> bool:
        """Replace the text with the authoritative final value and mark DONE."""
        item = self._items.get(item_id)
        if item is None:
            self.add_message(item_id, role, placeholder=True)
            item = self._items[item_id]
        if item.done:
            self.logger.debug(f"Item {item_id} already completed")
            return False
        item.text = text or ""
        item.placeholder = False
        item.status = ItemStatus.DONE
        self.transcript_updated.emit(item.model_copy())
        return True

    def add_breadcrumb(self, title: str, data: Optional[Any] = None) -> Breadcrumb:
        crumb = Breadcrumb(title=title, data=data)
        self._breadcrumbs.append(crumb)
        self.logger.info(f"Breadcrumb: {title}")
        self.breadcrumb_added.emit(crumb)
        return crumb
