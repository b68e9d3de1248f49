"""Normalized change notifications.

Every store (in-memory, remote HTTP + MQTT) converts what it observes
into these events. Only the view layer is allowed to merge them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gpslogger.models.location import LocationRecord


class ChangeType(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class RecordChange(BaseModel):
    """One insert, update or delete visible through the change feed.

    Upserts must carry the record. Removals only need an identity: the
    store id for acknowledged records, the ``client_ref`` for a pending
    placeholder whose write failed.
    """

    model_config = ConfigDict(frozen=True)

    type: ChangeType
    record_id: str | None = None
    client_ref: str | None = None
    record: LocationRecord | None = None

    @model_validator(mode="after")
    def _fill_identity(self) -> RecordChange:
        if self.record is not None:
            if self.record_id is None and self.record.id is not None:
                object.__setattr__(self, "record_id", self.record.id)
            if self.client_ref is None and self.record.client_ref is not None:
                object.__setattr__(self, "client_ref", self.record.client_ref)
        elif self.type is not ChangeType.REMOVED:
            raise ValueError(f"{self.type} change requires a record")
        if self.record_id is None and self.client_ref is None:
            raise ValueError("change needs a record_id or a client_ref")
        return self

    @property
    def pending(self) -> bool:
        return self.record_id is None

    @classmethod
    def upsert(cls, record: LocationRecord, *, modified: bool = False) -> RecordChange:
        return cls(type=ChangeType.MODIFIED if modified else ChangeType.ADDED, record=record)

    @classmethod
    def removed(cls, *, record_id: str | None = None, client_ref: str | None = None) -> RecordChange:
        return cls(type=ChangeType.REMOVED, record_id=record_id, client_ref=client_ref)


class ChangeNotification(BaseModel):
    """A batch of changes delivered to a subscription.

    An empty ``changes`` tuple is a reset: the subscriber cannot apply it
    incrementally and has to re-fetch the whole collection.
    """

    model_config = ConfigDict(frozen=True)

    changes: tuple[RecordChange, ...] = ()
    has_pending_writes: bool = False
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def requires_refetch(self) -> bool:
        return not self.changes

    @classmethod
    def reset(cls) -> ChangeNotification:
        return cls()
