"""Sync intent model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum
import enum
from issue_relay.models.base import Base
from issue_relay.models.issue_mapping import utcnow


class IntentStatus(str, enum.Enum):
    """Intent status enumeration"""
    PENDING = "pending"  # recorded, remote side not touched yet
    APPLIED = "applied"  # remote side mutated, local mapping not yet persisted
    DONE = "done"
    FAILED = "failed"  # failed before the remote side was mutated


class Direction(str, enum.Enum):
    """Relay direction enumeration"""
    SOURCE_TO_HUB = "source_to_hub"
    HUB_TO_SOURCE = "hub_to_source"


class SyncIntent(Base):
    """Write-ahead record of a counterpart mutation"""

    __tablename__ = "sync_intents"

    id = Column(Integer, primary_key=True, index=True)

    direction = Column(Enum(Direction), nullable=False)
    event_kind = Column(String, nullable=False)
    # e.g. "issue:1234" or "comment:5678", in the id space of the side that raised the event
    entity_key = Column(String, nullable=False, index=True)

    status = Column(Enum(IntentStatus), nullable=False, default=IntentStatus.PENDING, index=True)
    remote_ref = Column(String, nullable=True)  # what was created/changed on the counterpart
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncIntent({self.event_kind} {self.entity_key}, status={self.status})>"
