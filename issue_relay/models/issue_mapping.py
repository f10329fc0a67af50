"""Issue mapping model"""
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship

from issue_relay.models.base import Base


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IssueMapping(Base):
    """Mapping of a source-org issue to its mirror in the hub repository"""

    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, index=True)

    # Source issue
    source_issue_id = Column(BigInteger, unique=True, nullable=False, index=True)  # GitHub issue id
    source_org = Column(String, nullable=False)
    source_repo = Column(String, nullable=False)
    source_issue_number = Column(Integer, nullable=False)

    # Last relayed content
    author_login = Column(String, nullable=True)
    title = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    state = Column(String, nullable=False, default="open")  # open | closed

    # Mirror in the hub repository
    hub_issue_number = Column(Integer, unique=True, nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    comments = relationship(
        "CommentMapping",
        back_populates="issue",
        cascade="all, delete-orphan",
    )
    synced_comments = relationship(
        "SyncedCommentMapping",
        back_populates="issue",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return (
            f"<IssueMapping({self.source_org}/{self.source_repo}#{self.source_issue_number}"
            f" -> hub#{self.hub_issue_number})>"
        )
