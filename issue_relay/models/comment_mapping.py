"""Comment mapping models"""
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from issue_relay.models.base import Base
from issue_relay.models.issue_mapping import utcnow


class CommentMapping(Base):
    """Comment written in a source org and mirrored into the hub"""

    __tablename__ = "comments"

    id = Column(Integer, primary_key=True, index=True)
    source_comment_id = Column(BigInteger, unique=True, nullable=False, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)

    author_login = Column(String, nullable=True)
    body = Column(Text, nullable=True)

    hub_comment_id = Column(BigInteger, unique=True, nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    issue = relationship("IssueMapping", back_populates="comments")

    def __repr__(self):
        return f"<CommentMapping(source={self.source_comment_id} -> hub={self.hub_comment_id})>"


class SyncedCommentMapping(Base):
    """Comment written in the hub and relayed back to the source issue"""

    __tablename__ = "synced_comments"

    id = Column(Integer, primary_key=True, index=True)
    hub_comment_id = Column(BigInteger, unique=True, nullable=False, index=True)
    issue_id = Column(Integer, ForeignKey("issues.id", ondelete="CASCADE"), nullable=False, index=True)

    author_login = Column(String, nullable=True)
    body = Column(Text, nullable=True)

    source_comment_id = Column(BigInteger, unique=True, nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    issue = relationship("IssueMapping", back_populates="synced_comments")

    def __repr__(self):
        return f"<SyncedCommentMapping(hub={self.hub_comment_id} -> source={self.source_comment_id})>"
