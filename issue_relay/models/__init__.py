"""Database models"""

from issue_relay.models.base import Base
from issue_relay.models.comment_mapping import CommentMapping, SyncedCommentMapping
from issue_relay.models.issue_mapping import IssueMapping
from issue_relay.models.sync_intent import Direction, IntentStatus, SyncIntent

__all__ = [
    "Base",
    "IssueMapping",
    "CommentMapping",
    "SyncedCommentMapping",
    "SyncIntent",
    "IntentStatus",
    "Direction",
]
