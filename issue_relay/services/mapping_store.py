"""Durable identity map between source-org entities and their hub mirrors.

Every public operation is one committed transaction. Lookups that find no row
raise ``MappingNotFound`` rather than returning a sentinel.
"""

import logging
from datetime import datetime, timedelta
from typing import List, NamedTuple, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from issue_relay.models import (
    CommentMapping,
    Direction,
    IntentStatus,
    IssueMapping,
    SyncedCommentMapping,
    SyncIntent,
)
from issue_relay.models.issue_mapping import utcnow
from issue_relay.services.exceptions import DuplicateMapping, MappingNotFound, PersistenceError

logger = logging.getLogger(__name__)

_UNSET = object()


class SourceIssueRef(NamedTuple):
    org: str
    repo: str
    number: int
    source_issue_id: int


class SourceCommentRef(NamedTuple):
    org: str
    repo: str
    source_comment_id: int
    source_issue_id: int


class MappingStore:
    """Identity store backed by a SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self, what: str, *, duplicate: bool = False):
        """Commit the unit of work; a unique-key clash on insert means a duplicate mapping."""
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if duplicate:
                # Another worker likely created the mapping first.
                raise DuplicateMapping(f"{what} already exists") from e
            raise PersistenceError(f"Failed to persist {what}: {e}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to persist {what}: {e}")
            raise PersistenceError(f"Failed to persist {what}: {e}") from e

    def _query_first(self, query, what: str):
        try:
            return query.first()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to read {what}: {e}") from e

    # Issues

    def _issue_by_source(self, source_issue_id: int) -> IssueMapping:
        row = self._query_first(
            self.db.query(IssueMapping).filter(IssueMapping.source_issue_id == source_issue_id),
            f"issue mapping {source_issue_id}",
        )
        if row is None:
            raise MappingNotFound(f"No issue mapping for source issue {source_issue_id}")
        return row

    def _issue_by_hub(self, hub_issue_number: int) -> IssueMapping:
        row = self._query_first(
            self.db.query(IssueMapping).filter(IssueMapping.hub_issue_number == hub_issue_number),
            f"issue mapping for hub issue #{hub_issue_number}",
        )
        if row is None:
            raise MappingNotFound(f"No issue mapping for hub issue #{hub_issue_number}")
        return row

    def issue_mapping_exists(self, source_issue_id: int) -> bool:
        try:
            self._issue_by_source(source_issue_id)
        except MappingNotFound:
            return False
        return True

    def get_issue_mapping(self, source_issue_id: int) -> IssueMapping:
        return self._issue_by_source(source_issue_id)

    def list_issue_mappings(self, limit: int = 100) -> List[IssueMapping]:
        return (
            self.db.query(IssueMapping)
            .order_by(IssueMapping.updated_at.desc())
            .limit(limit)
            .all()
        )

    def create_issue_mapping(
        self,
        *,
        source_issue_id: int,
        source_org: str,
        source_repo: str,
        source_issue_number: int,
        author_login: Optional[str],
        title: Optional[str],
        body: Optional[str],
        state: str,
        hub_issue_number: int,
    ) -> IssueMapping:
        """Persist a new issue pair. Never overwrites an existing row."""
        if self.issue_mapping_exists(source_issue_id):
            raise DuplicateMapping(f"Source issue {source_issue_id} is already mapped")

        row = IssueMapping(
            source_issue_id=source_issue_id,
            source_org=source_org,
            source_repo=source_repo,
            source_issue_number=source_issue_number,
            author_login=author_login,
            title=title,
            body=body,
            state=state,
            hub_issue_number=hub_issue_number,
        )
        self.db.add(row)
        self._commit(
            f"Mapping for source issue {source_issue_id} / hub issue #{hub_issue_number}",
            duplicate=True,
        )
        logger.info(
            f"Mapped {source_org}/{source_repo}#{source_issue_number} to hub issue #{hub_issue_number}"
        )
        return row

    def update_issue_mapping(
        self,
        source_issue_id: int,
        *,
        author_login=_UNSET,
        title=_UNSET,
        body=_UNSET,
        state=_UNSET,
    ) -> IssueMapping:
        """Overwrite the mutable fields that were passed."""
        row = self._issue_by_source(source_issue_id)
        for name, value in (
            ("author_login", author_login),
            ("title", title),
            ("body", body),
            ("state", state),
        ):
            if value is not _UNSET:
                setattr(row, name, value)
        self._commit(f"issue mapping {source_issue_id}")
        return row

    def delete_issue_mapping(self, source_issue_id: int):
        """Remove the issue pair and every comment mapping under it."""
        row = self._issue_by_source(source_issue_id)
        self.db.delete(row)
        self._commit(f"deletion of issue mapping {source_issue_id}")
        logger.info(f"Removed mapping for source issue {source_issue_id}")

    def resolve_hub_issue_by_source(self, source_issue_id: int) -> int:
        return self._issue_by_source(source_issue_id).hub_issue_number

    def resolve_source_issue_by_hub(self, hub_issue_number: int) -> SourceIssueRef:
        row = self._issue_by_hub(hub_issue_number)
        return SourceIssueRef(
            org=row.source_org,
            repo=row.source_repo,
            number=row.source_issue_number,
            source_issue_id=row.source_issue_id,
        )

    # Comments written on the source side

    def _comment_by_source(self, source_comment_id: int) -> CommentMapping:
        row = self._query_first(
            self.db.query(CommentMapping)
            .join(IssueMapping, CommentMapping.issue_id == IssueMapping.id)
            .filter(CommentMapping.source_comment_id == source_comment_id),
            f"comment mapping {source_comment_id}",
        )
        if row is None:
            raise MappingNotFound(f"No comment mapping for source comment {source_comment_id}")
        return row

    def create_comment_mapping(
        self,
        *,
        source_comment_id: int,
        source_issue_id: int,
        author_login: Optional[str],
        body: Optional[str],
        hub_comment_id: int,
    ) -> CommentMapping:
        parent = self._issue_by_source(source_issue_id)
        existing = self._query_first(
            self.db.query(CommentMapping).filter(CommentMapping.source_comment_id == source_comment_id),
            f"comment mapping {source_comment_id}",
        )
        if existing is not None:
            raise DuplicateMapping(f"Source comment {source_comment_id} is already mapped")

        row = CommentMapping(
            source_comment_id=source_comment_id,
            issue_id=parent.id,
            author_login=author_login,
            body=body,
            hub_comment_id=hub_comment_id,
        )
        self.db.add(row)
        self._commit(f"Mapping for source comment {source_comment_id}", duplicate=True)
        return row

    def update_comment_mapping(
        self, source_comment_id: int, *, author_login: Optional[str], body: Optional[str]
    ) -> CommentMapping:
        row = self._comment_by_source(source_comment_id)
        row.author_login = author_login
        row.body = body
        self._commit(f"comment mapping {source_comment_id}")
        return row

    def delete_comment_mapping(self, source_comment_id: int):
        row = self._comment_by_source(source_comment_id)
        self.db.delete(row)
        self._commit(f"deletion of comment mapping {source_comment_id}")

    def comment_mapping_exists(self, source_comment_id: int) -> bool:
        try:
            self._comment_by_source(source_comment_id)
        except MappingNotFound:
            return False
        return True

    def resolve_hub_comment_by_source(self, source_comment_id: int) -> int:
        return self._comment_by_source(source_comment_id).hub_comment_id

    # Comments written in the hub and relayed back

    def _synced_comment_by_hub(self, hub_comment_id: int) -> SyncedCommentMapping:
        row = self._query_first(
            self.db.query(SyncedCommentMapping)
            .join(IssueMapping, SyncedCommentMapping.issue_id == IssueMapping.id)
            .filter(SyncedCommentMapping.hub_comment_id == hub_comment_id),
            f"synced comment mapping {hub_comment_id}",
        )
        if row is None:
            raise MappingNotFound(f"No synced comment mapping for hub comment {hub_comment_id}")
        return row

    def create_synced_comment_mapping(
        self,
        *,
        hub_comment_id: int,
        source_issue_id: int,
        author_login: Optional[str],
        body: Optional[str],
        source_comment_id: int,
    ) -> SyncedCommentMapping:
        parent = self._issue_by_source(source_issue_id)
        existing = self._query_first(
            self.db.query(SyncedCommentMapping).filter(
                SyncedCommentMapping.hub_comment_id == hub_comment_id
            ),
            f"synced comment mapping {hub_comment_id}",
        )
        if existing is not None:
            raise DuplicateMapping(f"Hub comment {hub_comment_id} is already mapped")

        row = SyncedCommentMapping(
            hub_comment_id=hub_comment_id,
            issue_id=parent.id,
            author_login=author_login,
            body=body,
            source_comment_id=source_comment_id,
        )
        self.db.add(row)
        self._commit(f"Mapping for hub comment {hub_comment_id}", duplicate=True)
        return row

    def update_synced_comment_mapping(
        self, hub_comment_id: int, *, author_login: Optional[str], body: Optional[str]
    ) -> SyncedCommentMapping:
        row = self._synced_comment_by_hub(hub_comment_id)
        row.author_login = author_login
        row.body = body
        self._commit(f"synced comment mapping {hub_comment_id}")
        return row

    def delete_synced_comment_mapping(self, hub_comment_id: int):
        row = self._synced_comment_by_hub(hub_comment_id)
        self.db.delete(row)
        self._commit(f"deletion of synced comment mapping {hub_comment_id}")

    def synced_comment_mapping_exists(self, hub_comment_id: int) -> bool:
        try:
            self._synced_comment_by_hub(hub_comment_id)
        except MappingNotFound:
            return False
        return True

    def resolve_source_comment_by_hub(self, hub_comment_id: int) -> SourceCommentRef:
        row = self._synced_comment_by_hub(hub_comment_id)
        parent = row.issue
        return SourceCommentRef(
            org=parent.source_org,
            repo=parent.source_repo,
            source_comment_id=row.source_comment_id,
            source_issue_id=parent.source_issue_id,
        )

    # Intent ledger

    def begin_intent(self, direction: Direction, event_kind: str, entity_key: str) -> SyncIntent:
        intent = SyncIntent(
            direction=direction,
            event_kind=event_kind,
            entity_key=entity_key,
            status=IntentStatus.PENDING,
        )
        self.db.add(intent)
        self._commit(f"intent {event_kind} {entity_key}")
        return intent

    def mark_intent_applied(self, intent: SyncIntent, remote_ref: Optional[str] = None):
        intent.status = IntentStatus.APPLIED
        intent.remote_ref = remote_ref
        self._commit(f"intent {intent.id}")

    def complete_intent(self, intent: SyncIntent):
        intent.status = IntentStatus.DONE
        self._commit(f"intent {intent.id}")

    def fail_intent(self, intent: SyncIntent, error: str):
        """Record why an intent stopped. An applied intent keeps its status."""
        try:
            self.db.rollback()
            if intent.status != IntentStatus.APPLIED:
                intent.status = IntentStatus.FAILED
            intent.error = error
            self._commit(f"intent {intent.id}")
        except (SQLAlchemyError, PersistenceError, DuplicateMapping) as e:
            logger.error(f"Unable to record failure of intent {intent.id}: {e}")

    def list_intents(self, status: Optional[IntentStatus] = None, limit: int = 100) -> List[SyncIntent]:
        query = self.db.query(SyncIntent).order_by(SyncIntent.created_at.desc())
        if status is not None:
            query = query.filter(SyncIntent.status == status)
        return query.limit(limit).all()

    def list_stale_intents(
        self, older_than: timedelta, now: Optional[datetime] = None
    ) -> List[SyncIntent]:
        """Intents that never reached done/failed within ``older_than``."""
        cutoff = (now or utcnow()) - older_than
        return (
            self.db.query(SyncIntent)
            .filter(
                SyncIntent.status.in_([IntentStatus.PENDING, IntentStatus.APPLIED]),
                SyncIntent.created_at < cutoff,
            )
            .order_by(SyncIntent.created_at.asc())
            .all()
        )
