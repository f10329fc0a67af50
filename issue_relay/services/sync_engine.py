"""Event-to-action relay between the source organizations and the hub repository"""

import enum
import logging
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from issue_relay.models import Direction
from issue_relay.services.events import EventKind, WebhookEvent
from issue_relay.services.exceptions import (
    DuplicateMapping,
    PersistenceError,
    RemoteAPIError,
    SyncError,
    UnsupportedEvent,
)
from issue_relay.services.installations import InstallationResolver
from issue_relay.services.loop_filter import LoopFilter
from issue_relay.services.mapping_store import MappingStore

logger = logging.getLogger(__name__)


class RelayOutcome(str, enum.Enum):
    SYNCED = "synced"
    IGNORED = "ignored"


def mirror_title(org: str, repo: str, number: int, title: str) -> str:
    return f"{org}/{repo}#{number}: {title}"


def mirror_body(author: str, body: Optional[str]) -> str:
    return f"@{author} posted:\n\n{body or ''}"


class _TrackedIntent:
    """Progress of one counterpart mutation through the intent ledger"""

    def __init__(self, store: MappingStore, intent):
        self.store = store
        self.intent = intent
        self.remote_ref: Optional[str] = None
        self.is_applied = False

    def applied(self, remote_ref: str):
        # Flag first: from here on a failure leaves the two sides diverged.
        self.is_applied = True
        self.remote_ref = remote_ref
        self.store.mark_intent_applied(self.intent, remote_ref)


class SyncEngine:
    """Handle one webhook event: resolve, act on the counterpart, persist.

    The engine keeps no state between events; everything it needs to find a
    counterpart lives in the mapping store.
    """

    def __init__(
        self,
        store: MappingStore,
        source_resolver: InstallationResolver,
        hub_resolver: InstallationResolver,
        hub_org: str,
        hub_repo: str,
    ):
        self.store = store
        self.source_resolver = source_resolver
        self.hub_resolver = hub_resolver
        self.hub_org = hub_org
        self.hub_repo = hub_repo
        self._acting: List[Tuple[InstallationResolver, str]] = []

        S, H = Direction.SOURCE_TO_HUB, Direction.HUB_TO_SOURCE
        self._handlers: Dict[Tuple[Direction, EventKind], Callable[[WebhookEvent], RelayOutcome]] = {
            (S, EventKind.ISSUE_OPENED): self._open_mirror,
            (S, EventKind.ISSUE_EDITED): self._edit_mirror,
            (S, EventKind.ISSUE_CLOSED): self._push_state_to_mirror,
            (S, EventKind.ISSUE_REOPENED): self._push_state_to_mirror,
            (S, EventKind.ISSUE_DELETED): self._delete_mirror,
            (S, EventKind.COMMENT_CREATED): self._mirror_comment,
            (S, EventKind.COMMENT_EDITED): self._edit_mirrored_comment,
            (S, EventKind.COMMENT_DELETED): self._delete_mirrored_comment,
            (H, EventKind.ISSUE_OPENED): self._ignore_hub_issue,
            (H, EventKind.ISSUE_EDITED): self._revert_hub_edit,
            (H, EventKind.ISSUE_CLOSED): self._push_state_to_source,
            (H, EventKind.ISSUE_REOPENED): self._push_state_to_source,
            (H, EventKind.ISSUE_DELETED): self._forget_deleted_mirror,
            (H, EventKind.COMMENT_CREATED): self._relay_hub_comment,
            (H, EventKind.COMMENT_EDITED): self._edit_relayed_comment,
            (H, EventKind.COMMENT_DELETED): self._delete_relayed_comment,
        }

    def apply(self, direction: Direction, event: WebhookEvent) -> RelayOutcome:
        handler = self._handlers.get((direction, event.kind))
        if handler is None:
            raise UnsupportedEvent(f"No handler for {event.kind.value} ({direction.value})")
        self._acting = []
        try:
            return handler(event)
        except RemoteAPIError as e:
            if e.status_code == 401:
                # Revoked token or reinstalled app: look the installation up again next time.
                for resolver, org in self._acting:
                    resolver.invalidate(org)
            raise

    @contextmanager
    def _intent(self, direction: Direction, kind: EventKind, entity_key: str):
        tracked = _TrackedIntent(self.store, self.store.begin_intent(direction, kind.value, entity_key))
        try:
            yield tracked
        except Exception as e:
            if tracked.is_applied:
                logger.error(
                    f"Inconsistency: {kind.value} for {entity_key} was applied remotely "
                    f"({tracked.remote_ref}) but not persisted: {e}. Manual reconciliation required."
                )
            self.store.fail_intent(tracked.intent, str(e))
            raise
        try:
            self.store.complete_intent(tracked.intent)
        except PersistenceError as e:
            # The mapping itself is already committed; only the ledger lags.
            logger.error(f"Failed to mark intent for {entity_key} done: {e}")

    def _resolve(self, resolver: InstallationResolver, org: str):
        self._acting.append((resolver, org))
        return resolver.resolve_client(org)

    def _hub_client(self):
        return self._resolve(self.hub_resolver, self.hub_org)

    def _source_client(self, org: str):
        return self._resolve(self.source_resolver, org)

    # Source -> hub

    def _open_mirror(self, event: WebhookEvent) -> RelayOutcome:
        issue, repo = event.issue, event.repository
        org = repo.owner.login
        if self.store.issue_mapping_exists(issue.id):
            raise DuplicateMapping(f"{org}/{repo.name}#{issue.number} is already mirrored")

        hub = self._hub_client()
        with self._intent(Direction.SOURCE_TO_HUB, event.kind, f"issue:{issue.id}") as tracked:
            mirror = hub.create_issue(
                self.hub_org,
                self.hub_repo,
                title=mirror_title(org, repo.name, issue.number, issue.title),
                body=mirror_body(issue.user.login, issue.body),
            )
            tracked.applied(f"{self.hub_org}/{self.hub_repo}#{mirror.number}")
            self.store.create_issue_mapping(
                source_issue_id=issue.id,
                source_org=org,
                source_repo=repo.name,
                source_issue_number=issue.number,
                author_login=issue.user.login,
                title=issue.title,
                body=issue.body,
                state=issue.state,
                hub_issue_number=mirror.number,
            )
        return RelayOutcome.SYNCED

    def _edit_mirror(self, event: WebhookEvent) -> RelayOutcome:
        issue, repo = event.issue, event.repository
        hub_number = self.store.resolve_hub_issue_by_source(issue.id)
        hub = self._hub_client()
        with self._intent(Direction.SOURCE_TO_HUB, event.kind, f"issue:{issue.id}") as tracked:
            hub.update_issue(
                self.hub_org,
                self.hub_repo,
                hub_number,
                title=mirror_title(repo.owner.login, repo.name, issue.number, issue.title),
                body=mirror_body(issue.user.login, issue.body),
            )
            tracked.applied(f"{self.hub_org}/{self.hub_repo}#{hub_number}")
            self.store.update_issue_mapping(
                issue.id,
                author_login=issue.user.login,
                title=issue.title,
                body=issue.body,
                state=issue.state,
            )
        return RelayOutcome.SYNCED

    def _push_state_to_mirror(self, event: WebhookEvent) -> RelayOutcome:
        issue = event.issue
        hub_number = self.store.resolve_hub_issue_by_source(issue.id)
        hub = self._hub_client()
        with self._intent(Direction.SOURCE_TO_HUB, event.kind, f"issue:{issue.id}") as tracked:
            hub.update_issue(self.hub_org, self.hub_repo, hub_number, state=issue.state)
            tracked.applied(f"{self.hub_org}/{self.hub_repo}#{hub_number}")
            self.store.update_issue_mapping(issue.id, state=issue.state)
        return RelayOutcome.SYNCED

    def _delete_mirror(self, event: WebhookEvent) -> RelayOutcome:
        issue = event.issue
        hub_number = self.store.resolve_hub_issue_by_source(issue.id)
        hub = self._hub_client()
        with self._intent(Direction.SOURCE_TO_HUB, event.kind, f"issue:{issue.id}") as tracked:
            node_id = hub.get_issue_node_id(self.hub_org, self.hub_repo, hub_number)
            hub.delete_issue(node_id)
            tracked.applied(f"{self.hub_org}/{self.hub_repo}#{hub_number}")
            self.store.delete_issue_mapping(issue.id)
        return RelayOutcome.SYNCED

    def _mirror_comment(self, event: WebhookEvent) -> RelayOutcome:
        issue, comment = event.issue, event.comment
        hub_number = self.store.resolve_hub_issue_by_source(issue.id)
        if self.store.comment_mapping_exists(comment.id):
            raise DuplicateMapping(f"Comment {comment.id} is already mirrored")

        hub = self._hub_client()
        with self._intent(Direction.SOURCE_TO_HUB, event.kind, f"comment:{comment.id}") as tracked:
            mirror = hub.create_comment(
                self.hub_org, self.hub_repo, hub_number, mirror_body(comment.user.login, comment.body)
            )
            tracked.applied(f"hub comment {mirror.id}")
            self.store.create_comment_mapping(
                source_comment_id=comment.id,
                source_issue_id=issue.id,
                author_login=comment.user.login,
                body=comment.body,
                hub_comment_id=mirror.id,
            )
        return RelayOutcome.SYNCED

    def _edit_mirrored_comment(self, event: WebhookEvent) -> RelayOutcome:
        comment = event.comment
        hub_comment_id = self.store.resolve_hub_comment_by_source(comment.id)
        hub = self._hub_client()
        with self._intent(Direction.SOURCE_TO_HUB, event.kind, f"comment:{comment.id}") as tracked:
            hub.update_comment(
                self.hub_org, self.hub_repo, hub_comment_id, mirror_body(comment.user.login, comment.body)
            )
            tracked.applied(f"hub comment {hub_comment_id}")
            self.store.update_comment_mapping(
                comment.id, author_login=comment.user.login, body=comment.body
            )
        return RelayOutcome.SYNCED

    def _delete_mirrored_comment(self, event: WebhookEvent) -> RelayOutcome:
        comment = event.comment
        hub_comment_id = self.store.resolve_hub_comment_by_source(comment.id)
        hub = self._hub_client()
        with self._intent(Direction.SOURCE_TO_HUB, event.kind, f"comment:{comment.id}") as tracked:
            hub.delete_comment(self.hub_org, self.hub_repo, hub_comment_id)
            tracked.applied(f"hub comment {hub_comment_id}")
            self.store.delete_comment_mapping(comment.id)
        return RelayOutcome.SYNCED

    # Hub -> source

    def _ignore_hub_issue(self, event: WebhookEvent) -> RelayOutcome:
        logger.info(f"Not relaying hub issue #{event.issue.number}: issues originate in source orgs")
        return RelayOutcome.IGNORED

    def _revert_hub_edit(self, event: WebhookEvent) -> RelayOutcome:
        """Edits made in the hub are not authoritative; put the previous text back."""
        issue = event.issue
        self.store.resolve_source_issue_by_hub(issue.number)

        changes = event.payload.changes
        title = changes.title.from_ if changes and changes.title else None
        body = None
        if changes and changes.body:
            body = changes.body.from_ or ""
        if title is None and body is None:
            logger.info(f"Hub issue #{issue.number} edit touched no title/body; nothing to revert")
            return RelayOutcome.IGNORED

        hub = self._hub_client()
        with self._intent(Direction.HUB_TO_SOURCE, event.kind, f"hub-issue:{issue.id}") as tracked:
            hub.update_issue(self.hub_org, self.hub_repo, issue.number, title=title, body=body)
            tracked.applied(f"{self.hub_org}/{self.hub_repo}#{issue.number} reverted")
        logger.info(f"Reverted edit of hub issue #{issue.number}")
        return RelayOutcome.SYNCED

    def _push_state_to_source(self, event: WebhookEvent) -> RelayOutcome:
        issue = event.issue
        ref = self.store.resolve_source_issue_by_hub(issue.number)
        client = self._source_client(ref.org)
        with self._intent(Direction.HUB_TO_SOURCE, event.kind, f"hub-issue:{issue.id}") as tracked:
            client.update_issue(ref.org, ref.repo, ref.number, state=issue.state)
            tracked.applied(f"{ref.org}/{ref.repo}#{ref.number}")
            self.store.update_issue_mapping(ref.source_issue_id, state=issue.state)
        return RelayOutcome.SYNCED

    def _forget_deleted_mirror(self, event: WebhookEvent) -> RelayOutcome:
        """The hub copy is gone; the source issue is left as it is."""
        ref = self.store.resolve_source_issue_by_hub(event.issue.number)
        self.store.delete_issue_mapping(ref.source_issue_id)
        logger.warning(
            f"Hub issue #{event.issue.number} was deleted; "
            f"{ref.org}/{ref.repo}#{ref.number} is no longer mirrored"
        )
        return RelayOutcome.SYNCED

    def _relay_hub_comment(self, event: WebhookEvent) -> RelayOutcome:
        issue, comment = event.issue, event.comment
        ref = self.store.resolve_source_issue_by_hub(issue.number)
        if self.store.synced_comment_mapping_exists(comment.id):
            raise DuplicateMapping(f"Hub comment {comment.id} is already relayed")

        client = self._source_client(ref.org)
        with self._intent(Direction.HUB_TO_SOURCE, event.kind, f"hub-comment:{comment.id}") as tracked:
            relayed = client.create_comment(
                ref.org, ref.repo, ref.number, mirror_body(comment.user.login, comment.body)
            )
            tracked.applied(f"{ref.org}/{ref.repo} comment {relayed.id}")
            self.store.create_synced_comment_mapping(
                hub_comment_id=comment.id,
                source_issue_id=ref.source_issue_id,
                author_login=comment.user.login,
                body=comment.body,
                source_comment_id=relayed.id,
            )
        return RelayOutcome.SYNCED

    def _edit_relayed_comment(self, event: WebhookEvent) -> RelayOutcome:
        comment = event.comment
        ref = self.store.resolve_source_comment_by_hub(comment.id)
        client = self._source_client(ref.org)
        with self._intent(Direction.HUB_TO_SOURCE, event.kind, f"hub-comment:{comment.id}") as tracked:
            client.update_comment(
                ref.org, ref.repo, ref.source_comment_id, mirror_body(comment.user.login, comment.body)
            )
            tracked.applied(f"{ref.org}/{ref.repo} comment {ref.source_comment_id}")
            self.store.update_synced_comment_mapping(
                comment.id, author_login=comment.user.login, body=comment.body
            )
        return RelayOutcome.SYNCED

    def _delete_relayed_comment(self, event: WebhookEvent) -> RelayOutcome:
        comment = event.comment
        ref = self.store.resolve_source_comment_by_hub(comment.id)
        client = self._source_client(ref.org)
        with self._intent(Direction.HUB_TO_SOURCE, event.kind, f"hub-comment:{comment.id}") as tracked:
            client.delete_comment(ref.org, ref.repo, ref.source_comment_id)
            tracked.applied(f"{ref.org}/{ref.repo} comment {ref.source_comment_id}")
            self.store.delete_synced_comment_mapping(comment.id)
        return RelayOutcome.SYNCED


class SyncRelay:
    """Process-wide entry point: loop filter, then one engine per event and session"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        source_resolver: InstallationResolver,
        hub_resolver: InstallationResolver,
        loop_filter: LoopFilter,
        hub_org: str,
        hub_repo: str,
    ):
        self.session_factory = session_factory
        self.source_resolver = source_resolver
        self.hub_resolver = hub_resolver
        self.loop_filter = loop_filter
        self.hub_org = hub_org
        self.hub_repo = hub_repo

    def _is_hub_repository(self, event: WebhookEvent) -> bool:
        repo = event.repository
        return (
            repo.owner.login.lower() == self.hub_org.lower()
            and repo.name.lower() == self.hub_repo.lower()
        )

    def process(self, direction: Direction, event: WebhookEvent) -> RelayOutcome:
        actor = self.loop_filter.actor_for(event, direction)
        if self.loop_filter.is_synchronized_actor(actor):
            logger.debug(f"Ignoring {event.kind.value} caused by synchronizing identity {actor}")
            return RelayOutcome.IGNORED

        if direction == Direction.HUB_TO_SOURCE and not self._is_hub_repository(event):
            repo = event.repository
            logger.warning(f"Ignoring hub event from unknown repository {repo.owner.login}/{repo.name}")
            return RelayOutcome.IGNORED

        db = self.session_factory()
        try:
            engine = SyncEngine(
                MappingStore(db),
                self.source_resolver,
                self.hub_resolver,
                self.hub_org,
                self.hub_repo,
            )
            outcome = engine.apply(direction, event)
            logger.info(f"Relayed {event.kind.value} ({direction.value}): {outcome.value}")
            return outcome
        except SyncError as e:
            logger.error(f"Failed to relay {event.kind.value} ({direction.value}): {e}")
            raise
        finally:
            db.close()
