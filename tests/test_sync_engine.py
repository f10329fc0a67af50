import json
import unittest
from types import SimpleNamespace
from unittest.mock import patch

HUB_ORG = "hub-org"
HUB_REPO = "mirrors"


def _session_factory():
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from issue_relay.models.base import enable_sqlite_foreign_keys, init_db

    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    enable_sqlite_foreign_keys(engine)
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


class _RecordingClient:
    """Stands in for GitHubClient and records every call."""

    def __init__(self, issue_number=42, comment_id=900):
        self.calls = []
        self.issue_number = issue_number
        self.comment_id = comment_id
        self.fail_with = None

    def _record(self, *call):
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with

    def create_issue(self, owner, repo, title, body):
        self._record("create_issue", owner, repo, title, body)
        return SimpleNamespace(number=self.issue_number)

    def update_issue(self, owner, repo, issue_number, *, title=None, body=None, state=None):
        self._record("update_issue", owner, repo, issue_number, title, body, state)

    def get_issue_node_id(self, owner, repo, issue_number):
        self._record("get_issue_node_id", owner, repo, issue_number)
        return f"I_node{issue_number}"

    def delete_issue(self, node_id):
        self._record("delete_issue", node_id)

    def create_comment(self, owner, repo, issue_number, body):
        self._record("create_comment", owner, repo, issue_number, body)
        return SimpleNamespace(id=self.comment_id)

    def update_comment(self, owner, repo, comment_id, body):
        self._record("update_comment", owner, repo, comment_id, body)

    def delete_comment(self, owner, repo, comment_id):
        self._record("delete_comment", owner, repo, comment_id)


class _FakeResolver:
    def __init__(self, client):
        self.client = client
        self.orgs = []
        self.invalidated = []

    def resolve_client(self, org):
        self.orgs.append(org)
        return self.client

    def invalidate(self, org):
        self.invalidated.append(org)


def _payload(
    action,
    *,
    issue_id=5001,
    number=7,
    title="Bug",
    body="It breaks",
    state="open",
    author="alice",
    org="acme",
    repo="widgets",
    sender=None,
    comment=None,
    changes=None,
):
    data = {
        "action": action,
        "issue": {
            "id": issue_id,
            "number": number,
            "title": title,
            "body": body,
            "state": state,
            "user": {"login": author},
        },
        "repository": {"name": repo, "owner": {"login": org}},
        "sender": {"login": sender or author},
    }
    if comment is not None:
        data["comment"] = comment
    if changes is not None:
        data["changes"] = changes
    return data


def _event(event_type, data):
    from issue_relay.services.events import parse_event

    return parse_event(event_type, json.dumps(data).encode())


def _hub_payload(action, **kwargs):
    kwargs.setdefault("issue_id", 9042)
    kwargs.setdefault("number", 42)
    kwargs.setdefault("title", "acme/widgets#7: Bug")
    kwargs.setdefault("body", "@alice posted:\n\nIt breaks")
    kwargs.setdefault("author", "relay-hub[bot]")
    kwargs.setdefault("sender", "carol")
    return _payload(action, org=HUB_ORG, repo=HUB_REPO, **kwargs)


class SyncEngineTestCase(unittest.TestCase):
    def setUp(self):
        from issue_relay.services.mapping_store import MappingStore
        from issue_relay.services.sync_engine import SyncEngine

        self.db = _session_factory()()
        self.store = MappingStore(self.db)
        self.source = _RecordingClient(comment_id=700)
        self.hub = _RecordingClient()
        self.source_resolver = _FakeResolver(self.source)
        self.hub_resolver = _FakeResolver(self.hub)
        self.engine = SyncEngine(self.store, self.source_resolver, self.hub_resolver, HUB_ORG, HUB_REPO)

    def tearDown(self):
        self.db.close()

    def _map_issue(self):
        self.store.create_issue_mapping(
            source_issue_id=5001,
            source_org="acme",
            source_repo="widgets",
            source_issue_number=7,
            author_login="alice",
            title="Bug",
            body="It breaks",
            state="open",
            hub_issue_number=42,
        )


class SourceToHubTests(SyncEngineTestCase):
    def test_opened_creates_mirror_and_mapping(self):
        from issue_relay.models import Direction, IntentStatus
        from issue_relay.services.sync_engine import RelayOutcome

        outcome = self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", _payload("opened")))

        self.assertEqual(outcome, RelayOutcome.SYNCED)
        self.assertEqual(
            self.hub.calls,
            [("create_issue", HUB_ORG, HUB_REPO, "acme/widgets#7: Bug", "@alice posted:\n\nIt breaks")],
        )
        self.assertEqual(self.hub_resolver.orgs, [HUB_ORG])
        self.assertEqual(self.store.resolve_hub_issue_by_source(5001), 42)
        self.assertEqual(self.store.list_intents()[0].status, IntentStatus.DONE)

    def test_opened_twice_is_duplicate_without_second_mirror(self):
        from issue_relay.models import Direction
        from issue_relay.services.exceptions import DuplicateMapping

        self._map_issue()

        with self.assertRaises(DuplicateMapping):
            self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", _payload("opened")))
        self.assertEqual(self.hub.calls, [])

    def test_edited_rewrites_mirror_and_mapping(self):
        from issue_relay.models import Direction

        self._map_issue()
        data = _payload("edited", title="Crash", body=None, author="alice")

        self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", data))

        self.assertEqual(
            self.hub.calls,
            [("update_issue", HUB_ORG, HUB_REPO, 42, "acme/widgets#7: Crash", "@alice posted:\n\n", None)],
        )
        row = self.store.get_issue_mapping(5001)
        self.assertEqual((row.title, row.body), ("Crash", None))

    def test_closed_pushes_state_only(self):
        from issue_relay.models import Direction

        self._map_issue()

        self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", _payload("closed", state="closed")))

        self.assertEqual(self.hub.calls, [("update_issue", HUB_ORG, HUB_REPO, 42, None, None, "closed")])
        self.assertEqual(self.store.get_issue_mapping(5001).state, "closed")

    def test_reopened_pushes_open_state(self):
        from issue_relay.models import Direction

        self._map_issue()
        self.store.update_issue_mapping(5001, state="closed")

        self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", _payload("reopened", state="open")))

        self.assertEqual(self.hub.calls, [("update_issue", HUB_ORG, HUB_REPO, 42, None, None, "open")])
        self.assertEqual(self.store.get_issue_mapping(5001).state, "open")

    def test_deleted_removes_mirror_by_node_id(self):
        from issue_relay.models import Direction

        self._map_issue()

        self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", _payload("deleted")))

        self.assertEqual(
            self.hub.calls,
            [("get_issue_node_id", HUB_ORG, HUB_REPO, 42), ("delete_issue", "I_node42")],
        )
        self.assertFalse(self.store.issue_mapping_exists(5001))

    def test_edit_of_unmapped_issue_is_not_found(self):
        from issue_relay.models import Direction
        from issue_relay.services.exceptions import MappingNotFound

        with self.assertRaises(MappingNotFound):
            self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", _payload("edited")))
        self.assertEqual(self.hub.calls, [])

    def test_comment_lifecycle(self):
        from issue_relay.models import Direction

        self._map_issue()
        comment = {"id": 11, "body": "Same here", "user": {"login": "bob"}}

        self.engine.apply(
            Direction.SOURCE_TO_HUB, _event("issue_comment", _payload("created", comment=comment))
        )
        self.assertEqual(
            self.hub.calls[-1], ("create_comment", HUB_ORG, HUB_REPO, 42, "@bob posted:\n\nSame here")
        )
        self.assertEqual(self.store.resolve_hub_comment_by_source(11), 900)

        comment["body"] = "Same here too"
        self.engine.apply(
            Direction.SOURCE_TO_HUB, _event("issue_comment", _payload("edited", comment=comment))
        )
        self.assertEqual(
            self.hub.calls[-1], ("update_comment", HUB_ORG, HUB_REPO, 900, "@bob posted:\n\nSame here too")
        )

        self.engine.apply(
            Direction.SOURCE_TO_HUB, _event("issue_comment", _payload("deleted", comment=comment))
        )
        self.assertEqual(self.hub.calls[-1], ("delete_comment", HUB_ORG, HUB_REPO, 900))
        self.assertFalse(self.store.comment_mapping_exists(11))

    def test_comment_on_unmapped_issue_is_not_found(self):
        from issue_relay.models import Direction
        from issue_relay.services.exceptions import MappingNotFound

        comment = {"id": 11, "body": "hi", "user": {"login": "bob"}}
        with self.assertRaises(MappingNotFound):
            self.engine.apply(
                Direction.SOURCE_TO_HUB, _event("issue_comment", _payload("created", comment=comment))
            )
        self.assertEqual(self.hub.calls, [])


class HubToSourceTests(SyncEngineTestCase):
    def test_closing_mirror_closes_source_issue(self):
        from issue_relay.models import Direction

        self._map_issue()

        self.engine.apply(Direction.HUB_TO_SOURCE, _event("issues", _hub_payload("closed", state="closed")))

        self.assertEqual(self.source_resolver.orgs, ["acme"])
        self.assertEqual(self.source.calls, [("update_issue", "acme", "widgets", 7, None, None, "closed")])
        self.assertEqual(self.store.get_issue_mapping(5001).state, "closed")

    def test_reopening_mirror_reopens_source_issue(self):
        from issue_relay.models import Direction

        self._map_issue()
        self.store.update_issue_mapping(5001, state="closed")

        self.engine.apply(Direction.HUB_TO_SOURCE, _event("issues", _hub_payload("reopened", state="open")))

        self.assertEqual(self.source.calls, [("update_issue", "acme", "widgets", 7, None, None, "open")])
        self.assertEqual(self.store.get_issue_mapping(5001).state, "open")

    def test_hub_edit_is_reverted_to_previous_title(self):
        from issue_relay.models import Direction

        self._map_issue()
        data = _hub_payload("edited", title="Y", changes={"title": {"from": "X"}})

        self.engine.apply(Direction.HUB_TO_SOURCE, _event("issues", data))

        self.assertEqual(self.hub.calls, [("update_issue", HUB_ORG, HUB_REPO, 42, "X", None, None)])
        self.assertEqual(self.source.calls, [])

    def test_hub_edit_without_text_changes_is_ignored(self):
        from issue_relay.models import Direction
        from issue_relay.services.sync_engine import RelayOutcome

        self._map_issue()

        outcome = self.engine.apply(Direction.HUB_TO_SOURCE, _event("issues", _hub_payload("edited")))

        self.assertEqual(outcome, RelayOutcome.IGNORED)
        self.assertEqual(self.hub.calls, [])

    def test_hub_opened_is_ignored(self):
        from issue_relay.models import Direction
        from issue_relay.services.sync_engine import RelayOutcome

        outcome = self.engine.apply(Direction.HUB_TO_SOURCE, _event("issues", _hub_payload("opened")))

        self.assertEqual(outcome, RelayOutcome.IGNORED)
        self.assertEqual(self.source.calls + self.hub.calls, [])

    def test_hub_deleted_forgets_mapping_only(self):
        from issue_relay.models import Direction

        self._map_issue()

        self.engine.apply(Direction.HUB_TO_SOURCE, _event("issues", _hub_payload("deleted")))

        self.assertFalse(self.store.issue_mapping_exists(5001))
        self.assertEqual(self.source.calls, [])

    def test_hub_comment_is_relayed_to_source(self):
        from issue_relay.models import Direction, SyncedCommentMapping

        self._map_issue()
        comment = {"id": 222, "body": "Triaged", "user": {"login": "carol"}}

        self.engine.apply(
            Direction.HUB_TO_SOURCE, _event("issue_comment", _hub_payload("created", comment=comment))
        )
        self.assertEqual(
            self.source.calls, [("create_comment", "acme", "widgets", 7, "@carol posted:\n\nTriaged")]
        )
        ref = self.store.resolve_source_comment_by_hub(222)
        self.assertEqual(ref.source_comment_id, 700)

        comment["body"] = "Retriaged"
        self.engine.apply(
            Direction.HUB_TO_SOURCE, _event("issue_comment", _hub_payload("edited", comment=comment))
        )
        self.assertEqual(
            self.source.calls[-1], ("update_comment", "acme", "widgets", 700, "@carol posted:\n\nRetriaged")
        )
        self.db.expire_all()
        row = self.db.query(SyncedCommentMapping).filter_by(hub_comment_id=222).one()
        self.assertEqual(row.body, "Retriaged")

        self.engine.apply(
            Direction.HUB_TO_SOURCE, _event("issue_comment", _hub_payload("deleted", comment=comment))
        )
        self.assertEqual(self.source.calls[-1], ("delete_comment", "acme", "widgets", 700))
        self.assertFalse(self.store.synced_comment_mapping_exists(222))


class IntentLedgerTests(SyncEngineTestCase):
    def test_remote_failure_marks_intent_failed(self):
        from issue_relay.models import Direction, IntentStatus
        from issue_relay.services.exceptions import RemoteAPIError

        self.hub.fail_with = RemoteAPIError("Forbidden", status_code=403)

        with self.assertRaises(RemoteAPIError):
            self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", _payload("opened")))

        [intent] = self.store.list_intents()
        self.assertEqual(intent.status, IntentStatus.FAILED)
        self.assertFalse(self.store.issue_mapping_exists(5001))
        self.assertEqual(self.hub_resolver.invalidated, [])

    def test_unauthorized_drops_cached_installation(self):
        from issue_relay.models import Direction
        from issue_relay.services.exceptions import RemoteAPIError

        self._map_issue()
        self.source.fail_with = RemoteAPIError("Bad credentials", status_code=401)

        with self.assertRaises(RemoteAPIError):
            self.engine.apply(Direction.HUB_TO_SOURCE, _event("issues", _hub_payload("closed", state="closed")))

        self.assertEqual(self.source_resolver.invalidated, ["acme"])
        self.assertEqual(self.hub_resolver.invalidated, [])

    def test_persist_failure_after_remote_write_stays_applied(self):
        from issue_relay.models import Direction, IntentStatus
        from issue_relay.services.exceptions import PersistenceError

        with patch.object(self.store, "create_issue_mapping", side_effect=PersistenceError("disk full")):
            with self.assertLogs("issue_relay.services.sync_engine", level="ERROR") as logs:
                with self.assertRaises(PersistenceError):
                    self.engine.apply(Direction.SOURCE_TO_HUB, _event("issues", _payload("opened")))

        self.assertIn("Manual reconciliation required", logs.output[0])
        [intent] = self.store.list_intents()
        self.assertEqual(intent.status, IntentStatus.APPLIED)
        self.assertEqual(intent.remote_ref, f"{HUB_ORG}/{HUB_REPO}#42")
        self.assertEqual(intent.error, "disk full")


class SyncRelayTests(unittest.TestCase):
    def setUp(self):
        from issue_relay.services.loop_filter import LoopFilter
        from issue_relay.services.sync_engine import SyncRelay

        self.source = _RecordingClient()
        self.hub = _RecordingClient()
        self.source_resolver = _FakeResolver(self.source)
        self.hub_resolver = _FakeResolver(self.hub)
        self.relay = SyncRelay(
            session_factory=_session_factory(),
            source_resolver=self.source_resolver,
            hub_resolver=self.hub_resolver,
            loop_filter=LoopFilter("relay-source[bot]", "relay-hub[bot]"),
            hub_org=HUB_ORG,
            hub_repo=HUB_REPO,
        )

    def test_bot_authored_event_is_ignored_before_any_work(self):
        from issue_relay.models import Direction
        from issue_relay.services.sync_engine import RelayOutcome, SyncEngine

        event = _event("issues", _payload("opened", author="Relay-Source[bot]"))

        with patch.object(SyncEngine, "apply") as apply:
            outcome = self.relay.process(Direction.SOURCE_TO_HUB, event)

        self.assertEqual(outcome, RelayOutcome.IGNORED)
        apply.assert_not_called()
        self.assertEqual(self.hub.calls, [])
        self.assertEqual(self.hub_resolver.orgs, [])

    def test_hub_bot_comment_is_ignored(self):
        from issue_relay.models import Direction
        from issue_relay.services.sync_engine import RelayOutcome

        comment = {"id": 1, "body": "@bob posted:\n\nhi", "user": {"login": "relay-hub[bot]"}}
        event = _event("issue_comment", _hub_payload("created", comment=comment))

        self.assertEqual(self.relay.process(Direction.HUB_TO_SOURCE, event), RelayOutcome.IGNORED)
        self.assertEqual(self.source.calls, [])

    def test_hub_event_from_other_repository_is_ignored(self):
        from issue_relay.models import Direction
        from issue_relay.services.sync_engine import RelayOutcome

        event = _event("issues", _payload("closed", org="elsewhere", repo="other", sender="carol"))

        self.assertEqual(self.relay.process(Direction.HUB_TO_SOURCE, event), RelayOutcome.IGNORED)
        self.assertEqual(self.source.calls, [])

    def test_human_event_is_synced_and_errors_propagate(self):
        from issue_relay.models import Direction
        from issue_relay.services.exceptions import DuplicateMapping
        from issue_relay.services.sync_engine import RelayOutcome

        event = _event("issues", _payload("opened"))

        self.assertEqual(self.relay.process(Direction.SOURCE_TO_HUB, event), RelayOutcome.SYNCED)
        with self.assertRaises(DuplicateMapping):
            self.relay.process(Direction.SOURCE_TO_HUB, event)
        self.assertEqual(len(self.hub.calls), 1)


class MirrorFormatTests(unittest.TestCase):
    def test_mirror_title_and_body(self):
        from issue_relay.services.sync_engine import mirror_body, mirror_title

        self.assertEqual(mirror_title("acme", "widgets", 7, "Bug"), "acme/widgets#7: Bug")
        self.assertEqual(mirror_body("alice", None), "@alice posted:\n\n")


if __name__ == "__main__":
    unittest.main()
