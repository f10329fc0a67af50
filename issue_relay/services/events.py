"""Webhook payload parsing and event classification"""

import enum
import json
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from issue_relay.services.exceptions import MalformedEvent, UnsupportedEvent


class _Payload(BaseModel):
    # GitHub sends far more than we read; ignore the rest.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class User(_Payload):
    login: str


class Owner(_Payload):
    login: str


class Repository(_Payload):
    name: str
    owner: Owner


class Issue(_Payload):
    id: int
    number: int
    title: str = ""
    body: Optional[str] = None
    state: str = "open"
    user: User


class Comment(_Payload):
    id: int
    body: Optional[str] = None
    user: User


class ChangedValue(_Payload):
    from_: Optional[str] = Field(default=None, alias="from")


class Changes(_Payload):
    title: Optional[ChangedValue] = None
    body: Optional[ChangedValue] = None


class WebhookPayload(_Payload):
    action: str
    issue: Issue
    repository: Repository
    comment: Optional[Comment] = None
    sender: Optional[User] = None
    changes: Optional[Changes] = None


class EventKind(str, enum.Enum):
    ISSUE_OPENED = "issue_opened"
    ISSUE_EDITED = "issue_edited"
    ISSUE_CLOSED = "issue_closed"
    ISSUE_REOPENED = "issue_reopened"
    ISSUE_DELETED = "issue_deleted"
    COMMENT_CREATED = "comment_created"
    COMMENT_EDITED = "comment_edited"
    COMMENT_DELETED = "comment_deleted"

    @property
    def is_comment(self) -> bool:
        return self.value.startswith("comment_")


_KINDS = {
    ("issues", "opened"): EventKind.ISSUE_OPENED,
    ("issues", "edited"): EventKind.ISSUE_EDITED,
    ("issues", "closed"): EventKind.ISSUE_CLOSED,
    ("issues", "reopened"): EventKind.ISSUE_REOPENED,
    ("issues", "deleted"): EventKind.ISSUE_DELETED,
    ("issue_comment", "created"): EventKind.COMMENT_CREATED,
    ("issue_comment", "edited"): EventKind.COMMENT_EDITED,
    ("issue_comment", "deleted"): EventKind.COMMENT_DELETED,
}

SUPPORTED_EVENTS = {"issues", "issue_comment"}


@dataclass(frozen=True)
class WebhookEvent:
    kind: EventKind
    payload: WebhookPayload

    @property
    def issue(self) -> Issue:
        return self.payload.issue

    @property
    def comment(self) -> Comment:
        return self.payload.comment

    @property
    def repository(self) -> Repository:
        return self.payload.repository


def parse_event(event_type: Optional[str], body: bytes) -> WebhookEvent:
    """Classify a delivery by its X-GitHub-Event header and action.

    Anything outside the handled (event, action) pairs is rejected.
    """
    if event_type not in SUPPORTED_EVENTS:
        raise UnsupportedEvent(f"Unsupported event: {event_type}")

    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedEvent(f"Invalid JSON body: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEvent("Webhook body must be a JSON object")

    kind = _KINDS.get((event_type, data.get("action")))
    if kind is None:
        raise UnsupportedEvent(f"Unsupported action for {event_type}: {data.get('action')}")

    try:
        payload = WebhookPayload.model_validate(data)
    except ValidationError as e:
        raise MalformedEvent(f"Invalid {event_type} payload: {e}") from e

    if kind.is_comment and payload.comment is None:
        raise MalformedEvent(f"{event_type} payload has no comment")
    # State changes are relayed verbatim; never fall back to the "open" default.
    is_state_change = kind in (EventKind.ISSUE_CLOSED, EventKind.ISSUE_REOPENED)
    if is_state_change and "state" not in payload.issue.model_fields_set:
        raise MalformedEvent(f"{event_type} {payload.action} payload has no issue state")

    return WebhookEvent(kind=kind, payload=payload)
