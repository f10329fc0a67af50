"""Bot-loop suppression.

Mirrored content is posted by one of two app identities. Relaying an event
caused by either of them would immediately produce another mirrored write.
"""

from typing import Optional

from issue_relay.models import Direction
from issue_relay.services.events import WebhookEvent


class LoopFilter:
    def __init__(self, source_bot_login: str, hub_bot_login: str):
        self._bots = {login.lower() for login in (source_bot_login, hub_bot_login) if login}

    def is_synchronized_actor(self, login: Optional[str]) -> bool:
        if not login:
            return False
        return login.lower() in self._bots

    @staticmethod
    def actor_for(event: WebhookEvent, direction: Direction) -> Optional[str]:
        """Login whose change the event reports.

        Hub mirrors are always authored by the hub bot, so for hub issue
        events the sender is the one who edited, closed or deleted it.
        """
        if event.kind.is_comment:
            return event.payload.comment.user.login
        if direction == Direction.HUB_TO_SOURCE:
            return event.payload.sender.login if event.payload.sender else None
        return event.payload.issue.user.login
