"""API routes"""

from issue_relay.api import mappings, webhooks

__all__ = ["webhooks", "mappings"]
