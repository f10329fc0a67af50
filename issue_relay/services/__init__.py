"""Services"""

from issue_relay.services.github_client import GitHubClient
from issue_relay.services.installations import InstallationCache, InstallationResolver
from issue_relay.services.loop_filter import LoopFilter
from issue_relay.services.mapping_store import MappingStore
from issue_relay.services.sync_engine import SyncEngine, SyncRelay

__all__ = [
    "GitHubClient",
    "InstallationCache",
    "InstallationResolver",
    "LoopFilter",
    "MappingStore",
    "SyncEngine",
    "SyncRelay",
]
