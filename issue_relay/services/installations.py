"""Per-organization installation clients for a GitHub App.

The relay acts on every organization as that organization's own installation
of the synchronizing app. Installation ids are stable and cheap to keep for the
process lifetime; installation tokens expire after about an hour, so the cache
keeps the two apart and re-mints the token without listing installations again.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional

from githubkit import GitHub
from githubkit.auth import AppAuthStrategy, TokenAuthStrategy
from githubkit.exception import GitHubException

from issue_relay.services.exceptions import InstallationNotFound, RemoteAPIError
from issue_relay.services.github_client import GitHubClient

logger = logging.getLogger(__name__)


@dataclass
class CachedInstallation:
    installation_id: int
    client: GitHubClient
    expires_at: Optional[datetime] = None


class InstallationCache:
    """Process-local map of organization -> installation client.

    ``lock_for(org)`` hands out one lock per organization; holding it makes the
    read-check/miss/insert sequence for that organization a single critical
    section while other organizations resolve in parallel.
    """

    def __init__(self):
        self._entries: Dict[str, CachedInstallation] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @staticmethod
    def _key(org: str) -> str:
        return org.lower()

    def lock_for(self, org: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(self._key(org), threading.Lock())

    def get(self, org: str) -> Optional[CachedInstallation]:
        with self._guard:
            return self._entries.get(self._key(org))

    def put(self, org: str, entry: CachedInstallation):
        with self._guard:
            self._entries[self._key(org)] = entry

    def invalidate(self, org: str):
        with self._guard:
            self._entries.pop(self._key(org), None)

    def __len__(self):
        with self._guard:
            return len(self._entries)


def build_app_api(app_id: int, private_key: str, base_url: str, timeout: float) -> GitHub:
    """githubkit client authenticated as the app itself (JWT)."""
    return GitHub(
        AppAuthStrategy(app_id=app_id, private_key=private_key),
        base_url=base_url,
        timeout=timeout,
        http_cache=False,
    )


def token_client_factory(base_url: str, timeout: float) -> Callable[[str, int], GitHubClient]:
    def _build(token: str, installation_id: int) -> GitHubClient:
        gh = GitHub(TokenAuthStrategy(token), base_url=base_url, timeout=timeout, http_cache=False)
        return GitHubClient(gh, installation_id=installation_id)

    return _build


class InstallationResolver:
    """Resolve an authenticated client for an organization, caching per org"""

    def __init__(
        self,
        app_api: GitHub,
        cache: InstallationCache,
        client_factory: Callable[[str, int], GitHubClient],
        *,
        excluded_installation_ids: Iterable[int] = (),
        page_size: int = 100,
        refresh_margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.app_api = app_api
        self.cache = cache
        self.client_factory = client_factory
        self.excluded_installation_ids = set(excluded_installation_ids)
        self.page_size = page_size
        self.refresh_margin = refresh_margin
        self.clock = clock

    def _is_fresh(self, entry: CachedInstallation) -> bool:
        if entry.expires_at is None:
            return True
        expires_at = entry.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at - self.refresh_margin > self.clock()

    def resolve_client(self, org: str) -> GitHubClient:
        """Return a client acting as the app's installation on ``org``."""
        with self.cache.lock_for(org):
            entry = self.cache.get(org)
            if entry is not None and self._is_fresh(entry):
                return entry.client

            if entry is None:
                installation_id = self.find_installation_id(org)
            else:
                installation_id = entry.installation_id
                logger.info(f"Installation token for {org} is expiring; minting a new one")

            entry = self._mint(installation_id)
            self.cache.put(org, entry)
            return entry.client

    def invalidate(self, org: str):
        """Drop the cached installation so the next resolve lists installations again."""
        with self.cache.lock_for(org):
            self.cache.invalidate(org)
        logger.warning(f"Dropped cached installation for {org}")

    def find_installation_id(self, org: str) -> int:
        """Page through the app's installations looking for ``org``."""
        wanted = org.lower()
        page = 1
        while True:
            try:
                installations = self.app_api.rest.apps.list_installations(
                    per_page=self.page_size, page=page
                ).parsed_data
            except GitHubException as e:
                logger.error(f"Failed to list installations (page {page}): {e}")
                raise RemoteAPIError(f"Failed to list installations: {e}") from e

            for installation in installations:
                if installation.id in self.excluded_installation_ids:
                    continue
                login = getattr(installation.account, "login", None) or ""
                if login.lower() == wanted:
                    logger.info(f"Found installation {installation.id} for {org}")
                    return installation.id

            if len(installations) < self.page_size:
                break
            page += 1

        logger.error(f"No installation of the app matches organization {org}")
        raise InstallationNotFound(org)

    def _mint(self, installation_id: int) -> CachedInstallation:
        try:
            token = self.app_api.rest.apps.create_installation_access_token(
                installation_id
            ).parsed_data
        except GitHubException as e:
            logger.error(f"Failed to mint token for installation {installation_id}: {e}")
            raise RemoteAPIError(f"Failed to mint installation token: {e}") from e

        return CachedInstallation(
            installation_id=installation_id,
            client=self.client_factory(token.token, installation_id),
            expires_at=_parse_expiry(token.expires_at),
        )


def _parse_expiry(value) -> Optional[datetime]:
    """GitHub reports token expiry as an ISO8601 string."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
