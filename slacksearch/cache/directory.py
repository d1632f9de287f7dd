"""Read-through cache of workspace users and channels.

Display names and channel names are looked up locally first and fetched
from Slack on a miss. A JSON snapshot on disk lets a fresh process show
names immediately, even before the first remote lookup succeeds.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from cachetools import TTLCache

from slacksearch.core.exceptions import AuthenticationError, SlackSearchError
from slacksearch.integrations.slack.client import SlackWebClient, next_cursor

logger = logging.getLogger(__name__)


def display_name(user: Dict) -> Optional[str]:
    """Pick the best human-readable name from a users.info/users.list entry."""
    profile = user.get("profile") if isinstance(user.get("profile"), dict) else {}
    for candidate in (
        profile.get("display_name"),
        profile.get("real_name"),
        user.get("real_name"),
        user.get("name"),
    ):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


class WorkspaceDirectory:
    """Users/channels lookup with TTL caching and optional disk snapshot.

    Attributes:
        client: Slack Web API client used on cache misses
        snapshot_path: Where ``save_snapshot`` writes, or None to disable
    """

    def __init__(
        self,
        client: SlackWebClient,
        ttl_seconds: int = 6 * 60 * 60,
        max_entries: int = 5000,
        snapshot_path: Optional[str] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._users: TTLCache = TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=timer)
        self._channels: TTLCache = TTLCache(
            maxsize=max_entries, ttl=ttl_seconds, timer=timer
        )
        self._channels_loaded = False
        self._channel_lock = asyncio.Lock()

    # =========================================================================
    # Users
    # =========================================================================

    def cached_user_name(self, user_id: str) -> Optional[str]:
        return self._users.get(user_id)

    def remember_user(self, user_id: str, name: str) -> None:
        self._users[user_id] = name

    async def resolve_user_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        """Resolve display names, fetching cache misses concurrently.

        Users whose lookup fails are left out of the result; callers keep
        their name unresolved and may retry on a later fetch.
        """
        resolved: Dict[str, str] = {}
        missing = []
        for user_id in dict.fromkeys(uid for uid in user_ids if uid):
            cached = self._users.get(user_id)
            if cached is not None:
                resolved[user_id] = cached
            else:
                missing.append(user_id)
        if not missing:
            return resolved

        outcomes = await asyncio.gather(
            *(self.client.users_info(user_id) for user_id in missing),
            return_exceptions=True,
        )
        failures = 0
        for user_id, outcome in zip(missing, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, AuthenticationError):
                failures += 1
                logger.warning("Cannot resolve user %s: %s", user_id, outcome)
                continue
            if isinstance(outcome, BaseException):
                failures += 1
                logger.debug("users.info failed for %s: %s", user_id, outcome)
                continue
            name = display_name(outcome)
            if name:
                self._users[user_id] = name
                resolved[user_id] = name
        if failures:
            logger.warning(
                "Could not resolve %d of %d user names", failures, len(missing)
            )
        return resolved

    async def list_users(self) -> Dict[str, str]:
        cursor: Optional[str] = None
        while True:
            payload = await self.client.users_list(cursor=cursor)
            for member in payload.get("members") or []:
                if isinstance(member, dict) and member.get("id"):
                    name = display_name(member)
                    if name:
                        self._users[member["id"]] = name
            cursor = next_cursor(payload)
            if not cursor:
                break
        return dict(self._users.items())

    # =========================================================================
    # Channels
    # =========================================================================

    def cached_channel_name(self, channel_id: str) -> Optional[str]:
        return self._channels.get(channel_id)

    def remember_channel(self, channel_id: str, name: str) -> None:
        self._channels[channel_id] = name

    async def channel_name(self, channel_id: str) -> Optional[str]:
        cached = self._channels.get(channel_id)
        if cached is not None:
            return cached
        try:
            channels = await self.list_channels(force_refresh=not self._channels_loaded)
        except SlackSearchError as e:
            logger.warning("Channel list unavailable for %s: %s", channel_id, e)
            return None
        return channels.get(channel_id)

    async def list_channels(self, force_refresh: bool = False) -> Dict[str, str]:
        """Return channel id -> name, fetching the full list when needed."""
        async with self._channel_lock:
            if self._channels_loaded and not force_refresh and len(self._channels):
                return dict(self._channels.items())

            cursor: Optional[str] = None
            count = 0
            while True:
                payload = await self.client.conversations_list(cursor=cursor)
                for channel in payload.get("channels") or []:
                    if not isinstance(channel, dict) or not channel.get("id"):
                        continue
                    name = channel.get("name") or channel.get("user") or channel["id"]
                    self._channels[channel["id"]] = name
                    count += 1
                cursor = next_cursor(payload)
                if not cursor:
                    break

            self._channels_loaded = True
            logger.info("Loaded %d channels into directory cache", count)
            return dict(self._channels.items())

    # =========================================================================
    # Snapshot persistence
    # =========================================================================

    def load_snapshot(self) -> bool:
        """Load cached names from disk.

        Returns:
            True if a snapshot was loaded, False otherwise
        """
        if self.snapshot_path is None or not self.snapshot_path.exists():
            return False
        try:
            with open(self.snapshot_path, "r") as f:
                snapshot = json.load(f)
            users = snapshot.get("users", {})
            channels = snapshot.get("channels", {})
            for user_id, name in users.items():
                self._users[user_id] = name
            for channel_id, name in channels.items():
                self._channels[channel_id] = name
            logger.info(
                "Directory snapshot restored: users=%d, channels=%d, saved_at=%s",
                len(users),
                len(channels),
                snapshot.get("saved_at", "unknown"),
            )
            return True
        except (IOError, json.JSONDecodeError, AttributeError) as e:
            logger.error(f"Failed to load directory snapshot from {self.snapshot_path}: {e}")
            return False

    def save_snapshot(self) -> None:
        """Atomically write cached names to disk (temp file + rename, 0o600).

        Raises:
            OSError: If the snapshot cannot be written
        """
        if self.snapshot_path is None:
            return
        snapshot = {
            "users": dict(self._users.items()),
            "channels": dict(self._channels.items()),
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)

        old_umask = os.umask(0o077)
        try:
            fd, temp_path = tempfile.mkstemp(
                dir=self.snapshot_path.parent,
                prefix=".tmp_workspace_cache_",
                suffix=".json",
            )
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(snapshot, f, indent=2)
                os.replace(temp_path, self.snapshot_path)
                os.chmod(self.snapshot_path, 0o600)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        finally:
            os.umask(old_umask)
        logger.debug(
            "Directory snapshot saved: users=%d, channels=%d",
            len(snapshot["users"]),
            len(snapshot["channels"]),
        )
