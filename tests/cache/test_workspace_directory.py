import json
import os
import stat
from unittest.mock import AsyncMock, MagicMock

import pytest

from slacksearch.cache.directory import WorkspaceDirectory, display_name
from slacksearch.core.exceptions import AuthenticationError, TransientFetchError


class FakeTimer:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_client():
    client = MagicMock()
    client.users_info = AsyncMock(
        side_effect=lambda user: {"id": user, "profile": {"display_name": f"name-{user}"}}
    )
    client.conversations_list = AsyncMock(
        return_value={"ok": True, "channels": [{"id": "C1", "name": "general"}]}
    )
    client.users_list = AsyncMock(
        return_value={"ok": True, "members": [{"id": "U1", "name": "alice"}]}
    )
    return client


@pytest.mark.unit
class TestDisplayName:
    def test_prefers_profile_display_name(self):
        user = {"name": "alice", "real_name": "Alice A", "profile": {"display_name": "ali"}}
        assert display_name(user) == "ali"

    def test_falls_back_through_names(self):
        assert display_name({"name": "alice", "profile": {"display_name": " "}}) == "alice"
        assert display_name({"real_name": "Alice A"}) == "Alice A"
        assert display_name({}) is None


@pytest.mark.unit
class TestUserResolution:
    @pytest.mark.asyncio
    async def test_fetches_misses_once_then_serves_from_cache(self):
        client = make_client()
        directory = WorkspaceDirectory(client)

        first = await directory.resolve_user_names(["U1", "U2", "U1"])
        second = await directory.resolve_user_names(["U1", "U2"])

        assert first == second == {"U1": "name-U1", "U2": "name-U2"}
        assert client.users_info.await_count == 2

    @pytest.mark.asyncio
    async def test_failures_are_omitted(self):
        client = make_client()

        async def info(user):
            if user == "U2":
                raise TransientFetchError("timeout")
            if user == "U3":
                raise AuthenticationError()
            return {"id": user, "name": f"n-{user}"}

        client.users_info = AsyncMock(side_effect=info)
        directory = WorkspaceDirectory(client)

        resolved = await directory.resolve_user_names(["U1", "U2", "U3"])

        assert resolved == {"U1": "n-U1"}
        assert directory.cached_user_name("U2") is None

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self):
        client = make_client()
        timer = FakeTimer()
        directory = WorkspaceDirectory(client, ttl_seconds=60, timer=timer)

        await directory.resolve_user_names(["U1"])
        timer.now = 61
        await directory.resolve_user_names(["U1"])

        assert client.users_info.await_count == 2

    @pytest.mark.asyncio
    async def test_list_users_fills_cache(self):
        directory = WorkspaceDirectory(make_client())

        users = await directory.list_users()

        assert users == {"U1": "alice"}
        assert directory.cached_user_name("U1") == "alice"


@pytest.mark.unit
class TestChannels:
    @pytest.mark.asyncio
    async def test_channel_name_loads_list_once(self):
        client = make_client()
        directory = WorkspaceDirectory(client)

        assert await directory.channel_name("C1") == "general"
        assert await directory.channel_name("C1") == "general"
        assert client.conversations_list.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_channel_is_none(self):
        directory = WorkspaceDirectory(make_client())

        assert await directory.channel_name("C404") is None

    @pytest.mark.asyncio
    async def test_channel_list_failure_is_none(self):
        client = make_client()
        client.conversations_list = AsyncMock(side_effect=TransientFetchError("down"))
        directory = WorkspaceDirectory(client)

        assert await directory.channel_name("C1") is None

    @pytest.mark.asyncio
    async def test_list_channels_follows_cursor(self):
        client = make_client()
        client.conversations_list = AsyncMock(
            side_effect=[
                {
                    "ok": True,
                    "channels": [{"id": "C1", "name": "general"}],
                    "response_metadata": {"next_cursor": "next"},
                },
                {"ok": True, "channels": [{"id": "D1", "user": "U9"}]},
            ]
        )
        directory = WorkspaceDirectory(client)

        channels = await directory.list_channels()

        assert channels == {"C1": "general", "D1": "U9"}
        assert client.conversations_list.await_args_list[1].kwargs["cursor"] == "next"

    @pytest.mark.asyncio
    async def test_remembered_channel_skips_remote_lookup(self):
        client = make_client()
        directory = WorkspaceDirectory(client)
        directory.remember_channel("C7", "random")

        assert await directory.channel_name("C7") == "random"
        client.conversations_list.assert_not_called()


@pytest.mark.unit
class TestSnapshot:
    def test_round_trip_with_private_permissions(self, tmp_path):
        path = tmp_path / "cache" / "workspace_cache.json"
        directory = WorkspaceDirectory(make_client(), snapshot_path=str(path))
        directory.remember_user("U1", "alice")
        directory.remember_channel("C1", "general")

        directory.save_snapshot()

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert list(path.parent.glob(".tmp_workspace_cache_*")) == []

        restored = WorkspaceDirectory(make_client(), snapshot_path=str(path))
        assert restored.load_snapshot() is True
        assert restored.cached_user_name("U1") == "alice"
        assert restored.cached_channel_name("C1") == "general"

    def test_missing_snapshot(self, tmp_path):
        directory = WorkspaceDirectory(make_client(), snapshot_path=str(tmp_path / "none.json"))

        assert directory.load_snapshot() is False

    def test_corrupt_snapshot(self, tmp_path):
        path = tmp_path / "workspace_cache.json"
        path.write_text("{not json")
        directory = WorkspaceDirectory(make_client(), snapshot_path=str(path))

        assert directory.load_snapshot() is False

    def test_snapshot_contents(self, tmp_path):
        path = tmp_path / "workspace_cache.json"
        directory = WorkspaceDirectory(make_client(), snapshot_path=str(path))
        directory.remember_user("U1", "alice")

        directory.save_snapshot()

        data = json.loads(path.read_text())
        assert data["users"] == {"U1": "alice"}
        assert data["channels"] == {}
        assert "saved_at" in data

    def test_disabled_without_path(self):
        directory = WorkspaceDirectory(make_client())

        directory.save_snapshot()

        assert directory.load_snapshot() is False
