import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from slacksearch.core.exceptions import TransientFetchError
from slacksearch.live.models import ReactionTally
from slacksearch.live.reactions import ProgressiveReactionLoader, ReactionBatchFetcher


class KeyedLookup:
    """Returns a summary whose count encodes the message timestamp."""

    def __init__(self, fail_calls=()):
        self.fail_calls = set(fail_calls)
        self.calls = []

    async def lookup_reactions(self, requests):
        self.calls.append(list(requests))
        if len(self.calls) in self.fail_calls:
            raise TransientFetchError("timeout")
        return {
            r.position_index: {"eyes": ReactionTally(count=int(r.ts), reactor_ids=set())}
            for r in requests
        }


class GatedLookup:
    """Holds every lookup until ``release`` is set and records overlap."""

    def __init__(self):
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.in_flight = 0
        self.max_in_flight = 0

    async def lookup_reactions(self, requests):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.started.set()
        try:
            await self.release.wait()
        finally:
            self.in_flight -= 1
        return {r.position_index: {"eyes": ReactionTally(count=1, reactor_ids=set())} for r in requests}


def build_loader(lookup, callback=None, **kwargs):
    return ProgressiveReactionLoader(
        ReactionBatchFetcher(lookup, default_batch_size=100),
        on_messages_changed=callback,
        **kwargs,
    )


@pytest.mark.unit
class TestProgressiveReactionLoader:
    @pytest.mark.asyncio
    async def test_first_chunk_small_then_fixed_chunks(self, make_message):
        messages = [make_message(str(1000 - i)) for i in range(40)]
        lookup = KeyedLookup()

        await build_loader(lookup, initial_batch_size=10, chunk_size=15).load(messages)

        assert [len(call) for call in lookup.calls] == [10, 15, 15]

    @pytest.mark.asyncio
    async def test_attaches_each_message_its_own_reactions(self, make_message):
        messages = [make_message(str(500 + i)) for i in range(25)]

        await build_loader(KeyedLookup()).load(messages)

        for message in messages:
            assert message.reactions["eyes"].count == int(message.ts)

    @pytest.mark.asyncio
    async def test_messages_with_reactions_are_left_untouched(self, make_message):
        loaded = make_message("200", reactions={"+1": 4})
        original = loaded.reactions
        pending = make_message("100")
        lookup = KeyedLookup()

        await build_loader(lookup, skip_ratio=1.0).load([loaded, pending])

        assert loaded.reactions is original
        assert pending.reactions["eyes"].count == 100
        assert [r.ts for call in lookup.calls for r in call] == ["100"]

    @pytest.mark.asyncio
    async def test_failed_chunk_leaves_reactions_null(self, make_message):
        messages = [make_message(str(100 + i)) for i in range(25)]
        lookup = KeyedLookup(fail_calls={1})

        progress = await build_loader(lookup, initial_batch_size=10, chunk_size=15).load(messages)

        assert all(m.reactions is None for m in messages[:10])
        assert all(m.reactions is not None for m in messages[10:])
        assert progress.errors == 10
        assert progress.loaded == 15
        assert progress.is_loading is False

    @pytest.mark.asyncio
    async def test_notifies_after_each_successful_chunk(self, make_message):
        messages = [make_message(str(100 + i)) for i in range(30)]
        callback = MagicMock()

        await build_loader(KeyedLookup(), callback, initial_batch_size=10, chunk_size=10).load(
            messages
        )

        assert callback.call_count == 3
        listed, changes = callback.call_args_list[0].args
        assert listed is messages
        assert changes.updated == {m.key for m in messages[:10]}

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, make_message):
        callback = AsyncMock()

        await build_loader(KeyedLookup(), callback).load([make_message("100")])

        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_stop_loading(self, make_message):
        messages = [make_message(str(100 + i)) for i in range(20)]
        callback = MagicMock(side_effect=RuntimeError("render failed"))

        await build_loader(KeyedLookup(), callback, initial_batch_size=10, chunk_size=10).load(
            messages
        )

        assert all(m.reactions is not None for m in messages)

    @pytest.mark.asyncio
    async def test_short_circuits_when_mostly_loaded(self, make_message):
        messages = [make_message(str(100 + i), reactions={}) for i in range(9)]
        messages.append(make_message("50"))
        lookup = KeyedLookup()

        progress = await build_loader(lookup, skip_ratio=0.9).load(messages)

        assert lookup.calls == []
        assert progress.skipped is True
        assert messages[-1].reactions is None

    @pytest.mark.asyncio
    async def test_nothing_pending_makes_no_calls(self, make_message):
        lookup = KeyedLookup()

        progress = await build_loader(lookup).load([make_message("1", reactions={})])

        assert lookup.calls == []
        assert progress.skipped is False

    @pytest.mark.asyncio
    async def test_yields_between_chunks(self, make_message):
        messages = [make_message(str(100 + i)) for i in range(30)]

        with patch("slacksearch.live.reactions.asyncio.sleep", new=AsyncMock()) as sleep:
            await build_loader(
                KeyedLookup(), initial_batch_size=10, chunk_size=10, yield_seconds=0.01
            ).load(messages)

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.01)

    @pytest.mark.asyncio
    async def test_should_continue_abandons_load(self, make_message):
        messages = [make_message(str(100 + i)) for i in range(30)]
        lookup = KeyedLookup()
        checks = iter([True, False])

        await build_loader(lookup, initial_batch_size=10, chunk_size=10).load(
            messages, should_continue=lambda: next(checks)
        )

        assert len(lookup.calls) == 1
        assert all(m.reactions is None for m in messages[10:])

    @pytest.mark.asyncio
    async def test_results_follow_identity_when_list_shifted(self, make_message):
        messages = [make_message("300"), make_message("200")]

        class ShiftingLookup(KeyedLookup):
            async def lookup_reactions(self, requests):
                # A new message lands at the top while the chunk is in flight
                messages.insert(0, make_message("400", reactions={}))
                return await super().lookup_reactions(requests)

        await build_loader(ShiftingLookup(), skip_ratio=1.0).load(messages)

        assert messages[0].reactions == {}
        assert messages[1].reactions["eyes"].count == 300
        assert messages[2].reactions["eyes"].count == 200


@pytest.mark.unit
@pytest.mark.asyncio
async def test_overlapping_loads_run_one_lookup_at_a_time(make_message):
    lookup = GatedLookup()
    loader = build_loader(lookup)
    first = [make_message(str(100 + i)) for i in range(30)]
    second = [make_message("500")]

    first_load = asyncio.create_task(loader.load(first))
    await lookup.started.wait()
    second_load = asyncio.create_task(loader.load(second))
    await asyncio.sleep(0)
    assert lookup.in_flight == 1

    lookup.release.set()
    first_progress, second_progress = await asyncio.gather(first_load, second_load)

    assert lookup.max_in_flight == 1
    assert first_progress.loaded == 30
    assert (second_progress.total, second_progress.loaded) == (1, 1)
    assert loader.progress is second_progress
    assert second[0].reactions["eyes"].count == 1
