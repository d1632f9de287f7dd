from datetime import datetime, timezone

import pytest

from slacksearch.integrations.slack.query import (
    build_search_query,
    chunk_channels,
    timestamp_to_date,
)
from slacksearch.live.models import FetchParams

# 2024-03-10 12:00:00 UTC
MIDDAY = "1710072000.000000"


@pytest.mark.unit
class TestBuildSearchQuery:
    def test_text_and_single_channel(self):
        params = FetchParams(query="  deploy failed ", channel_ids=["C1"])

        assert build_search_query(params) == "deploy failed in:<#C1>"

    def test_channel_override(self):
        params = FetchParams(query="x", channel_ids=["C1", "C2"])

        assert build_search_query(params, "C3") == "x in:<#C3>"

    def test_several_channels_are_never_joined(self):
        params = FetchParams(query="x", channel_ids=["C1", "C2"])

        with pytest.raises(ValueError):
            build_search_query(params)

    def test_single_user_filter(self):
        params = FetchParams(query="x", user_ids=["U1"])

        assert build_search_query(params) == "x from:<@U1>"

    def test_multiple_users_are_left_to_client_filtering(self):
        params = FetchParams(query="x", user_ids=["U1", "U2"])

        assert build_search_query(params) == "x"

    def test_timestamp_bounds_widened_by_a_day(self):
        params = FetchParams(query="x", from_timestamp=MIDDAY, to_timestamp=MIDDAY)

        assert build_search_query(params) == "x after:2024-03-09 before:2024-03-11"

    def test_dates_combine_with_timestamps(self):
        params = FetchParams(
            query="x",
            from_timestamp=MIDDAY,
            from_date=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )

        assert build_search_query(params) == "x after:2024-02-29"

    def test_empty_scope(self):
        assert build_search_query(FetchParams()) == ""


@pytest.mark.unit
def test_timestamp_to_date():
    assert timestamp_to_date(MIDDAY).isoformat() == "2024-03-10"


@pytest.mark.unit
class TestChunkChannels:
    def test_splits_into_batches(self):
        ids = [f"C{i}" for i in range(12)]

        chunks = chunk_channels(ids, 5)

        assert [len(chunk) for chunk in chunks] == [5, 5, 2]
        assert sum(chunks, []) == ids

    def test_no_channels_is_one_unscoped_batch(self):
        assert chunk_channels([], 5) == [[]]
