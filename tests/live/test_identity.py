import pytest

from slacksearch.core.exceptions import InvalidTimestampError
from slacksearch.live.identity import (
    MessageKey,
    advance_timestamp,
    compare_messages,
    is_valid_timestamp,
    micros_to_timestamp,
    newest_timestamp,
    sort_newest_first,
    sort_oldest_first,
    timestamp_to_micros,
)


@pytest.mark.unit
class TestTimestampConversion:
    def test_parses_full_precision(self):
        assert timestamp_to_micros("1700000000.123456") == 1700000000123456

    def test_short_fraction_is_right_padded(self):
        assert timestamp_to_micros("1700000000.5") == 1700000000500000

    def test_integer_timestamp(self):
        assert timestamp_to_micros("100") == 100_000_000

    @pytest.mark.parametrize("value", ["", "abc", "1.2.3", "-5", "1.1234567", None, 12.5])
    def test_rejects_non_decimal_values(self, value):
        assert not is_valid_timestamp(value)
        with pytest.raises(InvalidTimestampError):
            timestamp_to_micros(value)

    def test_format_keeps_six_digit_fraction(self):
        assert micros_to_timestamp(1700000000000001) == "1700000000.000001"

    def test_advance_by_one_second_is_exact(self):
        assert advance_timestamp("1700000000.999999") == "1700000001.999999"

    def test_microsecond_neighbours_stay_distinct(self):
        a, b = "1700000000.000001", "1700000000.000002"
        assert timestamp_to_micros(b) - timestamp_to_micros(a) == 1


@pytest.mark.unit
class TestOrdering:
    def test_newest_first_orders_microsecond_neighbours(self, make_message):
        older = make_message("1700000000.000001")
        newer = make_message("1700000000.000002")

        assert sort_newest_first([older, newer]) == [newer, older]
        assert compare_messages(older, newer) < 0
        assert compare_messages(newer, older) > 0

    def test_equal_timestamps_keep_input_order(self, make_message):
        first = make_message("100", channel_id="C1")
        second = make_message("100", channel_id="C2")

        assert sort_newest_first([first, second]) == [first, second]
        assert sort_newest_first([second, first]) == [second, first]
        assert compare_messages(first, second) == 0

    def test_oldest_first(self, make_message):
        messages = [make_message("300"), make_message("100"), make_message("200")]

        assert [m.ts for m in sort_oldest_first(messages)] == ["100", "200", "300"]

    def test_newest_timestamp(self, make_message):
        messages = [make_message("99.9"), make_message("100.000001"), make_message("100")]

        assert newest_timestamp(messages) == "100.000001"
        assert newest_timestamp([]) is None


@pytest.mark.unit
class TestIdentity:
    def test_key_ignores_display_fields(self, make_message):
        plain = make_message("100", text="x")
        decorated = make_message("100", text="x", user_name="Alice", reactions={"+1": 1})

        assert plain.key == decorated.key == MessageKey("C1", "100")

    def test_same_timestamp_in_other_channel_is_distinct(self, make_message):
        assert make_message("100", channel_id="C1").key != make_message(
            "100", channel_id="C2"
        ).key

    def test_key_string_form(self):
        assert str(MessageKey("C1", "100.5")) == "C1:100.5"

    def test_message_rejects_invalid_timestamp(self, make_message):
        with pytest.raises(ValueError):
            make_message("not-a-ts")
