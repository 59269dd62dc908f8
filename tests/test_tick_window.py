"""Тести вікна тиків: порядок ключів, виселення, злиття та вибір цифри."""

from tick_window import (
    Tick,
    TickOrigin,
    TickWindow,
    WindowStore,
    detect_precision,
    digit_of,
    fraction_digits,
    ticks_from_pairs,
)


def make_ticks(keys, origin=TickOrigin.LIVE, base=100.0):
    return [Tick(sequence_key=k, value=base + k / 100.0, origin=origin, received_at=0.0) for k in keys]


def assert_strictly_increasing(window: TickWindow) -> None:
    keys = window.keys()
    assert all(a < b for a, b in zip(keys, keys[1:])), keys


class TestTickWindowAppend:
    def test_append_rejects_stale_and_duplicate_keys(self) -> None:
        window = TickWindow("R_100", capacity=10)
        assert window.append(Tick(5, 1.0)) is True
        assert window.append(Tick(5, 1.1)) is False
        assert window.append(Tick(3, 1.2)) is False
        assert window.append(Tick(6, 1.3)) is True

        assert window.keys() == [5, 6]
        assert window.rejected_ticks == 2
        assert_strictly_increasing(window)

    def test_append_at_capacity_evicts_oldest(self) -> None:
        window = TickWindow("R_100", capacity=1000)
        for key in range(1, 1001):
            window.append(Tick(key, float(key)))
        assert len(window) == 1000

        window.append(Tick(1001, 1001.0))

        assert len(window) == 1000
        assert window.keys()[0] == 2
        assert window.last_key == 1001
        assert window.evicted_ticks == 1
        assert_strictly_increasing(window)

    def test_tail_returns_newest_ticks(self) -> None:
        window = TickWindow("R_100", capacity=10)
        for tick in make_ticks([1, 2, 3, 4]):
            window.append(tick)
        assert [t.sequence_key for t in window.tail(2)] == [3, 4]
        assert window.tail(0) == []
        assert len(window.tail(50)) == 4


class TestTickWindowReplaceAndMerge:
    def test_replace_sorts_dedups_and_trims_to_newest(self) -> None:
        window = TickWindow("R_100", capacity=3)
        window.replace(make_ticks([5, 1, 3, 3, 4, 2]))
        assert window.keys() == [3, 4, 5]

    def test_merge_inserts_backfilled_key_between_neighbours(self) -> None:
        window = TickWindow("R_100", capacity=10)
        window.replace(make_ticks([1, 2, 4, 5]))

        added = window.merge(make_ticks([3], origin=TickOrigin.BACKFILL))

        assert added == 1
        assert window.keys() == [1, 2, 3, 4, 5]
        assert window.ticks()[2].origin is TickOrigin.BACKFILL

    def test_merge_keeps_live_tick_on_equal_key_regardless_of_order(self) -> None:
        live = Tick(7, 1.0, TickOrigin.LIVE)
        backfill = Tick(7, 2.0, TickOrigin.BACKFILL)

        first = TickWindow("R_100", capacity=5)
        first.replace([live])
        first.merge([backfill])

        second = TickWindow("R_100", capacity=5)
        second.replace([backfill])
        second.merge([live])

        assert first.ticks()[0].value == 1.0
        assert second.ticks()[0].value == 1.0

    def test_merge_is_idempotent(self) -> None:
        window = TickWindow("R_100", capacity=10)
        window.replace(make_ticks([1, 2, 4]))
        window.merge(make_ticks([3]))
        assert window.merge(make_ticks([3])) == 0
        assert window.keys() == [1, 2, 3, 4]


class TestWindowStore:
    def test_create_is_idempotent_and_drop_releases_window(self) -> None:
        store = WindowStore(capacity=5)
        window = store.create("R_100")
        assert store.create("R_100") is window
        store.append("R_100", Tick(1, 1.0))

        store.drop("R_100")

        assert "R_100" not in store
        assert len(window) == 0

    def test_get_unknown_instrument_raises(self) -> None:
        store = WindowStore(capacity=5)
        try:
            store.get("R_50")
        except KeyError:
            pass
        else:  # pragma: no cover
            raise AssertionError("KeyError очікувався")


class TestDigits:
    def test_digit_of_uses_last_digit_at_precision(self) -> None:
        assert digit_of(121.56, 2) == 6
        assert digit_of(121.5, 2) == 0

    def test_digit_of_fixed_position(self) -> None:
        assert digit_of(1234.5678, 4, position=1) == 5
        assert digit_of(1234.5678, 4, position=3) == 7
        assert digit_of(10.1, 2, position=3) == 0

    def test_fraction_digits_strips_trailing_zeros(self) -> None:
        assert fraction_digits(100.0) == ""
        assert fraction_digits(12.340) == "34"
        assert fraction_digits(0.00001) == "00001"

    def test_detect_precision_is_floored_at_two(self) -> None:
        assert detect_precision([1.0, 2.5]) == 2
        assert detect_precision([1.123, 2.5]) == 3
        assert detect_precision([]) == 2

    def test_ticks_from_pairs_tags_origin(self) -> None:
        ticks = ticks_from_pairs([(1, "1.5"), (2, 2)], TickOrigin.HISTORICAL, received_at=9.0)
        assert [t.value for t in ticks] == [1.5, 2.0]
        assert all(t.origin is TickOrigin.HISTORICAL and t.received_at == 9.0 for t in ticks)
