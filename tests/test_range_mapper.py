"""Tests for value ranges and position mapping."""

import pytest

from calibration.errors import DegenerateRangeError, EmptyIntersectionError, RangeUnavailableError
from calibration.range_mapper import (ChannelRanges, effective_range, intersect, to_position,
                                      to_value)
from calibration.value_range import ContinuousRange, DiscreteRange, describe_range
from conftest import FakeChannel


class TestValueRange:
    """Tests for the range types."""

    def test_inverted_continuous_range_rejected(self):
        with pytest.raises(ValueError):
            ContinuousRange(10, 5)

    def test_discrete_values_sorted(self):
        apertures = DiscreteRange((2.8, 1.8, 2.2))
        assert apertures.values == (1.8, 2.2, 2.8)
        assert apertures.first == 1.8
        assert apertures.last == 2.8
        assert len(apertures) == 3

    def test_empty_discrete_range_rejected(self):
        with pytest.raises(ValueError):
            DiscreteRange(())

    def test_from_pair_keeps_none(self):
        assert ContinuousRange.from_pair(None) is None
        assert ContinuousRange.from_pair((1, 2)) == ContinuousRange(1, 2)

    def test_describe_range(self):
        assert describe_range(None) == 'unavailable'
        assert describe_range(ContinuousRange(100, 3200)) == '[100, 3200]'
        assert describe_range(DiscreteRange((1.8, 2.8))) == '{1.8, 2.8}'


class TestIntersect:
    """Tests for continuous range intersection."""

    def test_overlap(self):
        result = intersect(ContinuousRange(50, 6400), ContinuousRange(100, 3200))
        assert result == ContinuousRange(100, 3200)

    def test_identity(self):
        r = ContinuousRange(3000000, 50090000)
        assert intersect(r, r) == r

    def test_commutative(self):
        a = ContinuousRange(0, 500)
        b = ContinuousRange(250, 900)
        assert intersect(a, b) == intersect(b, a) == ContinuousRange(250, 500)

    def test_missing_input(self):
        assert intersect(None, ContinuousRange(0, 1)) is None
        assert intersect(ContinuousRange(0, 1), None) is None

    def test_disjoint_raises(self):
        with pytest.raises(EmptyIntersectionError):
            intersect(ContinuousRange(5000, 6000), ContinuousRange(100, 3200))

    def test_touching_ranges_give_single_value(self):
        assert intersect(ContinuousRange(0, 100), ContinuousRange(100, 200)) == ContinuousRange(100, 100)


class TestToValue:
    """Tests for position -> value mapping."""

    def test_endpoints(self):
        effective = ContinuousRange(100, 3200)
        device = ContinuousRange(50, 6400)
        assert to_value(effective, device, 0) == 100
        assert to_value(effective, device, 100) == 3200

    def test_linear_truncated(self):
        effective = ContinuousRange(100, 3200)
        device = ContinuousRange(50, 6400)
        assert to_value(effective, device, 50) == 1650
        assert to_value(effective, device, 33) == 100 + 3100 * 33 // 100

    def test_monotonic(self):
        effective = ContinuousRange(3000000, 50090000)
        values = [to_value(effective, effective, p) for p in range(101)]
        assert values == sorted(values)

    def test_positions_clamped(self):
        effective = ContinuousRange(100, 3200)
        assert to_value(effective, effective, -20) == 100
        assert to_value(effective, effective, 250) == 3200

    def test_clamped_into_device_range(self):
        # A practical range wider than the device still yields legal values
        assert to_value(ContinuousRange(0, 10000), ContinuousRange(50, 6400), 100) == 6400
        assert to_value(ContinuousRange(0, 10000), ContinuousRange(50, 6400), 0) == 50

    def test_discrete_indexing(self):
        apertures = DiscreteRange((1.8, 2.2, 2.8))
        assert to_value(apertures, apertures, 0) == 1.8
        assert to_value(apertures, apertures, 33) == 1.8
        assert to_value(apertures, apertures, 34) == 2.2
        assert to_value(apertures, apertures, 67) == 2.2
        assert to_value(apertures, apertures, 68) == 2.8
        assert to_value(apertures, apertures, 100) == 2.8

    def test_discrete_single_value(self):
        fixed = DiscreteRange((2.0,))
        assert all(to_value(fixed, fixed, p) == 2.0 for p in range(101))

    def test_missing_range(self):
        assert to_value(None, ContinuousRange(0, 1), 50) is None
        assert to_value(ContinuousRange(0, 1), None, 50) is None

    def test_mixed_variants_rejected(self):
        with pytest.raises(TypeError):
            to_value(ContinuousRange(0, 10), DiscreteRange((1.0,)), 50)


class TestToPosition:
    """Tests for value -> position mapping."""

    def test_round_trip_on_exact_positions(self):
        effective = ContinuousRange(0, 1000)
        for position in range(0, 101, 5):
            assert to_position(to_value(effective, effective, position), effective) == position

    def test_truncates(self):
        assert to_position(350, ContinuousRange(100, 3200)) == 8

    def test_above_range_is_none(self):
        assert to_position(6400, ContinuousRange(100, 3200)) is None

    def test_zero_width_is_none(self):
        assert to_position(100, ContinuousRange(100, 100)) is None

    def test_discrete_index(self):
        apertures = DiscreteRange((1.8, 2.2, 2.8))
        assert to_position(2.2, apertures) == 1
        assert to_position(2.0, apertures) is None

    def test_missing(self):
        assert to_position(5, None) is None
        assert to_position(None, ContinuousRange(0, 1)) is None


class TestEffectiveRange:
    """Tests for device/practical reconciliation."""

    def test_continuous(self):
        assert effective_range(ContinuousRange(50, 6400), ContinuousRange(100, 3200)) == \
            ContinuousRange(100, 3200)

    def test_missing_device(self):
        with pytest.raises(RangeUnavailableError):
            effective_range(None, ContinuousRange(100, 3200))

    def test_continuous_without_practical(self):
        with pytest.raises(RangeUnavailableError):
            effective_range(ContinuousRange(50, 6400), None)

    def test_discrete_without_practical(self):
        apertures = DiscreteRange((1.8, 2.2, 2.8))
        assert effective_range(apertures, None) is apertures

    def test_discrete_filtered_by_continuous(self):
        result = effective_range(DiscreteRange((1.8, 2.2, 2.8)), ContinuousRange(2, 3))
        assert result.values == (2.2, 2.8)

    def test_discrete_filter_empty(self):
        with pytest.raises(EmptyIntersectionError):
            effective_range(DiscreteRange((1.8, 2.2)), ContinuousRange(5, 8))


class TestChannelRanges:
    """Tests for the per-channel range holder."""

    def test_device_range_queried_once(self):
        calls = []

        class CountingChannel(FakeChannel):
            def capability_range(self):
                calls.append(1)
                return super().capability_range()

        ranges = ChannelRanges('sensitivity', CountingChannel('sensitivity', ContinuousRange(50, 6400)),
                               ContinuousRange(100, 3200))
        ranges.effective
        ranges.to_value(10)
        ranges.to_position(500)
        assert len(calls) == 1

    def test_error_names_channel(self):
        ranges = ChannelRanges('sensitivity', FakeChannel('sensitivity', None), ContinuousRange(100, 3200))
        with pytest.raises(RangeUnavailableError) as exc_info:
            ranges.effective
        assert exc_info.value.channel == 'sensitivity'
        assert not ranges.is_usable()

    def test_degenerate(self):
        ranges = ChannelRanges('exposure', FakeChannel('exposure', ContinuousRange(100, 100)),
                               ContinuousRange(0, 1000))
        assert ranges.is_degenerate()
        assert ranges.to_value(0) == ranges.to_value(100) == 100
        with pytest.raises(DegenerateRangeError):
            ranges.require_searchable()

    def test_control_position_for_discrete(self):
        ranges = ChannelRanges('aperture', FakeChannel('aperture', DiscreteRange((1.8, 2.2, 2.8))))
        assert ranges.control_position(1.8) == 0
        assert ranges.to_value(ranges.control_position(2.2)) == 2.2
        assert ranges.to_value(ranges.control_position(2.8)) == 2.8
        assert ranges.control_position(4.0) is None
