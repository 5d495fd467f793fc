"""Unit tests for key-domain sentinels and bound encoding."""

from __future__ import annotations

import pickle
from datetime import UTC, datetime

import pytest

from cdc_snapshot.splits.keys import MAX_KEY, MIN_KEY, decode_bound, encode_bound, key_lt


class TestSentinels:
    @pytest.mark.parametrize("value", [0, -(10**18), "", "zzz", (1, "a"), 3.5])
    def test_min_below_and_max_above_everything(self, value):
        assert MIN_KEY < value
        assert value > MIN_KEY
        assert value < MAX_KEY
        assert MAX_KEY > value

    def test_sentinels_order_against_each_other(self):
        assert MIN_KEY < MAX_KEY
        assert not MIN_KEY < MIN_KEY
        assert not MAX_KEY < MAX_KEY
        assert MIN_KEY <= MIN_KEY
        assert MAX_KEY >= MAX_KEY

    def test_equality_is_identity_like(self):
        assert MIN_KEY == MIN_KEY
        assert MIN_KEY != MAX_KEY
        assert MIN_KEY != 0
        assert len({MIN_KEY, MAX_KEY, MIN_KEY}) == 2

    def test_sorting_mixed_with_sentinels(self):
        assert sorted([5, MAX_KEY, 1, MIN_KEY]) == [MIN_KEY, 1, 5, MAX_KEY]

    def test_pickle_preserves_singletons(self):
        assert pickle.loads(pickle.dumps(MIN_KEY)) is MIN_KEY
        assert pickle.loads(pickle.dumps(MAX_KEY)) is MAX_KEY


class TestKeyLt:
    def test_plain_values(self):
        assert key_lt(1, 2)
        assert not key_lt(2, 2)

    def test_incomparable_values_raise(self):
        with pytest.raises(TypeError):
            key_lt(1, "a")


class TestBoundEncoding:
    def test_sentinels(self):
        assert encode_bound(MIN_KEY) == {"$minKey": 1}
        assert decode_bound({"$maxKey": 1}) is MAX_KEY

    def test_compound_and_dates(self):
        ts = datetime(2024, 1, 5, 12, 30, tzinfo=UTC)
        encoded = encode_bound(("emea", ts, MIN_KEY))
        assert decode_bound(encoded) == ("emea", ts, MIN_KEY)

    def test_scalars_pass_through(self):
        assert encode_bound(42) == 42
        assert decode_bound("abc") == "abc"

    def test_unsupported_type_raises(self):
        with pytest.raises(TypeError, match="Cannot encode"):
            encode_bound(object())

    def test_unknown_marker_raises(self):
        with pytest.raises(ValueError, match="Unrecognised"):
            decode_bound({"$oid": "abc"})
