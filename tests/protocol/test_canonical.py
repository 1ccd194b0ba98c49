"""Tests for payload canonicalization."""

import itertools
import json
import random

import pytest

from calibra.errors import PayloadValidationError
from calibra.protocol.canonical import (
    CanonicalizationPolicy,
    canonicalize,
    parse_canonical,
    round_percent,
)
from calibra.protocol.models import ForecastEntry


def _rows():
    return [
        {"schedule_key": "UA100|2026-03-01", "probabilities": {"late": 30, "on_time": 70}},
        {"schedule_key": "AA7|2026-03-01", "probabilities": {"cancelled": 2.5, "late": "40.125", "on_time": 57.375}},
        {"schedule_key": "DL42|2026-03-01", "probabilities": {"on_time": 100}},
    ]


class TestOrderInvariance:

    def test_all_entry_permutations_identical(self):
        expected = canonicalize(_rows()).canonical_bytes
        for perm in itertools.permutations(_rows()):
            assert canonicalize(list(perm)).canonical_bytes == expected

    def test_label_order_irrelevant(self):
        rng = random.Random(7)
        expected = canonicalize(_rows()).canonical_bytes
        for _ in range(20):
            rows = []
            for row in _rows():
                labels = list(row["probabilities"].items())
                rng.shuffle(labels)
                rows.append({"schedule_key": row["schedule_key"], "probabilities": dict(labels)})
            rng.shuffle(rows)
            assert canonicalize(rows).canonical_bytes == expected

    def test_mapping_and_model_inputs_match_wire_shape(self):
        wire = canonicalize(_rows())
        mapping = {r["schedule_key"]: r["probabilities"] for r in _rows()}
        assert canonicalize(mapping).canonical_bytes == wire.canonical_bytes
        models = [ForecastEntry(schedule_key=e.schedule_key, probabilities=e.probabilities) for e in wire.entries]
        assert canonicalize(models).canonical_bytes == wire.canonical_bytes


class TestFormatting:

    def test_compact_sorted_output(self):
        out = canonicalize([
            {"schedule_key": " b ", "probabilities": {" y ": 1, "x": 2}},
            {"schedule_key": "a", "probabilities": {"z": 50}},
        ])
        assert out.canonical_json == (
            '[{"schedule_key":"a","probabilities":{"z":50}},'
            '{"schedule_key":"b","probabilities":{"x":2,"y":1}}]'
        )

    def test_rounding_half_up(self):
        assert round_percent(12.125) == 12.13
        assert round_percent(0.125) == 0.13
        assert round_percent(99.994) == 99.99
        assert round_percent(33.3333) == 33.33

    def test_integral_values_have_no_fraction(self):
        out = canonicalize([{"schedule_key": "k", "probabilities": {"a": 50.0, "b": "25", "c": 25.5}}])
        assert '"a":50,' in out.canonical_json
        assert '"b":25,' in out.canonical_json
        assert '"c":25.5' in out.canonical_json

    def test_empty_keys_and_maps_dropped(self):
        out = canonicalize([
            {"schedule_key": "  ", "probabilities": {"a": 1}},
            {"schedule_key": "k1", "probabilities": {}},
            {"schedule_key": "k2", "probabilities": {"  ": 5, "a": 5}},
        ])
        assert [e.schedule_key for e in out.entries] == ["k2"]
        assert out.entries[0].probabilities == {"a": 5}

    def test_code_point_sort(self):
        out = canonicalize([
            {"schedule_key": "b", "probabilities": {"a": 1}},
            {"schedule_key": "B", "probabilities": {"a": 1}},
            {"schedule_key": "é", "probabilities": {"a": 1}},
        ])
        assert [e.schedule_key for e in out.entries] == ["B", "b", "é"]
        assert "é" in out.canonical_json

    def test_parse_canonical_round_trip(self):
        out = canonicalize(_rows())
        parsed = parse_canonical(out.canonical_bytes)
        assert [e.schedule_key for e in parsed] == [e.schedule_key for e in out.entries]
        assert json.loads(out.canonical_json)[0]["schedule_key"] == "AA7|2026-03-01"


class TestValidation:

    @pytest.mark.parametrize("bad", [-0.01, 100.01, float("nan"), float("inf"), "abc", True, None])
    def test_strict_rejects_bad_leaf(self, bad):
        with pytest.raises(PayloadValidationError) as exc:
            canonicalize([{"schedule_key": "k", "probabilities": {"a": 10, "b": bad}}])
        assert exc.value.problems

    def test_lenient_drops_bad_leaf_and_reports(self):
        out = canonicalize(
            [{"schedule_key": "k", "probabilities": {"a": 10, "b": 101}}],
            CanonicalizationPolicy.LENIENT,
        )
        assert out.entries[0].probabilities == {"a": 10}
        assert out.dropped == ["k/b"]

    def test_boundaries_accepted(self):
        out = canonicalize([{"schedule_key": "k", "probabilities": {"a": 0, "b": 100}}])
        assert out.entries[0].probabilities == {"a": 0, "b": 100}

    def test_not_an_array(self):
        with pytest.raises(PayloadValidationError, match="payload must be an array"):
            canonicalize("nope")

    def test_empty_payload(self):
        with pytest.raises(PayloadValidationError, match="Empty payload"):
            canonicalize([])

    def test_everything_filtered_is_empty(self):
        with pytest.raises(PayloadValidationError, match="Empty payload"):
            canonicalize([{"schedule_key": "", "probabilities": {"a": 1}}])

    def test_duplicate_schedule_key_rejected(self):
        with pytest.raises(PayloadValidationError, match="duplicate"):
            canonicalize([
                {"schedule_key": "k", "probabilities": {"a": 1}},
                {"schedule_key": " k ", "probabilities": {"b": 2}},
            ], CanonicalizationPolicy.LENIENT)

    @pytest.mark.parametrize("policy", list(CanonicalizationPolicy))
    def test_missing_or_non_string_key_dropped(self, policy):
        out = canonicalize([
            {"probabilities": {"on_time": 50}},
            {"schedule_key": 7, "probabilities": {"on_time": 50}},
            "not-a-row",
            {"schedule_key": "JFK-0900", "probabilities": {"on_time": 70}},
        ], policy)
        assert [e.schedule_key for e in out.entries] == ["JFK-0900"]
        assert out.dropped == []

    @pytest.mark.parametrize("labels", [
        {"on_time": 10, " on_time": 90},
        {" on_time": 90, "on_time": 10},
    ])
    def test_labels_equal_after_strip_rejected(self, labels):
        with pytest.raises(PayloadValidationError, match="duplicate label"):
            canonicalize({"K": labels}, CanonicalizationPolicy.LENIENT)
