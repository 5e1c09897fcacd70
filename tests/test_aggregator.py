"""
Tests for consensus aggregation.
"""

import itertools

import pytest

from visual_consensus.aggregator import ConsensusAggregator
from visual_consensus.config import AggregatorConfig
from visual_consensus.models import ElementKind, StrategyOutcome

from fakes import outcome, record


def aggregator(threshold=0.4, merge=True, priorities=None, **config):
    return ConsensusAggregator(
        AggregatorConfig(overlap_threshold=threshold, merge_discarded=merge, **config),
        priorities=priorities,
    )


class TestOverlapRule:
    """Greedy de-duplication by IoU."""

    def test_iou_above_threshold_collapses(self):
        fused = aggregator().aggregate([
            outcome("a", record(0, 0, 100, 100, 0.9, strategy_id="a")),
            outcome("b", record(0, 0, 100, 50, 0.7, strategy_id="b")),
        ])
        assert len(fused.elements) == 1
        assert fused.elements[0].confidence == 0.9

    def test_iou_below_threshold_keeps_both(self):
        fused = aggregator().aggregate([
            outcome("a", record(0, 0, 100, 100, 0.9, strategy_id="a")),
            outcome("b", record(0, 0, 30, 100, 0.7, strategy_id="b")),
        ])
        assert len(fused.elements) == 2

    def test_iou_equal_to_threshold_collapses(self):
        fused = aggregator(threshold=0.5).aggregate([
            outcome("a", record(0, 0, 100, 100, 0.9, strategy_id="a")),
            outcome("b", record(0, 0, 100, 50, 0.7, strategy_id="b")),
        ])
        assert len(fused.elements) == 1

    def test_single_strategy_scenario(self):
        fused = aggregator().aggregate([
            outcome(
                "s",
                record(300, 300, 50, 50, 0.9, strategy_id="s"),
                record(0, 0, 100, 100, 0.8, strategy_id="s"),
                record(0, 0, 60, 100, 0.75, strategy_id="s"),
            ),
        ])

        assert [e.confidence for e in fused.elements] == [0.9, 0.8]
        untouched = fused.elements[0]
        assert untouched.bounds.to_tuple() == (300, 300, 50, 50)
        assert "consensus.sources" not in untouched.properties
        assert fused.metadata["discarded"] == 1

    def test_result_has_no_overlapping_pairs(self):
        boxes = [record(x, y, 40, 40, 0.5 + (x + y) / 1000, strategy_id="s")
                 for x in range(0, 200, 15) for y in range(0, 100, 15)]
        fused = aggregator().aggregate([outcome("s", *boxes)])
        for a, b in itertools.combinations(fused.elements, 2):
            assert a.bounds.iou(b.bounds) < 0.4


class TestOrdering:
    """Confidence order and deterministic tie-breaks."""

    def test_sorted_by_confidence(self):
        fused = aggregator().aggregate([
            outcome("a", record(0, 0, 10, 10, 0.6, strategy_id="a")),
            outcome("b", record(50, 0, 10, 10, 0.95, strategy_id="b"),
                    record(100, 0, 10, 10, 0.7, strategy_id="b")),
        ])
        assert [e.confidence for e in fused.elements] == [0.95, 0.7, 0.6]

    def test_arrival_order_does_not_matter(self):
        outcomes = [
            outcome("a", record(0, 0, 100, 100, 0.8, strategy_id="a"),
                    record(200, 0, 50, 50, 0.6, strategy_id="a")),
            outcome("b", record(10, 0, 100, 100, 0.8, strategy_id="b"),
                    record(205, 5, 50, 50, 0.65, strategy_id="b")),
            outcome("c", record(0, 300, 20, 20, 0.8, strategy_id="c")),
        ]
        agg = aggregator(priorities={"a": 10, "b": 10, "c": 5})
        expected = agg.aggregate(outcomes)

        for permutation in itertools.permutations(outcomes):
            assert agg.aggregate(permutation).elements == expected.elements
            assert agg.aggregate(permutation).strategy_ids == expected.strategy_ids

    def test_equal_confidence_prefers_priority(self):
        outcomes = [
            outcome("low", record(0, 0, 100, 100, 0.8, strategy_id="low")),
            outcome("high", record(0, 0, 100, 100, 0.8, strategy_id="high")),
        ]
        fused = aggregator(priorities={"low": 10, "high": 90}).aggregate(outcomes)
        assert fused.elements[0].strategy_id == "high"
        assert fused.strategy_ids == ("high", "low")

    def test_equal_priority_falls_back_to_strategy_id(self):
        outcomes = [
            outcome("zeta", record(0, 0, 100, 100, 0.8, strategy_id="zeta")),
            outcome("alpha", record(0, 0, 100, 100, 0.8, strategy_id="alpha")),
        ]
        fused = aggregator().aggregate(outcomes)
        assert fused.elements[0].strategy_id == "alpha"

    def test_call_priorities_override_defaults(self):
        outcomes = [
            outcome("a", record(0, 0, 100, 100, 0.8, strategy_id="a")),
            outcome("b", record(0, 0, 100, 100, 0.8, strategy_id="b")),
        ]
        fused = aggregator(priorities={"a": 90, "b": 10}).aggregate(
            outcomes, priorities={"b": 100}
        )
        assert fused.elements[0].strategy_id == "b"


class TestMerging:
    """Folding discarded duplicates into the kept record."""

    def test_higher_confidence_kind_wins_and_loser_is_recorded(self):
        fused = aggregator().aggregate([
            outcome("inference", record(0, 0, 100, 40, 0.9, strategy_id="inference",
                                        kind=ElementKind.BUTTON)),
            outcome("template", record(5, 0, 100, 40, 0.7, strategy_id="template",
                                       kind=ElementKind.LABEL, text="Save")),
        ])

        kept = fused.elements[0]
        assert kept.kind == ElementKind.BUTTON
        assert kept.strategy_id == "inference"
        assert kept.text == "Save"
        assert kept.properties["consensus.sources"] == ("inference", "template")

        merged = kept.properties["merged.template"]
        assert len(merged) == 1
        assert merged[0]["kind"] == "label"
        assert merged[0]["confidence"] == 0.7

    def test_kept_text_is_not_overwritten(self):
        fused = aggregator().aggregate([
            outcome("a", record(0, 0, 100, 40, 0.9, strategy_id="a", text="OK")),
            outcome("b", record(0, 0, 100, 40, 0.7, strategy_id="b", text="Cancel")),
        ])
        assert fused.elements[0].text == "OK"

    def test_merge_can_be_disabled(self):
        original = record(0, 0, 100, 40, 0.9, strategy_id="a")
        fused = aggregator(merge=False).aggregate([
            outcome("a", original),
            outcome("b", record(0, 0, 100, 40, 0.7, strategy_id="b", text="Cancel")),
        ])
        assert fused.elements == (original,)


class TestConsensusScores:
    """Weighted confidence blend and agreement on merged records."""

    def test_default_weights_favour_inference(self):
        fused = aggregator().aggregate([
            outcome("inference", record(0, 0, 100, 40, 0.9, strategy_id="inference")),
            outcome("template_matching", record(0, 0, 100, 40, 0.6, strategy_id="template_matching")),
        ])

        kept = fused.elements[0]
        assert kept.confidence == 0.9
        # (1.0 * 0.9 + 0.6 * 0.6) / 1.6
        assert kept.properties["consensus.confidence"] == pytest.approx(0.7875)
        # same kind, identical boxes, confidence spread 0.15
        assert kept.properties["consensus.agreement"] == pytest.approx(0.4 + 0.4 + 0.2 * 0.85)

    def test_configured_weights(self):
        fused = aggregator(strategy_weights={"a": 1.0, "b": 3.0}).aggregate([
            outcome("a", record(0, 0, 100, 40, 0.9, strategy_id="a")),
            outcome("b", record(0, 0, 100, 40, 0.5, strategy_id="b")),
        ])
        assert fused.elements[0].properties["consensus.confidence"] == pytest.approx(0.6)

    def test_unknown_strategies_use_default_weight(self):
        fused = aggregator(strategy_weights={}, default_weight=2.0).aggregate([
            outcome("a", record(0, 0, 100, 40, 0.9, strategy_id="a")),
            outcome("b", record(0, 0, 100, 40, 0.5, strategy_id="b")),
        ])
        assert fused.elements[0].properties["consensus.confidence"] == pytest.approx(0.7)

    def test_disagreement_lowers_agreement(self):
        fused = aggregator().aggregate([
            outcome("a", record(0, 0, 100, 40, 0.9, strategy_id="a", kind=ElementKind.BUTTON)),
            outcome("b", record(10, 0, 100, 40, 0.5, strategy_id="b", kind=ElementKind.LABEL)),
        ])

        iou = 3600 / 4400
        expected = 0.4 * 0.5 + 0.4 * iou + 0.2 * (1.0 - 0.2)
        assert fused.elements[0].properties["consensus.agreement"] == pytest.approx(expected)

    def test_weights_do_not_change_ranking(self):
        fused = aggregator(strategy_weights={"a": 0.01, "b": 10.0}).aggregate([
            outcome("a", record(0, 0, 100, 40, 0.9, strategy_id="a")),
            outcome("b", record(0, 0, 100, 40, 0.5, strategy_id="b")),
        ])

        kept = fused.elements[0]
        assert kept.strategy_id == "a"
        assert kept.confidence == 0.9
        assert kept.properties["consensus.confidence"] < 0.55

    def test_records_without_duplicates_have_no_scores(self):
        fused = aggregator().aggregate([
            outcome("a", record(0, 0, 100, 40, 0.9, strategy_id="a")),
            outcome("b", record(300, 300, 20, 20, 0.5, strategy_id="b")),
        ])
        for elem in fused.elements:
            assert "consensus.confidence" not in elem.properties
            assert "consensus.agreement" not in elem.properties

class TestResultShape:
    """Truncation, durations, failures."""

    def test_truncates_after_deduplication(self):
        fused = aggregator().aggregate(
            [outcome("s",
                     record(0, 0, 100, 100, 0.9, strategy_id="s"),
                     record(0, 0, 100, 90, 0.85, strategy_id="s"),
                     record(200, 0, 10, 10, 0.8, strategy_id="s"),
                     record(300, 0, 10, 10, 0.7, strategy_id="s"))],
            max_results=2,
        )
        assert [e.confidence for e in fused.elements] == [0.9, 0.8]
        assert fused.metadata["truncated"] == 1

    def test_duration_is_max_of_successful(self):
        fused = aggregator().aggregate([
            outcome("a", record(0, 0, 10, 10, 0.9, strategy_id="a"), duration_ms=40.0),
            outcome("b", duration_ms=120.0),
            StrategyOutcome.failed("c", "timeout", 5000.0),
        ])
        assert fused.total_duration_ms == 120.0

    def test_failed_outcomes_only_feed_diagnostics(self):
        fused = aggregator().aggregate([
            outcome("a", record(0, 0, 10, 10, 0.9, strategy_id="a")),
            StrategyOutcome.failed("b", "boom", 3.0),
        ])
        assert fused.success
        assert fused.strategy_ids == ("a",)
        assert [d.strategy_id for d in fused.diagnostics] == ["a", "b"]
        assert fused.diagnostics[1].reason == "boom"

    def test_no_successful_outcome(self):
        fused = aggregator().aggregate([
            StrategyOutcome.failed("a", "timeout", 100.0),
            StrategyOutcome.failed("b", "boom", 3.0),
        ])
        assert not fused.success
        assert fused.elements == ()
        assert len(fused.diagnostics) == 2

    def test_no_outcomes(self):
        fused = aggregator().aggregate([])
        assert not fused.success

    def test_successful_but_empty(self):
        fused = aggregator().aggregate([outcome("a")])
        assert fused.success
        assert fused.elements == ()

    def test_rejects_non_positive_max_results(self):
        with pytest.raises(ValueError):
            aggregator().aggregate([outcome("a")], max_results=0)
