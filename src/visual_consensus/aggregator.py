"""
Consensus Aggregator - fuses the outcomes of several strategies.

Candidates from every successful strategy are ranked by confidence and
greedily de-duplicated by bounding box overlap. The ranking is a total
order (confidence, strategy priority, strategy id, emission index), so
the fused result never depends on the order in which strategies finished.
A kept record that absorbed duplicates also carries a strategy-weighted
blend of the agreeing confidences and an agreement score; neither
affects the ranking.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field, replace
from itertools import combinations
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .config import AggregatorConfig, get_config
from .models import ElementRecord, FusedResult, StrategyDiagnostic, StrategyOutcome

logger = logging.getLogger(__name__)

MERGED_PREFIX = "merged."
SOURCES_KEY = "consensus.sources"
CONFIDENCE_KEY = "consensus.confidence"
AGREEMENT_KEY = "consensus.agreement"


@dataclass
class _Candidate:
    record: ElementRecord
    strategy_id: str
    priority: int
    index: int

    @property
    def sort_key(self) -> tuple:
        return (-self.record.confidence, -self.priority, self.strategy_id, self.index)


@dataclass
class _Cluster:
    """A kept candidate and the duplicates it beat."""

    winner: _Candidate
    absorbed: list[_Candidate] = field(default_factory=list)

    def overlaps(self, candidate: _Candidate, threshold: float) -> bool:
        return self.winner.record.bounds.iou(candidate.record.bounds) >= threshold


class ConsensusAggregator:
    """
    Merges strategy outcomes into one de-duplicated, confidence-ranked set.

    Args:
        config: Aggregation settings (overlap threshold, merge behaviour)
        priorities: Strategy id -> priority used to break confidence ties
    """

    def __init__(
        self,
        config: Optional[AggregatorConfig] = None,
        priorities: Optional[Mapping[str, int]] = None
    ):
        self.config = config or get_config().aggregator
        self.priorities: dict[str, int] = dict(priorities or {})

    def aggregate(
        self,
        outcomes: Iterable[StrategyOutcome],
        max_results: int = 100,
        priorities: Optional[Mapping[str, int]] = None
    ) -> FusedResult:
        """
        Fuse strategy outcomes.

        Args:
            outcomes: Every outcome of the call, successful or not
            max_results: Maximum number of fused elements
            priorities: Per-call priority overrides, merged over the defaults

        Returns:
            FusedResult; ``success`` is False when no strategy succeeded
        """
        if max_results <= 0:
            raise ValueError(f"max_results must be positive, got {max_results}")

        outcomes = list(outcomes)
        ranking = {**self.priorities, **(priorities or {})}
        threshold = self.config.overlap_threshold

        diagnostics = [StrategyDiagnostic.from_outcome(o) for o in outcomes]
        successful = [o for o in outcomes if o.success]

        if not successful:
            logger.debug("No successful strategy outcomes to aggregate")
            return FusedResult.empty(
                diagnostics=diagnostics,
                metadata={
                    "reason": "no successful strategy",
                    "overlap_threshold": threshold,
                },
            )

        candidates = [
            _Candidate(
                record=record,
                strategy_id=outcome.strategy_id,
                priority=ranking.get(outcome.strategy_id, 0),
                index=index,
            )
            for outcome in successful
            for index, record in enumerate(outcome.elements)
        ]
        candidates.sort(key=lambda c: c.sort_key)

        clusters: list[_Cluster] = []
        for candidate in candidates:
            for cluster in clusters:
                if cluster.overlaps(candidate, threshold):
                    cluster.absorbed.append(candidate)
                    break
            else:
                clusters.append(_Cluster(winner=candidate))

        discarded = len(candidates) - len(clusters)
        truncated = max(0, len(clusters) - max_results)
        clusters = clusters[:max_results]

        elements = [self._finalize(cluster) for cluster in clusters]

        strategy_ids = sorted(
            {o.strategy_id for o in successful},
            key=lambda sid: (-ranking.get(sid, 0), sid),
        )

        logger.debug(
            f"Aggregated {len(candidates)} candidates from {len(successful)} strategies "
            f"into {len(elements)} elements ({discarded} duplicates)"
        )

        return FusedResult(
            elements=elements,
            strategy_ids=strategy_ids,
            total_duration_ms=max(o.duration_ms for o in successful),
            success=True,
            diagnostics=diagnostics,
            metadata={
                "overlap_threshold": threshold,
                "candidates": len(candidates),
                "discarded": discarded,
                "truncated": truncated,
            },
        )

    def _finalize(self, cluster: _Cluster) -> ElementRecord:
        """Fold discarded duplicates into the kept record."""
        record = cluster.winner.record
        if not self.config.merge_discarded or not cluster.absorbed:
            return record

        properties = dict(record.properties)
        merged: dict[str, list] = {}
        sources = [cluster.winner.strategy_id]
        text = record.text

        for loser in cluster.absorbed:
            merged.setdefault(loser.strategy_id, []).append(MappingProxyType({
                "kind": loser.record.kind.value,
                "text": loser.record.text,
                "confidence": loser.record.confidence,
                "bounds": loser.record.bounds.to_dict(),
                "properties": dict(loser.record.properties),
            }))
            if loser.strategy_id not in sources:
                sources.append(loser.strategy_id)
            if text is None and loser.record.text:
                text = loser.record.text

        for strategy_id, entries in merged.items():
            properties[MERGED_PREFIX + strategy_id] = tuple(entries)
        properties[SOURCES_KEY] = tuple(sources)

        members = [cluster.winner, *cluster.absorbed]
        properties[CONFIDENCE_KEY] = self._blended_confidence(members)
        properties[AGREEMENT_KEY] = _agreement([m.record for m in members])

        return replace(record, text=text, properties=properties)

    def _blended_confidence(self, members: list[_Candidate]) -> float:
        """Confidence averaged over a cluster, weighted by strategy trust."""
        weights = self.config.strategy_weights
        total = 0.0
        weighted = 0.0
        for member in members:
            weight = weights.get(member.strategy_id, self.config.default_weight)
            if weight <= 0:
                continue
            total += weight
            weighted += weight * member.record.confidence

        if total == 0:
            return sum(m.record.confidence for m in members) / len(members)
        return weighted / total


def _agreement(records: list[ElementRecord]) -> float:
    """
    How much a cluster's candidates agree, in [0, 1].

    Combines the share of the most common kind (0.4), the mean pairwise
    IoU (0.4) and one minus the standard deviation of the confidences (0.2).
    """
    count = len(records)
    if count < 2:
        return 1.0

    kinds = Counter(r.kind for r in records)
    kind_agreement = max(kinds.values()) / count

    overlaps = [a.bounds.iou(b.bounds) for a, b in combinations(records, 2)]
    spatial_agreement = sum(overlaps) / len(overlaps)

    confidences = [r.confidence for r in records]
    mean = sum(confidences) / count
    spread = math.sqrt(sum((c - mean) ** 2 for c in confidences) / count)
    confidence_agreement = max(0.0, 1.0 - spread)

    return 0.4 * kind_agreement + 0.4 * spatial_agreement + 0.2 * confidence_agreement
