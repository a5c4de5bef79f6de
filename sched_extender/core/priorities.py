"""
Priority functions and the weighted scoring aggregator

Each priority function sees the whole admissible node list at once and
returns an integer score in [0, MAX_PRIORITY] per node:

    total(node) = Σ weight_f * score_f(node)

A function that fails, or returns an invalid score map, contributes zero
for every node; the call itself never fails because of one scorer.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from ..utils.logger import get_logger
from .errors import ConfigError
from .models import MAX_PRIORITY, Node, PriorityScore, RankedNode, Unit

logger = get_logger("Priorities")


class PriorityFunction:
    """Base class for a named scoring heuristic"""

    name = "priority"
    requires_prometheus = False

    def score(self, unit: Unit, nodes: Sequence[Node]) -> Dict[str, int]:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.name})"


class ZeroPriority(PriorityFunction):
    name = "zero"

    def score(self, unit: Unit, nodes: Sequence[Node]) -> Dict[str, int]:
        return {node.name: 0 for node in nodes}


class LeastAllocated(PriorityFunction):
    """
    Favour nodes with the most free CPU and memory left after placement

    score = (cpu_free_fraction + memory_free_fraction) / 2 * MAX_PRIORITY
    """

    name = "least_allocated"

    @staticmethod
    def _fraction_score(free: int, capacity: int) -> int:
        if capacity <= 0:
            return 0
        return max(0, free) * MAX_PRIORITY // capacity

    def score(self, unit: Unit, nodes: Sequence[Node]) -> Dict[str, int]:
        scores = {}
        for node in nodes:
            after = node.free - unit.requests
            cpu = self._fraction_score(after.cpu_millis, node.allocatable.cpu_millis)
            mem = self._fraction_score(after.memory_bytes, node.allocatable.memory_bytes)
            scores[node.name] = (cpu + mem) // 2
        return scores


class BalancedAllocation(PriorityFunction):
    """
    Favour nodes whose CPU and memory usage stay balanced after placement

    score = (1 - |cpu_fraction - memory_fraction|) * MAX_PRIORITY,
    0 when either resource would be fully used.
    """

    name = "balanced_allocation"

    def score(self, unit: Unit, nodes: Sequence[Node]) -> Dict[str, int]:
        scores = {}
        for node in nodes:
            used = node.requested + unit.requests
            alloc = node.allocatable
            if alloc.cpu_millis <= 0 or alloc.memory_bytes <= 0:
                scores[node.name] = 0
                continue
            cpu_frac = used.cpu_millis / alloc.cpu_millis
            mem_frac = used.memory_bytes / alloc.memory_bytes
            if cpu_frac >= 1 or mem_frac >= 1:
                scores[node.name] = 0
                continue
            scores[node.name] = int((1 - abs(cpu_frac - mem_frac)) * MAX_PRIORITY)
        return scores


class SelectorSpread(PriorityFunction):
    """
    Spread units of the same owner across nodes

    Nodes running fewer siblings score higher, relative to the most
    crowded candidate. Units without an owner score MAX_PRIORITY everywhere.
    """

    name = "selector_spread"

    def score(self, unit: Unit, nodes: Sequence[Node]) -> Dict[str, int]:
        if not unit.owner:
            return {node.name: MAX_PRIORITY for node in nodes}

        counts = {
            node.name: sum(
                1 for o in node.occupants
                if o.owner == unit.owner and o.namespace == unit.namespace
            )
            for node in nodes
        }
        max_count = max(counts.values(), default=0)
        if max_count == 0:
            return {name: MAX_PRIORITY for name in counts}
        return {
            name: MAX_PRIORITY * (max_count - count) // max_count
            for name, count in counts.items()
        }


class NodeUtilization(PriorityFunction):
    """
    Favour nodes with low measured CPU utilization (from Prometheus)

    Missing metrics raise, so the aggregator zeroes this function for
    the call instead of ranking on partial data.
    """

    name = "node_utilization"
    requires_prometheus = True

    def __init__(self, prometheus):
        self.prometheus = prometheus

    def score(self, unit: Unit, nodes: Sequence[Node]) -> Dict[str, int]:
        utilization = self.prometheus.get_node_cpu_utilization()
        scores = {}
        for node in nodes:
            value = utilization.get(node.name)
            if value is None:
                raise LookupError(f"No CPU utilization sample for node {node.name}")
            value = min(max(value, 0.0), 1.0)
            scores[node.name] = int(round((1.0 - value) * MAX_PRIORITY))
        return scores


PRIORITIES = {
    cls.name: cls
    for cls in (
        ZeroPriority,
        LeastAllocated,
        BalancedAllocation,
        SelectorSpread,
        NodeUtilization,
    )
}


@dataclass(frozen=True)
class WeightedPriority:
    function: PriorityFunction
    weight: int

    def __post_init__(self):
        if isinstance(self.weight, bool) or not isinstance(self.weight, int) or self.weight < 0:
            raise ConfigError(
                f"Priority {self.function.name} weight must be a non-negative integer, "
                f"got {self.weight!r}"
            )

    @property
    def name(self) -> str:
        return self.function.name


@dataclass
class ScoringResult:
    """Ranked nodes (highest total first) plus scorer warnings"""
    ranked: List[RankedNode] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    # names of functions zeroed for this call
    failed: List[str] = field(default_factory=list)
    # every accepted (node, score, function) triple
    scores: List[PriorityScore] = field(default_factory=list)


class ScoringAggregator:
    """
    Combines weighted priority functions into one ranked node list

    Ranking is a stable sort on the total, so equal totals keep the
    caller's node order.
    """

    def __init__(self, priorities: Iterable[WeightedPriority]):
        self.priorities = tuple(priorities)
        names = [p.name for p in self.priorities]
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate priority names: {names}")

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.priorities]

    def subset(self, name: str) -> "ScoringAggregator":
        """Aggregator holding only the named function, with weight 1"""
        for wp in self.priorities:
            if wp.name == name:
                return ScoringAggregator([WeightedPriority(wp.function, 1)])
        raise KeyError(name)

    def _run(self, wp: WeightedPriority, unit: Unit, nodes: Sequence[Node]):
        """Run one function; returns (scores or None, warning or None)"""
        try:
            scores = wp.function.score(unit, nodes)
        except Exception as e:
            return None, f"priority {wp.name} failed: {e}"

        for node in nodes:
            value = scores.get(node.name) if isinstance(scores, dict) else None
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
                return None, f"priority {wp.name} returned no integer score for {node.name}"
            if not 0 <= value <= MAX_PRIORITY:
                return None, (f"priority {wp.name} returned {value} for {node.name}, "
                              f"outside [0, {MAX_PRIORITY}]")
        return scores, None

    def score(
        self,
        unit: Unit,
        nodes: Sequence[Node],
        mapper: Optional[Callable] = None
    ) -> ScoringResult:
        """
        Score and rank nodes

        Args:
            unit: Unit to place
            nodes: Node list to rank, used as-is
            mapper: Order-preserving map used to run functions (defaults to inline)

        Returns:
            ScoringResult with nodes ranked by total, highest first
        """
        def run(wp):
            return self._run(wp, unit, nodes)

        if mapper is None:
            outputs = [run(wp) for wp in self.priorities]
        else:
            outputs = mapper(run, self.priorities)

        names = [node.name for node in nodes]
        matrix = np.zeros((len(self.priorities), len(nodes)), dtype=np.int64)
        warnings = []
        failed = []
        accepted = []
        for row, (wp, (scores, warning)) in enumerate(zip(self.priorities, outputs)):
            if warning:
                logger.warning(f"{warning} (zero contribution for {unit.key})")
                warnings.append(warning)
                failed.append(wp.name)
                continue
            matrix[row] = [int(scores[name]) for name in names]
            accepted.extend(PriorityScore(node=name, score=int(scores[name]), function=wp.name)
                            for name in names)

        weights = np.array([wp.weight for wp in self.priorities], dtype=np.int64)
        totals = weights @ matrix if len(self.priorities) else np.zeros(len(nodes), dtype=np.int64)
        order = np.argsort(-totals, kind="stable")

        ranked = []
        for idx in order:
            breakdown = {
                wp.name: int(matrix[row, idx])
                for row, wp in enumerate(self.priorities)
            }
            ranked.append(RankedNode(node=nodes[idx], total=int(totals[idx]), breakdown=breakdown))

        logger.debug(f"Prioritize {unit.key}: "
                     f"{[(r.node.name, r.total) for r in ranked]}")
        return ScoringResult(ranked=ranked, warnings=warnings, failed=failed, scores=accepted)


def build_aggregator(priority_configs: Iterable, prometheus=None) -> ScoringAggregator:
    """
    Instantiate weighted priorities from config entries (objects with name/weight)

    Args:
        priority_configs: Iterable of PriorityConfig
        prometheus: PrometheusClient, required by metric-backed functions
    """
    priorities = []
    for cfg in priority_configs:
        cls = PRIORITIES.get(cfg.name)
        if cls is None:
            raise ConfigError(f"Unknown priority function: {cfg.name} "
                              f"(known: {sorted(PRIORITIES)})")
        if cls.requires_prometheus:
            if prometheus is None:
                raise ConfigError(f"Priority {cfg.name} requires prometheus configuration")
            function = cls(prometheus)
        else:
            function = cls()
        priorities.append(WeightedPriority(function, cfg.weight))
    return ScoringAggregator(priorities)
