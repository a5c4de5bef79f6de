"""
Decision Pipeline
Sequences the predicate, priority, preemption and bind phases of one
extender call.

Per call:  IDLE → FILTERING → (FEASIBLE | INFEASIBLE) → [PRIORITIZING]
           → [PREEMPTING] → [BINDING] → IDLE

The pipeline keeps no state across calls. The registry of predicates,
priorities and preemption policy is an immutable snapshot; reconfiguration
swaps the whole snapshot and every call reads it exactly once.
"""

import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ..utils.logger import get_logger
from .bind import BindDelegate, build_bind_delegate
from .errors import DecisionCancelled, DecisionTimeout
from .models import BindOutcome, FilterResult, Node, RankedNode, Unit, UnitRef, VictimSet
from .predicates import PredicateSet, build_predicate_set
from .preemption import PreemptionEngine, PreemptionPolicy
from .priorities import ScoringAggregator, build_aggregator

logger = get_logger("DecisionPipeline")

# How often a parallel fan-out wakes up to check deadline and cancellation
POLL_INTERVAL_SECONDS = 0.05


class Phase(str, Enum):
    IDLE = "idle"
    FILTERING = "filtering"
    FEASIBLE = "feasible"
    INFEASIBLE = "infeasible"
    PRIORITIZING = "prioritizing"
    PREEMPTING = "preempting"
    BINDING = "binding"


@dataclass(frozen=True)
class Registry:
    """Read-only snapshot of everything a call is configured with"""
    predicates: PredicateSet
    aggregator: ScoringAggregator
    policy: PreemptionPolicy = PreemptionPolicy()

    def preemption_engine(self) -> PreemptionEngine:
        return PreemptionEngine(self.predicates, self.policy)


class DecisionContext:
    """
    Per-call state: phase trail, deadline and cancellation

    ``checkpoint()`` raises DecisionTimeout / DecisionCancelled; it is called
    before every unit of work so abandoned calls stop promptly.
    """

    def __init__(self, verb: str, subject: str, timeout: Optional[float] = None,
                 cancel: Optional[threading.Event] = None):
        self.verb = verb
        self.subject = subject
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout if timeout else None
        self.cancel = cancel or threading.Event()
        self.phase = Phase.IDLE
        self.trail: List[Phase] = [Phase.IDLE]

    def transition(self, phase: Phase):
        logger.debug(f"{self.verb} {self.subject}: {self.phase.value} → {phase.value}")
        self.phase = phase
        self.trail.append(phase)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def checkpoint(self):
        if self.cancel.is_set():
            raise DecisionCancelled(f"{self.verb} for {self.subject} cancelled "
                                    f"during {self.phase.value}")
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise DecisionTimeout(f"{self.verb} for {self.subject} exceeded "
                                  f"{self.timeout:.3f}s during {self.phase.value}")


@dataclass
class FilterOutcome:
    result: FilterResult
    victims: Dict[str, VictimSet] = field(default_factory=dict)
    trail: List[Phase] = field(default_factory=list)


@dataclass
class PrioritizeOutcome:
    ranked: List[RankedNode] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    failed_functions: List[str] = field(default_factory=list)
    trail: List[Phase] = field(default_factory=list)


@dataclass
class PreemptOutcome:
    victims: Dict[str, VictimSet] = field(default_factory=dict)
    trail: List[Phase] = field(default_factory=list)


class DecisionPipeline:
    """
    Entry point of the decision engine, one method per extender verb
    """

    def __init__(
        self,
        registry: Registry,
        bind_delegate: Optional[BindDelegate] = None,
        parallelism: int = 1,
        default_timeout: Optional[float] = None
    ):
        self._registry = registry
        self.bind_delegate = bind_delegate or BindDelegate()
        self.parallelism = parallelism
        self.default_timeout = default_timeout
        self._executor = (
            ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="decision")
            if parallelism > 1 else None
        )

        logger.info(f"Decision pipeline initialized: predicates={registry.predicates.names}, "
                    f"priorities={registry.aggregator.names}, parallelism={parallelism}, "
                    f"bind={self.bind_delegate.mode.value}")

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def supports_bind(self) -> bool:
        return self.bind_delegate.supports_bind

    def swap_registry(self, registry: Registry):
        """Replace the registry; in-flight calls keep the snapshot they started with"""
        self._registry = registry
        logger.info(f"Registry swapped: predicates={registry.predicates.names}, "
                    f"priorities={registry.aggregator.names}")

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # ── Fan-out ────────────────────────────────────────────────────────────

    def _mapper(self, ctx: DecisionContext) -> Callable:
        """Order-preserving map bounded by the call's deadline and cancellation"""

        def guarded(fn, item):
            ctx.checkpoint()
            return fn(item)

        def inline_map(fn, items):
            return [guarded(fn, item) for item in items]

        def parallel_map(fn, items):
            futures = [self._executor.submit(guarded, fn, item) for item in items]
            pending = set(futures)
            while pending:
                timeout = POLL_INTERVAL_SECONDS
                remaining = ctx.remaining()
                if remaining is not None:
                    timeout = min(timeout, remaining)
                _, pending = wait(pending, timeout=timeout, return_when=FIRST_EXCEPTION)
                try:
                    ctx.checkpoint()
                except (DecisionTimeout, DecisionCancelled):
                    for future in pending:
                        future.cancel()
                    raise
            return [future.result() for future in futures]

        return inline_map if self._executor is None else parallel_map

    def _context(self, verb: str, subject: str, timeout, cancel) -> DecisionContext:
        if timeout is None:
            timeout = self.default_timeout
        return DecisionContext(verb, subject, timeout, cancel)

    # ── Verbs ──────────────────────────────────────────────────────────────

    def filter(
        self,
        unit: Unit,
        nodes: Sequence[Node],
        preemption_aware: bool = False,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        registry: Optional[Registry] = None
    ) -> FilterOutcome:
        """
        Run the PredicateSet over the candidate set

        When nothing is admissible and the caller asked for preemption-aware
        filtering, victim sets are computed over the same candidates.
        """
        registry = registry or self._registry
        ctx = self._context("filter", unit.key, timeout, cancel)
        start_time = time.time()

        ctx.transition(Phase.FILTERING)
        ctx.checkpoint()
        result = registry.predicates.evaluate(unit, nodes, mapper=self._mapper(ctx))
        ctx.checkpoint()

        victims: Dict[str, VictimSet] = {}
        if result.feasible:
            ctx.transition(Phase.FEASIBLE)
        else:
            ctx.transition(Phase.INFEASIBLE)
            if preemption_aware:
                ctx.transition(Phase.PREEMPTING)
                victims = registry.preemption_engine().preempt(
                    unit, nodes, mapper=self._mapper(ctx), checkpoint=ctx.checkpoint
                )
                ctx.checkpoint()
        ctx.transition(Phase.IDLE)

        logger.info(f"Filter {unit.key}: {len(result.admissible)}/{len(nodes)} feasible "
                    f"in {(time.time() - start_time) * 1000:.0f}ms"
                    + (f", {len(victims)} preemption candidates" if preemption_aware and not result.feasible else ""))
        return FilterOutcome(result=result, victims=victims, trail=list(ctx.trail))

    def prioritize(
        self,
        unit: Unit,
        nodes: Sequence[Node],
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        registry: Optional[Registry] = None
    ) -> PrioritizeOutcome:
        """Rank the given nodes as-is (filtering is assumed to have happened upstream)"""
        registry = registry or self._registry
        ctx = self._context("prioritize", unit.key, timeout, cancel)
        start_time = time.time()

        ctx.transition(Phase.PRIORITIZING)
        ctx.checkpoint()
        scoring = registry.aggregator.score(unit, nodes, mapper=self._mapper(ctx))
        ctx.checkpoint()
        ctx.transition(Phase.IDLE)

        logger.info(f"Prioritize {unit.key}: ranked {len(scoring.ranked)} nodes in "
                    f"{(time.time() - start_time) * 1000:.0f}ms"
                    + (f" ({len(scoring.warnings)} scorer warnings)" if scoring.warnings else ""))
        return PrioritizeOutcome(ranked=scoring.ranked, warnings=scoring.warnings,
                                 failed_functions=scoring.failed, trail=list(ctx.trail))

    def preempt(
        self,
        unit: Unit,
        nodes: Sequence[Node],
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        registry: Optional[Registry] = None
    ) -> PreemptOutcome:
        """Victim sets for nodes carrying their current occupants"""
        registry = registry or self._registry
        ctx = self._context("preempt", unit.key, timeout, cancel)

        ctx.transition(Phase.PREEMPTING)
        ctx.checkpoint()
        victims = registry.preemption_engine().preempt(
            unit, nodes, mapper=self._mapper(ctx), checkpoint=ctx.checkpoint
        )
        ctx.checkpoint()
        ctx.transition(Phase.IDLE)
        return PreemptOutcome(victims=victims, trail=list(ctx.trail))

    def bind(self, unit: UnitRef, node: str) -> BindOutcome:
        """One bind attempt, no retry"""
        ctx = DecisionContext("bind", unit.key)
        ctx.transition(Phase.BINDING)
        outcome = self.bind_delegate.bind(unit, node)
        ctx.transition(Phase.IDLE)
        return outcome


def build_registry(config, prometheus=None) -> Registry:
    """
    Build a registry snapshot from an ExtenderConfig

    Args:
        config: ExtenderConfig (see utils.config_loader)
        prometheus: PrometheusClient for metric-backed priorities
    """
    return Registry(
        predicates=build_predicate_set(config.predicates),
        aggregator=build_aggregator(config.priorities, prometheus=prometheus),
        policy=PreemptionPolicy(
            protected_priority_classes=tuple(config.preemption.protected_priority_classes),
            non_evictable_annotation=config.preemption.non_evictable_annotation
        )
    )


def build_pipeline(config, binder=None, prometheus=None) -> DecisionPipeline:
    return DecisionPipeline(
        registry=build_registry(config, prometheus=prometheus),
        bind_delegate=build_bind_delegate(config.bind.mode, binder),
        parallelism=config.pipeline.parallelism,
        default_timeout=config.pipeline.decision_timeout_seconds
    )
