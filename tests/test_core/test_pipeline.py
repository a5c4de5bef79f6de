"""
Test the decision pipeline state machine
"""

import threading
import time

import pytest
from sched_extender.core.errors import DecisionCancelled, DecisionTimeout
from sched_extender.core.models import BindStatus, Node, Occupant, PredicateResult, Resources, Unit, UnitRef
from sched_extender.core.pipeline import DecisionPipeline, Phase, Registry, build_pipeline
from sched_extender.core.predicates import Predicate, PredicateSet, build_predicate_set
from sched_extender.core.priorities import ScoringAggregator, WeightedPriority, ZeroPriority, build_aggregator
from sched_extender.utils.config_loader import ConfigLoader, PriorityConfig


def make_node(name, cpu=4000, occupants=()):
    return Node(name=name, allocatable=Resources(cpu, 16 * 1024 ** 3, 110), occupants=tuple(occupants))


def make_registry(predicates=("node_unschedulable", "pod_fits_resources"), priorities=None):
    return Registry(
        predicates=build_predicate_set(predicates),
        aggregator=build_aggregator(priorities or [PriorityConfig("least_allocated", 1)])
    )


class SlowPredicate(Predicate):
    name = "slow"

    def __init__(self, delay):
        self.delay = delay

    def check(self, unit, node):
        time.sleep(self.delay)
        return PredicateResult.ok()


def test_filter_feasible_trail():
    pipeline = DecisionPipeline(make_registry())
    unit = Unit(name="web", requests=Resources(2000, 0, 1))

    outcome = pipeline.filter(unit, [make_node("n1", cpu=1000), make_node("n2")])

    print(f"\n✅ Filter trail: {[p.value for p in outcome.trail]}")
    assert outcome.trail == [Phase.IDLE, Phase.FILTERING, Phase.FEASIBLE, Phase.IDLE]
    assert [n.name for n in outcome.result.admissible] == ["n2"]
    assert outcome.result.failure_reasons() == {"n1": "insufficient-cpu"}
    assert outcome.victims == {}


def test_filter_infeasible_without_preemption():
    pipeline = DecisionPipeline(make_registry())
    unit = Unit(name="web", requests=Resources(2000, 0, 1), priority=100)
    busy = make_node("n1", cpu=2000, occupants=[Occupant(name="o1", requests=Resources(2000, 0, 1))])

    outcome = pipeline.filter(unit, [busy])

    assert outcome.trail == [Phase.IDLE, Phase.FILTERING, Phase.INFEASIBLE, Phase.IDLE]
    assert outcome.victims == {}


def test_preemption_aware_filter():
    """An empty filter result moves on to preemption when the caller asks for it"""

    pipeline = DecisionPipeline(make_registry())
    unit = Unit(name="web", requests=Resources(2000, 0, 1), priority=100)
    o1 = Occupant(name="o1", requests=Resources(2000, 0, 1))
    busy = make_node("n1", cpu=2000, occupants=[o1])

    outcome = pipeline.filter(unit, [busy], preemption_aware=True)

    assert outcome.trail == [Phase.IDLE, Phase.FILTERING, Phase.INFEASIBLE,
                             Phase.PREEMPTING, Phase.IDLE]
    assert not outcome.result.feasible
    assert outcome.victims["n1"].victims == [o1]


def test_prioritize_uses_nodes_as_given():
    """Prioritize ranks whatever it is handed, including nodes filtering would reject"""

    pipeline = DecisionPipeline(make_registry(priorities=[PriorityConfig("zero", 1)]))
    unit = Unit(name="web", requests=Resources(8000, 0, 1))
    nodes = [make_node("n1", cpu=1000), make_node("n2")]

    outcome = pipeline.prioritize(unit, nodes)

    assert outcome.trail == [Phase.IDLE, Phase.PRIORITIZING, Phase.IDLE]
    assert [(r.node.name, r.total) for r in outcome.ranked] == [("n1", 0), ("n2", 0)]


def test_filtered_nodes_never_ranked():
    """Nodes excluded by filtering do not show up when ranking its result"""

    pipeline = DecisionPipeline(make_registry(priorities=[
        PriorityConfig("least_allocated", 2), PriorityConfig("balanced_allocation", 1)
    ]))
    unit = Unit(name="web", requests=Resources(1500, 1024 ** 3, 1))
    nodes = [make_node(f"n{i}", cpu=500 * i) for i in range(1, 9)]

    filtered = pipeline.filter(unit, nodes).result
    ranked = pipeline.prioritize(unit, filtered.admissible).ranked

    ranked_names = {r.node.name for r in ranked}
    assert ranked_names == {n.name for n in filtered.admissible}
    assert ranked_names.isdisjoint(filtered.failed)


def test_parallel_matches_inline():
    unit = Unit(name="web", requests=Resources(1500, 0, 1), priority=10)
    nodes = [make_node(f"n{i}", cpu=500 * i,
                       occupants=[Occupant(name=f"o{i}", requests=Resources(250 * i, 0, 1))])
             for i in range(1, 12)]
    registry = make_registry()

    inline = DecisionPipeline(registry, parallelism=1)
    parallel = DecisionPipeline(registry, parallelism=4)
    try:
        a = inline.filter(unit, nodes)
        b = parallel.filter(unit, nodes)
        assert [n.name for n in a.result.admissible] == [n.name for n in b.result.admissible]
        assert a.result.failure_reasons() == b.result.failure_reasons()

        ra = inline.prioritize(unit, a.result.admissible)
        rb = parallel.prioritize(unit, b.result.admissible)
        assert [(r.node.name, r.total) for r in ra.ranked] == [(r.node.name, r.total) for r in rb.ranked]

        pa = inline.preempt(unit, nodes)
        pb = parallel.preempt(unit, nodes)
        assert {k: [v.key for v in vs.victims] for k, vs in pa.victims.items()} == \
               {k: [v.key for v in vs.victims] for k, vs in pb.victims.items()}
    finally:
        parallel.close()


@pytest.mark.parametrize("parallelism", [1, 3])
def test_timeout_aborts_filter(parallelism):
    registry = Registry(
        predicates=PredicateSet([SlowPredicate(0.2)]),
        aggregator=ScoringAggregator([WeightedPriority(ZeroPriority(), 1)])
    )
    pipeline = DecisionPipeline(registry, parallelism=parallelism)
    nodes = [make_node(f"n{i}") for i in range(6)]

    start = time.monotonic()
    try:
        with pytest.raises(DecisionTimeout):
            pipeline.filter(Unit(name="web"), nodes, timeout=0.05)
    finally:
        pipeline.close()

    assert time.monotonic() - start < 1.0, "Timed-out call should stop promptly"


def test_default_timeout_applies():
    registry = Registry(
        predicates=PredicateSet([SlowPredicate(0.1)]),
        aggregator=ScoringAggregator([])
    )
    pipeline = DecisionPipeline(registry, default_timeout=0.05)

    with pytest.raises(DecisionTimeout):
        pipeline.filter(Unit(name="web"), [make_node("n1"), make_node("n2")])


def test_cancelled_call_stops():
    pipeline = DecisionPipeline(make_registry())
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(DecisionCancelled):
        pipeline.filter(Unit(name="web"), [make_node("n1")], cancel=cancel)
    with pytest.raises(DecisionCancelled):
        pipeline.prioritize(Unit(name="web"), [make_node("n1")], cancel=cancel)
    with pytest.raises(DecisionCancelled):
        pipeline.preempt(Unit(name="web"), [make_node("n1")], cancel=cancel)


def test_swap_registry():
    pipeline = DecisionPipeline(make_registry(predicates=("pod_fits_resources",)))
    unit = Unit(name="web", requests=Resources(2000, 0, 1))
    nodes = [make_node("n1", cpu=1000)]

    assert not pipeline.filter(unit, nodes).result.feasible

    pipeline.swap_registry(make_registry(predicates=("node_unschedulable",)))

    assert pipeline.registry.predicates.names == ["node_unschedulable"]
    assert pipeline.filter(unit, nodes).result.feasible


def test_registry_override_per_call():
    pipeline = DecisionPipeline(make_registry())
    only_taints = make_registry(predicates=("taint_toleration",))
    unit = Unit(name="web", requests=Resources(8000, 0, 1))

    outcome = pipeline.filter(unit, [make_node("n1")], registry=only_taints)

    assert outcome.result.feasible
    assert pipeline.registry.predicates.names == ["node_unschedulable", "pod_fits_resources"]


def test_preempt_registry_override():
    """A node that only fails the overridden-away predicate needs no victims"""

    pipeline = DecisionPipeline(make_registry())
    only_taints = make_registry(predicates=("taint_toleration",))
    unit = Unit(name="web", requests=Resources(8000, 0, 1), priority=100)
    node = make_node("n1", occupants=[Occupant(name="o1", requests=Resources(1000, 0, 1))])

    assert pipeline.preempt(unit, [node]).victims == {}

    outcome = pipeline.preempt(unit, [node], registry=only_taints)

    assert outcome.victims["n1"].victims == []
    assert outcome.trail == [Phase.IDLE, Phase.PREEMPTING, Phase.IDLE]


def test_bind_is_declined_by_default():
    pipeline = DecisionPipeline(make_registry())

    outcome = pipeline.bind(UnitRef(name="web"), "n1")

    assert outcome.status == BindStatus.UNSUPPORTED
    assert pipeline.supports_bind is False


def test_build_pipeline_from_config():
    config = ConfigLoader.from_dict({
        'pipeline': {'parallelism': 2, 'decision_timeout_seconds': 2},
        'predicates': ['pod_fits_resources'],
        'priorities': [{'name': 'least_allocated', 'weight': 3}, 'balanced_allocation'],
    })

    pipeline = build_pipeline(config)
    try:
        assert pipeline.registry.predicates.names == ['pod_fits_resources']
        assert pipeline.registry.aggregator.names == ['least_allocated', 'balanced_allocation']
        assert [p.weight for p in pipeline.registry.aggregator.priorities] == [3, 1]
        assert pipeline.parallelism == 2
        assert pipeline.default_timeout == 2
    finally:
        pipeline.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
