"""
Test preemption victim selection
"""

import itertools
import random

import pytest
from sched_extender.core.errors import DecisionTimeout
from sched_extender.core.models import Node, Occupant, Resources, Unit
from sched_extender.core.predicates import build_predicate_set
from sched_extender.core.preemption import PreemptionEngine, PreemptionPolicy

PREDICATES = build_predicate_set([
    "node_unschedulable",
    "match_node_selector",
    "taint_toleration",
    "pod_fits_resources",
    "pod_anti_affinity",
])


def occupant(name, cpu, priority=0, **kwargs):
    return Occupant(name=name, requests=Resources(cpu_millis=cpu, pods=1), priority=priority, **kwargs)


def make_node(name, cpu, occupants=(), **kwargs):
    return Node(name=name, allocatable=Resources(cpu_millis=cpu, memory_bytes=0, pods=110),
                occupants=tuple(occupants), **kwargs)


def make_unit(cpu=2000, priority=1000, **kwargs):
    return Unit(name="urgent", requests=Resources(cpu_millis=cpu, pods=1), priority=priority, **kwargs)


def test_scenario_non_evictable_occupant():
    """Scenario C: the only occupant is critical, so N1 gets no entry"""

    o1 = occupant("o1", 2000, priority_class="critical")
    node = make_node("n1", 2000, [o1])

    victims = PreemptionEngine(PREDICATES).preempt(make_unit(), [node])

    print(f"\n✅ Scenario C: {victims}")
    assert victims == {}


def test_scenario_evictable_occupant():
    """Scenario D: evicting O1 frees exactly the 2 CPU the unit needs"""

    o1 = occupant("o1", 2000)
    node = make_node("n1", 2000, [o1])

    victims = PreemptionEngine(PREDICATES).preempt(make_unit(), [node])

    print(f"\n✅ Scenario D: {victims}")
    assert list(victims) == ["n1"]
    assert victims["n1"].victims == [o1]
    assert victims["n1"].num_pdb_violations == 0


def test_lowest_priority_evicted_first():
    low = occupant("low", 2000, priority=1)
    mid = occupant("mid", 2000, priority=5)
    node = make_node("n1", 4000, [mid, low])

    victim_set = PreemptionEngine(PREDICATES).victims_for_node(make_unit(), node)

    assert victim_set.victims == [low]


def test_reprieve_drops_unneeded_victims():
    """A small low-priority occupant removed on the way is given back"""

    small = occupant("small", 500, priority=1)
    big = occupant("big", 2000, priority=2)
    node = make_node("n1", 2500, [small, big])

    victim_set = PreemptionEngine(PREDICATES).victims_for_node(make_unit(), node)

    assert victim_set.victims == [big]


def test_unevictable_reasons():
    """Annotation, protected class and equal priority all block eviction"""

    marked = occupant("marked", 1000, annotations={"sched-extender.io/non-evictable": "true"})
    system = occupant("system", 1000, priority_class="system-node-critical")
    peer = occupant("peer", 1000, priority=1000)
    node = make_node("n1", 3000, [marked, system, peer])

    engine = PreemptionEngine(PREDICATES)
    assert engine.victims_for_node(make_unit(cpu=1000), node) is None

    policy = PreemptionPolicy()
    unit = make_unit()
    assert policy.unevictable_reason(unit, marked) == "non-evictable"
    assert policy.unevictable_reason(unit, system) == "protected-priority-class"
    assert policy.unevictable_reason(unit, peer) == "not-lower-priority"
    assert policy.unevictable_reason(unit, occupant("free", 1)) is None


def test_unevictable_occupants_are_reported():
    critical = occupant("critical", 1000, priority_class="critical")
    spare = occupant("spare", 2000)
    node = make_node("n1", 3000, [critical, spare])

    victim_set = PreemptionEngine(PREDICATES).victims_for_node(make_unit(), node)

    assert victim_set.victims == [spare]
    assert victim_set.unevictable == {"default/critical": "protected-priority-class"}


def test_empty_node_that_cannot_fit_is_skipped():
    """No occupants and still too small: no victim entry"""

    too_small = make_node("tiny", 1000)
    roomy = make_node("roomy", 4000, [occupant("o1", 4000)])

    victims = PreemptionEngine(PREDICATES).preempt(make_unit(), [too_small, roomy])

    assert list(victims) == ["roomy"]


def test_unresolvable_failures_skip_eviction():
    """Cordoned nodes are not made feasible by evicting anything"""

    node = make_node("n1", 2000, [occupant("o1", 2000)], unschedulable=True)

    assert PreemptionEngine(PREDICATES).victims_for_node(make_unit(), node) is None


def test_admissible_node_needs_no_victims():
    node = make_node("n1", 4000, [occupant("o1", 1000)])

    victim_set = PreemptionEngine(PREDICATES).victims_for_node(make_unit(), node)

    assert victim_set is not None
    assert victim_set.victims == []


def test_anti_affinity_conflict_is_evicted():
    sibling = occupant("web-1", 100, labels={"app": "web"})
    unit = make_unit(cpu=100, anti_affinity=({"labelSelector": {"matchLabels": {"app": "web"}}},))
    node = make_node("n1", 4000, [sibling])

    victim_set = PreemptionEngine(PREDICATES).victims_for_node(unit, node)

    assert victim_set.victims == [sibling]


def test_results_follow_input_order():
    nodes = [make_node(name, 2000, [occupant(f"{name}-o", 2000)]) for name in ("n3", "n1", "n2")]

    victims = PreemptionEngine(PREDICATES).preempt(make_unit(), nodes)

    assert list(victims) == ["n3", "n1", "n2"]


def test_checkpoint_aborts_simulation():
    node = make_node("n1", 2000, [occupant("o1", 1000), occupant("o2", 1000)])

    def expired():
        raise DecisionTimeout("deadline passed")

    with pytest.raises(DecisionTimeout):
        PreemptionEngine(PREDICATES).preempt(make_unit(), [node], checkpoint=expired)


def random_node(rng, index):
    occupants = []
    for i in range(rng.randint(0, 5)):
        annotations = {}
        if rng.random() < 0.2:
            annotations["sched-extender.io/non-evictable"] = "true"
        occupants.append(Occupant(
            name=f"n{index}-o{i}",
            requests=Resources(cpu_millis=rng.choice([250, 500, 1000, 1500]), pods=1),
            priority=rng.randint(0, 1200),
            priority_class=rng.choice(["", "", "", "critical"]),
            annotations=annotations,
        ))
    used = sum(o.requests.cpu_millis for o in occupants)
    return make_node(f"n{index}", used + rng.choice([0, 250, 500]), occupants)


def test_victim_sets_are_minimal_and_safe():
    """
    Removing exactly the victims makes the unit fit, removing any strict
    subset does not, and non-evictable occupants are never chosen
    """

    rng = random.Random(42)
    policy = PreemptionPolicy()
    engine = PreemptionEngine(PREDICATES, policy)
    checked = 0

    for round_ in range(40):
        unit = make_unit(cpu=rng.choice([500, 1000, 2000]), priority=rng.randint(0, 1200))
        nodes = [random_node(rng, round_ * 10 + i) for i in range(4)]

        for name, victim_set in engine.preempt(unit, nodes).items():
            node = next(n for n in nodes if n.name == name)
            victims = victim_set.victims

            for v in victims:
                assert policy.unevictable_reason(unit, v) is None, f"{v.key} is not evictable"

            assert PREDICATES.evaluate_node(unit, node.without(victims)).admissible
            for size in range(len(victims)):
                for subset in itertools.combinations(victims, size):
                    assert not PREDICATES.evaluate_node(unit, node.without(subset)).admissible, \
                        f"{name}: {[v.key for v in subset]} would already suffice"
            checked += 1

    print(f"\n✅ Checked {checked} victim sets")
    assert checked > 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
