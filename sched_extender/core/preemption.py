"""
Preemption victim selection

Greedy minimal-eviction heuristic, per node:

1. Split occupants into evictable / non-evictable (policy).
2. Remove evictable occupants lowest priority first, re-running the
   PredicateSet after each removal, until the unit is admissible.
3. Reprieve: put victims back, highest priority first, whenever the
   unit stays admissible without evicting them.

Nodes are independent of each other; a node that cannot be made
admissible is left out of the result.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..utils.logger import get_logger
from .models import Node, Occupant, Unit, VictimSet
from .predicates import PredicateSet

logger = get_logger("PreemptionEngine")

DEFAULT_PROTECTED_CLASSES = (
    "system-cluster-critical",
    "system-node-critical",
    "critical",
)
DEFAULT_NON_EVICTABLE_ANNOTATION = "sched-extender.io/non-evictable"


@dataclass(frozen=True)
class PreemptionPolicy:
    """Which occupants may be evicted on behalf of a unit"""
    protected_priority_classes: Tuple[str, ...] = DEFAULT_PROTECTED_CLASSES
    non_evictable_annotation: str = DEFAULT_NON_EVICTABLE_ANNOTATION

    def unevictable_reason(self, unit: Unit, occupant: Occupant) -> Optional[str]:
        """Reason the occupant must stay, or None when it is evictable"""
        marker = occupant.annotations.get(self.non_evictable_annotation, "")
        if str(marker).lower() == "true":
            return "non-evictable"
        if occupant.priority_class in self.protected_priority_classes:
            return "protected-priority-class"
        if occupant.priority >= unit.priority:
            return "not-lower-priority"
        return None


class PreemptionEngine:
    """
    Computes per-node victim sets using the same PredicateSet as filtering
    """

    def __init__(self, predicates: PredicateSet, policy: Optional[PreemptionPolicy] = None):
        self.predicates = predicates
        self.policy = policy or PreemptionPolicy()

    def victims_for_node(
        self,
        unit: Unit,
        node: Node,
        checkpoint: Optional[Callable[[], None]] = None
    ) -> Optional[VictimSet]:
        """
        Victim set for one node

        Returns:
            VictimSet (possibly with no victims when the node already fits),
            or None when evicting every evictable occupant does not help
        """
        evictable: List[Occupant] = []
        unevictable: Dict[str, str] = {}
        for occupant in node.occupants:
            reason = self.policy.unevictable_reason(unit, occupant)
            if reason:
                unevictable[occupant.key] = reason
            else:
                evictable.append(occupant)

        # Stable sort: equal priorities keep occupant order
        evictable.sort(key=lambda o: o.priority)

        result = self.predicates.evaluate_node(unit, node)
        removed: List[Occupant] = []
        for occupant in evictable:
            if result.admissible or not result.resolvable:
                break
            if checkpoint:
                checkpoint()
            removed.append(occupant)
            result = self.predicates.evaluate_node(unit, node.without(removed))

        if not result.admissible:
            logger.debug(f"Preempt {unit.key}: {node.name} stays infeasible "
                         f"({result.reason}) after evicting {len(removed)} occupant(s)")
            return None

        victims = list(removed)
        for occupant in reversed(removed):
            if checkpoint:
                checkpoint()
            trial = [v for v in victims if v.key != occupant.key]
            if self.predicates.evaluate_node(unit, node.without(trial)).admissible:
                victims = trial

        return VictimSet(node=node.name, victims=victims, unevictable=unevictable)

    def preempt(
        self,
        unit: Unit,
        nodes: Sequence[Node],
        mapper: Optional[Callable] = None,
        checkpoint: Optional[Callable[[], None]] = None
    ) -> Dict[str, VictimSet]:
        """
        Victim sets for every node that can be made admissible

        Args:
            unit: Unit that currently fits no node
            nodes: Node snapshots carrying their occupants, in caller order
            mapper: Order-preserving map used for per-node fan-out
            checkpoint: Called between simulation steps; raises to abort

        Returns:
            Dict node name -> VictimSet, in input node order
        """
        def compute(node):
            return self.victims_for_node(unit, node, checkpoint)

        if mapper is None:
            results = [compute(node) for node in nodes]
        else:
            results = mapper(compute, nodes)

        victims_by_node = {
            node.name: victim_set
            for node, victim_set in zip(nodes, results)
            if victim_set is not None
        }

        if victims_by_node:
            logger.info(f"Preempt {unit.key}: {len(victims_by_node)}/{len(nodes)} nodes "
                        f"feasible with eviction: {list(victims_by_node.values())}")
        else:
            logger.info(f"Preempt {unit.key}: no node can be made feasible")
        return victims_by_node
