"""
Feasibility predicates and the PredicateSet that runs them

A predicate is a pure check of one (unit, node) pair. The PredicateSet
runs all registered predicates in registration order and records the
first failure for each node.
"""

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from ..utils.logger import get_logger
from .errors import ConfigError
from .models import FilterResult, Node, PredicateResult, Unit

logger = get_logger("Predicates")

INTERNAL_ERROR = "internal-error"

# Taint effects that block placement; PreferNoSchedule only affects scoring
BLOCKING_EFFECTS = ("NoSchedule", "NoExecute")

UNSCHEDULABLE_TAINT = {
    "key": "node.kubernetes.io/unschedulable",
    "effect": "NoSchedule",
}

Mapper = Callable[[Callable[[Node], Any], Sequence[Node]], List[Any]]


# ── Kubernetes matching helpers ─────────────────────────────────────────────

def requirement_matches(requirement: Dict[str, Any], labels: Dict[str, str]) -> bool:
    """Match one label / node-selector requirement ({key, operator, values})"""
    key = requirement.get("key")
    operator = requirement.get("operator", "In")
    values = [str(v) for v in requirement.get("values") or []]
    present = key in labels
    value = labels.get(key)

    if operator == "In":
        return present and value in values
    if operator == "NotIn":
        return not present or value not in values
    if operator == "Exists":
        return present
    if operator == "DoesNotExist":
        return not present
    if operator in ("Gt", "Lt"):
        if not present or len(values) != 1:
            return False
        try:
            actual, bound = int(value), int(values[0])
        except ValueError:
            return False
        return actual > bound if operator == "Gt" else actual < bound
    raise ValueError(f"Unknown selector operator: {operator}")


def selector_matches(selector: Optional[Dict[str, Any]], labels: Dict[str, str]) -> bool:
    """Match a LabelSelector ({matchLabels, matchExpressions}); an empty selector matches nothing"""
    if not selector:
        return False
    match_labels = selector.get("matchLabels") or {}
    expressions = selector.get("matchExpressions") or []
    if not match_labels and not expressions:
        return False
    for key, value in match_labels.items():
        if labels.get(key) != value:
            return False
    return all(requirement_matches(expr, labels) for expr in expressions)


def node_selector_term_matches(term: Dict[str, Any], node: Node) -> bool:
    """A NodeSelectorTerm matches when all its expressions and fields match"""
    expressions = term.get("matchExpressions") or []
    fields = term.get("matchFields") or []
    if not expressions and not fields:
        return False
    if not all(requirement_matches(expr, node.labels) for expr in expressions):
        return False
    node_fields = {"metadata.name": node.name}
    return all(requirement_matches(f, node_fields) for f in fields)


def tolerates(toleration: Dict[str, Any], taint: Dict[str, Any]) -> bool:
    """Kubernetes toleration/taint matching"""
    effect = toleration.get("effect")
    if effect and effect != taint.get("effect"):
        return False

    key = toleration.get("key")
    operator = toleration.get("operator", "Equal")
    if not key:
        # Empty key with Exists tolerates every taint
        return operator == "Exists"
    if key != taint.get("key"):
        return False
    if operator == "Exists":
        return True
    return (toleration.get("value") or "") == (taint.get("value") or "")


def tolerates_all(tolerations: Iterable[Dict[str, Any]], taint: Dict[str, Any]) -> bool:
    return any(tolerates(t, taint) for t in tolerations)


# ── Predicate strategies ────────────────────────────────────────────────────

class Predicate:
    """Base class for a named feasibility check"""

    name = "predicate"

    def check(self, unit: Unit, node: Node) -> PredicateResult:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.name})"


class AlwaysTrue(Predicate):
    name = "always_true"

    def check(self, unit: Unit, node: Node) -> PredicateResult:
        return PredicateResult.ok()


class NodeUnschedulable(Predicate):
    """Cordoned nodes only accept units tolerating the unschedulable taint"""

    name = "node_unschedulable"

    def check(self, unit: Unit, node: Node) -> PredicateResult:
        if node.unschedulable and not tolerates_all(unit.tolerations, UNSCHEDULABLE_TAINT):
            return PredicateResult.fail("node-unschedulable", resolvable=False)
        return PredicateResult.ok()


class PodFitsResources(Predicate):
    """
    Unit requests must fit into the node's free resources

    Free resources are allocatable minus what current occupants request.
    The failure is resolvable by eviction only while the request fits the
    node's allocatable at all.
    """

    name = "pod_fits_resources"

    def check(self, unit: Unit, node: Node) -> PredicateResult:
        free = node.free
        req = unit.requests

        # pods == 0 on the node means the slot count is not reported
        if node.allocatable.pods > 0 and req.pods > free.pods:
            return PredicateResult.fail(
                "too-many-pods",
                resolvable=req.pods <= node.allocatable.pods,
                requested=req.pods, free=free.pods
            )
        if req.cpu_millis > free.cpu_millis:
            return PredicateResult.fail(
                "insufficient-cpu",
                resolvable=req.cpu_millis <= node.allocatable.cpu_millis,
                requested=req.cpu_millis, free=free.cpu_millis
            )
        if req.memory_bytes > free.memory_bytes:
            return PredicateResult.fail(
                "insufficient-memory",
                resolvable=req.memory_bytes <= node.allocatable.memory_bytes,
                requested=req.memory_bytes, free=free.memory_bytes
            )
        return PredicateResult.ok()


class MatchNodeSelector(Predicate):
    """nodeSelector labels and required node affinity terms"""

    name = "match_node_selector"

    def check(self, unit: Unit, node: Node) -> PredicateResult:
        for key, value in unit.node_selector.items():
            if node.labels.get(key) != value:
                return PredicateResult.fail(
                    "node-selector-mismatch", resolvable=False, label=key
                )
        terms = unit.required_node_affinity
        if terms and not any(node_selector_term_matches(t, node) for t in terms):
            return PredicateResult.fail("node-selector-mismatch", resolvable=False)
        return PredicateResult.ok()


class TaintToleration(Predicate):
    name = "taint_toleration"

    def check(self, unit: Unit, node: Node) -> PredicateResult:
        for taint in node.taints:
            if taint.get("effect") not in BLOCKING_EFFECTS:
                continue
            if not tolerates_all(unit.tolerations, taint):
                return PredicateResult.fail(
                    "untolerated-taint", resolvable=False, taint=taint.get("key")
                )
        return PredicateResult.ok()


class PodAntiAffinity(Predicate):
    """
    The unit refuses nodes hosting an occupant matched by one of its
    anti-affinity terms. Terms are evaluated per node (hostname topology).
    """

    name = "pod_anti_affinity"

    def check(self, unit: Unit, node: Node) -> PredicateResult:
        for term in unit.anti_affinity:
            namespaces = term.get("namespaces") or [unit.namespace]
            selector = term.get("labelSelector")
            conflicts = [
                o.key for o in node.occupants
                if o.namespace in namespaces and selector_matches(selector, o.labels)
            ]
            if conflicts:
                return PredicateResult.fail(
                    "anti-affinity-conflict", resolvable=True, occupants=conflicts
                )
        return PredicateResult.ok()


PREDICATES = {
    cls.name: cls
    for cls in (
        AlwaysTrue,
        NodeUnschedulable,
        PodFitsResources,
        MatchNodeSelector,
        TaintToleration,
        PodAntiAffinity,
    )
}


# ── PredicateSet ────────────────────────────────────────────────────────────

class PredicateSet:
    """
    Ordered, immutable collection of predicates

    A node is admissible only when every predicate passes. A predicate that
    raises makes the node inadmissible (fail-closed) without affecting the
    evaluation of other nodes.
    """

    def __init__(self, predicates: Iterable[Predicate]):
        self.predicates = tuple(predicates)
        names = [p.name for p in self.predicates]
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate predicate names: {names}")

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.predicates]

    def subset(self, name: str) -> "PredicateSet":
        """PredicateSet holding only the named predicate"""
        for predicate in self.predicates:
            if predicate.name == name:
                return PredicateSet([predicate])
        raise KeyError(name)

    def evaluate_node(self, unit: Unit, node: Node) -> PredicateResult:
        for predicate in self.predicates:
            try:
                result = predicate.check(unit, node)
            except Exception as e:
                logger.error(f"Predicate {predicate.name} failed on {node.name} "
                             f"for {unit.key}: {e}")
                return PredicateResult(
                    admissible=False,
                    reason=INTERNAL_ERROR,
                    predicate=predicate.name,
                    resolvable=False,
                    metadata={'error': str(e)}
                )
            if not result.admissible:
                return replace(result, predicate=predicate.name)
        return PredicateResult.ok()

    def evaluate(
        self,
        unit: Unit,
        nodes: Sequence[Node],
        mapper: Optional[Mapper] = None
    ) -> FilterResult:
        """
        Evaluate every node

        Args:
            unit: Unit to place
            nodes: Candidate set, in caller order
            mapper: Order-preserving map used for fan-out (defaults to inline)

        Returns:
            FilterResult with admissible nodes in input order
        """
        if mapper is None:
            results = [self.evaluate_node(unit, node) for node in nodes]
        else:
            results = mapper(lambda node: self.evaluate_node(unit, node), nodes)

        outcome = FilterResult()
        for node, result in zip(nodes, results):
            if result.admissible:
                outcome.admissible.append(node)
            else:
                outcome.failed[node.name] = result

        logger.debug(f"Filter {unit.key}: {len(outcome.admissible)}/{len(nodes)} admissible, "
                     f"failed={outcome.failure_reasons()}")
        return outcome


def build_predicate_set(names: Iterable[str]) -> PredicateSet:
    """Instantiate predicates from the catalogue, in the given order"""
    predicates = []
    for name in names:
        cls = PREDICATES.get(name)
        if cls is None:
            raise ConfigError(f"Unknown predicate: {name} (known: {sorted(PREDICATES)})")
        predicates.append(cls())
    return PredicateSet(predicates)
