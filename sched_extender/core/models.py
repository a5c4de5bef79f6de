"""
Data model shared by the decision pipeline

Every entity is an immutable snapshot built from one request payload
and discarded once the response is produced.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from kubernetes.utils import parse_quantity

# Upper bound of a single priority function score (extender v1 MaxExtenderPriority)
MAX_PRIORITY = 10


def parse_cpu_millis(value: Any) -> int:
    """Parse a CPU quantity ("500m", "2", 1.5) into millicores"""
    if value is None or value == "":
        return 0
    return int(parse_quantity(str(value)) * 1000)


def parse_memory_bytes(value: Any) -> int:
    """Parse a memory quantity ("64Mi", "1Gi", "512") into bytes"""
    if value is None or value == "":
        return 0
    return int(parse_quantity(str(value)))


@dataclass(frozen=True)
class Resources:
    """CPU, memory and pod slots, in integer base units"""
    cpu_millis: int = 0
    memory_bytes: int = 0
    pods: int = 0

    @classmethod
    def from_k8s(cls, mapping: Optional[Dict[str, Any]], pods_default: int = 0) -> "Resources":
        """Build from a Kubernetes resource list ({"cpu": "2", "memory": "4Gi", "pods": "110"})"""
        mapping = mapping or {}
        pods = mapping.get("pods")
        return cls(
            cpu_millis=parse_cpu_millis(mapping.get("cpu")),
            memory_bytes=parse_memory_bytes(mapping.get("memory")),
            pods=int(parse_quantity(str(pods))) if pods not in (None, "") else pods_default,
        )

    def __add__(self, other: "Resources") -> "Resources":
        return Resources(
            self.cpu_millis + other.cpu_millis,
            self.memory_bytes + other.memory_bytes,
            self.pods + other.pods,
        )

    def __sub__(self, other: "Resources") -> "Resources":
        return Resources(
            self.cpu_millis - other.cpu_millis,
            self.memory_bytes - other.memory_bytes,
            self.pods - other.pods,
        )


def total_resources(items: Iterable[Resources]) -> Resources:
    total = Resources()
    for item in items:
        total = total + item
    return total


@dataclass(frozen=True)
class Unit:
    """
    The pod awaiting placement

    Scheduling constraints keep their Kubernetes shape (node selector terms,
    tolerations, label selectors) since predicates match on them directly.
    """
    name: str
    namespace: str = "default"
    uid: str = ""
    requests: Resources = Resources(pods=1)
    priority: int = 0
    priority_class: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    node_selector: Dict[str, str] = field(default_factory=dict)
    required_node_affinity: Tuple[Dict[str, Any], ...] = ()
    tolerations: Tuple[Dict[str, Any], ...] = ()
    anti_affinity: Tuple[Dict[str, Any], ...] = ()
    owner: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Occupant:
    """A pod already running on a node (a potential preemption victim)"""
    name: str
    namespace: str = "default"
    uid: str = ""
    requests: Resources = Resources(pods=1)
    priority: int = 0
    priority_class: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    owner: str = ""
    raw: Optional[Dict[str, Any]] = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Node:
    """Read-only node snapshot for one decision call"""
    name: str
    allocatable: Resources = Resources()
    capacity: Resources = Resources()
    labels: Dict[str, str] = field(default_factory=dict)
    taints: Tuple[Dict[str, Any], ...] = ()
    unschedulable: bool = False
    occupants: Tuple[Occupant, ...] = ()
    raw: Optional[Dict[str, Any]] = field(default=None, compare=False, repr=False)

    @property
    def requested(self) -> Resources:
        """Resources claimed by current occupants"""
        return total_resources(o.requests for o in self.occupants)

    @property
    def free(self) -> Resources:
        return self.allocatable - self.requested

    def without(self, victims: Iterable[Occupant]) -> "Node":
        """Snapshot of this node with the given occupants removed"""
        removed = {v.key for v in victims}
        return replace(
            self,
            occupants=tuple(o for o in self.occupants if o.key not in removed)
        )

    def with_occupants(self, occupants: Iterable[Occupant]) -> "Node":
        return replace(self, occupants=tuple(occupants))


@dataclass(frozen=True)
class PredicateResult:
    """Outcome of evaluating one (unit, node) pair"""
    admissible: bool
    reason: Optional[str] = None
    predicate: Optional[str] = None
    # True when evicting occupants could make the node admissible
    resolvable: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls) -> "PredicateResult":
        return cls(admissible=True)

    @classmethod
    def fail(cls, reason: str, resolvable: bool = True, **metadata) -> "PredicateResult":
        return cls(admissible=False, reason=reason, resolvable=resolvable, metadata=metadata)


@dataclass
class FilterResult:
    """Admissible nodes in input order, plus failure results by node name"""
    admissible: List[Node] = field(default_factory=list)
    failed: Dict[str, PredicateResult] = field(default_factory=dict)

    @property
    def feasible(self) -> bool:
        return bool(self.admissible)

    def failure_reasons(self) -> Dict[str, str]:
        return {name: result.reason for name, result in self.failed.items()}

    def unresolvable_reasons(self) -> Dict[str, str]:
        return {
            name: result.reason
            for name, result in self.failed.items()
            if not result.resolvable
        }


@dataclass(frozen=True)
class PriorityScore:
    node: str
    score: int
    function: str


@dataclass
class RankedNode:
    """A node with its aggregated score and per-function contributions"""
    node: Node
    total: int
    breakdown: Dict[str, int] = field(default_factory=dict)

    def __repr__(self):
        return f"RankedNode({self.node.name}, total={self.total})"


@dataclass
class VictimSet:
    """Occupants to evict from one node so the unit fits there"""
    node: str
    victims: List[Occupant] = field(default_factory=list)
    # occupant key -> reason it must not be evicted
    unevictable: Dict[str, str] = field(default_factory=dict)
    num_pdb_violations: int = 0

    def __repr__(self):
        return f"VictimSet({self.node}, victims={[v.key for v in self.victims]})"


class BindStatus(str, Enum):
    BOUND = "bound"
    UNSUPPORTED = "unsupported"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class UnitRef:
    """Identity of the unit to bind (the bind call carries no full pod)"""
    name: str
    namespace: str = "default"
    uid: str = ""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class BindOutcome:
    status: BindStatus
    node: str
    error: str = ""
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.status == BindStatus.BOUND
