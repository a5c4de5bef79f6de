"""
Wire codec for the Kubernetes scheduler extender v1 JSON schema

Decoders turn request bodies into core model snapshots and raise
WireFormatError on malformed input; encoders build response bodies.
"""

from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import WireFormatError
from ..core.models import (
    BindOutcome, Node, Occupant, RankedNode, Resources, Unit, UnitRef, VictimSet
)


def _mapping(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise WireFormatError(f"{what} must be an object")
    return value


def _list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise WireFormatError(f"{what} must be a list")
    return value


def _metadata(obj: Dict[str, Any], what: str) -> Dict[str, Any]:
    metadata = _mapping(obj.get("metadata"), f"{what}.metadata")
    if not metadata.get("name"):
        raise WireFormatError(f"{what}.metadata.name is required")
    return metadata


def _owner(metadata: Dict[str, Any]) -> str:
    """kind/name of the controlling owner reference, if any"""
    refs = _list(metadata.get("ownerReferences"), "metadata.ownerReferences")
    for ref in refs:
        if isinstance(ref, dict) and ref.get("controller"):
            return f"{ref.get('kind', '')}/{ref.get('name', '')}"
    if refs and isinstance(refs[0], dict):
        return f"{refs[0].get('kind', '')}/{refs[0].get('name', '')}"
    return ""


def _elementwise_max(a: Resources, b: Resources) -> Resources:
    return Resources(
        max(a.cpu_millis, b.cpu_millis),
        max(a.memory_bytes, b.memory_bytes),
        max(a.pods, b.pods),
    )


def pod_requests(spec: Dict[str, Any]) -> Resources:
    """
    Effective requests of a pod: sum over containers, at least the largest
    init container, plus pod overhead. Always claims one pod slot.
    """
    total = Resources()
    for container in _list(spec.get("containers"), "spec.containers"):
        resources = _mapping(container.get("resources"), "container.resources")
        total = total + Resources.from_k8s(resources.get("requests"))

    for container in _list(spec.get("initContainers"), "spec.initContainers"):
        resources = _mapping(container.get("resources"), "initContainer.resources")
        total = _elementwise_max(total, Resources.from_k8s(resources.get("requests")))

    total = total + Resources.from_k8s(spec.get("overhead"))
    return Resources(total.cpu_millis, total.memory_bytes, 1)


def unit_from_dict(pod: Dict[str, Any]) -> Unit:
    """Decode the pod being scheduled"""
    try:
        pod = _mapping(pod, "pod")
        metadata = _metadata(pod, "pod")
        spec = _mapping(pod.get("spec"), "pod.spec")
        affinity = _mapping(spec.get("affinity"), "pod.spec.affinity")
        node_affinity = _mapping(affinity.get("nodeAffinity"), "nodeAffinity")
        required = _mapping(
            node_affinity.get("requiredDuringSchedulingIgnoredDuringExecution"),
            "nodeAffinity.required"
        )
        anti_affinity = _mapping(affinity.get("podAntiAffinity"), "podAntiAffinity")

        return Unit(
            name=metadata["name"],
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid") or "",
            requests=pod_requests(spec),
            priority=int(spec.get("priority") or 0),
            priority_class=spec.get("priorityClassName") or "",
            labels=dict(_mapping(metadata.get("labels"), "pod.metadata.labels")),
            node_selector=dict(_mapping(spec.get("nodeSelector"), "pod.spec.nodeSelector")),
            required_node_affinity=tuple(_list(required.get("nodeSelectorTerms"), "nodeSelectorTerms")),
            tolerations=tuple(_list(spec.get("tolerations"), "pod.spec.tolerations")),
            anti_affinity=tuple(_list(
                anti_affinity.get("requiredDuringSchedulingIgnoredDuringExecution"),
                "podAntiAffinity.required"
            )),
            owner=_owner(metadata),
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise WireFormatError(f"Invalid pod: {e}")


def occupant_from_dict(pod: Dict[str, Any]) -> Occupant:
    """Decode a pod already running on a node"""
    try:
        pod = _mapping(pod, "pod")
        metadata = _metadata(pod, "pod")
        spec = _mapping(pod.get("spec"), "pod.spec")
        return Occupant(
            name=metadata["name"],
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid") or "",
            requests=pod_requests(spec),
            priority=int(spec.get("priority") or 0),
            priority_class=spec.get("priorityClassName") or "",
            labels=dict(_mapping(metadata.get("labels"), "pod.metadata.labels")),
            annotations=dict(_mapping(metadata.get("annotations"), "pod.metadata.annotations")),
            owner=_owner(metadata),
            raw=pod,
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise WireFormatError(f"Invalid pod: {e}")


def node_from_dict(node: Dict[str, Any]) -> Node:
    """Decode a v1.Node object (occupants are attached separately)"""
    try:
        node = _mapping(node, "node")
        metadata = _metadata(node, "node")
        spec = _mapping(node.get("spec"), "node.spec")
        status = _mapping(node.get("status"), "node.status")
        allocatable = status.get("allocatable") or status.get("capacity")
        return Node(
            name=metadata["name"],
            allocatable=Resources.from_k8s(_mapping(allocatable, "node.status.allocatable")),
            capacity=Resources.from_k8s(_mapping(status.get("capacity"), "node.status.capacity")),
            labels=dict(_mapping(metadata.get("labels"), "node.metadata.labels")),
            taints=tuple(_list(spec.get("taints"), "node.spec.taints")),
            unschedulable=bool(spec.get("unschedulable", False)),
            raw=node,
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise WireFormatError(f"Invalid node: {e}")


def _unique(names: List[str], what: str):
    seen = set()
    for name in names:
        if name in seen:
            raise WireFormatError(f"Duplicate {what}: {name}")
        seen.add(name)


def decode_extender_args(body: Any) -> Tuple[Unit, Optional[List[Node]], Optional[List[str]], bool]:
    """
    Decode ExtenderArgs

    Returns:
        (unit, nodes or None, node names or None, preemption_aware).
        Exactly one of nodes / node names is set.
    """
    body = _mapping(body, "ExtenderArgs")
    if not body.get("pod"):
        raise WireFormatError("ExtenderArgs.pod is required")
    unit = unit_from_dict(body["pod"])
    preemption_aware = bool(body.get("preemptionAware", False))

    if body.get("nodes") is not None:
        items = _list(_mapping(body["nodes"], "ExtenderArgs.nodes").get("items"), "nodes.items")
        nodes = [node_from_dict(item) for item in items]
        _unique([n.name for n in nodes], "node")
        return unit, nodes, None, preemption_aware

    if body.get("nodenames") is not None:
        names = _list(body["nodenames"], "ExtenderArgs.nodenames")
        if not all(isinstance(n, str) and n for n in names):
            raise WireFormatError("ExtenderArgs.nodenames must hold node names")
        _unique(names, "node name")
        return unit, None, list(names), preemption_aware

    raise WireFormatError("ExtenderArgs needs either nodes or nodenames")


def encode_filter_result(
    admissible: List[Node],
    failed: Dict[str, str],
    unresolvable: Dict[str, str],
    by_name: bool,
    victims: Optional[Dict[str, VictimSet]] = None,
    error: str = ""
) -> Dict[str, Any]:
    """
    Build ExtenderFilterResult

    Args:
        by_name: answer with nodenames (the request carried names only)
    """
    result: Dict[str, Any] = {
        "failedNodes": {name: reason for name, reason in failed.items() if name not in unresolvable},
        "failedAndUnresolvableNodes": dict(unresolvable),
        "error": error,
    }
    if by_name:
        result["nodenames"] = [n.name for n in admissible]
    else:
        result["nodes"] = {"items": [n.raw if n.raw is not None else {"metadata": {"name": n.name}}
                                     for n in admissible]}
    if victims:
        result["nodeNameToVictims"] = encode_victims(victims)
    return result


def encode_host_priority_list(ranked: List[RankedNode]) -> List[Dict[str, Any]]:
    return [{"host": r.node.name, "score": r.total} for r in ranked]


def decode_preemption_args(body: Any):
    """
    Decode ExtenderPreemptionArgs

    Returns:
        (unit, occupants by node, meta victim uids by node, node snapshots by name)
    """
    body = _mapping(body, "ExtenderPreemptionArgs")
    if not body.get("pod"):
        raise WireFormatError("ExtenderPreemptionArgs.pod is required")
    unit = unit_from_dict(body["pod"])

    occupants: Dict[str, List[Occupant]] = {}
    for node_name, victims in _mapping(body.get("nodeNameToVictims"), "nodeNameToVictims").items():
        pods = _list(_mapping(victims, f"nodeNameToVictims[{node_name}]").get("pods"), "victims.pods")
        occupants[node_name] = [occupant_from_dict(pod) for pod in pods]

    meta_uids: Dict[str, List[str]] = {}
    for node_name, victims in _mapping(body.get("nodeNameToMetaVictims"), "nodeNameToMetaVictims").items():
        pods = _list(_mapping(victims, f"nodeNameToMetaVictims[{node_name}]").get("pods"), "metaVictims.pods")
        meta_uids[node_name] = [_mapping(p, "metaPod").get("uid", "") for p in pods]

    snapshots: Dict[str, Node] = {}
    if body.get("nodes") is not None:
        items = _list(_mapping(body["nodes"], "ExtenderPreemptionArgs.nodes").get("items"), "nodes.items")
        for item in items:
            node = node_from_dict(item)
            snapshots[node.name] = node

    return unit, occupants, meta_uids, snapshots


def _victim_pod(occupant: Occupant) -> Dict[str, Any]:
    if occupant.raw is not None:
        return occupant.raw
    return {"metadata": {"name": occupant.name, "namespace": occupant.namespace, "uid": occupant.uid}}


def encode_victims(victims: Dict[str, VictimSet]) -> Dict[str, Any]:
    return {
        name: {
            "pods": [_victim_pod(v) for v in vs.victims],
            "numPDBViolations": vs.num_pdb_violations,
        }
        for name, vs in victims.items()
    }


def encode_meta_victims(victims: Dict[str, VictimSet]) -> Dict[str, Any]:
    return {
        name: {
            "pods": [{"uid": v.uid} for v in vs.victims],
            "numPDBViolations": vs.num_pdb_violations,
        }
        for name, vs in victims.items()
    }


def encode_preemption_result(victims: Dict[str, VictimSet]) -> Dict[str, Any]:
    return {
        "nodeNameToVictims": encode_victims(victims),
        "nodeNameToMetaVictims": encode_meta_victims(victims),
    }


def decode_binding_args(body: Any) -> Tuple[UnitRef, str]:
    body = _mapping(body, "ExtenderBindingArgs")
    name = body.get("podName")
    node = body.get("node")
    if not name or not node:
        raise WireFormatError("ExtenderBindingArgs needs podName and node")
    return UnitRef(
        name=name,
        namespace=body.get("podNamespace") or "default",
        uid=body.get("podUID") or "",
    ), node


def encode_binding_result(outcome: BindOutcome) -> Dict[str, Any]:
    return {
        "error": "" if outcome.success else outcome.error,
        "reason": outcome.status.value,
        "retryable": outcome.retryable,
    }
