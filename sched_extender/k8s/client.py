"""
Kubernetes client for the extender's cluster-facing operations
(binding pods, reading node snapshots by name)
"""

import os
from typing import Optional
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..api import wire
from ..core.errors import BindConflict, NodeResolutionError
from ..core.models import Node
from ..utils.logger import get_logger

logger = get_logger("K8sClient")

# Binding answers that mean the pod or node changed since scoring
CONFLICT_STATUSES = (404, 409)


class KubernetesClient:
    """
    Thin CoreV1Api wrapper
    """

    def __init__(
        self,
        kubeconfig_path: Optional[str] = None,
        in_cluster: bool = False,
        core_api: Optional[client.CoreV1Api] = None
    ):
        """
        Initialize K8s client

        Args:
            kubeconfig_path: Path to kubeconfig (ignored in-cluster)
            in_cluster: Use the pod's service account
            core_api: Pre-built CoreV1Api (skips config loading)
        """
        if core_api is not None:
            self.core_api = core_api
            return

        if in_cluster:
            config.load_incluster_config()
            logger.info("✅ Initialized in-cluster K8s client")
        else:
            path = os.path.expanduser(kubeconfig_path) if kubeconfig_path else None
            config.load_kube_config(config_file=path)
            logger.info(f"✅ Initialized K8s client from {path or 'default kubeconfig'}")

        self.core_api = client.CoreV1Api()

    def bind_pod(self, namespace: str, name: str, uid: str, node: str):
        """
        Create the Binding for a pod

        Raises:
            BindConflict: the pod is gone, already bound, or its uid changed
            ApiException: any other API failure
        """
        body = client.V1Binding(
            api_version="v1",
            kind="Binding",
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                uid=uid or None
            ),
            target=client.V1ObjectReference(
                api_version="v1",
                kind="Node",
                name=node
            )
        )

        try:
            # The Binding response does not deserialize cleanly; skip it
            self.core_api.create_namespaced_binding(
                namespace=namespace,
                body=body,
                _preload_content=False
            )
        except ApiException as e:
            if e.status in CONFLICT_STATUSES:
                raise BindConflict(f"K8s API error: {e.status} {e.reason}")
            logger.error(f"K8s API error: {e.status} {e.reason}")
            raise

        logger.info(f"✅ Created binding {namespace}/{name} → {node}")

    def get_node_snapshot(self, name: str) -> Node:
        """
        Read a node and the pods currently assigned to it

        Raises:
            NodeResolutionError: node cannot be read
        """
        try:
            node_obj = self.core_api.read_node(name=name)
            pods = self.core_api.list_pod_for_all_namespaces(
                field_selector=(f"spec.nodeName={name},"
                                "status.phase!=Succeeded,status.phase!=Failed")
            )
        except ApiException as e:
            raise NodeResolutionError(f"Cannot read node {name}: {e.status} {e.reason}")

        serialize = self.core_api.api_client.sanitize_for_serialization
        node = wire.node_from_dict(serialize(node_obj))
        occupants = [wire.occupant_from_dict(serialize(pod)) for pod in pods.items]

        logger.debug(f"Snapshot {name}: {len(occupants)} occupants")
        return node.with_occupants(occupants)
