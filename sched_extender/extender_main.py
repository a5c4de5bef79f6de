"""
sched-extender entry point

Loads config/extender.yaml, wires the optional cluster and Prometheus
collaborators into the decision pipeline, then serves the extender API.

Usage:
    sched-extender [config_dir]
"""

import sys
from prometheus_client import start_http_server

from .api.server import create_extender_api
from .k8s.client import KubernetesClient
from .metrics.prometheus_client import PrometheusClient
from .utils.config_loader import ConfigLoader
from .utils.logger import setup_logging


def build_collaborators(config):
    """
    Cluster and Prometheus clients enabled in the configuration

    Returns:
        (KubernetesClient or None, PrometheusClient or None)
    """
    cluster = None
    if config.cluster.enabled:
        cluster = KubernetesClient(
            kubeconfig_path=config.cluster.kubeconfig_path,
            in_cluster=config.cluster.in_cluster
        )

    prometheus = None
    if config.prometheus.enabled:
        prometheus = PrometheusClient(
            url=config.prometheus.url,
            timeout=config.prometheus.timeout_seconds,
            queries=config.prometheus.queries
        )
    return cluster, prometheus


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    config_dir = argv[0] if argv else "config"

    config = ConfigLoader(config_dir)
    logger = setup_logging("extender", log_dir=config.logging.log_dir, level=config.logging.level)

    cluster, prometheus = build_collaborators(config)
    app = create_extender_api(config, cluster=cluster, prometheus=prometheus)

    start_http_server(config.server.metrics_port)
    logger.info(f"📊 Metrics server started on :{config.server.metrics_port}/metrics")
    logger.info(f"🌐 Extender listening on {config.server.host}:{config.server.port}")

    try:
        app.run(host=config.server.host, port=config.server.port, debug=False, threaded=True)
    finally:
        app.config['PIPELINE'].close()
        logger.info("Extender stopped")


if __name__ == "__main__":
    main()
