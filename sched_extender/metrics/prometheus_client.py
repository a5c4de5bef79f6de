"""
Prometheus client for querying node metrics used by scoring
"""

import requests
from typing import Dict, Optional
from ..utils.logger import get_logger

logger = get_logger("PrometheusClient")

DEFAULT_QUERIES = {
    'node_cpu_utilization':
        '1 - avg by (node) (rate(node_cpu_seconds_total{mode="idle"}[5m]))',
}


class PrometheusClient:
    """
    Client for querying Prometheus metrics
    """

    def __init__(
        self,
        url: str,
        timeout: int = 5,
        queries: Optional[Dict[str, str]] = None,
        check_connection: bool = True
    ):
        """
        Initialize Prometheus client

        Args:
            url: Prometheus server URL (e.g., http://prometheus.monitoring:9090)
            timeout: Request timeout in seconds
            queries: Overrides for DEFAULT_QUERIES
            check_connection: Probe /-/healthy once at startup
        """
        self.url = url.rstrip('/')
        self.timeout = timeout
        self.queries = dict(DEFAULT_QUERIES)
        self.queries.update(queries or {})

        # Test connection
        if check_connection and not self._test_connection():
            logger.warning(f"Prometheus not reachable at {self.url}")

    def _test_connection(self) -> bool:
        """Test connection to Prometheus"""
        try:
            r = requests.get(f"{self.url}/-/healthy", timeout=self.timeout)
            return r.status_code == 200
        except requests.RequestException as e:
            logger.error(f"Prometheus connection failed: {e}")
            return False

    def query(self, query_str: str) -> Optional[Dict]:
        """
        Execute Prometheus instant query

        Args:
            query_str: PromQL query

        Returns:
            Dictionary containing 'result' list or None
        """
        try:
            response = requests.get(
                f"{self.url}/api/v1/query",
                params={'query': query_str},
                timeout=self.timeout
            )

            if response.status_code != 200:
                logger.error(f"Prometheus HTTP error: {response.status_code}")
                return None

            data = response.json()

            if data.get('status') != 'success':
                logger.error(f"Prometheus query error: {data.get('error', 'unknown')}")
                return None

            result_data = data.get('data', {})

            # Some proxies return the result list directly
            if isinstance(result_data, list):
                return {'result': result_data}

            return result_data

        except (requests.RequestException, ValueError) as e:
            logger.error(f"Prometheus query exception: {e}")
            return None

    def get_node_cpu_utilization(self) -> Dict[str, float]:
        """
        CPU utilization per node, as a fraction in [0, 1]

        Returns:
            Dict node name -> utilization (empty if the query failed)
        """
        result = self.query(self.queries['node_cpu_utilization'])
        utilization = {}
        if not result:
            return utilization

        for sample in result.get('result', []):
            metric = sample.get('metric', {})
            node = metric.get('node') or metric.get('instance', '').split(':')[0]
            if not node:
                continue
            try:
                utilization[node] = float(sample['value'][1])
            except (KeyError, IndexError, TypeError, ValueError):
                logger.warning(f"Malformed sample for node {node}: {sample}")

        logger.debug(f"Node CPU utilization: {utilization}")
        return utilization
