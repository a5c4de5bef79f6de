"""
Configuration loader for the scheduler extender
Loads the YAML configuration file with validation
"""

import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from ..core.errors import ConfigError
from .logger import get_logger

logger = get_logger("ConfigLoader")

CONFIG_FILENAME = "extender.yaml"

DEFAULT_PREDICATES = [
    "node_unschedulable",
    "match_node_selector",
    "taint_toleration",
    "pod_fits_resources",
    "pod_anti_affinity",
]


@dataclass
class ServerConfig:
    """HTTP endpoint of the extender"""
    host: str = "0.0.0.0"
    port: int = 8888
    metrics_port: int = 9091


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: Optional[str] = "logs"


@dataclass
class PipelineConfig:
    """Fan-out and deadline settings of the decision pipeline"""
    parallelism: int = 4
    decision_timeout_seconds: Optional[float] = 5.0

    def __post_init__(self):
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.decision_timeout_seconds is not None and self.decision_timeout_seconds <= 0:
            raise ConfigError(
                f"decision_timeout_seconds must be positive, got {self.decision_timeout_seconds}"
            )


@dataclass
class PriorityConfig:
    """One weighted priority function"""
    name: str
    weight: int = 1

    def __post_init__(self):
        if isinstance(self.weight, bool) or not isinstance(self.weight, int) or self.weight < 0:
            raise ConfigError(
                f"Priority {self.name}: weight must be a non-negative integer, got {self.weight!r}"
            )


@dataclass
class PreemptionConfig:
    protected_priority_classes: List[str] = field(default_factory=lambda: [
        "system-cluster-critical",
        "system-node-critical",
        "critical",
    ])
    non_evictable_annotation: str = "sched-extender.io/non-evictable"


@dataclass
class BindConfig:
    """declining: the scheduler binds itself; delegating: the extender binds"""
    mode: str = "declining"

    def __post_init__(self):
        if self.mode not in ("declining", "delegating"):
            raise ConfigError(f"bind.mode must be 'declining' or 'delegating', got {self.mode!r}")


@dataclass
class ClusterConfig:
    """Access to the Kubernetes API (bind, node snapshots by name)"""
    enabled: bool = False
    kubeconfig_path: Optional[str] = None
    in_cluster: bool = False


@dataclass
class PrometheusConfig:
    """Prometheus configuration"""
    enabled: bool = False
    url: str = "http://localhost:9090"
    timeout_seconds: int = 5
    queries: Dict[str, str] = field(default_factory=dict)


class ConfigLoader:
    """
    Loads and manages the extender configuration file
    """

    def __init__(self, config_dir: str = "config", filename: str = CONFIG_FILENAME):
        """
        Initialize ConfigLoader

        Args:
            config_dir: Directory containing the YAML config file
            filename: Config file name inside config_dir
        """
        self.config_dir = Path(config_dir)
        self.filename = filename

        if not self.config_dir.exists():
            raise FileNotFoundError(f"Config directory not found: {config_dir}")

        logger.info(f"Loading configuration from: {self.config_dir}")

        self.raw = self._load_yaml(filename)

        # Parse into structured objects
        self._parse_configs()

        logger.info(f"Loaded {len(self.predicates)} predicates, "
                    f"{len(self.priorities)} priorities, bind={self.bind.mode}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigLoader":
        """Build a configuration from an in-memory mapping (no file access)"""
        loader = cls.__new__(cls)
        loader.config_dir = None
        loader.filename = None
        loader.raw = data or {}
        loader._parse_configs()
        return loader

    def _load_yaml(self, filename: str) -> Dict[str, Any]:
        """Load a YAML file"""
        filepath = self.config_dir / filename

        if not filepath.exists():
            raise FileNotFoundError(f"Config file not found: {filepath}")

        with open(filepath, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)

        logger.debug(f"Loaded {filename}")
        return data or {}

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.raw.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"Config section '{name}' must be a mapping")
        return section

    def _parse_configs(self):
        """Parse raw YAML data into structured config objects"""
        try:
            self.server = ServerConfig(**self._section('server'))
            self.logging = LoggingConfig(**self._section('logging'))
            self.pipeline = PipelineConfig(**self._section('pipeline'))
            self.preemption = PreemptionConfig(**self._section('preemption'))
            self.bind = BindConfig(**self._section('bind'))
            self.cluster = ClusterConfig(**self._section('cluster'))
            self.prometheus = PrometheusConfig(**self._section('prometheus'))
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}")

        # Predicates: ordered list of names
        predicates = self.raw.get('predicates', DEFAULT_PREDICATES)
        if not isinstance(predicates, list) or not all(isinstance(p, str) for p in predicates):
            raise ConfigError("'predicates' must be a list of predicate names")
        self.predicates: List[str] = list(predicates)

        # Priorities: list of {name, weight} (or bare names, weight 1)
        self.priorities: List[PriorityConfig] = []
        for entry in self.raw.get('priorities', [{'name': 'zero', 'weight': 1}]) or []:
            if isinstance(entry, str):
                entry = {'name': entry}
            if not isinstance(entry, dict) or 'name' not in entry:
                raise ConfigError(f"Invalid priority entry: {entry!r}")
            self.priorities.append(PriorityConfig(**entry))

        if self.bind.mode == "delegating" and not self.cluster.enabled:
            raise ConfigError("bind.mode 'delegating' requires cluster.enabled")

    def get_priority(self, name: str) -> Optional[PriorityConfig]:
        """Get priority config by name"""
        for priority in self.priorities:
            if priority.name == name:
                return priority
        return None

    def reload(self):
        """Reload the configuration file"""
        if self.config_dir is None:
            raise ConfigError("In-memory configuration cannot be reloaded")
        logger.info("Reloading configuration...")
        self.__init__(config_dir=str(self.config_dir), filename=self.filename)
