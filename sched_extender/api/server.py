"""
HTTP routes of the scheduler extender (Flask)

Maps kube-scheduler extender calls onto the decision pipeline. Request
and response bodies follow the extender v1 JSON schema (see wire.py).
"""

from dataclasses import replace
from typing import List, Optional

from flask import Flask, Response, jsonify, request

from .. import __version__
from ..core.errors import ExtenderError, NodeResolutionError, UnknownFunctionError, WireFormatError
from ..core.models import Node
from ..core.pipeline import DecisionPipeline, build_pipeline, build_registry
from ..metrics.extender_metrics import ExtenderMetrics
from ..utils.logger import get_logger
from . import wire

logger = get_logger("ExtenderAPI")

TIMEOUT_HEADER = "X-Decision-Timeout-Ms"


def create_extender_api(
    config,
    pipeline: Optional[DecisionPipeline] = None,
    cluster=None,
    prometheus=None
) -> Flask:
    """
    Build the Flask app

    Args:
        config: ConfigLoader (also used by /admin/reload)
        pipeline: Pre-built pipeline (built from config when None)
        cluster: KubernetesClient for bind and node snapshots, optional
        prometheus: PrometheusClient for metric-backed priorities, optional
    """
    app = Flask("sched-extender")
    if pipeline is None:
        pipeline = build_pipeline(config, binder=cluster, prometheus=prometheus)
    app.config['PIPELINE'] = pipeline

    # ── Helpers ────────────────────────────────────────────────────────────

    def _body():
        body = request.get_json(silent=True)
        if body is None:
            raise WireFormatError("Request body must be a JSON document")
        return body

    def _timeout() -> Optional[float]:
        value = request.headers.get(TIMEOUT_HEADER)
        if value is None:
            return None
        try:
            millis = float(value)
        except ValueError:
            raise WireFormatError(f"{TIMEOUT_HEADER} must be a number, got {value!r}")
        if millis <= 0:
            raise WireFormatError(f"{TIMEOUT_HEADER} must be positive")
        return millis / 1000.0

    def _snapshot(name: str) -> Node:
        if cluster is None:
            raise NodeResolutionError(
                f"Node {name} sent by name but no cluster access is configured"
            )
        return cluster.get_node_snapshot(name)

    def _with_occupants(nodes: List[Node]) -> List[Node]:
        """Attach current occupants from the cluster when it is reachable"""
        if cluster is None:
            return nodes
        return [node.with_occupants(_snapshot(node.name).occupants) for node in nodes]

    def _candidates(body):
        unit, nodes, names, preemption_aware = wire.decode_extender_args(body)
        if nodes is None:
            nodes = [_snapshot(name) for name in names]
        else:
            nodes = _with_occupants(nodes)
        if request.args.get('preemption', '').lower() == 'true':
            preemption_aware = True
        return unit, nodes, names is not None, preemption_aware

    def _handle(verb: str, handler):
        with ExtenderMetrics.decision_duration.labels(verb=verb).time():
            try:
                response = handler()
            except ExtenderError as e:
                ExtenderMetrics.requests.labels(verb=verb, outcome=e.reason).inc()
                logger.warning(f"{verb} failed ({e.reason}): {e}")
                return jsonify({'error': str(e), 'reason': e.reason}), e.status_code
            except Exception as e:
                ExtenderMetrics.requests.labels(verb=verb, outcome='internal-error').inc()
                logger.exception(f"Unexpected error in {verb}: {e}")
                return jsonify({'error': str(e), 'reason': 'internal-error'}), 500
        ExtenderMetrics.requests.labels(verb=verb, outcome='ok').inc()
        return response

    # ── Verb handlers ──────────────────────────────────────────────────────

    def _filter(predicate: Optional[str] = None):
        unit, nodes, by_name, preemption_aware = _candidates(_body())
        if preemption_aware and cluster is None:
            # Request nodes carry no occupants, victims cannot be computed
            raise NodeResolutionError(
                "Preemption-aware filtering needs cluster access for node occupants"
            )
        registry = None
        if predicate is not None:
            current = pipeline.registry
            try:
                registry = replace(current, predicates=current.predicates.subset(predicate))
            except KeyError:
                raise UnknownFunctionError(f"Unknown predicate {predicate}")

        outcome = pipeline.filter(unit, nodes, preemption_aware=preemption_aware,
                                  timeout=_timeout(), registry=registry)
        ExtenderMetrics.observe_filter(outcome)
        result = outcome.result
        return jsonify(wire.encode_filter_result(
            admissible=result.admissible,
            failed=result.failure_reasons(),
            unresolvable=result.unresolvable_reasons(),
            by_name=by_name,
            victims=outcome.victims
        ))

    def _prioritize(function: Optional[str] = None):
        unit, nodes, _, _ = _candidates(_body())
        registry = None
        if function is not None:
            current = pipeline.registry
            try:
                registry = replace(current, aggregator=current.aggregator.subset(function))
            except KeyError:
                raise UnknownFunctionError(f"Unknown priority function {function}")

        outcome = pipeline.prioritize(unit, nodes, timeout=_timeout(), registry=registry)
        ExtenderMetrics.observe_prioritize(outcome)
        return jsonify(wire.encode_host_priority_list(outcome.ranked))

    def _preempt():
        unit, occupants, meta_uids, snapshots = wire.decode_preemption_args(_body())

        nodes: List[Node] = []
        for name in list(occupants) + [n for n in meta_uids if n not in occupants]:
            node = snapshots.get(name)
            current = None
            if cluster is not None:
                current = _snapshot(name)
                node = node or current
            if node is None:
                raise NodeResolutionError(
                    f"Node {name} has no snapshot in the request and no cluster access is configured"
                )

            proposed = occupants.get(name)
            if proposed is None:
                if current is None:
                    raise NodeResolutionError(
                        f"Node {name} has only meta victims and no cluster access is configured"
                    )
                proposed = []
            known = {o.key for o in proposed}
            extra = [o for o in (current.occupants if current else ()) if o.key not in known]
            nodes.append(node.with_occupants(list(proposed) + extra))

        outcome = pipeline.preempt(unit, nodes, timeout=_timeout())
        ExtenderMetrics.observe_preempt(outcome)
        return jsonify(wire.encode_preemption_result(outcome.victims))

    def _bind():
        unit, node = wire.decode_binding_args(_body())
        outcome = pipeline.bind(unit, node)
        ExtenderMetrics.observe_bind(outcome)
        return jsonify(wire.encode_binding_result(outcome))

    # ── Routes ─────────────────────────────────────────────────────────────

    @app.route('/', methods=['GET'])
    def index():
        return "Welcome to sched-extender!\n"

    @app.route('/version', methods=['GET'])
    def version():
        return f"{__version__}\n"

    @app.route('/health', methods=['GET'])
    def health():
        registry = pipeline.registry
        return jsonify({
            'status': 'healthy',
            'predicates': registry.predicates.names,
            'priorities': registry.aggregator.names,
            'supports_bind': pipeline.supports_bind
        }), 200

    @app.route('/scheduler/filter', methods=['POST'])
    def filter_all():
        return _handle('filter', _filter)

    @app.route('/scheduler/predicates/<name>', methods=['POST'])
    def filter_one(name):
        return _handle('filter', lambda: _filter(name))

    @app.route('/scheduler/prioritize', methods=['POST'])
    def prioritize_all():
        return _handle('prioritize', _prioritize)

    @app.route('/scheduler/priorities/<name>', methods=['POST'])
    def prioritize_one(name):
        return _handle('prioritize', lambda: _prioritize(name))

    @app.route('/scheduler/preemption', methods=['POST'])
    def preemption():
        return _handle('preempt', _preempt)

    @app.route('/scheduler/bind', methods=['POST'])
    def bind():
        return _handle('bind', _bind)

    @app.route('/admin/reload', methods=['POST'])
    def reload():
        def _reload():
            config.reload()
            pipeline.swap_registry(build_registry(config, prometheus=prometheus))
            registry = pipeline.registry
            return jsonify({
                'status': 'reloaded',
                'predicates': registry.predicates.names,
                'priorities': registry.aggregator.names
            })
        return _handle('reload', _reload)

    @app.route('/metrics', methods=['GET'])
    def metrics():
        body, content_type = ExtenderMetrics.exposition()
        return Response(body, mimetype=content_type)

    return app

