"""
Prometheus metrics exported by the extender
"""

from prometheus_client import Counter, Histogram, CONTENT_TYPE_LATEST, generate_latest


class ExtenderMetrics:
    """Process-wide extender metrics"""

    requests = Counter(
        'extender_requests_total',
        'Extender calls by verb and outcome',
        ['verb', 'outcome']
    )

    decision_duration = Histogram(
        'extender_decision_duration_seconds',
        'Time spent producing a decision',
        ['verb']
    )

    predicate_failures = Counter(
        'extender_predicate_failures_total',
        'Nodes rejected, by predicate and reason',
        ['predicate', 'reason']
    )

    priority_errors = Counter(
        'extender_priority_errors_total',
        'Priority functions zeroed because they failed',
        ['function']
    )

    preemption_victims = Counter(
        'extender_preemption_victims_total',
        'Occupants proposed for eviction'
    )

    binds = Counter(
        'extender_bind_total',
        'Bind attempts by outcome',
        ['status']
    )

    @classmethod
    def observe_filter(cls, outcome):
        for result in outcome.result.failed.values():
            cls.predicate_failures.labels(
                predicate=result.predicate or 'unknown',
                reason=result.reason or 'unknown'
            ).inc()
        cls.preemption_victims.inc(sum(len(v.victims) for v in outcome.victims.values()))

    @classmethod
    def observe_prioritize(cls, outcome):
        for name in outcome.failed_functions:
            cls.priority_errors.labels(function=name).inc()

    @classmethod
    def observe_preempt(cls, outcome):
        cls.preemption_victims.inc(sum(len(v.victims) for v in outcome.victims.values()))

    @classmethod
    def observe_bind(cls, outcome):
        cls.binds.labels(status=outcome.status.value).inc()

    @staticmethod
    def exposition():
        """(body, content type) for a /metrics response"""
        return generate_latest(), CONTENT_TYPE_LATEST
