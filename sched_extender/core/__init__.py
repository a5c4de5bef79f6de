"""
Decision engine: predicates, priorities, preemption, bind and the
pipeline that sequences them
"""

from .errors import (
    ExtenderError, WireFormatError, ConfigError, NodeResolutionError,
    DecisionTimeout, DecisionCancelled, BindConflict, UnknownFunctionError
)
from .models import (
    MAX_PRIORITY, Resources, Unit, Occupant, Node, PredicateResult, FilterResult,
    PriorityScore, RankedNode, VictimSet, BindStatus, UnitRef, BindOutcome
)
from .predicates import Predicate, PredicateSet, build_predicate_set
from .priorities import PriorityFunction, WeightedPriority, ScoringAggregator, build_aggregator
from .preemption import PreemptionPolicy, PreemptionEngine
from .bind import BindMode, BindDelegate, build_bind_delegate
from .pipeline import Phase, Registry, DecisionPipeline, build_registry, build_pipeline

__all__ = [
    'ExtenderError',
    'WireFormatError',
    'ConfigError',
    'NodeResolutionError',
    'DecisionTimeout',
    'DecisionCancelled',
    'BindConflict',
    'UnknownFunctionError',
    'MAX_PRIORITY',
    'Resources',
    'Unit',
    'Occupant',
    'Node',
    'PredicateResult',
    'FilterResult',
    'PriorityScore',
    'RankedNode',
    'VictimSet',
    'BindStatus',
    'UnitRef',
    'BindOutcome',
    'Predicate',
    'PredicateSet',
    'build_predicate_set',
    'PriorityFunction',
    'WeightedPriority',
    'ScoringAggregator',
    'build_aggregator',
    'PreemptionPolicy',
    'PreemptionEngine',
    'BindMode',
    'BindDelegate',
    'build_bind_delegate',
    'Phase',
    'Registry',
    'DecisionPipeline',
    'build_registry',
    'build_pipeline'
]
