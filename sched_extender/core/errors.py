"""
Error taxonomy for the decision pipeline

Per-node and per-function failures are contained inside the pipeline
(fail-closed predicates, zero-weight scorers). Only call-level failures
are raised as exceptions and surfaced to the caller.
"""


class ExtenderError(Exception):
    """Base class for call-level extender failures"""

    # HTTP status the routing layer answers with
    status_code = 500
    reason = "internal-error"


class WireFormatError(ExtenderError):
    """Request payload could not be decoded"""

    status_code = 400
    reason = "malformed-input"


class ConfigError(ExtenderError):
    """Invalid extender configuration"""

    reason = "invalid-config"


class NodeResolutionError(ExtenderError):
    """Node snapshots were requested by name but cannot be resolved"""

    status_code = 400
    reason = "unresolvable-nodes"


class DecisionTimeout(ExtenderError):
    """The call exceeded its deadline before producing a complete result"""

    status_code = 504
    reason = "timeout"


class DecisionCancelled(ExtenderError):
    """The caller abandoned the call"""

    status_code = 499
    reason = "cancelled"


class BindConflict(ExtenderError):
    """The cluster rejected the binding because the target changed underneath us"""

    status_code = 409
    reason = "conflict"


class UnknownFunctionError(ExtenderError):
    """A single-predicate or single-priority route named a function that is not registered"""

    status_code = 404
    reason = "unknown-function"
