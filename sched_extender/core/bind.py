"""
Bind delegation

The mode is fixed at configuration time:
- declining: every bind answers "unsupported" and nothing is committed
- delegating: one commit attempt against the cluster binder per call
"""

import threading
from enum import Enum
from typing import Optional

from ..utils.logger import get_logger
from .errors import BindConflict, ConfigError
from .models import BindOutcome, BindStatus, UnitRef

logger = get_logger("BindDelegate")

NO_BIND_MESSAGE = ("This extender doesn't support Bind.  "
                   "Please make 'BindVerb' be empty in your ExtenderConfig.")


class BindMode(str, Enum):
    DELEGATING = "delegating"
    DECLINING = "declining"


class BindDelegate:
    """
    Performs or declines the final unit -> node commit

    The binder collaborator must expose
    ``bind_pod(namespace, name, uid, node)`` and raise BindConflict when
    the cluster rejects the binding as stale. No retries happen here.
    """

    def __init__(self, mode: BindMode = BindMode.DECLINING, binder=None):
        self.mode = BindMode(mode)
        if self.mode == BindMode.DELEGATING and binder is None:
            raise ConfigError("Delegating bind mode requires a cluster binder")
        self.binder = binder
        self._in_flight = set()
        self._lock = threading.Lock()

    @property
    def supports_bind(self) -> bool:
        return self.mode == BindMode.DELEGATING

    def bind(self, unit: UnitRef, node: str) -> BindOutcome:
        if self.mode == BindMode.DECLINING:
            logger.debug(f"Bind {unit.key} -> {node} declined (extender does not bind)")
            return BindOutcome(
                status=BindStatus.UNSUPPORTED,
                node=node,
                error=NO_BIND_MESSAGE,
                retryable=False
            )

        with self._lock:
            if unit.key in self._in_flight:
                logger.warning(f"Bind {unit.key} -> {node} rejected: bind already in progress")
                return BindOutcome(
                    status=BindStatus.CONFLICT,
                    node=node,
                    error=f"bind of {unit.key} already in progress",
                    retryable=True
                )
            self._in_flight.add(unit.key)

        try:
            self.binder.bind_pod(unit.namespace, unit.name, unit.uid, node)
        except BindConflict as e:
            logger.warning(f"Bind {unit.key} -> {node} conflict: {e}")
            return BindOutcome(status=BindStatus.CONFLICT, node=node,
                               error=str(e), retryable=True)
        except Exception as e:
            logger.error(f"Bind {unit.key} -> {node} failed: {e}")
            return BindOutcome(status=BindStatus.FAILED, node=node,
                               error=str(e), retryable=True)
        finally:
            with self._lock:
                self._in_flight.discard(unit.key)

        logger.info(f"✅ Bound {unit.key} -> {node}")
        return BindOutcome(status=BindStatus.BOUND, node=node)


def build_bind_delegate(mode: str, binder: Optional[object] = None) -> BindDelegate:
    try:
        bind_mode = BindMode(mode)
    except ValueError:
        raise ConfigError(f"Unknown bind mode: {mode} "
                          f"(expected one of {[m.value for m in BindMode]})")
    return BindDelegate(bind_mode, binder)
