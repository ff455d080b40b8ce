"""Infrastructure modules for liquidation-sentinel"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .instance_lock import SingleInstanceLock  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .retry import RetryPolicy, compute_backoff, retry_async  # noqa: F401
from .state_store import JsonFileBackend, StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"SingleInstanceLock",
	"MetricsRecorder",
	"CycleStats",
	"RetryPolicy",
	"compute_backoff",
	"retry_async",
	"JsonFileBackend",
	"StateStore",
]
