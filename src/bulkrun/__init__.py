"""Bulk task execution across a bounded pool of local or remote sessions."""

from bulkrun.config import EngineSettings
from bulkrun.context import RunContext, configure_logging
from bulkrun.engine import BulkEngine, run_bulk
from bulkrun.models import NamedResult, RunResult

__version__ = "0.1.0"

__all__ = [
    "BulkEngine",
    "EngineSettings",
    "NamedResult",
    "RunContext",
    "RunResult",
    "__version__",
    "configure_logging",
    "run_bulk",
]
