"""
engine.py
Boundary between the cache layer and the scanning engine that consumes the
verified database.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List

from typing_extensions import Protocol, runtime_checkable

from nvdsync.utils.errors import EngineError, NvdSyncError
from nvdsync.utils.update_coordinator import UpdateOutcome

logger = logging.getLogger(__name__)


@runtime_checkable
class ScanEngine(Protocol):
    """Anything that can analyze dependencies against a local vulnerability database."""

    def analyze(self, database_path: Path, dependencies: List[str]) -> Any:
        ...


@dataclass
class AnalysisResult:
    success: bool
    offline: bool = False
    findings: Any = None
    errors: List[str] = field(default_factory=list)


def run_analysis(engine: ScanEngine, outcome: UpdateOutcome, database_path: Path,
                 dependencies: List[str], tolerate_engine_errors: bool = False,
                 allow_degraded: bool = True) -> AnalysisResult:
    """
    Hand the database to the engine after an update run.

    A degraded update still runs the engine against whatever local data exists,
    unless allow_degraded is False. Engine failures are raised as EngineError,
    or recorded in the result when tolerate_engine_errors is set.
    """
    offline = outcome.degraded
    if offline and not allow_degraded:
        raise EngineError(f"Database update failed and degraded mode is disabled: {outcome.error}")
    if offline:
        logger.warning("Running analysis offline against existing local data")

    try:
        findings = engine.analyze(Path(database_path), list(dependencies))
    except EngineError as e:
        error = e
    except (NvdSyncError, OSError, RuntimeError, ValueError) as e:
        error = EngineError(f"Engine failed: {e}")
        error.__cause__ = e
    else:
        return AnalysisResult(True, offline=offline, findings=findings)

    if not tolerate_engine_errors:
        raise error
    logger.error(f"Engine error tolerated: {error}")
    return AnalysisResult(False, offline=offline, errors=[str(error)])
