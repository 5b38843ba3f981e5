"""
Model Health Registry
=====================

Per-model success/failure counters, latency and cooldown windows, shared by
every hyle process in a working directory.

The record lives in ``.hyle/model_health.json`` and is only ever changed
under ``.hyle/model_health.lock`` with an atomic rewrite, so a rate-limit
cooldown recorded by one process is honored by all the others.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from hyle.failures import FailureKind
from hyle.locking import AdvisoryLock, atomic_write_json, read_json, DEFAULT_LOCK_TIMEOUT

logger = logging.getLogger(__name__)

HEALTH_FILE = "model_health.json"
HEALTH_LOCK = "model_health.lock"

LATENCY_SMOOTHING = 0.3
DEGRADED_AFTER_FAILURES = 2

# Bad credentials and similar keep a model out of every rotation this long,
# or until `hyle health reset`.
FATAL_COOLDOWN_SECONDS = 3600.0


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"


@dataclass
class ModelHealth:
    """Observed health of one model."""
    model_id: str
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    rolling_avg_latency: float = 0.0
    cooldown_until: Optional[float] = None  # epoch seconds
    status: HealthStatus = HealthStatus.HEALTHY
    last_failure_kind: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ModelHealth":
        data = dict(data)
        data["status"] = HealthStatus(data.get("status", "healthy"))
        return cls(**data)

    def cooldown_remaining(self, now: Optional[float] = None) -> float:
        if self.cooldown_until is None:
            return 0.0
        return max(0.0, self.cooldown_until - (now if now is not None else time.time()))

    def is_available(self, now: Optional[float] = None) -> bool:
        """False while cooling down."""
        return self.cooldown_remaining(now) <= 0.0

    def is_broken(self, now: Optional[float] = None) -> bool:
        """True inside the cooldown that follows a fatal failure. Not worth waiting for."""
        return (
            self.status == HealthStatus.UNAVAILABLE
            and self.last_failure_kind == FailureKind.FATAL.value
            and self.cooldown_remaining(now) > 0.0
        )

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        return self.success_count / total if total else 1.0


class ModelHealthRegistry:
    """
    Lock-guarded, file-backed map of model id to ModelHealth.

    Every read-modify-write happens inside one lock hold; nothing is cached
    between calls.
    """

    def __init__(
        self,
        state_dir: Path,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.state_dir / HEALTH_FILE
        self.lock_path = self.state_dir / HEALTH_LOCK
        self.lock_timeout = lock_timeout
        self.clock = clock

    def _load(self) -> Dict[str, ModelHealth]:
        if not self.path.exists():
            return {}
        data = read_json(self.path)
        return {k: ModelHealth.from_dict(v) for k, v in data.get("models", {}).items()}

    def _save(self, records: Dict[str, ModelHealth]) -> None:
        atomic_write_json(self.path, {"models": {k: v.to_dict() for k, v in records.items()}})

    @contextmanager
    def _edit(self, model_id: str) -> Iterator[ModelHealth]:
        with AdvisoryLock(self.lock_path, self.lock_timeout):
            records = self._load()
            record = records.get(model_id) or ModelHealth(model_id=model_id)
            yield record
            records[model_id] = record
            self._save(records)

    def get(self, model_id: str) -> ModelHealth:
        with AdvisoryLock(self.lock_path, self.lock_timeout):
            return self._load().get(model_id) or ModelHealth(model_id=model_id)

    def all(self) -> List[ModelHealth]:
        with AdvisoryLock(self.lock_path, self.lock_timeout):
            return sorted(self._load().values(), key=lambda h: h.model_id)

    def record_success(self, model_id: str, latency: float) -> ModelHealth:
        with self._edit(model_id) as record:
            record.success_count += 1
            record.consecutive_failures = 0
            if record.rolling_avg_latency == 0.0:
                record.rolling_avg_latency = latency
            else:
                record.rolling_avg_latency = (
                    LATENCY_SMOOTHING * latency + (1 - LATENCY_SMOOTHING) * record.rolling_avg_latency
                )
            record.cooldown_until = None
            record.status = HealthStatus.HEALTHY
        return record

    def record_failure(
        self,
        model_id: str,
        kind: FailureKind,
        error: str = "",
        latency: Optional[float] = None,
        cooldown_seconds: Optional[float] = None,
    ) -> ModelHealth:
        """
        Count a failed attempt and, when ``cooldown_seconds`` is given, keep
        the model out of rotation for that long.
        """
        now = self.clock()
        with self._edit(model_id) as record:
            record.failure_count += 1
            record.consecutive_failures += 1
            record.last_failure_kind = kind.value
            record.last_error = error[:500]
            if latency is not None and record.rolling_avg_latency:
                record.rolling_avg_latency = (
                    LATENCY_SMOOTHING * latency + (1 - LATENCY_SMOOTHING) * record.rolling_avg_latency
                )
            if cooldown_seconds is not None:
                # Never shorten a cooldown another process already recorded.
                record.cooldown_until = max(record.cooldown_until or 0.0, now + cooldown_seconds)

            if kind == FailureKind.FATAL:
                record.status = HealthStatus.UNAVAILABLE
                record.cooldown_until = max(record.cooldown_until or 0.0, now + FATAL_COOLDOWN_SECONDS)
            elif kind == FailureKind.RATE_LIMIT:
                record.status = HealthStatus.RATE_LIMITED
            elif kind == FailureKind.MODEL_SPECIFIC:
                record.status = HealthStatus.UNAVAILABLE
            elif record.consecutive_failures >= DEGRADED_AFTER_FAILURES:
                record.status = HealthStatus.DEGRADED
        logger.debug("Model %s failure (%s), status %s", model_id, kind.value, record.status.value)
        return record

    def reset(self, model_id: Optional[str] = None) -> List[str]:
        """
        Forget a model (e.g. after fixing credentials), or every model when
        ``model_id`` is None. Returns the ids that were cleared.
        """
        with AdvisoryLock(self.lock_path, self.lock_timeout):
            records = self._load()
            if model_id is None:
                cleared = sorted(records)
                records = {}
            else:
                cleared = [model_id] if records.pop(model_id, None) is not None else []
            self._save(records)
        return cleared


def create_model_health_registry(project_dir: Path) -> ModelHealthRegistry:
    """Registry stored in the project's .hyle directory."""
    return ModelHealthRegistry(Path(project_dir) / ".hyle")
