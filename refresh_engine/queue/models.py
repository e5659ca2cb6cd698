from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, Optional

from refresh_engine.cache.redis_client import as_str


class JobStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETE   = "complete"
    FAILED     = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)


class Outcome(str, Enum):
    ADMITTED       = "admitted"
    ALREADY_FRESH  = "already_fresh"
    ALREADY_QUEUED = "already_queued"


@dataclass(frozen=True)
class Admission:
    outcome: Outcome
    job_id:  Optional[str] = None   # new job (admitted) or the outstanding one (queued)

    @classmethod
    def from_reply(cls, reply) -> "Admission":
        kind, _, job_id = as_str(reply).partition(":")
        if kind == "admitted":
            return cls(Outcome.ADMITTED, job_id)
        if kind == "queued":
            return cls(Outcome.ALREADY_QUEUED, job_id)
        if kind == "fresh":
            return cls(Outcome.ALREADY_FRESH)
        raise ValueError(f"unexpected admission reply: {reply!r}")


def pending_rank(priority: int, created_at: float) -> float:
    """Lower sorts first: higher priority wins, then older jobs."""
    return -priority * 1e10 + created_at


def _f(raw: Dict[str, str], name: str) -> Optional[float]:
    v = raw.get(name)
    return float(v) if v not in (None, "") else None


@dataclass
class QueueJob:
    id:                 str
    entity_key:         str
    data_type:          str
    status:             JobStatus
    priority:           int
    created_at:         float
    eligible_at:        float
    attempt_count:      int = 1
    claimed_at:         Optional[float] = None
    worker_id:          Optional[str] = None
    finished_at:        Optional[float] = None
    last_error:         Optional[str] = None
    error_category:     Optional[str] = None
    wire_bytes:         Optional[int] = None
    source_ts:          Optional[float] = None
    baseline_source_ts: Optional[float] = None
    parent_id:          Optional[str] = None

    @classmethod
    def from_hash(cls, raw: Dict) -> "QueueJob":
        raw = {as_str(k): as_str(v) for k, v in raw.items()}
        wire = _f(raw, "wire_bytes")
        return cls(
            id                 = raw["id"],
            entity_key         = raw["entity_key"],
            data_type          = raw["data_type"],
            status             = JobStatus(raw["status"]),
            priority           = int(raw.get("priority") or 0),
            created_at         = float(raw["created_at"]),
            eligible_at        = float(raw.get("eligible_at") or raw["created_at"]),
            attempt_count      = int(raw.get("attempt_count") or 1),
            claimed_at         = _f(raw, "claimed_at"),
            worker_id          = raw.get("worker_id") or None,
            finished_at        = _f(raw, "finished_at"),
            last_error         = raw.get("last_error") or None,
            error_category     = raw.get("error_category") or None,
            wire_bytes         = int(wire) if wire is not None else None,
            source_ts          = _f(raw, "source_ts"),
            baseline_source_ts = _f(raw, "baseline_source_ts"),
            parent_id          = raw.get("parent_id") or None,
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d
