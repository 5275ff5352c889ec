"""Background job payloads and the ledger record that carries them.

The closed set of job kinds is a tagged union: each payload type knows
its `JobKind`, and `payload_from_dict()` decodes by tag. Contact subsets
are not carried in payloads; handlers read them from the stage row.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from pydrip.models.execution import new_id, utcnow
from pydrip.models.status import JobKind, JobState


@dataclass(frozen=True)
class SendStageJob:
    """Send a stage's messages and advance past it."""

    kind: ClassVar[JobKind] = JobKind.SEND_STAGE

    execution_id: str
    stage_id: str
    node_id: str


@dataclass(frozen=True)
class VerifyConditionJob:
    """Evaluate a condition node and fan out to its branches."""

    kind: ClassVar[JobKind] = JobKind.VERIFY_CONDITION

    execution_id: str
    stage_id: str
    node_id: str


JobPayload = SendStageJob | VerifyConditionJob

_PAYLOAD_TYPES: dict[JobKind, type[SendStageJob] | type[VerifyConditionJob]] = {
    JobKind.SEND_STAGE: SendStageJob,
    JobKind.VERIFY_CONDITION: VerifyConditionJob,
}


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    return asdict(payload)


def payload_from_dict(kind: JobKind, data: dict[str, Any]) -> JobPayload:
    """Decode a payload by its tag.

    Raises:
        ValueError: If `data` does not match the payload type for `kind`
    """
    payload_type = _PAYLOAD_TYPES[kind]
    try:
        return payload_type(**data)
    except TypeError as e:
        raise ValueError(f"Malformed {kind} payload: {data!r}") from e


@dataclass
class DispatchedJob:
    """Ledger entry for one unit of background work.

    The ledger doubles as the work queue: workers claim QUEUED/RETRIED
    entries whose `available_at` has passed.
    """

    payload: JobPayload

    job_id: str = field(default_factory=new_id)

    state: JobState = JobState.QUEUED

    attempts: int = 0
    """Processing attempts so far; incremented when a worker claims the job."""

    error: str | None = None
    """Error from the last failed or deferred attempt."""

    locked_by: str | None = None
    """Worker id holding the job while PROCESSING."""

    available_at: datetime = field(default_factory=utcnow)
    """Earliest time a worker may claim the job."""

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def kind(self) -> JobKind:
        return self.payload.kind

    @property
    def execution_id(self) -> str:
        return self.payload.execution_id

    def __repr__(self) -> str:
        return (
            f"DispatchedJob(job_id={self.job_id}, kind={self.kind}, state={self.state}, "
            f"attempts={self.attempts}, stage_id={self.payload.stage_id})"
        )
