"""Models: Persisted job and result state for the feed bridge.

The persisted snapshot keeps the key names used on disk by earlier
deployments of the bridge, so an existing state file loads unchanged:

.. code-block:: json

    {
      "jobs": [
        {"job": "a1b2", "name": "ATOM-USD", "request_id": 4,
         "last_request_sent": 1700000000.0, "last_reported_round": 12}
      ],
      "previous_results": {
        "ATOM-USD": {"id": "a1b2", "result": 9.87, "request_id": 4,
                     "round": {"roundId": 12, "startedBy": "agoric1...",
                               "submissionMade": true}}
      }
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class RequestReason(IntEnum):
    """Why an observation request was sent to the executor.

    The integer values travel over the wire as ``request_type``.
    """

    HEARTBEAT = 1
    DEVIATION = 2
    NEW_ROUND = 3

    @classmethod
    def parse(cls, value: Any) -> RequestReason | None:
        """Parse a wire ``request_type``.

        :param value: Integer or numeric string.
        :returns: Matching reason, or None if unknown.
        """
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return None


@dataclass
class RoundSnapshot:
    """Round metadata as observed on the ledger at one point in time.

    :ivar round_id: Ledger round number.
    :ivar started_by: Account that opened the round.
    :ivar submission_made: Whether this bridge's account already closed it.
    """

    round_id: int
    started_by: str | None = None
    submission_made: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "roundId": self.round_id,
            "startedBy": self.started_by,
            "submissionMade": self.submission_made,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RoundSnapshot | None:
        # Never-observed rounds are persisted as an empty object
        if not data or data.get("roundId") is None:
            return None
        return cls(
            round_id=int(data["roundId"]),
            started_by=data.get("startedBy"),
            submission_made=bool(data.get("submissionMade", False)),
        )


@dataclass
class Job:
    """A tracked feed.

    :ivar name: Unique feed name (e.g. "ATOM-USD").
    :ivar external_job_id: Executor-side job identifier.
    :ivar request_id: Last request id issued for this job.
    :ivar last_request_sent_at: Unix timestamp of the last dispatch.
    :ivar last_reported_round: Highest round this bridge has closed.
    """

    name: str
    external_job_id: str
    request_id: int = 0
    last_request_sent_at: float = 0.0
    last_reported_round: int = 0

    def next_request(self, now: float) -> int:
        """Issue the next request id and stamp the send time.

        :param now: Current Unix timestamp.
        :returns: The new request id.
        """
        self.request_id += 1
        self.last_request_sent_at = now
        return self.request_id

    def advance_reported_round(self, round_id: int) -> bool:
        """Move the watermark forward, never backward.

        :param round_id: Round that is now known to be closed.
        :returns: True if the watermark moved.
        """
        if round_id <= self.last_reported_round:
            return False
        self.last_reported_round = round_id
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.external_job_id,
            "name": self.name,
            "request_id": self.request_id,
            "last_request_sent": self.last_request_sent_at,
            "last_reported_round": self.last_reported_round,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            name=data["name"],
            external_job_id=str(data["job"]),
            request_id=int(data.get("request_id") or 0),
            last_request_sent_at=float(data.get("last_request_sent") or 0.0),
            last_reported_round=int(data.get("last_reported_round") or 0),
        )


@dataclass
class PreviousResult:
    """Last observed price and round for a job.

    :ivar external_job_id: Executor-side job identifier.
    :ivar result: Last observed on-ledger price (0 when never observed).
    :ivar last_request_id: Request id of the most recently ingested result.
    :ivar round: Cached round snapshot, None until first observed.
    """

    external_job_id: str
    result: float = 0.0
    last_request_id: int = 0
    round: RoundSnapshot | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.external_job_id,
            "result": self.result,
            "request_id": self.last_request_id,
            "round": self.round.to_dict() if self.round else {},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PreviousResult:
        return cls(
            external_job_id=str(data.get("id", "")),
            result=float(data.get("result") or 0.0),
            last_request_id=int(data.get("request_id") or 0),
            round=RoundSnapshot.from_dict(data.get("round")),
        )


@dataclass
class Snapshot:
    """The persisted unit: every job plus its previous result.

    :ivar jobs: Tracked jobs in registration order.
    :ivar previous_results: PreviousResult per job name.
    """

    jobs: list[Job] = field(default_factory=list)
    previous_results: dict[str, PreviousResult] = field(default_factory=dict)

    def get_job(self, name: str) -> Job | None:
        for job in self.jobs:
            if job.name == name:
                return job
        return None

    def find_by_external_id(self, external_job_id: str) -> Job | None:
        for job in self.jobs:
            if job.external_job_id == external_job_id:
                return job
        return None

    def add_job(self, external_job_id: str, name: str) -> Job:
        """Register a job, creating its PreviousResult in the same step.

        Re-registering an existing name rebinds it to the new external id
        and keeps its request counter and watermark.

        :param external_job_id: Executor-side job identifier.
        :param name: Feed name.
        :returns: The registered job.
        """
        job = self.get_job(name)
        if job is None:
            job = Job(name=name, external_job_id=external_job_id)
            self.jobs.append(job)
        else:
            job.external_job_id = external_job_id

        previous = self.previous_results.get(name)
        if previous is None:
            self.previous_results[name] = PreviousResult(external_job_id=external_job_id)
        else:
            previous.external_job_id = external_job_id
        return job

    def remove_job(self, external_job_id: str) -> Job | None:
        """Remove a job and its PreviousResult together.

        :param external_job_id: Executor-side job identifier.
        :returns: The removed job, or None if no job matched.
        """
        job = self.find_by_external_id(external_job_id)
        if job is None:
            return None
        self.jobs.remove(job)
        self.previous_results.pop(job.name, None)
        return job

    def ensure_previous_results(self) -> list[str]:
        """Create a PreviousResult for every job that lacks one.

        :returns: Names of the jobs that were repaired.
        """
        repaired = []
        for job in self.jobs:
            if job.name not in self.previous_results:
                self.previous_results[job.name] = PreviousResult(
                    external_job_id=job.external_job_id
                )
                repaired.append(job.name)
        return repaired

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobs": [job.to_dict() for job in self.jobs],
            "previous_results": {
                name: previous.to_dict()
                for name, previous in self.previous_results.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        jobs = [Job.from_dict(entry) for entry in data.get("jobs", [])]
        previous_results = {
            name: PreviousResult.from_dict(entry)
            for name, entry in (data.get("previous_results") or {}).items()
        }
        return cls(jobs=jobs, previous_results=previous_results)
