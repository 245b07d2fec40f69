"""
Collaborator interfaces consumed by the pipeline, with in-memory versions.

The pipeline only talks to storage, project context and notifications through
these protocols. The in-memory implementations back the CLI and the tests;
a deployment swaps in database- or queue-backed ones.
"""

from __future__ import annotations
import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .exceptions import JobNotFoundError, RequirementNotFoundError
from .models import (
    GeneratedTestCase,
    GenerationJob,
    JobStatus,
    Requirement,
    RequirementSection,
    StatusEvent,
    UsageRecord,
)

logger = logging.getLogger(__name__)


class RequirementStore(Protocol):
    async def get_document(self, requirement_id: str) -> Tuple[bytes, str]:
        """Raw upload bytes and declared media type."""
        ...

    async def get_extracted_text(self, requirement_id: str) -> Optional[str]:
        ...

    async def set_extracted_text(
        self,
        requirement_id: str,
        text: str,
        sections: Sequence[RequirementSection] = (),
        token_estimate: Optional[int] = None
    ) -> None:
        ...


class ContextProvider(Protocol):
    async def project_context(self, project_id: str) -> Dict[str, str]:
        """``{"name": ..., "description": ...}``"""
        ...

    async def recent_test_case_titles(self, project_id: str, limit: int) -> List[str]:
        ...


class JobRepository(Protocol):
    async def create_job(self, job: GenerationJob) -> GenerationJob:
        ...

    async def get_job(self, job_id: str) -> Optional[GenerationJob]:
        ...

    async def update_job_status(self, job_id: str, status: JobStatus, **fields) -> GenerationJob:
        ...

    async def save_generated_test_cases(self, job_id: str, test_cases: Sequence[GeneratedTestCase]) -> None:
        """Persist the whole batch or nothing."""
        ...


class UsageStore(Protocol):
    async def append(self, record: UsageRecord) -> None:
        ...

    async def records_for(
        self,
        requester_id: Optional[str] = None,
        project_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None
    ) -> List[UsageRecord]:
        ...


class NotificationSink(Protocol):
    async def publish(self, requester_id: str, event: StatusEvent) -> None:
        ...


# ==================== In-memory implementations ====================

class InMemoryRequirementStore:
    """Requirements kept in a dict; extracted text is write-once."""

    def __init__(self):
        self._requirements: Dict[str, Requirement] = {}
        self._documents: Dict[str, bytes] = {}

    def add(self, data: bytes, media_type: str, file_ref: str = "", requirement_id: Optional[str] = None) -> Requirement:
        kwargs = {"id": requirement_id} if requirement_id else {}
        requirement = Requirement(file_ref=file_ref or "memory", media_type=media_type, **kwargs)
        self._requirements[requirement.id] = requirement
        self._documents[requirement.id] = data
        return requirement

    def get(self, requirement_id: str) -> Optional[Requirement]:
        return self._requirements.get(requirement_id)

    def _require(self, requirement_id: str) -> Requirement:
        if requirement_id not in self._requirements:
            raise RequirementNotFoundError(f"Unknown requirement: {requirement_id}")
        return self._requirements[requirement_id]

    async def get_document(self, requirement_id: str) -> Tuple[bytes, str]:
        requirement = self._require(requirement_id)
        return self._documents[requirement_id], requirement.media_type

    async def get_extracted_text(self, requirement_id: str) -> Optional[str]:
        return self._require(requirement_id).extracted_text

    async def set_extracted_text(self, requirement_id, text, sections=(), token_estimate=None) -> None:
        requirement = self._require(requirement_id)
        if requirement.extracted_text is not None:
            logger.debug(f"Requirement {requirement_id} already extracted, keeping existing text")
            return
        requirement.extracted_text = text
        requirement.sections = list(sections)
        requirement.token_estimate = token_estimate


class StaticContextProvider:
    """Project context and existing test case titles from plain dicts."""

    def __init__(
        self,
        projects: Optional[Dict[str, Dict[str, str]]] = None,
        titles: Optional[Dict[str, List[str]]] = None
    ):
        self.projects = projects or {}
        self.titles = titles or {}

    async def project_context(self, project_id: str) -> Dict[str, str]:
        return self.projects.get(project_id, {"name": project_id, "description": ""})

    async def recent_test_case_titles(self, project_id: str, limit: int) -> List[str]:
        return list(self.titles.get(project_id, []))[:limit]


class InMemoryJobRepository:
    """Jobs and generated test cases in dicts; keeps each job's status history."""

    def __init__(self):
        self.jobs: Dict[str, GenerationJob] = {}
        self.test_cases: Dict[str, List[GeneratedTestCase]] = {}
        self.status_history: Dict[str, List[JobStatus]] = defaultdict(list)

    async def create_job(self, job: GenerationJob) -> GenerationJob:
        self.jobs[job.id] = job.model_copy()
        self.status_history[job.id].append(job.status)
        return job

    async def get_job(self, job_id: str) -> Optional[GenerationJob]:
        job = self.jobs.get(job_id)
        return job.model_copy() if job else None

    async def update_job_status(self, job_id: str, status: JobStatus, **fields) -> GenerationJob:
        if job_id not in self.jobs:
            raise JobNotFoundError(f"Unknown job: {job_id}")
        updated = self.jobs[job_id].model_copy(update={"status": status, **fields})
        self.jobs[job_id] = updated
        self.status_history[job_id].append(status)
        return updated.model_copy()

    async def save_generated_test_cases(self, job_id: str, test_cases: Sequence[GeneratedTestCase]) -> None:
        if job_id not in self.jobs:
            raise JobNotFoundError(f"Unknown job: {job_id}")
        # single assignment, so the batch lands whole or not at all
        self.test_cases[job_id] = [tc.model_copy(update={"job_id": job_id}) for tc in test_cases]


class InMemoryUsageStore:
    """Append-only list of usage records."""

    def __init__(self):
        self._records: List[UsageRecord] = []

    @property
    def records(self) -> List[UsageRecord]:
        return list(self._records)

    async def append(self, record: UsageRecord) -> None:
        self._records.append(record)

    async def records_for(self, requester_id=None, project_id=None, since=None, until=None) -> List[UsageRecord]:
        return [
            r for r in self._records
            if (requester_id is None or r.requester_id == requester_id)
            and (project_id is None or r.project_id == project_id)
            and (since is None or r.timestamp >= since)
            and (until is None or r.timestamp < until)
        ]


class QueueNotificationSink:
    """Collects events and fans them out to per-requester asyncio queues."""

    def __init__(self):
        self.events: List[Tuple[str, StatusEvent]] = []
        self._subscribers: Dict[str, List[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, requester_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[requester_id].append(queue)
        return queue

    def events_for(self, job_id: str) -> List[StatusEvent]:
        return [event for _, event in self.events if event.job_id == job_id]

    async def publish(self, requester_id: str, event: StatusEvent) -> None:
        self.events.append((requester_id, event))
        for queue in self._subscribers.get(requester_id, []):
            queue.put_nowait(event)


class LoggingNotificationSink:
    """Writes status events to the log."""

    async def publish(self, requester_id: str, event: StatusEvent) -> None:
        details = ""
        if event.generated_count is not None:
            details = f" ({event.generated_count} test cases)"
        if event.error_message:
            details = f" ({event.error_message})"
        logger.info(f"[{requester_id}] job {event.job_id}: {event.status.value}{details}")
