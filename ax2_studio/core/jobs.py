from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ax2_studio.core.auth import AccountContext
from ax2_studio.core.clock import Clock, utcnow
from ax2_studio.core.errors import JobNotFoundError, JobStateError
from ax2_studio.core.store import LedgerStore


class JobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}

JOB_TRANSITIONS: Dict[JobState, Set[JobState]] = {
    JobState.PENDING: {JobState.PROCESSING, JobState.FAILED},
    JobState.PROCESSING: {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
    JobState.CANCELLED: set(),
}


class VideoMetadata(BaseModel):
    video_id: str
    file_name: str = "video.mp4"
    duration: float
    size_bytes: int = 0
    content_type: str = "video/mp4"
    source_path: Optional[str] = None


class Job(BaseModel):
    id: str
    account_id: str
    video_id: str
    status: JobState = JobState.PENDING
    progress: float = 0.0
    status_text: str = ""
    created_at: datetime
    updated_at: datetime
    file_name: str = ""
    duration: float = 0.0
    original_lang: str = "auto"
    target_languages: List[str] = Field(default_factory=list)
    required_credits: int = 0
    is_free_trial: bool = False
    reserved_id: Optional[str] = None
    error: Optional[str] = None
    error_message: Optional[str] = None
    reason: Optional[str] = None
    failed_languages: List[str] = Field(default_factory=list)
    refunded_amount: int = 0
    artifact_ids: List[str] = Field(default_factory=list)
    source_path: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class JobStore:
    def __init__(self, store: LedgerStore, clock: Clock = utcnow) -> None:
        self.store = store
        self.clock = clock

    def create(self, account: AccountContext, video: VideoMetadata, **fields) -> Job:
        now = self.clock()
        job = Job(
            id=str(uuid.uuid4()),
            account_id=account.account_id,
            video_id=video.video_id,
            file_name=video.file_name,
            duration=video.duration,
            source_path=video.source_path,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.store.account(account.account_id).put("jobs", job.id, job.model_dump(mode="json"))
        return job

    def get(self, account_id: str, job_id: str) -> Optional[Job]:
        raw = self.store.account(account_id).get("jobs", job_id)
        return Job.model_validate(raw) if raw else None

    def list(self, account_id: str) -> List[Job]:
        return [Job.model_validate(raw) for raw in self.store.account(account_id).values("jobs")]

    def update(self, account_id: str, job_id: str, **updates) -> Job:
        """Change fields other than ``status``; terminal jobs only accept no-ops."""
        tx = self.store.account(account_id)
        with tx.transaction():
            current = self._require(account_id, job_id)
            if current.is_terminal:
                raise JobStateError(f"job {job_id} is {current.status.value}")
            return self._write(current, updates)

    def transition(self, account_id: str, job_id: str, status: JobState, **updates) -> Job:
        tx = self.store.account(account_id)
        with tx.transaction():
            current = self._require(account_id, job_id)
            if status not in JOB_TRANSITIONS[current.status]:
                raise JobStateError(f"job {job_id} cannot move from {current.status.value} to {status.value}")
            updates["status"] = status
            return self._write(current, updates)

    def _require(self, account_id: str, job_id: str) -> Job:
        job = self.get(account_id, job_id)
        if not job:
            raise JobNotFoundError(f"job {job_id} not found")
        return job

    def _write(self, current: Job, updates: dict) -> Job:
        payload = current.model_dump()
        payload.update(updates)
        payload["updated_at"] = self.clock()
        job = Job(**payload)
        self.store.account(current.account_id).put("jobs", job.id, job.model_dump(mode="json"))
        return job
