from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ax2_studio.core.auth import AccountContext
from ax2_studio.core.blobs import BlobStore, delete_quietly
from ax2_studio.core.clock import Clock, utcnow
from ax2_studio.core.config import Settings, settings as default_settings
from ax2_studio.core.store import LedgerStore
from ax2_studio.ledger.credits import CreditLedger
from ax2_studio.providers.base import TranscriptSegment

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3
BASE_CAPACITY_GB = 1
CHARGED_CAPACITY_GB = 5
EXTENSION_KEY = "active"

# type -> (extra GB, retention days)
EXTENSIONS = {
    "plus": (5, 30),
    "pro": (20, 90),
}


class VideoArtifact(BaseModel):
    id: str
    job_id: str
    parent_job_id: Optional[str] = None
    title: str
    language_code: str
    is_original: bool = False
    transcript: List[TranscriptSegment] = Field(default_factory=list)
    duration: float = 0.0
    size_bytes: int = 0
    created_at: datetime
    expires_at: Optional[datetime] = None
    downloadable: bool = True
    is_free_trial: bool = False


class StorageExtension(BaseModel):
    type: Literal["plus", "pro"]
    purchased_at: datetime
    expires_at: datetime


@dataclass
class StorageQuota:
    capacity_gb: int
    period_days: int
    used_gb: float
    extension: Optional[str] = None


class StoragePolicy:
    def __init__(
        self,
        store: LedgerStore,
        ledger: CreditLedger,
        blobs: BlobStore,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.blobs = blobs
        self.settings = settings
        self.clock = clock

    def active_extension(self, account: AccountContext) -> Optional[StorageExtension]:
        tx = self.store.account(account.account_id)
        with tx.transaction():
            raw = tx.get("extension", EXTENSION_KEY)
            if not raw:
                return None
            extension = StorageExtension.model_validate(raw)
            if extension.expires_at <= self.clock():
                tx.delete("extension", EXTENSION_KEY)
                logger.info("Storage extension %s for %s expired", extension.type, account.account_id)
                return None
            return extension

    def purchase_extension(self, account: AccountContext, kind: str) -> StorageExtension:
        if kind not in EXTENSIONS:
            raise ValueError(f"unknown storage extension: {kind}")
        now = self.clock()
        extension = StorageExtension(
            type=kind,
            purchased_at=now,
            expires_at=now + timedelta(days=EXTENSIONS[kind][1]),
        )
        self.store.account(account.account_id).put("extension", EXTENSION_KEY, extension.model_dump(mode="json"))
        logger.info("Storage extension %s active for %s until %s", kind, account.account_id, extension.expires_at)
        return extension

    def get_storage_capacity(self, account: AccountContext) -> int:
        base = CHARGED_CAPACITY_GB if self.ledger.has_charged(account) else BASE_CAPACITY_GB
        extension = self.active_extension(account)
        if extension:
            return base + EXTENSIONS[extension.type][0]
        return base

    def get_storage_period(self, account: AccountContext) -> int:
        extension = self.active_extension(account)
        if extension:
            return EXTENSIONS[extension.type][1]
        return self.settings.retention_days

    def calculate_expiry_date(self, account: AccountContext) -> datetime:
        return self.clock() + timedelta(days=self.get_storage_period(account))

    def get_storage_quota(self, account: AccountContext) -> StorageQuota:
        self.cleanup_expired_videos(account)
        used = sum(a.size_bytes for a in self._artifacts(account))
        extension = self.active_extension(account)
        return StorageQuota(
            capacity_gb=self.get_storage_capacity(account),
            period_days=self.get_storage_period(account),
            used_gb=round(used / BYTES_PER_GB, 4),
            extension=extension.type if extension else None,
        )

    def list_artifacts(self, account: AccountContext) -> List[VideoArtifact]:
        self.cleanup_expired_videos(account)
        return self._artifacts(account)

    def get_artifact(self, account: AccountContext, artifact_id: str) -> Optional[VideoArtifact]:
        self.cleanup_expired_videos(account)
        raw = self.store.account(account.account_id).get("artifacts", artifact_id)
        return VideoArtifact.model_validate(raw) if raw else None

    def save_artifacts(self, account_id: str, artifacts: List[VideoArtifact]) -> None:
        tx = self.store.account(account_id)
        with tx.transaction():
            for artifact in artifacts:
                tx.put("artifacts", artifact.id, artifact.model_dump(mode="json"))

    def delete_job_artifacts(self, account_id: str, job_id: str) -> int:
        tx = self.store.account(account_id)
        with tx.transaction():
            doomed = [a["id"] for a in tx.values("artifacts") if a.get("job_id") == job_id]
            for artifact_id in doomed:
                tx.delete("artifacts", artifact_id)
        for artifact_id in doomed:
            delete_quietly(self.blobs, artifact_id)
        return len(doomed)

    def cleanup_expired_videos(self, account: AccountContext | None = None) -> int:
        """Evict artifacts whose expiry has passed; those without one are kept."""
        account_ids = [account.account_id] if account else self.store.account_ids()
        now = self.clock()
        removed = 0
        for account_id in account_ids:
            tx = self.store.account(account_id)
            with tx.transaction():
                expired = []
                for raw in tx.values("artifacts"):
                    artifact = VideoArtifact.model_validate(raw)
                    if artifact.expires_at and artifact.expires_at < now:
                        expired.append(artifact.id)
                for artifact_id in expired:
                    tx.delete("artifacts", artifact_id)
            for artifact_id in expired:
                logger.info("Expired artifact %s removed for %s", artifact_id, account_id)
                delete_quietly(self.blobs, artifact_id)
            removed += len(expired)
        if removed:
            logger.info("Retention sweep removed %s artifact(s)", removed)
        return removed

    def _artifacts(self, account: AccountContext) -> List[VideoArtifact]:
        return [VideoArtifact.model_validate(raw) for raw in self.store.account(account.account_id).values("artifacts")]


class RetentionSweeper:
    """Runs the expiry sweep once at start and then every ``interval_seconds``."""

    def __init__(self, policy: StoragePolicy, interval_seconds: float) -> None:
        self.policy = policy
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> int:
        removed = self.policy.cleanup_expired_videos()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="retention-sweeper", daemon=True)
        self._thread.start()
        return removed

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.policy.cleanup_expired_videos()
            except Exception:
                logger.exception("Retention sweep failed")
