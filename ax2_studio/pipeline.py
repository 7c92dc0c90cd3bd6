"""Translation job lifecycle.

A job is created PENDING, holds a credit reservation while PROCESSING and
ends COMPLETED, FAILED or CANCELLED. Whatever ends a job after the
reservation was taken, the reservation is settled before the terminal state
is written: confirmed on success, refunded on every failure path.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from ax2_studio.core.auth import AccountContext
from ax2_studio.core.blobs import BlobStore, put_with_retry
from ax2_studio.core.clock import Clock, utcnow
from ax2_studio.core.config import Settings, settings as default_settings
from ax2_studio.core.errors import (
    FreeTrialUnavailableError,
    InsufficientCreditsError,
    JobCancelledError,
    JobNotFoundError,
    JobStateError,
    JobTimeoutError,
    ReservationClosedError,
    StorageWriteError,
    SttFailure,
    TranslationFailure,
    UnknownProcessingError,
)
from ax2_studio.core.events import EventBus, job_topic
from ax2_studio.core.jobs import Job, JobState, JobStore, VideoMetadata
from ax2_studio.core.storage import StoragePolicy, VideoArtifact
from ax2_studio.core.store import LedgerStore
from ax2_studio.ledger.credits import (
    CREDITS_PER_LANGUAGE,
    CreditLedger,
    ReservationResult,
    affordable_language_count,
    compute_required_credits,
)
from ax2_studio.ledger.free_trial import Eligibility, FreeTrialGate
from ax2_studio.providers.base import SpeechBackend, Transcript, TranscriptSegment, TranslationBackend

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.05


@dataclass
class ScopeOffer:
    requested_languages: List[str]
    affordable_languages: List[str]
    required: int
    reduced_required: int
    balance: int


@dataclass
class JobResult:
    job_id: str
    status: JobState
    message: str
    error: Optional[str] = None
    reason: Optional[str] = None
    refunded_amount: int = 0
    failed_languages: List[str] = field(default_factory=list)
    artifact_ids: List[str] = field(default_factory=list)


@dataclass
class _JobRun:
    account: AccountContext
    source_path: Optional[str] = None
    lock: threading.RLock = field(default_factory=threading.RLock)
    cancelled: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)


Decision = Union[bool, Callable[..., bool], None]


def describe_job(duration: float, language_count: int) -> str:
    minutes, seconds = int(duration // 60), int(duration % 60)
    return f"Subtitle generation ({minutes}m {seconds}s, {language_count} languages)"


class JobLifecycle:
    def __init__(
        self,
        store: LedgerStore,
        ledger: CreditLedger,
        trial_gate: FreeTrialGate,
        storage: StoragePolicy,
        speech: SpeechBackend,
        translator: TranslationBackend,
        blobs: BlobStore,
        bus: EventBus | None = None,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.ledger = ledger
        self.trial_gate = trial_gate
        self.storage = storage
        self.speech = speech
        self.translator = translator
        self.blobs = blobs
        self.bus = bus or ledger.bus
        self.settings = settings
        self.clock = clock
        self.jobs = JobStore(store, clock)
        self.executor = executor or ThreadPoolExecutor(
            max_workers=settings.worker_threads, thread_name_prefix="job"
        )
        self._backend_pool = ThreadPoolExecutor(
            max_workers=settings.worker_threads * 2, thread_name_prefix="backend"
        )
        self._runs: Dict[str, _JobRun] = {}
        self._runs_lock = threading.Lock()

    # Public surface

    def subscribe(self, job_id: str, callback: Callable[..., None]) -> Callable[[], None]:
        """Receive ``progress_percent``, ``status_text`` and ``status`` for a job."""
        return self.bus.subscribe(job_topic(job_id), callback)

    def submit_translation_job(
        self,
        account: AccountContext,
        video: VideoMetadata,
        original_lang: str,
        target_langs: List[str],
        accept_free_trial: Decision = False,
        accept_reduced_scope: Decision = False,
    ) -> str:
        """Create a job, settle free trial and pricing, and queue processing.

        ``accept_free_trial`` and ``accept_reduced_scope`` answer the two
        questions the lifecycle can put to the user: a bool, or a callable
        receiving the :class:`Eligibility` / :class:`ScopeOffer`.
        A job that cannot be paid for ends FAILED with INSUFFICIENT_CREDITS
        and nothing deducted; its id is still returned.
        """
        if video.duration < 0:
            raise ValueError("video duration must be non-negative")
        languages = list(dict.fromkeys(target_langs))
        required = compute_required_credits(video.duration, len(languages))
        job = self.jobs.create(
            account,
            video,
            original_lang=original_lang,
            target_languages=languages,
            required_credits=required,
        )
        run = _JobRun(account=account, source_path=video.source_path)
        with self._runs_lock:
            self._runs[job.id] = run
        logger.info("Job %s created for %s (%s languages, %s credits)", job.id, account.account_id, len(languages), required)

        is_free_trial = self._offer_free_trial(account, video.duration, len(languages), accept_free_trial)
        if is_free_trial:
            self.jobs.update(account.account_id, job.id, is_free_trial=True)

        try:
            reservation = self.ledger.reserve(account, job.id, required)
        except InsufficientCreditsError as exc:
            reservation = self._reduce_scope(run, job, languages, exc, accept_reduced_scope)
            if reservation is None:
                self._finish(
                    run,
                    job.id,
                    JobState.FAILED,
                    error=exc.code,
                    error_message=str(exc),
                    status_text=(
                        f"Not enough credits: {exc.required} required, {exc.balance} available. "
                        "No credits were deducted."
                    ),
                )
                self._discard_upload(video.source_path)
                return job.id

        try:
            self.jobs.update(account.account_id, job.id, reserved_id=reservation.reserved_id)
            self.jobs.transition(
                account.account_id,
                job.id,
                JobState.PROCESSING,
                progress=10.0,
                status_text="Video analysis complete",
            )
            self._publish(job.id, 10.0, "Video analysis complete", JobState.PROCESSING)
            self.executor.submit(self.run_job, job.id)
        except Exception as exc:
            logger.exception("Starting job %s failed", job.id)
            self._abort(run, job.id, UnknownProcessingError.code, "Refund for a job that could not start", str(exc),
                        "The job could not be started. {refunded} credits were refunded.",
                        reserved_id=reservation.reserved_id)
            raise
        return job.id

    def cancel_job(self, account: AccountContext, job_id: str) -> Job:
        job = self.jobs.get(account.account_id, job_id)
        if not job:
            raise JobNotFoundError(f"job {job_id} not found")
        with self._runs_lock:
            run = self._runs.get(job_id) or _JobRun(account=account)
        with run.lock:
            job = self.jobs.get(account.account_id, job_id)
            if job.status != JobState.PROCESSING:
                raise JobStateError(f"job {job_id} is {job.status.value} and cannot be cancelled")
            refunded = self._refund(run.account, job, "Refund for user cancellation")
            run.cancelled.set()
            self.storage.delete_job_artifacts(account.account_id, job_id)
            logger.info("Job %s cancelled by user, %s credits refunded", job_id, refunded)
            cancelled = self._finish(
                run,
                job_id,
                JobState.CANCELLED,
                reason="USER_CANCELLED",
                refunded_amount=refunded,
                status_text=f"Cancelled by user. {refunded} credits were refunded.",
            )
        self._discard_upload(job.source_path)
        return cancelled

    def get_job(self, account: AccountContext, job_id: str) -> Job:
        job = self.jobs.get(account.account_id, job_id)
        if not job:
            raise JobNotFoundError(f"job {job_id} not found")
        return job

    def result(self, account: AccountContext, job_id: str) -> JobResult:
        job = self.get_job(account, job_id)
        return JobResult(
            job_id=job.id,
            status=job.status,
            message=job.status_text,
            error=job.error,
            reason=job.reason,
            refunded_amount=job.refunded_amount,
            failed_languages=list(job.failed_languages),
            artifact_ids=list(job.artifact_ids),
        )

    def wait(self, account: AccountContext, job_id: str, timeout: float | None = None) -> JobResult:
        with self._runs_lock:
            run = self._runs.get(job_id)
        if run is not None:
            run.done.wait(timeout)
        return self.result(account, job_id)

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)
        self._backend_pool.shutdown(wait=False, cancel_futures=True)

    def recover_interrupted_jobs(self) -> int:
        """Fail and refund jobs that no worker is driving, such as those cut off by a restart.

        Reservations still held for a finished or missing job are refunded too.
        Returns the number of jobs moved to FAILED.
        """
        recovered = 0
        for account_id in self.jobs.store.account_ids():
            account = AccountContext(account_id=account_id)
            for job in self.jobs.list(account_id):
                if job.is_terminal or self._is_running(job.id):
                    continue
                run = _JobRun(account=account, source_path=job.source_path)
                self._abort(run, job.id, UnknownProcessingError.code, "Refund for an interrupted job",
                            "processing was interrupted", "Processing was interrupted. {refunded} credits were refunded.")
                if self.jobs.get(account_id, job.id).is_terminal:
                    recovered += 1
            for reservation in self.ledger.open_reservations(account):
                job = self.jobs.get(account_id, reservation.job_id)
                if self._is_running(reservation.job_id) or (job and not job.is_terminal):
                    continue
                self.ledger.refund_credits(account, reservation.id, reservation.job_id, "Refund for an unsettled reservation")
        if recovered:
            logger.warning("Recovered %s interrupted job(s)", recovered)
        return recovered

    # Processing

    def run_job(self, job_id: str) -> None:
        with self._runs_lock:
            run = self._runs.get(job_id)
        if run is None:
            return
        account = run.account
        job = self.jobs.get(account.account_id, job_id)
        if job is None or job.status != JobState.PROCESSING:
            return

        try:
            self._progress(run, job_id, 15.0, "Recognizing speech...")
            try:
                transcript = self._call(run, self.speech.transcribe, job_id, job.duration, job.original_lang)
            except SttFailure as exc:
                logger.error("Speech recognition failed for job %s: %s", job_id, exc)
                self._abort(run, job_id, exc.code, "Refund for failed speech recognition", str(exc),
                            "Speech recognition failed. {refunded} credits were refunded.")
                return
            self._progress(run, job_id, 50.0, "Speech recognition complete", original_lang=transcript.language)

            translations: Dict[str, List[TranscriptSegment]] = {}
            failed: List[str] = []
            total = len(job.target_languages)
            for index, language in enumerate(job.target_languages):
                self._checkpoint(run)
                try:
                    translations[language] = self._call(run, self.translator.translate, job_id, transcript, language)
                except TranslationFailure as exc:
                    logger.warning("Translation to %s failed for job %s: %s", language, job_id, exc)
                    failed.append(language)
                self._progress(run, job_id, 50.0 + (index + 1) / total * 30.0, f"Translated {language}")

            if failed and len(failed) == total:
                self._abort(run, job_id, TranslationFailure.code, "Refund for failed translation",
                            f"translation failed for {', '.join(failed)}",
                            "Translation failed for every language. {refunded} credits were refunded.",
                            failed_languages=failed)
                return

            self._progress(run, job_id, 80.0, "Translation complete")
            self._finalize(run, job, transcript, translations, failed)
        except JobCancelledError:
            logger.info("Job %s stopped after cancellation", job_id)
        except JobTimeoutError as exc:
            logger.error("Job %s timed out: %s", job_id, exc)
            self._abort(run, job_id, exc.code, "Refund for a timed out job", str(exc),
                        "Processing timed out. {refunded} credits were refunded.")
        except StorageWriteError as exc:
            logger.error("Saving results of job %s failed: %s", job_id, exc)
            self._abort(run, job_id, exc.code, "Refund for a failed save", str(exc),
                        "Saving the results failed. {refunded} credits were refunded.")
        except Exception as exc:
            logger.exception("Job %s failed", job_id)
            self._abort(run, job_id, UnknownProcessingError.code, "Refund for a processing error", str(exc),
                        "An error occurred during processing. {refunded} credits were refunded.")

    def partial_refund_amount(self, duration: float, failed_count: int, reserved: int) -> int:
        if self.settings.partial_refund_policy == "per_minute":
            amount = math.ceil(duration / 60) * CREDITS_PER_LANGUAGE * failed_count
        else:
            amount = CREDITS_PER_LANGUAGE * failed_count
        return min(amount, reserved)

    # Steps

    def _offer_free_trial(
        self, account: AccountContext, duration: float, language_count: int, decision: Decision
    ) -> bool:
        eligibility = self.trial_gate.check_eligibility(account, duration, language_count)
        if not eligibility.eligible:
            return False
        if not self._decide(decision, eligibility):
            return False
        try:
            self.trial_gate.grant_free_credits(account)
        except FreeTrialUnavailableError:
            logger.info("Free trial for %s was claimed by another session", account.account_id)
            return False
        return True

    def _reduce_scope(
        self,
        run: _JobRun,
        job: Job,
        languages: List[str],
        exc: InsufficientCreditsError,
        decision: Decision,
    ) -> Optional[ReservationResult]:
        affordable = affordable_language_count(job.duration, exc.balance)
        if not 0 < affordable < len(languages):
            return None
        reduced = languages[:affordable]
        offer = ScopeOffer(
            requested_languages=list(languages),
            affordable_languages=reduced,
            required=exc.required,
            reduced_required=compute_required_credits(job.duration, affordable),
            balance=exc.balance,
        )
        if not self._decide(decision, offer):
            return None
        self.jobs.update(
            run.account.account_id,
            job.id,
            target_languages=reduced,
            required_credits=offer.reduced_required,
        )
        logger.info("Job %s reduced to %s languages", job.id, affordable)
        try:
            return self.ledger.reserve(run.account, job.id, offer.reduced_required)
        except InsufficientCreditsError:
            return None

    def _finalize(
        self,
        run: _JobRun,
        job: Job,
        transcript: Transcript,
        translations: Dict[str, List[TranscriptSegment]],
        failed: List[str],
    ) -> None:
        account = run.account
        job = self.jobs.get(account.account_id, job.id)
        artifacts = self._build_artifacts(run, job, transcript, translations)
        refund = self.partial_refund_amount(job.duration, len(failed), job.required_credits) if failed else 0
        description = describe_job(job.duration, len(translations))
        message = (
            f"Translation complete: {len(artifacts)} videos created "
            f"(original + {len(translations)} translations)."
        )
        if refund:
            message += f" Translation failed for {', '.join(failed)}; {refund} credits were refunded."

        tx = self.jobs.store.account(account.account_id)
        for attempt in (1, 2):
            try:
                with run.lock:
                    self._checkpoint(run)
                    with tx.transaction():
                        self.ledger.confirm_deduction(
                            account,
                            job.reserved_id,
                            job.id,
                            description,
                            refund_amount=refund or None,
                            refund_reason=f"Partial refund for failed translation ({', '.join(failed)})",
                        )
                        self.storage.save_artifacts(account.account_id, artifacts)
                        completed = self.jobs.transition(
                            account.account_id,
                            job.id,
                            JobState.COMPLETED,
                            progress=100.0,
                            status_text=message,
                            failed_languages=failed,
                            refunded_amount=refund,
                            artifact_ids=[a.id for a in artifacts],
                        )
                break
            except OSError as exc:
                if attempt == 2:
                    raise StorageWriteError(f"saving job {job.id} failed twice: {exc}") from exc
                logger.warning("Saving job %s failed (%s), retrying", job.id, exc)
                time.sleep(self.settings.save_retry_backoff_seconds)

        self.executor.submit(self._write_blobs, run, artifacts)
        logger.info("Job %s completed with %s artifacts", job.id, len(artifacts))
        self._release(run, completed)

    def _build_artifacts(
        self,
        run: _JobRun,
        job: Job,
        transcript: Transcript,
        translations: Dict[str, List[TranscriptSegment]],
    ) -> List[VideoArtifact]:
        expires_at = self.storage.calculate_expiry_date(run.account)
        now = self.clock()
        title = Path(job.file_name).stem or "Untitled video"
        common = dict(
            job_id=job.id,
            duration=job.duration,
            created_at=now,
            expires_at=expires_at,
            downloadable=not job.is_free_trial,
            is_free_trial=job.is_free_trial,
        )
        size = Path(run.source_path).stat().st_size if run.source_path and Path(run.source_path).exists() else 0
        artifacts = [
            VideoArtifact(
                id=str(uuid.uuid4()),
                title=f"{title} (original)",
                language_code=transcript.language,
                is_original=True,
                transcript=transcript.segments,
                size_bytes=size,
                **common,
            )
        ]
        for language, segments in translations.items():
            artifacts.append(
                VideoArtifact(
                    id=str(uuid.uuid4()),
                    parent_job_id=job.id,
                    title=f"{title} ({language})",
                    language_code=language,
                    transcript=segments,
                    size_bytes=size,
                    **common,
                )
            )
        return artifacts

    def _write_blobs(self, run: _JobRun, artifacts: List[VideoArtifact]) -> None:
        for artifact in artifacts:
            if run.source_path and Path(run.source_path).exists():
                data = Path(run.source_path).read_bytes()
            else:
                data = artifact.model_dump_json(include={"id", "language_code", "transcript"}).encode("utf-8")
            try:
                put_with_retry(self.blobs, artifact.id, data, self.settings.blob_retry_backoff_seconds)
            except StorageWriteError:
                logger.error("Background blob write for artifact %s failed", artifact.id)
        self._discard_upload(run.source_path)

    # Helpers

    def _call(self, run: _JobRun, fn: Callable, *args):
        """Run a backend call with a bounded wait; cancellation is polled while waiting."""
        future = self._backend_pool.submit(fn, *args)
        deadline = time.monotonic() + self.settings.step_timeout_seconds
        while True:
            try:
                result = future.result(timeout=POLL_SECONDS)
                break
            except FutureTimeout:
                if run.cancelled.is_set():
                    future.cancel()
                    raise JobCancelledError()
                if time.monotonic() >= deadline:
                    future.cancel()
                    raise JobTimeoutError(f"{getattr(fn, '__name__', 'backend call')} exceeded "
                                          f"{self.settings.step_timeout_seconds}s")
        self._checkpoint(run)
        return result

    def _checkpoint(self, run: _JobRun) -> None:
        if run.cancelled.is_set():
            raise JobCancelledError()

    def _progress(self, run: _JobRun, job_id: str, percent: float, text: str, **updates) -> None:
        with run.lock:
            self._checkpoint(run)
            job = self.jobs.update(run.account.account_id, job_id, progress=percent, status_text=text, **updates)
        self._publish(job_id, percent, text, job.status)

    def _abort(
        self,
        run: _JobRun,
        job_id: str,
        error: str,
        refund_reason: str,
        detail: str,
        message: str,
        failed_languages: Optional[List[str]] = None,
        reserved_id: Optional[str] = None,
    ) -> None:
        """Refund, drop partial artifacts and mark the job FAILED.

        The terminal state is written only after the refund is committed. When
        the store keeps failing the job is left as it is, with its reservation
        open, for :meth:`recover_interrupted_jobs`.
        """
        with run.lock:
            job = self.jobs.get(run.account.account_id, job_id)
            if job is None or job.is_terminal:
                self._detach(run, job_id)
                return
            try:
                refunded = self._refund(run.account, job, refund_reason, reserved_id)
                self.storage.delete_job_artifacts(run.account.account_id, job_id)
                self._discard_upload(job.source_path)
                self._finish(
                    run,
                    job_id,
                    JobState.FAILED,
                    progress=0.0,
                    error=error,
                    error_message=detail,
                    refunded_amount=refunded,
                    failed_languages=failed_languages or [],
                    status_text=message.format(refunded=refunded),
                )
            except (StorageWriteError, OSError):
                logger.exception("Settling job %s failed, it stays %s until recovery", job_id, job.status.value)
                self._detach(run, job_id)
                return

    def _refund(self, account: AccountContext, job: Job, reason: str, reserved_id: Optional[str] = None) -> int:
        reserved_id = reserved_id or job.reserved_id
        if not reserved_id:
            return 0
        for attempt in (1, 2):
            try:
                return self.ledger.refund_credits(account, reserved_id, job.id, reason)
            except ReservationClosedError as exc:
                logger.warning("Reservation for job %s already settled: %s", job.id, exc)
                return 0
            except OSError as exc:
                if attempt == 2:
                    raise StorageWriteError(f"refund for job {job.id} failed twice: {exc}") from exc
                logger.warning("Refund for job %s failed (%s), retrying", job.id, exc)
                time.sleep(self.settings.save_retry_backoff_seconds)

    def _discard_upload(self, source_path: Optional[str]) -> None:
        if not source_path:
            return
        try:
            Path(source_path).unlink(missing_ok=True)
        except OSError:
            logger.warning("Removing upload %s failed", source_path, exc_info=True)

    def _is_running(self, job_id: str) -> bool:
        with self._runs_lock:
            return job_id in self._runs

    def _detach(self, run: _JobRun, job_id: str) -> None:
        with self._runs_lock:
            self._runs.pop(job_id, None)
        run.done.set()

    def _finish(self, run: _JobRun, job_id: str, state: JobState, **updates) -> Job:
        job = self.jobs.transition(run.account.account_id, job_id, state, **updates)
        self._release(run, job)
        return job

    def _release(self, run: _JobRun, job: Job) -> None:
        with self._runs_lock:
            self._runs.pop(job.id, None)
        self._publish(job.id, job.progress, job.status_text, job.status)
        run.done.set()

    def _publish(self, job_id: str, percent: float, text: str, status: JobState) -> None:
        self.bus.publish(job_topic(job_id), progress_percent=percent, status_text=text, status=status)

    @staticmethod
    def _decide(decision: Decision, subject: Union[Eligibility, ScopeOffer]) -> bool:
        if callable(decision):
            return bool(decision(subject))
        return bool(decision)
