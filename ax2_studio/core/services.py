from __future__ import annotations

from dataclasses import dataclass

from ax2_studio.core.blobs import BlobStore, FileBlobStore
from ax2_studio.core.clock import Clock, utcnow
from ax2_studio.core.config import Settings
from ax2_studio.core.events import EventBus
from ax2_studio.core.rate_limit import SlidingWindowLimiter
from ax2_studio.core.storage import RetentionSweeper, StoragePolicy
from ax2_studio.core.store import LedgerStore, build_store
from ax2_studio.ledger.credits import CreditLedger
from ax2_studio.ledger.free_trial import FreeTrialGate
from ax2_studio.pipeline import JobLifecycle
from ax2_studio.providers.base import SpeechBackend, TranslationBackend
from ax2_studio.providers.mock_provider import MockSpeechBackend, MockTranslationBackend


@dataclass
class Services:
    settings: Settings
    store: LedgerStore
    bus: EventBus
    blobs: BlobStore
    ledger: CreditLedger
    trial_gate: FreeTrialGate
    storage: StoragePolicy
    lifecycle: JobLifecycle
    sweeper: RetentionSweeper
    limiter: SlidingWindowLimiter


def build_services(
    settings: Settings,
    store: LedgerStore | None = None,
    blobs: BlobStore | None = None,
    speech: SpeechBackend | None = None,
    translator: TranslationBackend | None = None,
    clock: Clock = utcnow,
) -> Services:
    store = store or build_store(settings.ledger_backend, settings.data_dir)
    blobs = blobs or FileBlobStore(settings.data_dir / "blobs")
    bus = EventBus()
    ledger = CreditLedger(store, bus, settings, clock)
    trial_gate = FreeTrialGate(ledger, settings)
    storage = StoragePolicy(store, ledger, blobs, settings, clock)
    lifecycle = JobLifecycle(
        store,
        ledger,
        trial_gate,
        storage,
        speech or MockSpeechBackend(),
        translator or MockTranslationBackend(),
        blobs,
        bus=bus,
        settings=settings,
        clock=clock,
    )
    return Services(
        settings=settings,
        store=store,
        bus=bus,
        blobs=blobs,
        ledger=ledger,
        trial_gate=trial_gate,
        storage=storage,
        lifecycle=lifecycle,
        sweeper=RetentionSweeper(storage, settings.sweep_interval_seconds),
        limiter=SlidingWindowLimiter(max_events=settings.max_jobs_per_minute),
    )
