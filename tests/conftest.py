"""Shared fixtures: in-memory stores, a controllable clock and a wired lifecycle."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from ax2_studio.core.auth import AccountContext
from ax2_studio.core.blobs import InMemoryBlobStore
from ax2_studio.core.config import settings as base_settings
from ax2_studio.core.events import EventBus
from ax2_studio.core.jobs import VideoMetadata
from ax2_studio.core.storage import StoragePolicy
from ax2_studio.core.store import InMemoryLedgerStore
from ax2_studio.ledger.credits import CreditLedger
from ax2_studio.ledger.free_trial import FreeTrialGate
from ax2_studio.pipeline import JobLifecycle
from ax2_studio.providers.mock_provider import MockSpeechBackend, MockTranslationBackend


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings(tmp_path):
    return replace(
        base_settings,
        data_dir=tmp_path,
        ledger_backend="memory",
        step_timeout_seconds=5.0,
        save_retry_backoff_seconds=0.0,
        blob_retry_backoff_seconds=0.0,
        worker_threads=2,
        partial_refund_policy="per_language",
    )


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def blobs():
    return InMemoryBlobStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def ledger(store, bus, settings, clock):
    return CreditLedger(store, bus, settings, clock)


@pytest.fixture
def gate(ledger, settings):
    return FreeTrialGate(ledger, settings)


@pytest.fixture
def policy(store, ledger, blobs, settings, clock):
    return StoragePolicy(store, ledger, blobs, settings, clock)


@pytest.fixture
def guest():
    return AccountContext(account_id="device-1")


@pytest.fixture
def member():
    return AccountContext(account_id="device-1", is_logged_in=True, email="user@example.com")


@pytest.fixture
def speech():
    return MockSpeechBackend()


@pytest.fixture
def translator():
    return MockTranslationBackend()


@pytest.fixture
def make_lifecycle(store, ledger, gate, policy, blobs, bus, settings, clock):
    created = []

    def factory(speech=None, translator=None, **overrides):
        lifecycle = JobLifecycle(
            store,
            ledger,
            gate,
            policy,
            speech or MockSpeechBackend(),
            translator or MockTranslationBackend(),
            blobs,
            bus=bus,
            settings=replace(settings, **overrides) if overrides else settings,
            clock=clock,
        )
        created.append(lifecycle)
        return lifecycle

    yield factory
    for lifecycle in created:
        lifecycle.shutdown()


@pytest.fixture
def lifecycle(make_lifecycle):
    return make_lifecycle()


@pytest.fixture
def make_video():
    def factory(duration: float = 278, name: str = "lecture.mp4", source_path=None) -> VideoMetadata:
        return VideoMetadata(
            video_id=f"video-{duration}",
            file_name=name,
            duration=duration,
            source_path=str(source_path) if source_path else None,
        )

    return factory
