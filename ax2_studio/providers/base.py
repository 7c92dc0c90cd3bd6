from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel


class TranscriptSegment(BaseModel):
    id: int
    speaker: str = "Speaker 1"
    start: float
    end: float
    text: str
    translation: Optional[str] = None


@dataclass
class Transcript:
    language: str
    segments: List[TranscriptSegment] = field(default_factory=list)
    detected: bool = False


class SpeechBackend:
    """Speech-to-text capability. Raises ``SttFailure`` when recognition fails."""

    def transcribe(self, job_id: str, duration: float, language: str) -> Transcript:
        raise NotImplementedError


class TranslationBackend:
    """Per-language translation. Raises ``TranslationFailure`` for a failed language."""

    def translate(self, job_id: str, transcript: Transcript, language: str) -> List[TranscriptSegment]:
        raise NotImplementedError
