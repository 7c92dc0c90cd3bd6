from __future__ import annotations

import time
from typing import Iterable, List

from ax2_studio.core.errors import SttFailure, TranslationFailure
from ax2_studio.providers.base import SpeechBackend, Transcript, TranscriptSegment, TranslationBackend

SEGMENT_SECONDS = 5.0
FALLBACK_LANGUAGE = "ko"

SAMPLE_LINES = {
    "ko": ["안녕하세요", "오늘은 좋은 날씨네요", "이 강의는 매우 유용합니다", "감사합니다", "다음 시간에 뵙겠습니다"],
    "en": ["Hello", "Nice weather today", "This lecture is very useful", "Thank you", "See you next time"],
    "es": ["Hola", "Buen tiempo hoy", "Esta conferencia es muy útil", "Gracias", "Hasta la próxima"],
    "fr": ["Bonjour", "Beau temps aujourd'hui", "Cette conférence est très utile", "Merci", "À la prochaine"],
    "ja": ["こんにちは", "今日は良い天気ですね", "この講義は非常に有用です", "ありがとうございます", "また次回お会いしましょう"],
    "zh": ["你好", "今天天气不错", "这个讲座非常有用", "谢谢", "下次见"],
    "vi": ["Xin chào", "Thời tiết hôm nay đẹp", "Bài giảng này rất hữu ích", "Cảm ơn bạn", "Hẹn gặp lại lần sau"],
}


def sample_segments(duration: float, language: str) -> List[TranscriptSegment]:
    lines = SAMPLE_LINES.get(language)
    segments: list[TranscriptSegment] = []
    start = 0.0
    index = 0
    while start < duration:
        end = min(start + SEGMENT_SECONDS, duration)
        if lines:
            text = lines[index % len(lines)]
        else:
            text = f"Transcribed text ({int(start)}s-{int(end)}s)"
        segments.append(TranscriptSegment(id=index + 1, start=start, end=end, text=text))
        start = end
        index += 1
    return segments


class MockSpeechBackend(SpeechBackend):
    name = "mock-stt"

    def __init__(
        self,
        fail: bool = False,
        delay_seconds: float = 0.0,
        detected_language: str | None = "ko",
    ) -> None:
        self.fail = fail
        self.delay_seconds = delay_seconds
        self.detected_language = detected_language

    def transcribe(self, job_id: str, duration: float, language: str) -> Transcript:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.fail:
            raise SttFailure("speech recognition failed")
        detected = language == "auto"
        if detected:
            # undetectable audio falls back to Korean
            language = self.detected_language or FALLBACK_LANGUAGE
        return Transcript(language=language, segments=sample_segments(duration, language), detected=detected)


class MockTranslationBackend(TranslationBackend):
    name = "mock-translate"

    def __init__(self, fail_languages: Iterable[str] = (), delay_seconds: float = 0.0) -> None:
        self.fail_languages = set(fail_languages)
        self.delay_seconds = delay_seconds

    def translate(self, job_id: str, transcript: Transcript, language: str) -> List[TranscriptSegment]:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if language in self.fail_languages:
            raise TranslationFailure([language], total=False)
        lines = SAMPLE_LINES.get(language)
        translated = []
        for index, segment in enumerate(transcript.segments):
            if lines:
                text = lines[index % len(lines)]
            else:
                text = f"Translated text ({int(segment.start)}s-{int(segment.end)}s)"
            translated.append(segment.model_copy(update={"translation": text}))
        return translated
