from __future__ import annotations

import subprocess
from pathlib import Path


class ProbeError(RuntimeError):
    pass


def _run(cmd: list[str]) -> str:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except FileNotFoundError as exc:
        raise ProbeError("ffprobe is not installed") from exc
    if result.returncode != 0:
        raise ProbeError(result.stderr.strip() or "ffprobe failed")
    return result.stdout.strip()


def probe_duration(video_path: Path) -> float:
    out = _run([
        "ffprobe",
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(video_path),
    ])
    try:
        duration = float(out)
    except ValueError as exc:
        raise ProbeError(f"unreadable duration: {out!r}") from exc
    if duration < 0:
        raise ProbeError(f"negative duration: {duration}")
    return duration
