"""Speech activity detection via ffmpeg silencedetect.

The narration is transcoded to a mono 16 kHz analysis copy, ffmpeg's
silencedetect filter reports silent stretches on stderr, and the gaps
between them become speech segments. Short pauses are merged so the music
does not flap up and down between sentences.
"""

import logging
import os
import re
import tempfile
import uuid
from dataclasses import dataclass

from narration_mixer.constants import (
    SPEECH_MERGE_THRESHOLD_SEC,
    VAD_MIN_SILENCE_SEC,
    VAD_NOISE_DB,
    VAD_SAMPLE_RATE,
)
from narration_mixer.errors import VAD_FAILED, MixError
from narration_mixer.models import SpeechSegment
from narration_mixer.renderer import require_ffmpeg, run_ffmpeg

logger = logging.getLogger(__name__)

_SILENCE_START_RE = re.compile(r"silence_start:\s*(-?[\d.]+)")
_SILENCE_END_RE = re.compile(r"silence_end:\s*(-?[\d.]+)")
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+)\.(\d+)")


@dataclass
class _SilenceInterval:
    start: float
    end: float


def detect_speech_segments(
    audio_path: str,
    noise_db: float = VAD_NOISE_DB,
    min_silence_sec: float = VAD_MIN_SILENCE_SEC,
    merge_threshold_sec: float = SPEECH_MERGE_THRESHOLD_SEC,
    ffmpeg: str | None = None,
    timeout: float | None = None,
) -> list[SpeechSegment]:
    """Detect speech segments in an audio file.

    Returns a sorted, non-overlapping list of SpeechSegment. Every failure
    is raised as a retryable MixError with the audio path attached. The
    analysis transcode is always removed.
    """
    binary = ffmpeg or require_ffmpeg(VAD_FAILED)
    analysis_wav = os.path.join(
        tempfile.gettempdir(), f"narration-vad-{uuid.uuid4().hex}.wav"
    )

    try:
        run_ffmpeg(
            ["-i", audio_path, "-ar", str(VAD_SAMPLE_RATE), "-ac", "1",
             "-f", "wav", "-y", analysis_wav],
            ffmpeg=binary, code=VAD_FAILED, timeout=timeout,
        )

        stderr = run_ffmpeg(
            ["-i", analysis_wav,
             "-af", f"silencedetect=noise={noise_db}dB:d={min_silence_sec}",
             "-f", "null", "-"],
            ffmpeg=binary, code=VAD_FAILED, timeout=timeout,
        )

        duration = probe_duration(analysis_wav, ffmpeg=binary, timeout=timeout)
        silences = parse_silence_output(stderr, duration)
        speech = invert_to_speech(silences, duration)
        segments = merge_adjacent_segments(speech, merge_threshold_sec)
        logger.info(
            "VAD: %d silence periods, %d speech segments in %.2fs of audio",
            len(silences), len(segments), duration,
        )
        return segments
    except MixError as e:
        raise e.with_context(audio_path=audio_path)
    except Exception as e:
        raise MixError.retryable(
            VAD_FAILED, f"Voice activity detection failed: {e}", audio_path=audio_path
        ) from e
    finally:
        try:
            os.remove(analysis_wav)
        except FileNotFoundError:
            pass


def probe_duration(
    audio_path: str, ffmpeg: str | None = None, timeout: float | None = None
) -> float:
    """Decode the file once and read its duration from ffmpeg's stderr."""
    stderr = run_ffmpeg(
        ["-i", audio_path, "-f", "null", "-"],
        ffmpeg=ffmpeg, code=VAD_FAILED, timeout=timeout,
    )
    return parse_duration(stderr)


def parse_duration(stderr: str) -> float:
    """Parse "Duration: HH:MM:SS.ss" into seconds.

    Raises retryable MixError when the header is absent.
    """
    match = _DURATION_RE.search(stderr)
    if not match:
        raise MixError.retryable(
            VAD_FAILED, "Could not determine audio duration from ffmpeg output"
        )
    hours, minutes, seconds = (int(g) for g in match.groups()[:3])
    fractional = float(f"0.{match.group(4)}")
    return hours * 3600 + minutes * 60 + seconds + fractional


def parse_silence_output(stderr: str, total_duration: float) -> list[_SilenceInterval]:
    """Parse silencedetect markers into silence intervals.

    ffmpeg prints lines like:
      [silencedetect @ 0x...] silence_start: 1.234
      [silencedetect @ 0x...] silence_end: 2.567 | silence_duration: 1.333
    A trailing silence_start with no end means the audio finished silent.
    """
    intervals = []
    current_start = None

    for line in stderr.splitlines():
        start_match = _SILENCE_START_RE.search(line)
        if start_match:
            current_start = max(0.0, float(start_match.group(1)))
            continue

        end_match = _SILENCE_END_RE.search(line)
        if end_match and current_start is not None:
            intervals.append(_SilenceInterval(current_start, float(end_match.group(1))))
            current_start = None

    if current_start is not None and total_duration > current_start:
        intervals.append(_SilenceInterval(current_start, total_duration))

    return intervals


def invert_to_speech(
    silences: list[_SilenceInterval], total_duration: float
) -> list[SpeechSegment]:
    """Turn silence intervals into the speech segments between them."""
    if not silences:
        if total_duration <= 0:
            return []
        return [SpeechSegment(0.0, total_duration)]

    segments = []

    # Speech before the first silence
    if silences[0].start > 0:
        segments.append(SpeechSegment(0.0, silences[0].start))

    for prev, nxt in zip(silences, silences[1:]):
        if nxt.start > prev.end:
            segments.append(SpeechSegment(prev.end, nxt.start))

    # Speech after the last silence
    if silences[-1].end < total_duration:
        segments.append(SpeechSegment(silences[-1].end, total_duration))

    return segments


def merge_adjacent_segments(
    segments: list[SpeechSegment], threshold_sec: float
) -> list[SpeechSegment]:
    """Merge segments separated by less than threshold_sec."""
    if len(segments) <= 1:
        return list(segments)

    merged = [segments[0]]
    for current in segments[1:]:
        last = merged[-1]
        if current.start_sec - last.end_sec < threshold_sec:
            merged[-1] = SpeechSegment(last.start_sec, current.end_sec)
        else:
            merged.append(current)
    return merged
