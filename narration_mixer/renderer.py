"""ffmpeg invocation: binary lookup, subprocess runs with deadlines, mix rendering."""

import logging
import os
import shutil
import subprocess

import numpy as np
from pydub import AudioSegment

from narration_mixer.constants import OUTPUT_CHANNELS, OUTPUT_FORMAT, OUTPUT_SAMPLE_RATE
from narration_mixer.errors import (
    INVALID_OUTPUT,
    MIX_FAILED,
    RENDER_TIMEOUT,
    FFmpegError,
    MixError,
    Severity,
)
from narration_mixer.models import FilterGraph

logger = logging.getLogger(__name__)


def find_ffmpeg() -> str | None:
    """Return the ffmpeg binary path, honouring $FFMPEG_BINARY, or None."""
    override = os.environ.get("FFMPEG_BINARY")
    if override:
        return override if os.path.exists(override) else shutil.which(override)
    return shutil.which("ffmpeg")


def require_ffmpeg(code: str = MIX_FAILED) -> str:
    """Return the ffmpeg path or raise a critical error."""
    path = find_ffmpeg()
    if not path:
        raise MixError.critical(code, "ffmpeg binary not found")
    return path


def run_ffmpeg(
    args: list[str],
    ffmpeg: str | None = None,
    code: str = MIX_FAILED,
    timeout: float | None = None,
) -> str:
    """Run ffmpeg with args and return its stderr (the diagnostic stream).

    ffmpeg writes everything interesting (durations, silencedetect markers)
    to stderr. When ``timeout`` expires the child is killed and a retryable
    RENDER_TIMEOUT is raised.
    """
    binary = ffmpeg or require_ffmpeg(code)
    cmd = [binary, "-hide_banner", *args]
    logger.debug("Running: %s", " ".join(cmd))

    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, check=False, timeout=timeout
        )
    except FileNotFoundError as exc:
        raise FFmpegError(
            code, f"ffmpeg not runnable: {binary}",
            command=cmd, severity=Severity.CRITICAL,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise FFmpegError(
            RENDER_TIMEOUT, f"ffmpeg exceeded {timeout}s deadline",
            command=cmd, context={"timeout": timeout},
        ) from exc

    if result.returncode != 0:
        tail = result.stderr.strip().splitlines()[-5:]
        raise FFmpegError(
            code,
            f"ffmpeg failed (exit {result.returncode}): {' | '.join(tail)}",
            command=cmd,
            stderr=result.stderr,
        )
    return result.stderr


def render_args(graph: FilterGraph, output_path: str) -> list[str]:
    """Build the ffmpeg argument list for a compiled mix graph."""
    args = []
    for path in graph.inputs:
        args += ["-i", path]
    args += [
        "-filter_complex", graph.program,
        "-map", f"[{graph.output_label}]",
        "-ar", str(OUTPUT_SAMPLE_RATE),
        "-ac", str(OUTPUT_CHANNELS),
        "-c:a", "pcm_s16le",
        "-f", OUTPUT_FORMAT,
        "-y",
        output_path,
    ]
    return args


def render_mix(
    graph: FilterGraph,
    output_path: str,
    ffmpeg: str | None = None,
    timeout: float | None = None,
) -> str:
    """Render a compiled graph to output_path with a single ffmpeg call."""
    logger.info("Rendering mix: %d inputs -> %s", len(graph.inputs), output_path)
    logger.debug("filter_complex: %s", graph.program)
    run_ffmpeg(render_args(graph, output_path), ffmpeg=ffmpeg, timeout=timeout)
    logger.info("Render complete: %s", output_path)
    return output_path


def validate_render(output_path: str) -> AudioSegment:
    """Check a rendered mix exists, decodes, and is not digitally silent.

    Returns the decoded AudioSegment.
    """
    if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
        raise MixError.retryable(
            INVALID_OUTPUT, "Rendered mix is missing or empty", path=output_path
        )
    try:
        audio = AudioSegment.from_file(output_path, format=OUTPUT_FORMAT)
    except Exception as exc:
        raise MixError.retryable(
            INVALID_OUTPUT, f"Rendered mix does not decode: {exc}", path=output_path
        ) from exc

    samples = np.array(audio.get_array_of_samples())
    if len(samples) == 0 or not np.any(samples):
        raise MixError.retryable(
            INVALID_OUTPUT, "Rendered mix is silent", path=output_path
        )
    return audio
