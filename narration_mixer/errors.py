"""
Narration Mixer exception hierarchy.

Every failure raised out of the package is a MixError carrying a code, a
severity and the context (stage, asset reference) it happened in. Callers
own retry policy and decide from ``error.is_retryable``.

Usage:
    from narration_mixer.errors import MixError

    try:
        orchestrator.run(request)
    except MixError as e:
        if e.is_retryable:
            schedule_retry(request)
"""

from enum import Enum

# Error codes
VAD_FAILED = "VAD_FAILED"
DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
UPLOAD_FAILED = "UPLOAD_FAILED"
MIX_FAILED = "MIX_FAILED"
RENDER_TIMEOUT = "RENDER_TIMEOUT"
LIBRARY_LOAD_FAILED = "LIBRARY_LOAD_FAILED"
LOOP_FAILED = "LOOP_FAILED"
INVALID_OUTPUT = "INVALID_OUTPUT"
INVALID_REF = "INVALID_REF"

# Quality gate flags
DURATION_MISMATCH = "DURATION_MISMATCH"
CLIPPING_DETECTED = "CLIPPING_DETECTED"
VOICE_LEVEL_OUT_OF_RANGE = "VOICE_LEVEL_OUT_OF_RANGE"
MUSIC_DUCK_INSUFFICIENT = "MUSIC_DUCK_INSUFFICIENT"


class Severity(str, Enum):
    CRITICAL = "critical"     # abort, retrying cannot help
    RETRYABLE = "retryable"   # transient, safe to retry the whole mix
    DEGRADED = "degraded"     # partial result, mix continues


class MixError(Exception):
    """Base exception for all narration mixer errors."""

    def __init__(
        self,
        code: str,
        message: str,
        severity: Severity = Severity.RETRYABLE,
        stage: str | None = None,
        context: dict | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.severity = severity
        self.stage = stage
        self.context = dict(context or {})

    @classmethod
    def critical(cls, code: str, message: str, **context) -> "MixError":
        return cls(code, message, severity=Severity.CRITICAL, context=context)

    @classmethod
    def retryable(cls, code: str, message: str, **context) -> "MixError":
        return cls(code, message, severity=Severity.RETRYABLE, context=context)

    @property
    def is_retryable(self) -> bool:
        return self.severity == Severity.RETRYABLE

    def with_context(self, stage: str | None = None, **context) -> "MixError":
        """Attach stage name and extra context. Existing keys win."""
        if stage and not self.stage:
            self.stage = stage
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        prefix = f"[{self.code}]"
        if self.stage:
            prefix += f" ({self.stage})"
        return f"{prefix} {self.message}"


class FFmpegError(MixError):
    """ffmpeg exited non-zero or could not be run."""

    def __init__(
        self,
        code: str,
        message: str,
        command: list[str] | None = None,
        stderr: str | None = None,
        severity: Severity = Severity.RETRYABLE,
        context: dict | None = None,
    ):
        super().__init__(code, message, severity=severity, context=context)
        self.command = command
        self.stderr = stderr
