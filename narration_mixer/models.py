"""Data models for narration mixing."""

from dataclasses import asdict, dataclass, field
from enum import Enum

from narration_mixer.constants import (
    ATTACK_MS,
    RELEASE_MS,
    SILENCE_LEVEL_DB,
    SPEECH_LEVEL_DB,
)
from narration_mixer.errors import Severity


@dataclass(frozen=True)
class SpeechSegment:
    start_sec: float
    end_sec: float

    @property
    def duration(self) -> float:
        return self.end_sec - self.start_sec


@dataclass(frozen=True)
class DuckingPolicy:
    speech_level_db: float = SPEECH_LEVEL_DB    # quieter music under narration
    silence_level_db: float = SILENCE_LEVEL_DB  # baseline music gain
    attack_ms: float = ATTACK_MS
    release_ms: float = RELEASE_MS


@dataclass
class GainPoint:
    time_sec: float
    gain_db: float


@dataclass
class SfxTrigger:
    sound_id: str
    time_sec: float
    volume: float
    asset_ref: str
    segment_id: str = ""
    duration_sec: float = 0.0


@dataclass
class ActiveSfx:
    """A trigger paired with the local file its asset was downloaded to."""
    trigger: SfxTrigger
    local_path: str


@dataclass
class MusicTrack:
    id: str
    mood: str
    duration: float               # seconds
    asset_ref: str
    tempo: float = 0.0
    energy: float = 0.5           # 0.0–1.0
    loopable: bool = False
    loop_points: tuple[float, float] | None = None
    tags: list[str] = field(default_factory=list)


@dataclass
class SfxTrack:
    id: str
    filename: str
    category: str                 # transitions, ui, emphasis, ambient
    duration_sec: float
    asset_ref: str
    tags: list[str] = field(default_factory=list)


@dataclass
class SfxCue:
    trigger: str                  # segment_start, segment_end, timestamp, word
    sound: str
    volume: float = 1.0
    trigger_value: str = ""


@dataclass
class WordTiming:
    word: str
    start_sec: float
    end_sec: float


@dataclass
class ScriptSegment:
    id: str
    start_sec: float
    end_sec: float
    actual_start_sec: float | None = None
    actual_end_sec: float | None = None
    word_timings: list[WordTiming] = field(default_factory=list)
    sfx_cues: list[SfxCue] = field(default_factory=list)


@dataclass
class MixRequest:
    voice_asset_ref: str
    mood_tag: str
    target_duration_sec: float
    script_segments: list[ScriptSegment] = field(default_factory=list)
    job_id: str = ""


@dataclass
class MixMetrics:
    """Mix statistics.

    The peak values are estimates derived from the loudness-normalization
    targets, not measured from the rendered file. ``peaks_estimated`` is
    always True so that serialized results say so.
    """
    voice_peak_db: float
    music_peak_db: float
    mixed_peak_db: float
    ducking_segments: int
    sfx_triggered: int
    duration_sec: float
    music_duck_db: float | None = None    # music gain under speech, None without ducking
    peaks_estimated: bool = True


class QualityStatus(str, Enum):
    PASS = "PASS"
    DEGRADED = "DEGRADED"
    FAIL = "FAIL"


@dataclass
class QualityCheck:
    passed: bool
    message: str
    actual_value: float
    threshold: float
    severity: Severity | None = None
    code: str | None = None


@dataclass
class QualityReport:
    status: QualityStatus
    checks: dict[str, QualityCheck]
    flags: list[str] = field(default_factory=list)
    peak_db: float = 0.0
    voice_peak_db: float = 0.0
    music_duck_level: float = 0.0
    duration_diff_percent: float | None = None


@dataclass
class MixResult:
    mixed_audio_ref: str
    original_audio_ref: str
    ducking_applied: bool
    metrics: MixMetrics
    quality: QualityReport | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FilterGraph:
    """A compiled ffmpeg filter_complex program and its ordered inputs."""
    program: str
    inputs: list[str]
    output_label: str = "out"
