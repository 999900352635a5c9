"""Quality gate for finished mixes.

Four checks against the metrics of a MixResult:

    duration match   rendered length within 1% of the target   CRITICAL
    no clipping      mixed peak below -0.5 dB                   DEGRADED
    voice levels     voice peak within -9..-3 dB                DEGRADED
    music ducking    music under speech below -18 dB            DEGRADED

Any failed CRITICAL check makes the report FAIL; otherwise any failed check
makes it DEGRADED. The peak metrics are estimates, so the level checks
verify the configured targets rather than the rendered signal.
"""

from narration_mixer.constants import (
    QUALITY_DURATION_MATCH_PERCENT,
    QUALITY_MAX_PEAK_DB,
    QUALITY_MUSIC_DUCK_MAX_DB,
    QUALITY_VOICE_MAX_DB,
    QUALITY_VOICE_MIN_DB,
)
from narration_mixer.errors import (
    CLIPPING_DETECTED,
    DURATION_MISMATCH,
    MUSIC_DUCK_INSUFFICIENT,
    VOICE_LEVEL_OUT_OF_RANGE,
    Severity,
)
from narration_mixer.models import (
    MixMetrics,
    QualityCheck,
    QualityReport,
    QualityStatus,
)


def _duration_diff_percent(actual_sec: float, target_sec: float) -> float | None:
    if target_sec <= 0:
        return None
    return abs(actual_sec - target_sec) / target_sec * 100


def check_duration(actual_sec: float, target_sec: float) -> QualityCheck:
    diff = _duration_diff_percent(actual_sec, target_sec)
    if diff is None:
        return QualityCheck(
            passed=False,
            message=f"Invalid target duration: {target_sec}s",
            actual_value=target_sec,
            threshold=QUALITY_DURATION_MATCH_PERCENT,
            severity=Severity.CRITICAL,
            code=DURATION_MISMATCH,
        )
    if diff <= QUALITY_DURATION_MATCH_PERCENT:
        return QualityCheck(
            passed=True,
            message=f"Duration {actual_sec:.2f}s within {diff:.2f}% of {target_sec:.2f}s",
            actual_value=diff,
            threshold=QUALITY_DURATION_MATCH_PERCENT,
        )
    return QualityCheck(
        passed=False,
        message=f"Duration {actual_sec:.2f}s is {diff:.2f}% off target {target_sec:.2f}s",
        actual_value=diff,
        threshold=QUALITY_DURATION_MATCH_PERCENT,
        severity=Severity.CRITICAL,
        code=DURATION_MISMATCH,
    )


def check_clipping(peak_db: float) -> QualityCheck:
    # Strictly below: a peak exactly at the limit counts as clipping
    if peak_db < QUALITY_MAX_PEAK_DB:
        return QualityCheck(True, f"Peak {peak_db} dB", peak_db, QUALITY_MAX_PEAK_DB)
    return QualityCheck(
        passed=False,
        message=f"Peak {peak_db} dB at or above {QUALITY_MAX_PEAK_DB} dB",
        actual_value=peak_db,
        threshold=QUALITY_MAX_PEAK_DB,
        severity=Severity.DEGRADED,
        code=CLIPPING_DETECTED,
    )


def check_voice_levels(voice_peak_db: float) -> QualityCheck:
    if QUALITY_VOICE_MIN_DB <= voice_peak_db <= QUALITY_VOICE_MAX_DB:
        return QualityCheck(
            True, f"Voice peak {voice_peak_db} dB", voice_peak_db, QUALITY_VOICE_MIN_DB
        )
    threshold = QUALITY_VOICE_MIN_DB if voice_peak_db < QUALITY_VOICE_MIN_DB else QUALITY_VOICE_MAX_DB
    return QualityCheck(
        passed=False,
        message=(
            f"Voice peak {voice_peak_db} dB outside "
            f"{QUALITY_VOICE_MIN_DB}..{QUALITY_VOICE_MAX_DB} dB"
        ),
        actual_value=voice_peak_db,
        threshold=threshold,
        severity=Severity.DEGRADED,
        code=VOICE_LEVEL_OUT_OF_RANGE,
    )


def check_music_ducking(duck_db: float | None, ducking_applied: bool) -> QualityCheck:
    if not ducking_applied or duck_db is None:
        return QualityCheck(
            True, "Music ducking check skipped: no ducking applied",
            0.0, QUALITY_MUSIC_DUCK_MAX_DB,
        )
    if duck_db < QUALITY_MUSIC_DUCK_MAX_DB:
        return QualityCheck(
            True, f"Music ducked to {duck_db} dB", duck_db, QUALITY_MUSIC_DUCK_MAX_DB
        )
    return QualityCheck(
        passed=False,
        message=f"Music only ducked to {duck_db} dB, needs below {QUALITY_MUSIC_DUCK_MAX_DB} dB",
        actual_value=duck_db,
        threshold=QUALITY_MUSIC_DUCK_MAX_DB,
        severity=Severity.DEGRADED,
        code=MUSIC_DUCK_INSUFFICIENT,
    )


def evaluate_mix_quality(
    metrics: MixMetrics,
    ducking_applied: bool,
    target_duration_sec: float,
    rendered_duration_sec: float | None = None,
) -> QualityReport:
    """Run every check and fold them into one report.

    ``rendered_duration_sec`` is the decoded length of the rendered file;
    without it the metrics' duration is compared.
    """
    actual_sec = metrics.duration_sec if rendered_duration_sec is None else rendered_duration_sec
    checks = {
        "duration_match": check_duration(actual_sec, target_duration_sec),
        "no_clipping": check_clipping(metrics.mixed_peak_db),
        "voice_levels": check_voice_levels(metrics.voice_peak_db),
        "music_ducking": check_music_ducking(metrics.music_duck_db, ducking_applied),
    }

    status = QualityStatus.PASS
    flags = []
    for check in checks.values():
        if check.passed:
            continue
        if check.severity == Severity.CRITICAL:
            status = QualityStatus.FAIL
        elif status != QualityStatus.FAIL:
            status = QualityStatus.DEGRADED
        if check.code:
            flags.append(check.code)

    return QualityReport(
        status=status,
        checks=checks,
        flags=flags,
        peak_db=metrics.mixed_peak_db,
        voice_peak_db=metrics.voice_peak_db,
        music_duck_level=metrics.music_duck_db if metrics.music_duck_db is not None else 0.0,
        duration_diff_percent=_duration_diff_percent(actual_sec, target_duration_sec),
    )
