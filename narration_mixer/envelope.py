"""Ducking gain envelope from speech segments."""

from narration_mixer.constants import POINT_TIME_EPSILON
from narration_mixer.models import DuckingPolicy, GainPoint, SpeechSegment


def generate_ducking_curve(
    segments: list[SpeechSegment],
    policy: DuckingPolicy,
    total_duration_sec: float,
) -> list[GainPoint]:
    """Build the music gain curve for a narration track.

    Music sits at silence_level_db, ramps to speech_level_db over the attack
    window before each segment, holds through it, and ramps back over the
    release window. The curve always spans [0, total_duration_sec].
    """
    silence = policy.silence_level_db
    speech = policy.speech_level_db
    attack_sec = policy.attack_ms / 1000
    release_sec = policy.release_ms / 1000

    if not segments:
        return [GainPoint(0.0, silence), GainPoint(total_duration_sec, silence)]

    points = [GainPoint(0.0, silence)]

    for seg in segments:
        # The curve covers [0, total]; speech beyond it is clamped
        if seg.start_sec >= total_duration_sec:
            continue
        end_sec = min(seg.end_sec, total_duration_sec)
        attack_start = max(0.0, seg.start_sec - attack_sec)
        release_end = min(total_duration_sec, end_sec + release_sec)

        if attack_start > 0:
            points.append(GainPoint(attack_start, silence))
        points.append(GainPoint(seg.start_sec, speech))
        points.append(GainPoint(end_sec, speech))
        points.append(GainPoint(release_end, silence))

    if points[-1].time_sec < total_duration_sec:
        points.append(GainPoint(total_duration_sec, silence))

    # sorted() is stable, so equal times keep emission order before dedup
    return deduplicate_points(sorted(points, key=lambda p: p.time_sec))


def deduplicate_points(points: list[GainPoint]) -> list[GainPoint]:
    """Collapse points sharing a time, keeping the lower (more ducked) gain.

    Overlapping attack/release windows of neighbouring segments would
    otherwise put a loud spike between them.
    """
    if len(points) <= 1:
        return [GainPoint(p.time_sec, p.gain_db) for p in points]

    result = [GainPoint(points[0].time_sec, points[0].gain_db)]
    for point in points[1:]:
        last = result[-1]
        if abs(point.time_sec - last.time_sec) < POINT_TIME_EPSILON:
            last.gain_db = min(last.gain_db, point.gain_db)
        else:
            result.append(GainPoint(point.time_sec, point.gain_db))
    return result
