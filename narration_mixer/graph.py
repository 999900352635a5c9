"""Compile gain curves and stems into an ffmpeg filter_complex program."""

from narration_mixer.constants import (
    AMIX_DROPOUT_TRANSITION,
    CONSTANT_GAIN_EPSILON,
    FALLBACK_GAIN,
    LOUDNORM_I,
    LOUDNORM_LRA,
    LOUDNORM_TP,
)
from narration_mixer.models import ActiveSfx, FilterGraph, GainPoint, SfxTrigger

LOUDNORM = f"loudnorm=I={LOUDNORM_I}:TP={LOUDNORM_TP}:LRA={LOUDNORM_LRA}"


def db_to_linear(db: float) -> float:
    """Convert dB to linear gain."""
    return 10 ** (db / 20)


def build_volume_expression(curve: list[GainPoint]) -> str:
    """Convert a gain curve to an ffmpeg volume expression in t.

    Each pair of neighbouring points becomes an if(between(t,t0,t1),...)
    branch, either constant or a linear ramp; branches nest left to right
    and anything outside them evaluates to FALLBACK_GAIN.
    """
    if not curve:
        return f"{FALLBACK_GAIN:.1f}"

    if len(curve) == 1:
        return f"{db_to_linear(curve[0].gain_db):.4f}"

    branches = []
    for p0, p1 in zip(curve, curve[1:]):
        v0 = db_to_linear(p0.gain_db)
        v1 = db_to_linear(p1.gain_db)
        window = f"between(t,{p0.time_sec:.3f},{p1.time_sec:.3f})"

        if abs(v1 - v0) < CONSTANT_GAIN_EPSILON:
            branches.append(f"if({window},{v0:.4f}")
        else:
            dt = p1.time_sec - p0.time_sec
            slope = (v1 - v0) / (dt or 1)
            branches.append(
                f"if({window},{v0:.4f}{slope:+.6f}*(t-{p0.time_sec:.3f})"
            )

    return ",".join(branches) + f",{FALLBACK_GAIN:.1f}" + ")" * len(branches)


def build_filter_complex(
    curve: list[GainPoint],
    sfx_triggers: list[SfxTrigger],
    has_music: bool,
) -> str:
    """Build the filter_complex string.

    Input order is fixed: 0 is voice, 1 is music when present, and the SFX
    stems follow in trigger order. An empty curve attaches no automation to
    the music stream.
    """
    filters = ["[0:a]acopy[voice]"]
    labels = ["[voice]"]
    next_input = 1

    if has_music:
        if curve:
            expr = build_volume_expression(curve)
            filters.append(f"[1:a]volume='{expr}':eval=frame[music]")
        else:
            filters.append("[1:a]acopy[music]")
        labels.append("[music]")
        next_input = 2

    for i, trigger in enumerate(sfx_triggers):
        delay_ms = round(trigger.time_sec * 1000)
        filters.append(
            f"[{next_input + i}:a]adelay={delay_ms}|{delay_ms},"
            f"volume={trigger.volume:.2f}[sfx{i}]"
        )
        labels.append(f"[sfx{i}]")

    if len(labels) > 1:
        filters.append(
            f"{''.join(labels)}amix=inputs={len(labels)}:duration=longest:"
            f"dropout_transition={AMIX_DROPOUT_TRANSITION}[mixed]"
        )
        filters.append(f"[mixed]{LOUDNORM}[out]")
    else:
        filters.append(f"[voice]{LOUDNORM}[out]")

    return ";".join(filters)


def compile_mix_graph(
    voice_path: str,
    music_path: str | None,
    curve: list[GainPoint],
    active_sfx: list[ActiveSfx],
    ducking_applied: bool,
) -> FilterGraph:
    """Assemble the program and its input list from the assets that exist.

    The curve is only attached when ducking applies. SFX parameters come
    from the same ActiveSfx record as the file, so inputs and filters stay
    aligned when some downloads failed.
    """
    inputs = [voice_path]
    if music_path:
        inputs.append(music_path)
    inputs += [item.local_path for item in active_sfx]

    program = build_filter_complex(
        curve if (ducking_applied and music_path) else [],
        [item.trigger for item in active_sfx],
        has_music=bool(music_path),
    )
    return FilterGraph(program=program, inputs=inputs)
