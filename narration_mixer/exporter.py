"""Mix manifest: provenance and metrics published alongside the mixed audio."""

import json
import os
from datetime import datetime, timezone

from narration_mixer.constants import (
    LOUDNORM_I,
    LOUDNORM_LRA,
    LOUDNORM_TP,
    OUTPUT_CHANNELS,
    OUTPUT_SAMPLE_RATE,
    VERSION,
)
from narration_mixer.models import DuckingPolicy, MixRequest, MixResult


def build_manifest(
    request: MixRequest,
    result: MixResult,
    policy: DuckingPolicy,
    music_track_id: str | None,
    sfx_sound_ids: list[str],
) -> dict:
    """Describe a finished mix.

    ``metrics.peaks_estimated`` is True: the peak values come from the
    loudnorm targets below, no loudness pass runs on the rendered file.
    """
    data = result.to_dict()
    return {
        "job": request.job_id,
        "voice": request.voice_asset_ref,
        "mood": request.mood_tag,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "mixer_version": VERSION,
        "settings": {
            "ducking": {
                "speech_level_db": policy.speech_level_db,
                "silence_level_db": policy.silence_level_db,
                "attack_ms": policy.attack_ms,
                "release_ms": policy.release_ms,
            },
            "loudnorm": {"I": LOUDNORM_I, "TP": LOUDNORM_TP, "LRA": LOUDNORM_LRA},
            "sample_rate": OUTPUT_SAMPLE_RATE,
            "channels": OUTPUT_CHANNELS,
        },
        "music_track": music_track_id,
        "sfx": sfx_sound_ids,
        "ducking_applied": result.ducking_applied,
        "mixed_audio": result.mixed_audio_ref,
        "metrics": data["metrics"],
        "quality": data["quality"],
    }


def write_manifest(path: str, manifest: dict) -> str:
    """Write a manifest as indented JSON. Returns path."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w") as f:
        json.dump(manifest, f, indent=2)
    return path


def load_manifest(path: str) -> dict | None:
    """Read a manifest. Returns None if the file doesn't exist."""
    if not os.path.exists(path):
        return None
    with open(path) as f:
        return json.load(f)
