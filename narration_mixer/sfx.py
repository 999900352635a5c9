"""Sound-effect library and cue resolution into timed triggers."""

import logging

from narration_mixer.errors import LIBRARY_LOAD_FAILED, MixError
from narration_mixer.models import ScriptSegment, SfxCue, SfxTrack, SfxTrigger, WordTiming
from narration_mixer.music import LibraryCache
from narration_mixer.storage import fetch_json

logger = logging.getLogger(__name__)


def _track_from_dict(data: dict) -> SfxTrack:
    return SfxTrack(
        id=data["id"],
        filename=data["filename"],
        category=data["category"],
        duration_sec=float(data.get("duration_sec", data.get("durationSec", 0))),
        asset_ref=data.get("asset_ref") or data["gcsPath"],
        tags=list(data.get("tags", [])),
    )


def load_sfx_library(source: str, cache: LibraryCache | None = None) -> dict[str, SfxTrack]:
    """Load a {"tracks": [...]} SFX library, indexed by track id."""
    if cache is not None and source in cache:
        return cache.get(source)

    try:
        data = fetch_json(source)
        if not isinstance(data, dict) or not isinstance(data.get("tracks"), list):
            raise ValueError("no tracks array")
        library = {t.id: t for t in (_track_from_dict(d) for d in data["tracks"])}
    except Exception as e:
        raise MixError.retryable(
            LIBRARY_LOAD_FAILED, f"Failed to load SFX library: {e}", source=source
        ) from e

    logger.info("Loaded %d SFX tracks from %s", len(library), source)
    if cache is not None:
        cache.put(source, library)
    return library


def get_sfx(sound_id: str, library: dict[str, SfxTrack]) -> SfxTrack | None:
    return library.get(sound_id)


def _cue_time(cue: SfxCue, segment: ScriptSegment) -> float | None:
    """Absolute time of a cue, or None when it cannot be placed."""
    start = segment.actual_start_sec if segment.actual_start_sec is not None else segment.start_sec
    end = segment.actual_end_sec if segment.actual_end_sec is not None else segment.end_sec

    if cue.trigger == "segment_start":
        return start
    if cue.trigger == "segment_end":
        return end
    if cue.trigger == "timestamp":
        try:
            return float(cue.trigger_value)
        except ValueError:
            return None
    if cue.trigger == "word":
        wanted = cue.trigger_value.strip().lower()
        for timing in segment.word_timings:
            if timing.word.strip(".,!?;:\"'").lower() == wanted:
                return timing.start_sec
        return None
    return None


def extract_sfx_triggers(
    segments: list[ScriptSegment],
    library: dict[str, SfxTrack],
) -> list[SfxTrigger]:
    """Resolve every placeable cue with a known sound into an SfxTrigger.

    Actual (measured) segment timing wins over estimated timing. Cues with
    unknown sounds, unknown trigger types, or word cues without a matching
    word timing are skipped. The result is sorted by time; equal times keep
    script order.
    """
    triggers = []
    for segment in segments:
        for cue in segment.sfx_cues:
            track = get_sfx(cue.sound, library)
            if track is None:
                logger.warning("Unknown SFX %r in segment %s, skipping", cue.sound, segment.id)
                continue
            time_sec = _cue_time(cue, segment)
            if time_sec is None:
                logger.warning(
                    "Cannot place %s cue %r in segment %s, skipping",
                    cue.trigger, cue.trigger_value, segment.id,
                )
                continue
            triggers.append(SfxTrigger(
                sound_id=track.id,
                time_sec=time_sec,
                volume=cue.volume,
                asset_ref=track.asset_ref,
                segment_id=segment.id,
                duration_sec=track.duration_sec,
            ))
    return sorted(triggers, key=lambda t: t.time_sec)


def script_segments_from_dicts(items: list[dict]) -> list[ScriptSegment]:
    """Build ScriptSegments from a script JSON document's segment list."""
    segments = []
    for item in items:
        timing = item.get("timing", {})
        segments.append(ScriptSegment(
            id=str(item["id"]),
            start_sec=float(timing.get("start_sec", 0.0)),
            end_sec=float(timing.get("end_sec", 0.0)),
            actual_start_sec=timing.get("actual_start_sec"),
            actual_end_sec=timing.get("actual_end_sec"),
            word_timings=[
                WordTiming(w["word"], float(w["start_sec"]), float(w["end_sec"]))
                for w in timing.get("word_timings", [])
            ],
            sfx_cues=[
                SfxCue(
                    trigger=c["trigger"],
                    sound=c["sound"],
                    volume=float(c.get("volume", 1.0)),
                    trigger_value=str(c.get("trigger_value", "")),
                )
                for c in item.get("sfx_cues", [])
            ],
        ))
    return segments


class LibrarySfxExtractor:
    """SFX extractor backed by a JSON SFX library."""

    def __init__(self, library_source: str, cache: LibraryCache | None = None):
        self.library_source = library_source
        self.cache = cache if cache is not None else LibraryCache()

    def extract_sfx_triggers(self, segments: list[ScriptSegment]) -> list[SfxTrigger]:
        if not any(s.sfx_cues for s in segments):
            return []
        library = load_sfx_library(self.library_source, self.cache)
        return extract_sfx_triggers(segments, library)


class NoSfxExtractor:
    """Extractor that never produces triggers."""

    def extract_sfx_triggers(self, segments: list[ScriptSegment]) -> list[SfxTrigger]:
        return []
