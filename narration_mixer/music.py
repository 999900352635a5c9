"""Music bed selection from a track library and duration-matched looping."""

import logging
import os

from pydub import AudioSegment

from narration_mixer.constants import MUSIC_FADE_MS
from narration_mixer.errors import LIBRARY_LOAD_FAILED, LOOP_FAILED, MixError
from narration_mixer.models import MusicTrack
from narration_mixer.storage import AssetStore, fetch_json
from narration_mixer.workspace import extension_for, slug

logger = logging.getLogger(__name__)


class LibraryCache:
    """Explicit cache for loaded libraries, keyed by source reference.

    One instance is shared by whoever should share loaded libraries; call
    ``invalidate()`` after a library is republished.
    """

    def __init__(self):
        self._entries = {}

    def get(self, key: str):
        return self._entries.get(key)

    def put(self, key: str, value) -> None:
        self._entries[key] = value

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def _track_from_dict(data: dict) -> MusicTrack:
    loop_points = data.get("loop_points") or data.get("loopPoints")
    if isinstance(loop_points, dict):
        loop_points = (loop_points["startSec"], loop_points["endSec"])
    elif loop_points is not None:
        loop_points = tuple(loop_points)
    return MusicTrack(
        id=data["id"],
        mood=data["mood"],
        duration=float(data["duration"]),
        asset_ref=data.get("asset_ref") or data["gcsPath"],
        tempo=float(data.get("tempo", 0)),
        energy=float(data.get("energy", 0.5)),
        loopable=bool(data.get("loopable", False)),
        loop_points=loop_points,
        tags=list(data.get("tags", [])),
    )


def load_music_library(source: str, cache: LibraryCache | None = None) -> list[MusicTrack]:
    """Load a {"tracks": [...]} library from a path or URL.

    Raises retryable LIBRARY_LOAD_FAILED on fetch errors or a malformed
    document.
    """
    if cache is not None and source in cache:
        return cache.get(source)

    try:
        data = fetch_json(source)
    except Exception as e:
        raise MixError.retryable(
            LIBRARY_LOAD_FAILED, f"Failed to load music library: {e}", source=source
        ) from e

    if not isinstance(data, dict) or not isinstance(data.get("tracks"), list):
        raise MixError.retryable(
            LIBRARY_LOAD_FAILED, "Music library has no tracks array", source=source
        )
    try:
        tracks = [_track_from_dict(t) for t in data["tracks"]]
    except (KeyError, TypeError, ValueError) as e:
        raise MixError.retryable(
            LIBRARY_LOAD_FAILED, f"Malformed music track: {e}", source=source
        ) from e

    logger.info("Loaded %d music tracks from %s", len(tracks), source)
    if cache is not None:
        cache.put(source, tracks)
    return tracks


def _score(
    track: MusicTrack,
    min_duration_sec: float,
    target_energy: float | None,
    tags: list[str],
) -> float:
    score = 1.0 if min_duration_sec <= 0 else min(1.0, track.duration / min_duration_sec)
    if target_energy is not None:
        score += 1.0 - abs(track.energy - target_energy)
    if tags:
        score += len(set(tags) & set(track.tags)) / len(tags)
    return score


def select_music(
    mood: str,
    min_duration_sec: float,
    library: list[MusicTrack],
    exclude_ids: tuple = (),
    target_energy: float | None = None,
    tags: tuple = (),
) -> MusicTrack | None:
    """Pick the best track for a mood, or None when nothing fits.

    Candidates match the mood exactly, are not excluded, and either last at
    least min_duration_sec or are loopable. Ranked by duration fit, energy
    closeness and tag overlap; the earliest track wins ties.
    """
    candidates = [
        t for t in library
        if t.mood == mood
        and t.id not in exclude_ids
        and (t.duration >= min_duration_sec or t.loopable)
    ]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda t: _score(t, min_duration_sec, target_energy, list(tags)),
    )


def _build_music_bed(music: AudioSegment, duration_ms: int) -> AudioSegment:
    """Loop or trim music to fit a given duration."""
    if len(music) == 0:
        return AudioSegment.silent(duration=duration_ms)

    result = music
    while len(result) < duration_ms:
        result += music

    return result[:duration_ms]


def prepare_looped_track(
    track: MusicTrack,
    target_duration_sec: float,
    store: AssetStore,
    workdir: str,
) -> str:
    """Fetch a track and make it cover target_duration_sec.

    Long-enough tracks are returned as downloaded. Shorter ones have their
    loop region (loop_points, default the whole track) repeated, trimmed
    and faded out, then exported as WAV. Returns a local path.
    """
    source = os.path.join(workdir, f"music_{slug(track.id)}{extension_for(track.asset_ref)}")
    store.download(track.asset_ref, source)

    if track.duration >= target_duration_sec:
        return source

    start_sec, end_sec = track.loop_points or (0.0, track.duration)
    if start_sec < 0 or end_sec <= start_sec:
        raise MixError.retryable(
            LOOP_FAILED,
            f"Invalid loop points {start_sec}-{end_sec} for track {track.id}",
            track_id=track.id,
        )

    target = os.path.join(workdir, f"music_{slug(track.id)}_looped.wav")
    try:
        audio = AudioSegment.from_file(source)
        region = audio[int(start_sec * 1000):int(end_sec * 1000)]
        if len(region) == 0:
            raise ValueError("loop region is empty")
        target_ms = int(target_duration_sec * 1000)
        bed = _build_music_bed(region, target_ms).fade_out(min(MUSIC_FADE_MS, target_ms))
        bed.export(target, format="wav")
    except Exception as e:
        if os.path.exists(target):
            os.remove(target)
        raise MixError.retryable(
            LOOP_FAILED, f"Failed to loop track {track.id}: {e}", track_id=track.id
        ) from e

    logger.info(
        "Looped %s (%.1fs) to %.1fs", track.id, track.duration, target_duration_sec
    )
    return target


class LibraryMusicSelector:
    """Music selector backed by a JSON track library."""

    def __init__(
        self,
        library_source: str,
        store: AssetStore,
        cache: LibraryCache | None = None,
        target_energy: float | None = None,
    ):
        self.library_source = library_source
        self.store = store
        self.cache = cache if cache is not None else LibraryCache()
        self.target_energy = target_energy

    def select_music(self, mood: str, min_duration_sec: float) -> MusicTrack | None:
        library = load_music_library(self.library_source, self.cache)
        track = select_music(mood, min_duration_sec, library, target_energy=self.target_energy)
        if track is None:
            logger.info("No music track for mood %r", mood)
        return track

    def prepare_looped_track(self, track: MusicTrack, target_duration_sec: float, workdir: str) -> str:
        return prepare_looped_track(track, target_duration_sec, self.store, workdir)


class NoMusicSelector:
    """Selector that never picks a track; mixes run voice and SFX only."""

    def select_music(self, mood: str, min_duration_sec: float) -> MusicTrack | None:
        return None

    def prepare_looped_track(self, track: MusicTrack, target_duration_sec: float, workdir: str) -> str:
        raise RuntimeError("NoMusicSelector has no tracks to prepare")