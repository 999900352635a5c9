"""CLI interface: speech detection, envelope and graph inspection, full mixes."""

import argparse
import dataclasses
import json
import logging
import os
import sys

from narration_mixer.constants import OUTPUT_PREFIX, VERSION
from narration_mixer.envelope import generate_ducking_curve
from narration_mixer.errors import MixError
from narration_mixer.graph import compile_mix_graph
from narration_mixer.models import DuckingPolicy, MixRequest
from narration_mixer.music import LibraryCache, LibraryMusicSelector, NoMusicSelector
from narration_mixer.pipeline import MixOrchestrator
from narration_mixer.renderer import find_ffmpeg
from narration_mixer.segmenter import detect_speech_segments, probe_duration
from narration_mixer.sfx import LibrarySfxExtractor, NoSfxExtractor, script_segments_from_dicts
from narration_mixer.storage import AssetStore

SETTINGS_KEYS = {
    "ducking", "vad", "render_timeout_sec", "music_library", "sfx_library", "output_prefix",
}
VAD_KEYS = {"noise_db", "min_silence_sec", "merge_threshold_sec"}


def load_settings(path: str | None) -> dict:
    """Load a JSON settings file. Missing path means defaults (empty dict).

    Raises ValueError on unknown keys.
    """
    if not path:
        return {}
    with open(path) as f:
        settings = json.load(f)
    if not isinstance(settings, dict):
        raise ValueError("settings must be a JSON object")

    unknown = set(settings) - SETTINGS_KEYS
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

    policy_fields = {f.name for f in dataclasses.fields(DuckingPolicy)}
    unknown = set(settings.get("ducking", {})) - policy_fields
    if unknown:
        raise ValueError(f"Unknown ducking settings: {', '.join(sorted(unknown))}")

    unknown = set(settings.get("vad", {})) - VAD_KEYS
    if unknown:
        raise ValueError(f"Unknown vad settings: {', '.join(sorted(unknown))}")
    return settings


def _check_ffmpeg():
    """Verify ffmpeg is installed."""
    if not find_ffmpeg():
        print("Error: ffmpeg is required but not found.", file=sys.stderr)
        print("Install with: apt install ffmpeg (or brew install ffmpeg)", file=sys.stderr)
        raise SystemExit(1)


def _settings(args) -> dict:
    try:
        return load_settings(args.settings)
    except (OSError, ValueError) as e:
        print(f"Error: Invalid settings file {args.settings}: {e}", file=sys.stderr)
        raise SystemExit(1)


def _fail(e: MixError):
    print(f"Error: {e}", file=sys.stderr)
    if e.is_retryable:
        print("This failure is retryable.", file=sys.stderr)
    raise SystemExit(1)


def _detect(args, settings: dict):
    if not os.path.exists(args.audio):
        print(f"Error: File not found: {args.audio}", file=sys.stderr)
        raise SystemExit(1)
    return detect_speech_segments(args.audio, **settings.get("vad", {}))


def cmd_detect(args):
    """Print detected speech segments as JSON."""
    _check_ffmpeg()
    settings = _settings(args)
    try:
        segments = _detect(args, settings)
    except MixError as e:
        _fail(e)
    print(json.dumps([dataclasses.asdict(s) for s in segments], indent=2))


def _curve(args, settings: dict):
    segments = _detect(args, settings)
    duration = args.duration if args.duration is not None else probe_duration(args.audio)
    policy = DuckingPolicy(**settings.get("ducking", {}))
    return segments, generate_ducking_curve(segments, policy, duration)


def cmd_envelope(args):
    """Print the ducking gain curve as JSON."""
    _check_ffmpeg()
    settings = _settings(args)
    try:
        _, curve = _curve(args, settings)
    except MixError as e:
        _fail(e)
    print(json.dumps([dataclasses.asdict(p) for p in curve], indent=2))


def cmd_graph(args):
    """Print the ffmpeg filter program for a voice (and optional music) file."""
    _check_ffmpeg()
    settings = _settings(args)
    try:
        segments, curve = _curve(args, settings)
    except MixError as e:
        _fail(e)
    graph = compile_mix_graph(
        args.audio, args.music, curve, [], bool(segments) and bool(args.music)
    )
    print(graph.program)


def _load_script(path: str):
    with open(path) as f:
        data = json.load(f)
    items = data.get("segments", []) if isinstance(data, dict) else data
    return script_segments_from_dicts(items)


def cmd_mix(args):
    """Run a full mix and print the result as JSON."""
    _check_ffmpeg()
    settings = _settings(args)

    script_segments = []
    if args.script:
        try:
            script_segments = _load_script(args.script)
        except (OSError, ValueError, KeyError) as e:
            print(f"Error: Could not load script {args.script}: {e}", file=sys.stderr)
            raise SystemExit(1)

    store = AssetStore()
    cache = LibraryCache()
    music_selector = NoMusicSelector()
    if settings.get("music_library") and not args.no_music:
        music_selector = LibraryMusicSelector(settings["music_library"], store, cache)
    sfx_extractor = NoSfxExtractor()
    if settings.get("sfx_library"):
        sfx_extractor = LibrarySfxExtractor(settings["sfx_library"], cache)

    orchestrator = MixOrchestrator(
        store=store,
        music_selector=music_selector,
        sfx_extractor=sfx_extractor,
        policy=DuckingPolicy(**settings.get("ducking", {})),
        render_timeout=settings.get("render_timeout_sec"),
        output_prefix=args.output or settings.get("output_prefix", OUTPUT_PREFIX),
        **settings.get("vad", {}),
    )
    request = MixRequest(
        voice_asset_ref=args.voice,
        mood_tag=args.mood,
        target_duration_sec=args.duration,
        script_segments=script_segments,
        job_id=args.job or "",
    )

    try:
        result = orchestrator.run(request)
    except MixError as e:
        _fail(e)
    print(json.dumps(result.to_dict(), indent=2))


def main(argv=None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="narration-mixer",
        description="Narration Mixer: duck music under speech and render the mix",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--settings", help="JSON settings file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # detect
    detect_parser = subparsers.add_parser("detect", help="Print speech segments")
    detect_parser.add_argument("audio", help="Path to the narration audio")
    detect_parser.set_defaults(func=cmd_detect)

    # envelope
    envelope_parser = subparsers.add_parser("envelope", help="Print the ducking gain curve")
    envelope_parser.add_argument("audio", help="Path to the narration audio")
    envelope_parser.add_argument("--duration", type=float, help="Curve length in seconds (default: audio length)")
    envelope_parser.set_defaults(func=cmd_envelope)

    # graph
    graph_parser = subparsers.add_parser("graph", help="Print the ffmpeg filter program")
    graph_parser.add_argument("audio", help="Path to the narration audio")
    graph_parser.add_argument("--music", help="Music bed path")
    graph_parser.add_argument("--duration", type=float, help="Mix length in seconds (default: audio length)")
    graph_parser.set_defaults(func=cmd_graph)

    # mix
    mix_parser = subparsers.add_parser("mix", help="Mix narration with music and SFX")
    mix_parser.add_argument("voice", help="Voice asset reference (path, file://, http(s):// or gs://)")
    mix_parser.add_argument("--mood", required=True, help="Music mood tag")
    mix_parser.add_argument("--duration", type=float, required=True, help="Target duration in seconds")
    mix_parser.add_argument("--script", help="Script JSON with segment timings and SFX cues")
    mix_parser.add_argument("--output", help="Publish prefix (directory or upload URL)")
    mix_parser.add_argument("--job", help="Job id used in the publish path")
    mix_parser.add_argument("--no-music", action="store_true", help="Skip the music bed")
    mix_parser.set_defaults(func=cmd_mix)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return

    args.func(args)
