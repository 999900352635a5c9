"""Tests for pipeline module (mix orchestration)."""

import logging
import os
import threading
from unittest.mock import MagicMock, patch

import pytest
from pydub import AudioSegment

from conftest import FakeStore
from narration_mixer.errors import (
    DOWNLOAD_FAILED,
    INVALID_OUTPUT,
    MIX_FAILED,
    RENDER_TIMEOUT,
    UPLOAD_FAILED,
    VAD_FAILED,
    FFmpegError,
    MixError,
)
from narration_mixer.models import (
    FilterGraph,
    MixRequest,
    MusicTrack,
    QualityStatus,
    SfxTrigger,
    SpeechSegment,
)
from narration_mixer.pipeline import MixOrchestrator, MixStage

VOICE = "gs://bucket/voice.wav"
SEGMENTS = [SpeechSegment(1.0, 3.0), SpeechSegment(5.0, 8.0)]


class _Selector:
    """Music selector that hands back one prepared local file."""

    def __init__(self, track=None):
        self.track = track

    def select_music(self, mood, min_duration_sec):
        return self.track

    def prepare_looped_track(self, track, target_duration_sec, workdir):
        path = os.path.join(workdir, f"music_{track.id}.wav")
        with open(path, "wb") as f:
            f.write(b"RIFF")
        return path


class _Extractor:
    def __init__(self, triggers):
        self.triggers = triggers

    def extract_sfx_triggers(self, segments):
        return list(self.triggers)


def _track():
    return MusicTrack(id="calm-01", mood="calm", duration=120.0, asset_ref="gs://lib/calm-01.mp3")


def _orchestrator(store, workdir, track=None, triggers=()):
    return MixOrchestrator(
        store=store,
        music_selector=_Selector(track),
        sfx_extractor=_Extractor(triggers),
        ffmpeg="ffmpeg",
        workspace_dir=str(workdir),
        max_workers=2,
    )


def _request():
    return MixRequest(voice_asset_ref=VOICE, mood_tag="calm", target_duration_sec=10.0, job_id="job-1")


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


# --- Happy path ---

@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_run_with_music_applies_ducking(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """Speech plus music: ducking applies and the music is automated."""
    orch = _orchestrator(fake_store, workdir, track=_track())
    result = orch.run(_request())

    assert result.ducking_applied is True
    assert result.original_audio_ref == VOICE
    assert result.mixed_audio_ref == "output/job-1/mixed.wav"
    graph = mock_render.call_args.args[0]
    assert "volume='if(between(t," in graph.program
    assert len(graph.inputs) == 2


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=[])
def test_no_speech_means_no_ducking(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """Music present but no speech: no automation."""
    result = _orchestrator(fake_store, workdir, track=_track()).run(_request())
    assert result.ducking_applied is False
    assert "[1:a]acopy[music]" in mock_render.call_args.args[0].program


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_no_music_means_no_ducking(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """Speech without music: voice-only mix."""
    result = _orchestrator(fake_store, workdir).run(_request())
    assert result.ducking_applied is False
    assert result.metrics.music_peak_db == 0.0
    assert mock_render.call_args.args[0].inputs[1:] == []


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_metrics_are_estimates(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """Metrics come from targets and counts."""
    result = _orchestrator(fake_store, workdir, track=_track()).run(_request())
    metrics = result.metrics
    assert metrics.voice_peak_db == -6
    assert metrics.mixed_peak_db == -6
    assert metrics.music_peak_db == -12
    assert metrics.ducking_segments == 2
    assert metrics.sfx_triggered == 0
    assert metrics.duration_sec == 10.0
    assert metrics.peaks_estimated is True


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_publishes_mix_and_manifest(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """Mixed audio and manifest go to the job's publish path."""
    _orchestrator(fake_store, workdir, track=_track()).run(_request())
    assert fake_store.uploads == [
        ("mixed.wav", "output/job-1/mixed.wav"),
        ("mix.json", "output/job-1/mix.json"),
    ]


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_stage_history(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """Every stage is visited in order, ending in cleanup."""
    orch = _orchestrator(fake_store, workdir)
    orch.run(_request())
    assert orch.history == [
        MixStage.INIT, MixStage.ASSETS_FETCHING, MixStage.SEGMENTING,
        MixStage.ENVELOPE_BUILDING, MixStage.GRAPH_COMPILING, MixStage.RENDERING,
        MixStage.PUBLISHING, MixStage.CLEANUP,
    ]
    assert orch.stage == MixStage.CLEANUP
    assert os.listdir(workdir) == []


# --- SFX isolation ---

@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_failed_sfx_dropped(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """One failed SFX download drops only that effect."""
    triggers = [
        SfxTrigger("whoosh", 1.0, 1.0, "gs://sfx/whoosh.wav"),
        SfxTrigger("ding", 2.0, 1.0, "gs://sfx/ding.wav"),
        SfxTrigger("boom", 3.0, 0.5, "gs://sfx/boom.wav"),
    ]
    fake_store.fail_refs.add("gs://sfx/ding.wav")
    result = _orchestrator(fake_store, workdir, track=_track(), triggers=triggers).run(_request())

    assert result.metrics.sfx_triggered == 2
    graph = mock_render.call_args.args[0]
    assert len(graph.inputs) == 4
    assert "adelay=1000|1000,volume=1.00[sfx0]" in graph.program
    assert "adelay=3000|3000,volume=0.50[sfx1]" in graph.program
    assert "adelay=2000" not in graph.program


class _BrokenPayloadStore(FakeStore):
    """Store whose download raises a non-I/O error for one reference."""

    def __init__(self, broken_ref):
        super().__init__()
        self.broken_ref = broken_ref

    def download(self, ref, local_path):
        if ref == self.broken_ref:
            raise ValueError("unexpected payload")
        return super().download(ref, local_path)


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_sfx_dropped_on_any_error(mock_detect, mock_render, mock_validate, workdir):
    """An SFX download raising something other than OSError is still only dropped."""
    store = _BrokenPayloadStore("gs://sfx/ding.wav")
    triggers = [
        SfxTrigger("whoosh", 1.0, 1.0, "gs://sfx/whoosh.wav"),
        SfxTrigger("ding", 2.0, 1.0, "gs://sfx/ding.wav"),
    ]
    result = _orchestrator(store, workdir, triggers=triggers).run(_request())

    assert result.metrics.sfx_triggered == 1
    assert "adelay=2000" not in mock_render.call_args.args[0].program
    assert os.listdir(workdir) == []


# --- Music ownership ---

class _OutsideSelector(_Selector):
    """Selector that prepares its file outside the given workdir."""

    def __init__(self, track, outside_dir):
        super().__init__(track)
        self.outside_dir = outside_dir
        self.prepared = None

    def prepare_looped_track(self, track, target_duration_sec, workdir):
        self.prepared = os.path.join(self.outside_dir, f"looped_{track.id}.wav")
        with open(self.prepared, "wb") as f:
            f.write(b"RIFF")
        return self.prepared


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_prepared_music_outside_workspace_cleaned_up(
    mock_detect, mock_render, mock_validate, fake_store, workdir, tmp_path
):
    """A prepared music file outside the workspace is moved in and released with it."""
    outside = tmp_path / "selector-out"
    outside.mkdir()
    selector = _OutsideSelector(_track(), str(outside))
    orch = MixOrchestrator(
        store=fake_store, music_selector=selector, ffmpeg="ffmpeg", workspace_dir=str(workdir)
    )
    orch.run(_request())

    music_input = mock_render.call_args.args[0].inputs[1]
    assert music_input.startswith(str(workdir))
    assert not os.path.exists(selector.prepared)
    assert os.listdir(outside) == []
    assert os.listdir(workdir) == []


# --- Concurrency ---

class _RendezvousStore(FakeStore):
    """Voice downloads wait until every run is downloading at once."""

    def __init__(self, parties):
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=10)
        self.lock = threading.Lock()

    def download(self, ref, local_path):
        if ref == VOICE:
            self.barrier.wait()
        with self.lock:
            return super().download(ref, local_path)


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_concurrent_runs_release_own_workspaces(
    mock_detect, mock_render, mock_validate, workdir
):
    """Two overlapping runs on one orchestrator both finish and leave no workspace."""
    store = _RendezvousStore(parties=2)
    orch = _orchestrator(store, workdir, track=_track())
    results, errors = [], []

    def worker():
        try:
            results.append(orch.run(_request()))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert len(results) == 2
    assert os.listdir(workdir) == []
    inputs = [c.args[0].inputs[0] for c in mock_render.call_args_list]
    assert len(set(inputs)) == 2


# --- Quality report ---

@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_quality_passes_for_full_length_mix(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """A render matching the target with default ducking passes every check."""
    mock_validate.return_value = AudioSegment.silent(duration=10000)
    result = _orchestrator(fake_store, workdir, track=_track()).run(_request())

    assert result.quality.status == QualityStatus.PASS
    assert result.quality.flags == []
    assert result.metrics.music_duck_db == -20
    assert result.to_dict()["quality"]["status"] == "PASS"


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_quality_fails_short_render_but_publishes(
    mock_detect, mock_render, mock_validate, fake_store, workdir, caplog
):
    """A short render is reported as FAIL and logged; publishing still happens."""
    mock_validate.return_value = AudioSegment.silent(duration=8000)
    with caplog.at_level(logging.WARNING, logger="narration_mixer.pipeline"):
        result = _orchestrator(fake_store, workdir, track=_track()).run(_request())

    assert result.quality.status == QualityStatus.FAIL
    assert result.quality.flags == ["DURATION_MISMATCH"]
    assert result.quality.duration_diff_percent == pytest.approx(20.0)
    assert "DURATION_MISMATCH" in caplog.text
    assert len(fake_store.uploads) == 2


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_quality_skips_ducking_check_without_music(
    mock_detect, mock_render, mock_validate, fake_store, workdir
):
    mock_validate.return_value = AudioSegment.silent(duration=10000)
    result = _orchestrator(fake_store, workdir).run(_request())
    assert result.metrics.music_duck_db is None
    assert "skipped" in result.quality.checks["music_ducking"].message
    assert result.quality.status == QualityStatus.PASS


# --- Failures ---

@patch("narration_mixer.pipeline.require_ffmpeg")
def test_missing_ffmpeg_is_critical(mock_require, fake_store, workdir):
    """No ffmpeg: critical, nothing downloaded."""
    mock_require.side_effect = MixError.critical(MIX_FAILED, "ffmpeg binary not found")
    orch = MixOrchestrator(store=fake_store, workspace_dir=str(workdir))
    with pytest.raises(MixError) as exc_info:
        orch.run(_request())
    assert not exc_info.value.is_retryable
    assert exc_info.value.stage == "init"
    assert orch.stage == MixStage.FAILED
    assert fake_store.downloads == []


def test_voice_download_failure_is_retryable(fake_store, workdir):
    """Voice failures propagate with stage and reference."""
    fake_store.fail_refs.add(VOICE)
    with pytest.raises(MixError) as exc_info:
        _orchestrator(fake_store, workdir).run(_request())
    error = exc_info.value
    assert error.code == DOWNLOAD_FAILED
    assert error.is_retryable
    assert error.stage == "assets_fetching"
    assert error.context["ref"] == VOICE


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.compile_mix_graph")
@patch("narration_mixer.pipeline.detect_speech_segments")
@pytest.mark.parametrize("failure", ["download", "segment", "compile", "render", "upload"])
def test_workspace_removed_after_failure(
    mock_detect, mock_compile, mock_render, mock_validate, failure, fake_store, workdir
):
    """The temporary workspace is gone whichever stage fails."""
    mock_detect.return_value = SEGMENTS
    mock_compile.return_value = FilterGraph(program="[0:a]acopy[out]", inputs=["voice.wav"])

    if failure == "download":
        fake_store.fail_refs.add(VOICE)
    elif failure == "segment":
        mock_detect.side_effect = MixError.retryable(VAD_FAILED, "no audio")
    elif failure == "compile":
        mock_compile.side_effect = ValueError("bad graph")
    elif failure == "render":
        mock_render.side_effect = FFmpegError(RENDER_TIMEOUT, "ffmpeg exceeded 5s deadline")
    elif failure == "upload":
        fake_store.upload = MagicMock(side_effect=MixError.retryable(UPLOAD_FAILED, "denied"))

    orch = _orchestrator(fake_store, workdir, track=_track())
    with pytest.raises(MixError) as exc_info:
        orch.run(_request())

    assert exc_info.value.is_retryable
    assert orch.stage == MixStage.FAILED
    assert os.listdir(workdir) == []


@patch("narration_mixer.pipeline.detect_speech_segments")
def test_unexpected_error_wrapped_with_stage(mock_detect, fake_store, workdir):
    """Non-mixer exceptions surface as retryable MIX_FAILED with the stage."""
    mock_detect.side_effect = RuntimeError("kaboom")
    with pytest.raises(MixError) as exc_info:
        _orchestrator(fake_store, workdir).run(_request())
    assert exc_info.value.code == MIX_FAILED
    assert exc_info.value.stage == "segmenting"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@patch("narration_mixer.pipeline.validate_render")
@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_invalid_output_not_published(mock_detect, mock_render, mock_validate, fake_store, workdir):
    """A failed validation stops before upload."""
    mock_validate.side_effect = MixError.retryable(INVALID_OUTPUT, "silent")
    with pytest.raises(MixError) as exc_info:
        _orchestrator(fake_store, workdir).run(_request())
    assert exc_info.value.stage == "publishing"
    assert fake_store.uploads == []


@patch("narration_mixer.pipeline.render_mix")
@patch("narration_mixer.pipeline.detect_speech_segments", return_value=SEGMENTS)
def test_ffmpeg_failure_logs_command_and_stderr(mock_detect, mock_render, fake_store, workdir, caplog):
    """A failed render logs the ffmpeg command line and its stderr."""
    mock_render.side_effect = FFmpegError(
        MIX_FAILED, "ffmpeg failed (exit 1)",
        command=["ffmpeg", "-i", "voice.wav"],
        stderr="Invalid filter graph",
    )
    with caplog.at_level(logging.DEBUG, logger="narration_mixer.pipeline"):
        with pytest.raises(FFmpegError):
            _orchestrator(fake_store, workdir).run(_request())

    assert "Mix failed during rendering" in caplog.text
    assert "ffmpeg -i voice.wav" in caplog.text
    assert "Invalid filter graph" in caplog.text
