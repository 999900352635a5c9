"""Shared fixtures for narration mixer tests."""

import os

import numpy as np
import pytest
from pydub import AudioSegment

from narration_mixer.models import MusicTrack, SfxTrack


def make_tone(duration_ms: int, freq: float = 440.0, amplitude: float = 0.5) -> AudioSegment:
    """Mono 44.1 kHz sine tone."""
    t = np.linspace(0, duration_ms / 1000, int(44100 * duration_ms / 1000), endpoint=False)
    samples = (np.sin(2 * np.pi * freq * t) * amplitude * 32767).astype(np.int16)
    return AudioSegment(data=samples.tobytes(), sample_width=2, frame_rate=44100, channels=1)


@pytest.fixture
def loud_wav(tmp_path):
    """One second of tone as WAV."""
    path = tmp_path / "loud.wav"
    make_tone(1000).export(str(path), format="wav")
    return str(path)


@pytest.fixture
def silent_wav(tmp_path):
    """One second of digital silence as WAV."""
    path = tmp_path / "silent.wav"
    AudioSegment.silent(duration=1000, frame_rate=44100).export(str(path), format="wav")
    return str(path)


@pytest.fixture
def speech_wav(tmp_path):
    """Tone, two seconds of silence, tone: speech at 0-1s and 3-4s."""
    path = tmp_path / "speech.wav"
    audio = make_tone(1000) + AudioSegment.silent(duration=2000, frame_rate=44100) + make_tone(1000)
    audio.export(str(path), format="wav")
    return str(path)


class FakeStore:
    """AssetStore stand-in: downloads write a stub file, uploads are recorded."""

    def __init__(self, fail_refs=()):
        self.fail_refs = set(fail_refs)
        self.downloads = []
        self.uploads = []

    def download(self, ref, local_path):
        from narration_mixer.errors import DOWNLOAD_FAILED, MixError

        self.downloads.append(ref)
        if ref in self.fail_refs:
            raise MixError.retryable(DOWNLOAD_FAILED, f"Failed to download {ref}", ref=ref)
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, "wb") as f:
            f.write(b"RIFF")
        return local_path

    def upload(self, local_path, dest_ref):
        self.uploads.append((os.path.basename(local_path), dest_ref))
        return dest_ref


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def music_tracks():
    return [
        MusicTrack(id="calm-01", mood="calm", duration=120.0, asset_ref="gs://lib/calm-01.mp3", energy=0.3),
        MusicTrack(id="calm-02", mood="calm", duration=30.0, asset_ref="gs://lib/calm-02.mp3",
                   energy=0.4, loopable=True, loop_points=(5.0, 25.0)),
        MusicTrack(id="epic-01", mood="epic", duration=200.0, asset_ref="gs://lib/epic-01.mp3", energy=0.9),
    ]


@pytest.fixture
def sfx_library():
    return {
        "whoosh": SfxTrack(id="whoosh", filename="whoosh.wav", category="transitions",
                           duration_sec=0.8, asset_ref="gs://sfx/whoosh.wav"),
        "ding": SfxTrack(id="ding", filename="ding.wav", category="ui",
                         duration_sec=0.5, asset_ref="gs://sfx/ding.wav"),
        "boom": SfxTrack(id="boom", filename="boom.wav", category="emphasis",
                         duration_sec=1.5, asset_ref="gs://sfx/boom.wav"),
    }
