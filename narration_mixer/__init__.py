"""Narration Mixer: speech-aware music ducking and ffmpeg mix rendering."""
