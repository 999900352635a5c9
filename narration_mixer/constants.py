"""All magic numbers and configuration constants."""

VAD_SAMPLE_RATE = 16000                 # Hz, mono analysis transcode
VAD_NOISE_DB = -30                      # dBFS silencedetect noise floor
VAD_MIN_SILENCE_SEC = 0.3               # shortest gap counted as silence
SPEECH_MERGE_THRESHOLD_SEC = 0.2        # merge speech segments closer than this
SPEECH_LEVEL_DB = -20                   # music gain while narration plays
SILENCE_LEVEL_DB = -12                  # music gain when nobody speaks
ATTACK_MS = 50                          # ramp down before speech
RELEASE_MS = 300                        # ramp back up after speech
POINT_TIME_EPSILON = 0.0001             # seconds; closer gain points collide
CONSTANT_GAIN_EPSILON = 0.001           # linear gain delta treated as flat
FALLBACK_GAIN = 1.0                     # volume outside every envelope branch
LOUDNORM_I = -16                        # LUFS integrated target
LOUDNORM_TP = -6                        # dBTP true peak ceiling
LOUDNORM_LRA = 11                       # LU loudness range
AMIX_DROPOUT_TRANSITION = 2             # seconds
OUTPUT_SAMPLE_RATE = 44100
OUTPUT_CHANNELS = 2
OUTPUT_FORMAT = "wav"
MUSIC_FADE_MS = 2000                    # fade at the end of a looped music bed
DOWNLOAD_TIMEOUT_SEC = 60               # per HTTP request
FETCH_WORKERS = 4                       # concurrent asset downloads
GCS_PUBLIC_HOST = "https://storage.googleapis.com/"
OUTPUT_PREFIX = "output"                # default publish destination
MIXED_FILENAME = "mixed.wav"
MANIFEST_FILENAME = "mix.json"
VERSION = "0.1.0"
QUALITY_DURATION_MATCH_PERCENT = 1.0    # max rendered vs target duration drift
QUALITY_MAX_PEAK_DB = -0.5              # peaks at or above this count as clipping
QUALITY_VOICE_MIN_DB = -9               # voice peak window, inclusive
QUALITY_VOICE_MAX_DB = -3
QUALITY_MUSIC_DUCK_MAX_DB = -18         # music under speech must sit below this
