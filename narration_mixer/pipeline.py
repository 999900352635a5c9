"""Mix orchestration: fetch assets, duck, compile, render, publish, clean up.

One MixOrchestrator.run() call handles one MixRequest:

    INIT -> ASSETS_FETCHING -> SEGMENTING -> ENVELOPE_BUILDING
         -> GRAPH_COMPILING -> RENDERING -> PUBLISHING -> CLEANUP

Any failure moves to FAILED. Each run owns its own temporary workspace,
released in a ``finally`` block, so it is gone on every exit path and
concurrent runs on one orchestrator never share files. Errors leave
enriched with the failing stage and asset reference; retrying is the
caller's decision.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum

from narration_mixer.constants import (
    FETCH_WORKERS,
    LOUDNORM_TP,
    MANIFEST_FILENAME,
    MIXED_FILENAME,
    OUTPUT_PREFIX,
    SPEECH_MERGE_THRESHOLD_SEC,
    VAD_MIN_SILENCE_SEC,
    VAD_NOISE_DB,
)
from narration_mixer.envelope import generate_ducking_curve
from narration_mixer.errors import MIX_FAILED, FFmpegError, MixError
from narration_mixer.exporter import build_manifest, write_manifest
from narration_mixer.graph import compile_mix_graph
from narration_mixer.models import (
    ActiveSfx,
    DuckingPolicy,
    MixMetrics,
    MixRequest,
    MixResult,
    MusicTrack,
    QualityStatus,
    SfxTrigger,
)
from narration_mixer.music import NoMusicSelector
from narration_mixer.quality import evaluate_mix_quality
from narration_mixer.renderer import render_mix, require_ffmpeg, validate_render
from narration_mixer.segmenter import detect_speech_segments
from narration_mixer.sfx import NoSfxExtractor
from narration_mixer.storage import AssetStore, is_remote
from narration_mixer.workspace import MixWorkspace, extension_for, slug

logger = logging.getLogger(__name__)


class MixStage(str, Enum):
    INIT = "init"
    ASSETS_FETCHING = "assets_fetching"
    SEGMENTING = "segmenting"
    ENVELOPE_BUILDING = "envelope_building"
    GRAPH_COMPILING = "graph_compiling"
    RENDERING = "rendering"
    PUBLISHING = "publishing"
    CLEANUP = "cleanup"
    FAILED = "failed"


class MixOrchestrator:
    """Runs mix requests end to end.

    Collaborators are injected: ``store`` (download/upload), a music selector
    (``select_music``/``prepare_looped_track``) and an SFX extractor
    (``extract_sfx_triggers``). The defaults mix voice only.

    ``render_timeout`` bounds every ffmpeg call; on expiry the subprocess is
    killed and a retryable error raised.

    One orchestrator may serve several requests at once. ``stage`` and
    ``history`` report the run that advanced most recently and are for
    observation only.
    """

    def __init__(
        self,
        store: AssetStore | None = None,
        music_selector=None,
        sfx_extractor=None,
        policy: DuckingPolicy | None = None,
        ffmpeg: str | None = None,
        render_timeout: float | None = None,
        output_prefix: str = OUTPUT_PREFIX,
        noise_db: float = VAD_NOISE_DB,
        min_silence_sec: float = VAD_MIN_SILENCE_SEC,
        merge_threshold_sec: float = SPEECH_MERGE_THRESHOLD_SEC,
        workspace_dir: str | None = None,
        max_workers: int = FETCH_WORKERS,
    ):
        self.store = store or AssetStore()
        self.music_selector = music_selector or NoMusicSelector()
        self.sfx_extractor = sfx_extractor or NoSfxExtractor()
        self.policy = policy or DuckingPolicy()
        self.ffmpeg = ffmpeg
        self.render_timeout = render_timeout
        self.output_prefix = output_prefix
        self.noise_db = noise_db
        self.min_silence_sec = min_silence_sec
        self.merge_threshold_sec = merge_threshold_sec
        self.workspace_dir = workspace_dir
        self.max_workers = max_workers

        self.stage = MixStage.INIT
        self.history: list[MixStage] = []

    def _enter(self, history: list[MixStage], stage: MixStage, job_id: str) -> None:
        history.append(stage)
        self.stage = stage
        self.history = history
        logger.info("Mix stage: %s (job=%s)", stage.value, job_id or "-")

    def run(self, request: MixRequest) -> MixResult:
        """Mix one request and publish the result."""
        history: list[MixStage] = []
        job_id = request.job_id
        self._enter(history, MixStage.INIT, job_id)
        workspace = MixWorkspace(base_dir=self.workspace_dir)
        current_asset = request.voice_asset_ref

        try:
            ffmpeg = self.ffmpeg or require_ffmpeg(MIX_FAILED)
            workspace.acquire()

            self._enter(history, MixStage.ASSETS_FETCHING, job_id)
            voice_path, music_path, music_track, active_sfx = self._fetch_assets(
                request, workspace
            )

            self._enter(history, MixStage.SEGMENTING, job_id)
            segments = detect_speech_segments(
                voice_path,
                noise_db=self.noise_db,
                min_silence_sec=self.min_silence_sec,
                merge_threshold_sec=self.merge_threshold_sec,
                ffmpeg=ffmpeg,
                timeout=self.render_timeout,
            )
            logger.info("Speech segments detected: %d", len(segments))

            self._enter(history, MixStage.ENVELOPE_BUILDING, job_id)
            curve = generate_ducking_curve(segments, self.policy, request.target_duration_sec)
            ducking_applied = bool(segments) and music_path is not None

            self._enter(history, MixStage.GRAPH_COMPILING, job_id)
            graph = compile_mix_graph(voice_path, music_path, curve, active_sfx, ducking_applied)

            self._enter(history, MixStage.RENDERING, job_id)
            mixed_path = workspace.file("render", MIXED_FILENAME)
            render_mix(graph, mixed_path, ffmpeg=ffmpeg, timeout=self.render_timeout)

            self._enter(history, MixStage.PUBLISHING, job_id)
            current_asset = mixed_path
            rendered = validate_render(mixed_path)
            metrics = self._estimate_metrics(request, segments, music_path, active_sfx, ducking_applied)
            quality = evaluate_mix_quality(
                metrics, ducking_applied, request.target_duration_sec,
                rendered_duration_sec=len(rendered) / 1000,
            )
            if quality.status != QualityStatus.PASS:
                logger.warning(
                    "Mix quality %s: %s", quality.status.value, ", ".join(quality.flags)
                )

            destination = self._destination(request)
            mixed_ref = self.store.upload(mixed_path, f"{destination}/{MIXED_FILENAME}")

            result = MixResult(
                mixed_audio_ref=mixed_ref,
                original_audio_ref=request.voice_asset_ref,
                ducking_applied=ducking_applied,
                metrics=metrics,
                quality=quality,
            )

            manifest = build_manifest(
                request, result, self.policy,
                music_track.id if music_track else None,
                [item.trigger.sound_id for item in active_sfx],
            )
            manifest_path = write_manifest(workspace.file("render", MANIFEST_FILENAME), manifest)
            self.store.upload(manifest_path, f"{destination}/{MANIFEST_FILENAME}")

            logger.info(
                "Mix published: %s (ducking=%s, sfx=%d, quality=%s)",
                mixed_ref, ducking_applied, len(active_sfx), quality.status.value,
            )
            return result
        except MixError as e:
            failed_stage = history[-1]
            self._enter(history, MixStage.FAILED, job_id)
            self._log_failure(e, failed_stage)
            raise e.with_context(
                stage=failed_stage.value, asset=current_asset, job=job_id
            )
        except Exception as e:
            failed_stage = history[-1]
            self._enter(history, MixStage.FAILED, job_id)
            error = MixError.retryable(MIX_FAILED, f"Mix failed: {e}")
            self._log_failure(error, failed_stage)
            raise error.with_context(
                stage=failed_stage.value, asset=current_asset, job=job_id
            ) from e
        finally:
            workspace.release()
            if history[-1] != MixStage.FAILED:
                self._enter(history, MixStage.CLEANUP, job_id)

    @staticmethod
    def _log_failure(error: MixError, stage: MixStage) -> None:
        logger.error("Mix failed during %s: %s", stage.value, error)
        if isinstance(error, FFmpegError):
            if error.command:
                logger.debug("ffmpeg command: %s", " ".join(error.command))
            if error.stderr:
                logger.debug("ffmpeg stderr:\n%s", error.stderr)

    def _fetch_assets(
        self, request: MixRequest, workspace: MixWorkspace
    ) -> tuple[str, str | None, MusicTrack | None, list[ActiveSfx]]:
        """Fetch voice, music and SFX concurrently; wait for every SFX attempt.

        Voice and music failures propagate. A failed SFX download only drops
        that trigger.
        """
        voice_path = workspace.file("assets", "voice" + extension_for(request.voice_asset_ref))
        triggers = self.sfx_extractor.extract_sfx_triggers(request.script_segments)
        logger.info("SFX triggers resolved: %d", len(triggers))

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            voice_future = pool.submit(self.store.download, request.voice_asset_ref, voice_path)
            music_future = pool.submit(self._resolve_music, request, workspace)
            sfx_futures = []
            for i, trigger in enumerate(triggers):
                path = workspace.file(
                    "sfx", f"{i:03d}_{slug(trigger.sound_id)}{extension_for(trigger.asset_ref)}"
                )
                sfx_futures.append(
                    (trigger, path, pool.submit(self.store.download, trigger.asset_ref, path))
                )

            active_sfx = [
                ActiveSfx(trigger, path)
                for trigger, path, future in sfx_futures
                if self._sfx_fetched(trigger, future)
            ]

            try:
                voice_future.result()
            except MixError as e:
                raise e.with_context(asset=request.voice_asset_ref)
            logger.info("Voice track downloaded: %s", voice_path)

            music_path, music_track = music_future.result()

        return voice_path, music_path, music_track, active_sfx

    @staticmethod
    def _sfx_fetched(trigger: SfxTrigger, future) -> bool:
        # Any failure drops only this effect; the mix goes on without it
        try:
            future.result()
        except Exception as e:
            logger.warning(
                "Failed to download SFX %s (%s), skipping: %s",
                trigger.sound_id, trigger.asset_ref, e,
            )
            return False
        return True

    def _resolve_music(
        self, request: MixRequest, workspace: MixWorkspace
    ) -> tuple[str | None, MusicTrack | None]:
        track = self.music_selector.select_music(request.mood_tag, request.target_duration_sec)
        if track is None:
            logger.info("No music selected, mixing without a bed")
            return None, None

        workdir = os.path.join(workspace.path, "assets")
        try:
            prepared = self.music_selector.prepare_looped_track(
                track, request.target_duration_sec, workdir
            )
            if is_remote(prepared):
                local = workspace.file("assets", "music" + extension_for(prepared))
                prepared = self.store.download(prepared, local)
            else:
                prepared = workspace.adopt(prepared, "assets")
        except MixError as e:
            raise e.with_context(asset=track.asset_ref, track_id=track.id)

        logger.info("Music track prepared: %s (%s)", prepared, track.id)
        return prepared, track

    def _destination(self, request: MixRequest) -> str:
        job = request.job_id or datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return f"{self.output_prefix.rstrip('/')}/{job}"

    def _estimate_metrics(
        self,
        request: MixRequest,
        segments: list,
        music_path: str | None,
        active_sfx: list[ActiveSfx],
        ducking_applied: bool,
    ) -> MixMetrics:
        # Estimates from the loudnorm target and ducking policy. Measuring
        # would need a second analysis pass over the mixed file.
        return MixMetrics(
            voice_peak_db=LOUDNORM_TP,
            music_peak_db=self.policy.silence_level_db if music_path else 0.0,
            mixed_peak_db=LOUDNORM_TP,
            ducking_segments=len(segments),
            sfx_triggered=len(active_sfx),
            duration_sec=request.target_duration_sec,
            music_duck_db=self.policy.speech_level_db if ducking_applied else None,
        )
