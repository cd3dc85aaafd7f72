"""HLS transcoding with ffmpeg: probing, concurrency gates and job orchestration."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import math
import os
import pathlib
import shutil
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from cache import get_hls_dir


log = logging.getLogger(__name__)

MANIFEST_NAME = "index.m3u8"
SEGMENT_SUFFIX = ".ts"
SEG_PREFIX = "seg"  # Segment files are named seg000.ts, seg001.ts, etc.

# Video codecs the HLS/mpegts container carries natively
PASSTHROUGH_VIDEO_CODECS = {"h264"}

# Timing constants (seconds)
_POLL_INITIAL_SEC = 0.1
_POLL_MAX_SEC = 1.0
_PROBE_TIMEOUT_SEC = 30
_PROBE_CACHE_TTL_SEC = 3_600
_MANIFEST_WAIT_TIMEOUT_SEC = 30.0
_MTIME_SLACK_SEC = 1.0  # Coarse filesystem timestamps

_STDERR_TAIL_LINES = 10

_MAX_RES_HEIGHT: dict[str, int] = {
    "4k": 2160,
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
}

_VAAPI_DEVICE = "/dev/dri/renderD128"

# Module state
_probe_lock = threading.Lock()
_probe_cache: dict[str, tuple[float, float, MediaInfo]] = {}  # path -> (cached_at, mtime, info)
_orchestrator: TranscodeOrchestrator | None = None


# ===========================================================================
# Errors
# ===========================================================================


class GateBusy(Exception):
    """No free slot in a concurrency gate. Callers should retry later."""

    def __init__(self, gate: str):
        super().__init__(f"No free {gate} slot")
        self.gate = gate


class TranscodeError(Exception):
    """Base class for transcode job failures."""


class EncodeFailure(TranscodeError):
    """Encoder exited without ever producing a manifest."""

    def __init__(self, asset_id: str, returncode: int | None, stderr_tail: list[str]):
        super().__init__(f"ffmpeg failed for {asset_id} (exit {returncode})")
        self.asset_id = asset_id
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class SpawnFailure(TranscodeError):
    """Encoder process could not be launched."""


class ManifestTimeout(TranscodeError):
    """Manifest did not appear within the allowed wait."""


# ===========================================================================
# Concurrency Gate
# ===========================================================================


class ConcurrencyGate:
    """Fixed-capacity counter for resource-heavy subprocesses."""

    def __init__(self, name: str, capacity: int):
        if capacity < 1:
            raise ValueError(f"{name} gate capacity must be >= 1, got {capacity}")
        self.name = name
        self.capacity = capacity
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def try_acquire(self) -> bool:
        """Take a slot without waiting. Returns False when the gate is full."""
        with self._lock:
            if self._active >= self.capacity:
                return False
            self._active += 1
            return True

    async def acquire(self, timeout_sec: float | None = None) -> None:
        """Wait for a slot, raising GateBusy if none frees up within timeout_sec."""
        deadline = None if timeout_sec is None else time.monotonic() + timeout_sec
        delay = _POLL_INITIAL_SEC
        while not self.try_acquire():
            if deadline is not None and time.monotonic() >= deadline:
                raise GateBusy(self.name)
            await asyncio.sleep(delay)
            delay = min(delay * 2, _POLL_MAX_SEC)

    def release(self) -> None:
        with self._lock:
            if self._active <= 0:
                raise RuntimeError(f"{self.name} gate released more times than acquired")
            self._active -= 1

    @contextlib.contextmanager
    def slot(self) -> Iterator[None]:
        """Hold a slot for the duration of the block. Raises GateBusy if full."""
        if not self.try_acquire():
            raise GateBusy(self.name)
        try:
            yield
        finally:
            self.release()


# ===========================================================================
# Media Probe
# ===========================================================================


@dataclass(slots=True)
class MediaInfo:
    video_codec: str
    audio_codec: str
    pix_fmt: str = ""
    audio_channels: int = 0
    audio_sample_rate: int = 0
    duration: float = 0.0
    height: int = 0


@dataclass(frozen=True, slots=True)
class CodecDecision:
    video_codec: str
    audio_codec: str
    passthrough: bool


def _parse_probe_output(data: dict[str, Any]) -> MediaInfo:
    video_codec = audio_codec = pix_fmt = ""
    audio_channels = audio_sample_rate = height = 0
    for stream in data.get("streams", []):
        codec = (stream.get("codec_name") or "").lower()
        codec_type = stream.get("codec_type", "")
        if codec_type == "video" and not video_codec:
            # Cover art is reported as a video stream; skip it
            if stream.get("disposition", {}).get("attached_pic"):
                continue
            video_codec = codec
            pix_fmt = stream.get("pix_fmt", "")
            height = stream.get("height", 0) or 0
        elif codec_type == "audio" and not audio_codec:
            audio_codec = codec
            audio_channels = stream.get("channels", 0) or 0
            with suppress(ValueError, TypeError):
                audio_sample_rate = int(stream.get("sample_rate", 0) or 0)

    duration = 0.0
    fmt = data.get("format", {})
    if fmt.get("duration"):
        with suppress(ValueError, TypeError):
            duration = float(fmt["duration"])
    if not math.isfinite(duration) or duration < 0:
        duration = 0.0

    return MediaInfo(
        video_codec=video_codec,
        audio_codec=audio_codec,
        pix_fmt=pix_fmt,
        audio_channels=audio_channels,
        audio_sample_rate=audio_sample_rate,
        duration=duration,
        height=height,
    )


def probe_media(path: str) -> MediaInfo | None:
    """Probe a local media file with ffprobe. Returns None on any failure."""
    try:
        mtime = os.stat(path).st_mtime
    except OSError as e:
        log.warning("Cannot stat %s for probe: %s", path, e)
        return None

    with _probe_lock:
        cached = _probe_cache.get(path)
        if cached:
            cached_at, cached_mtime, media_info = cached
            if cached_mtime == mtime and time.time() - cached_at < _PROBE_CACHE_TTL_SEC:
                log.debug("Probe cache hit for %s", path)
                return media_info

    cmd = [
        "ffprobe",
        "-hide_banner",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        path,
    ]
    log.info("Probing: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=_PROBE_TIMEOUT_SEC,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.warning("Probe failed for %s: %s", path, e)
        return None
    if result.returncode != 0:
        log.warning("ffprobe exited %d for %s: %s", result.returncode, path, result.stderr.strip())
        return None
    try:
        data = json.loads(result.stdout)
    except ValueError as e:
        log.warning("Unparseable ffprobe output for %s: %s", path, e)
        return None

    media_info = _parse_probe_output(data)
    now = time.time()
    with _probe_lock:
        # Prune expired entries, including files that are never probed again
        for p, (cached_at, _, _) in list(_probe_cache.items()):
            if now - cached_at >= _PROBE_CACHE_TTL_SEC:
                del _probe_cache[p]
        _probe_cache[path] = (now, mtime, media_info)
    return media_info


def clear_probe_cache() -> int:
    """Clear the probe cache. Returns number of entries removed."""
    with _probe_lock:
        count = len(_probe_cache)
        _probe_cache.clear()
    return count


def decide_codecs(media_info: MediaInfo | None) -> CodecDecision:
    """Pick passthrough or re-encode. Unknown sources are re-encoded."""
    if media_info is None:
        return CodecDecision(video_codec="", audio_codec="", passthrough=False)
    return CodecDecision(
        video_codec=media_info.video_codec,
        audio_codec=media_info.audio_codec,
        passthrough=media_info.video_codec in PASSTHROUGH_VIDEO_CODECS,
    )


# ===========================================================================
# FFmpeg Command Building
# ===========================================================================


def _build_video_args(
    cmd: list[str],
    passthrough: bool,
    hw: str,
    max_resolution: str,
    qp: int,
    keyframe_secs: float,
) -> None:
    if passthrough:
        cmd.extend(["-c:v", "copy"])
        return

    # -2 keeps width divisible by 2, min() only scales down
    max_h = _MAX_RES_HEIGHT.get(max_resolution)
    scale = f"scale=-2:'min(ih,{max_h})'," if max_h else ""

    if hw == "nvidia":
        cmd.extend(
            [
                "-vf",
                f"{scale}format=nv12",
                "-c:v",
                "h264_nvenc",
                "-preset",
                "p2",
                "-rc",
                "constqp",
                "-qp",
                str(qp),
            ]
        )
    elif hw == "amf":
        cmd.extend(
            [
                "-vf",
                f"{scale}format=nv12",
                "-c:v",
                "h264_amf",
                "-usage",
                "transcoding",
                "-quality",
                "speed",
                "-rc",
                "cqp",
                "-qp_i",
                str(qp - 2),
                "-qp_p",
                str(qp),
                "-qp_b",
                str(qp + 2),
            ]
        )
    elif hw == "intel":
        cmd.extend(
            [
                "-vf",
                f"{scale}format=nv12",
                "-c:v",
                "h264_qsv",
                "-preset",
                "medium",
                "-global_quality",
                str(qp),
            ]
        )
    elif hw == "vaapi":
        # VAAPI on Intel only supports CQP
        cmd.extend(
            [
                "-vf",
                f"{scale}format=nv12,hwupload",
                "-vaapi_device",
                _VAAPI_DEVICE,
                "-c:v",
                "h264_vaapi",
                "-rc_mode",
                "CQP",
                "-qp",
                str(qp),
            ]
        )
    else:
        cmd.extend(
            [
                "-vf",
                f"{scale}format=yuv420p",
                "-c:v",
                "libx264",
                "-preset",
                "veryfast",
                "-qp",
                str(qp),
            ]
        )
    # Sources with irregular GOPs would otherwise produce uneven segments
    cmd.extend(["-force_key_frames", f"expr:gte(t,n_forced*{keyframe_secs:g})"])


def _build_audio_args(cmd: list[str]) -> None:
    # Many source codecs (AC-3, DTS, FLAC) are not playable from mpegts in browsers
    cmd.extend(["-c:a", "aac", "-ac", "2", "-b:a", "128k"])


def build_hls_ffmpeg_cmd(
    input_path: str,
    output_dir: str,
    decision: CodecDecision,
    settings: dict[str, Any],
) -> list[str]:
    """Build ffmpeg command writing an event-style HLS playlist incrementally."""
    segment_secs = float(settings.get("hls_segment_secs", 2))
    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        # Generous analysis limits so MKVs with late stream headers don't stall
        "-analyzeduration",
        "100M",
        "-probesize",
        "100M",
        "-fflags",
        "+genpts",
        "-i",
        input_path,
        "-map",
        "0:v:0",
        "-map",
        "0:a:0?",
        "-sn",
    ]
    _build_video_args(
        cmd,
        decision.passthrough,
        settings.get("transcode_hw", "software"),
        settings.get("max_resolution", "480p"),
        int(settings.get("transcode_qp", 24)),
        segment_secs,
    )
    _build_audio_args(cmd)
    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            f"{segment_secs:g}",
            "-hls_list_size",
            str(int(settings.get("hls_list_size", 6))),
            "-hls_playlist_type",
            "event",
            "-hls_segment_type",
            "mpegts",
            # temp_file: segments and playlist are renamed into place once complete
            "-hls_flags",
            "independent_segments+split_by_time+temp_file",
            "-hls_segment_filename",
            f"{output_dir}/{SEG_PREFIX}%03d{SEGMENT_SUFFIX}",
            f"{output_dir}/{MANIFEST_NAME}",
        ]
    )
    return cmd


def build_thumbnail_cmd(input_path: str, output_path: str, timestamp: str) -> list[str]:
    """Build ffmpeg command extracting one scaled frame at timestamp."""
    return [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-ss",
        timestamp,
        "-i",
        input_path,
        "-frames:v",
        "1",
        "-vf",
        "scale=-2:360",
        "-q:v",
        "3",
        output_path,
    ]


# ===========================================================================
# Subprocess Helpers
# ===========================================================================


async def spawn_ffmpeg(cmd: list[str]) -> asyncio.subprocess.Process:
    """Launch ffmpeg with stderr piped. Raises SpawnFailure if it cannot start."""
    try:
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SpawnFailure(f"Could not launch {cmd[0]}: {e}") from e


async def monitor_ffmpeg_stderr(
    process: asyncio.subprocess.Process,
    tag: str,
    stderr_lines: list[str] | None = None,
) -> None:
    if process.stderr is None:
        return
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        if stderr_lines is not None:
            stderr_lines.append(text)
            del stderr_lines[:-_STDERR_TAIL_LINES]
        # Only log actual fatal errors as WARNING, not decoder warnings
        is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", tag, text)


def _is_fresh(path: pathlib.Path, newer_than: float) -> bool:
    try:
        return path.stat().st_mtime >= newer_than
    except OSError:
        return False


async def wait_for_file(
    path: pathlib.Path,
    timeout_sec: float,
    newer_than: float = 0.0,
) -> None:
    """Poll until path exists (modified at or after newer_than), with backoff.

    Raises ManifestTimeout once timeout_sec elapses.
    """
    deadline = time.monotonic() + timeout_sec
    delay = _POLL_INITIAL_SEC
    while not _is_fresh(path, newer_than):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ManifestTimeout(f"{path.name} did not appear within {timeout_sec:g}s")
        await asyncio.sleep(min(delay, remaining))
        delay = min(delay * 2, _POLL_MAX_SEC)


def kill_process(proc: Any) -> bool:
    """Kill process, return True if killed."""
    try:
        proc.kill()
        return True
    except (ProcessLookupError, OSError):
        return False


# ===========================================================================
# Transcode Jobs
# ===========================================================================


class JobState(enum.Enum):
    UNSTARTED = "unstarted"
    PROBING = "probing"
    ENCODING = "encoding"
    PARTIALLY_READY = "partially_ready"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(slots=True)
class HlsResult:
    manifest: pathlib.Path
    streaming: bool  # True if released while the encoder was still running


@dataclass(slots=True)
class TranscodeJob:
    asset_id: str
    output_dir: pathlib.Path
    manifest: pathlib.Path
    future: asyncio.Future[HlsResult]
    state: JobState = JobState.UNSTARTED
    waiters: int = 0
    started: float = field(default_factory=time.time)
    decision: CodecDecision | None = None
    process: Any = None

    @property
    def not_before(self) -> float:
        """Oldest manifest mtime accepted as produced by this job."""
        return self.started - _MTIME_SLACK_SEC


def discard_future_exception(future: asyncio.Future[Any]) -> None:
    # Abandoned jobs may fail with nobody awaiting them
    if not future.cancelled():
        future.exception()


class TranscodeOrchestrator:
    """Single-flight HLS transcodes, one encoder per asset id."""

    def __init__(
        self,
        load_settings: Callable[[], dict[str, Any]],
        gate: ConcurrencyGate | None = None,
    ):
        self._load_settings = load_settings
        self.gate = gate or ConcurrencyGate(
            "transcode", int(load_settings().get("max_transcodes", 2))
        )
        self._jobs: dict[str, TranscodeJob] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    async def ensure_hls(self, asset_id: str, source: pathlib.Path) -> HlsResult:
        """Return once the asset's manifest exists, starting an encode if needed.

        Raises GateBusy when no encode slot is free, ManifestTimeout when the
        manifest takes too long, and EncodeFailure/SpawnFailure if the job fails.
        """
        settings = self._load_settings()
        output_dir = get_hls_dir(asset_id, settings)
        manifest = output_dir / MANIFEST_NAME

        start = False
        with self._lock:
            job = self._jobs.get(asset_id)
            if job is None:
                if manifest.exists():
                    log.debug("Cached manifest for %s", asset_id)
                    return HlsResult(manifest=manifest, streaming=False)
                if not self.gate.try_acquire():
                    log.info(
                        "Transcode busy (%d/%d), deferring %s",
                        self.gate.active,
                        self.gate.capacity,
                        asset_id,
                    )
                    raise GateBusy(self.gate.name)
                future: asyncio.Future[HlsResult] = asyncio.get_running_loop().create_future()
                future.add_done_callback(discard_future_exception)
                job = TranscodeJob(
                    asset_id=asset_id,
                    output_dir=output_dir,
                    manifest=manifest,
                    future=future,
                )
                self._jobs[asset_id] = job
                start = True
            job.waiters += 1

        if start:
            self._spawn_background_task(self._run_job(job, source, settings))
        else:
            log.info("Attaching to running transcode for %s (%s)", asset_id, job.state.value)

        timeout = float(settings.get("manifest_wait_secs", _MANIFEST_WAIT_TIMEOUT_SEC))
        try:
            return await asyncio.wait_for(asyncio.shield(job.future), timeout=timeout)
        except TimeoutError as e:
            raise ManifestTimeout(f"Manifest for {asset_id} not ready after {timeout:g}s") from e
        finally:
            with self._lock:
                job.waiters -= 1

    def get_job_status(self) -> list[dict[str, Any]]:
        """Snapshot of active jobs."""
        with self._lock:
            jobs = list(self._jobs.values())
        return [
            {
                "id": job.asset_id,
                "state": job.state.value,
                "waiters": job.waiters,
                "passthrough": job.decision.passthrough if job.decision else None,
                "elapsed": round(time.time() - job.started, 1),
            }
            for job in jobs
        ]

    def shutdown(self) -> None:
        """Kill running encoders and discard their incomplete output."""
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        for job in jobs:
            if job.process is not None and job.process.returncode is None:
                if kill_process(job.process):
                    log.info("Shutdown: killed ffmpeg for %s", job.asset_id)
            shutil.rmtree(job.output_dir, ignore_errors=True)
        for task in list(self._tasks):
            task.cancel()

    def _spawn_background_task(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_job(
        self,
        job: TranscodeJob,
        source: pathlib.Path,
        settings: dict[str, Any],
    ) -> None:
        error: TranscodeError | None = None
        try:
            await self._encode(job, source, settings)
        except TranscodeError as e:
            error = e
        except Exception as e:
            log.exception("Transcode job %s crashed", job.asset_id)
            error = TranscodeError(str(e))
        finally:
            self._settle(job, error)

    async def _encode(
        self,
        job: TranscodeJob,
        source: pathlib.Path,
        settings: dict[str, Any],
    ) -> None:
        job.state = JobState.PROBING
        media_info = await asyncio.to_thread(probe_media, str(source))
        job.decision = decide_codecs(media_info)
        if media_info is None:
            log.warning("Probe failed for %s, falling back to re-encode", source)
        log.info(
            "Transcode %s: video=%s audio=%s -> %s",
            job.asset_id,
            job.decision.video_codec or "?",
            job.decision.audio_codec or "?",
            "passthrough" if job.decision.passthrough else "re-encode",
        )

        job.output_dir.mkdir(parents=True, exist_ok=True)
        for stale in job.output_dir.glob(f"{SEG_PREFIX}*{SEGMENT_SUFFIX}"):
            stale.unlink(missing_ok=True)

        cmd = build_hls_ffmpeg_cmd(str(source), str(job.output_dir), job.decision, settings)
        log.info("Starting transcode %s: %s", job.asset_id, " ".join(cmd))
        job.state = JobState.ENCODING
        job.started = time.time()
        process = await spawn_ffmpeg(cmd)
        job.process = process

        stderr_lines: list[str] = []
        monitor = asyncio.create_task(monitor_ffmpeg_stderr(process, job.asset_id, stderr_lines))
        watcher = asyncio.create_task(self._watch_manifest(job, settings))
        try:
            returncode = await process.wait()
            await monitor
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher

        # Partial output is still valid for already-elapsed playback time
        if _is_fresh(job.manifest, job.not_before):
            if returncode != 0:
                log.warning(
                    "ffmpeg:%s exited %d after producing a manifest", job.asset_id, returncode
                )
            self._mark_ready(job, streaming=False)
            return

        log.error(
            "ffmpeg:%s failed (exit %d): %s",
            job.asset_id,
            returncode,
            "\n".join(stderr_lines) or "unknown",
        )
        raise EncodeFailure(job.asset_id, returncode, list(stderr_lines))

    async def _watch_manifest(self, job: TranscodeJob, settings: dict[str, Any]) -> None:
        # Runs until the manifest shows up; cancelled when the encoder exits
        timeout = float(settings.get("manifest_wait_secs", _MANIFEST_WAIT_TIMEOUT_SEC))
        while True:
            try:
                await wait_for_file(job.manifest, timeout, newer_than=job.not_before)
                break
            except ManifestTimeout:
                log.warning("No manifest for %s after %gs, still encoding", job.asset_id, timeout)
        self._mark_ready(job, streaming=True)

    def _mark_ready(self, job: TranscodeJob, streaming: bool) -> None:
        if job.future.done():
            return
        job.state = JobState.PARTIALLY_READY
        job.future.set_result(HlsResult(manifest=job.manifest, streaming=streaming))
        log.info("Manifest ready for %s (streaming=%s)", job.asset_id, streaming)

    def _settle(self, job: TranscodeJob, error: TranscodeError | None) -> None:
        self.gate.release()
        with self._lock:
            if self._jobs.get(job.asset_id) is job:
                del self._jobs[job.asset_id]

        if job.future.done():
            job.state = JobState.SUCCEEDED
            log.info("Transcode %s settled: success", job.asset_id)
            return

        job.state = JobState.FAILED
        job.future.set_exception(error or TranscodeError(f"Transcode {job.asset_id} cancelled"))
        shutil.rmtree(job.output_dir, ignore_errors=True)
        log.info("Transcode %s settled: failure (%s)", job.asset_id, error)


# ===========================================================================
# Module Setup
# ===========================================================================


def init(load_settings: Callable[[], dict[str, Any]]) -> TranscodeOrchestrator:
    """Create the process-wide orchestrator."""
    global _orchestrator
    _orchestrator = TranscodeOrchestrator(load_settings)
    return _orchestrator


def get_orchestrator() -> TranscodeOrchestrator:
    if _orchestrator is None:
        raise RuntimeError("transcoding.init() has not been called")
    return _orchestrator


def shutdown() -> None:
    """Kill all running ffmpeg processes for clean shutdown."""
    if _orchestrator is not None:
        _orchestrator.shutdown()
