"""Preview frame extraction, cached permanently per asset."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import suppress
from typing import Any

import asyncio
import logging
import math
import os
import pathlib
import threading

import transcoding
from cache import cache_key
from cache import get_thumbnail_dir
from transcoding import ConcurrencyGate, GateBusy


log = logging.getLogger(__name__)

THUMBNAIL_SUFFIX = ".jpg"

_MIN_DURATION_FOR_SEEK_SEC = 30.0
_SEEK_FRACTION = 0.1  # 10% in avoids black opening frames
_FALLBACK_TIMESTAMP = "00:00:03"
_THUMBNAIL_WAIT_SEC = 30.0
_EXTRACT_TIMEOUT_SEC = 60.0

_generator: ThumbnailGenerator | None = None


class ThumbnailError(Exception):
    """Extraction ran but produced no image, or could not be launched."""


class ThumbnailTimeout(Exception):
    """Extraction is still running after the caller's wait budget."""


def capture_timestamp(duration: float | None) -> str:
    """HH:MM:SS capture point: 10% of duration, or a fixed offset for short/unknown sources."""
    if duration is None or not math.isfinite(duration) or duration <= _MIN_DURATION_FOR_SEEK_SEC:
        return _FALLBACK_TIMESTAMP
    t = int(duration * _SEEK_FRACTION)
    return f"{t // 3600:02d}:{(t % 3600) // 60:02d}:{t % 60:02d}"


class ThumbnailGenerator:
    def __init__(
        self,
        load_settings: Callable[[], dict[str, Any]],
        gate: ConcurrencyGate | None = None,
    ):
        self._load_settings = load_settings
        self.gate = gate or ConcurrencyGate(
            "thumbnail", int(load_settings().get("max_thumbnails", 3))
        )
        self._inflight: dict[str, asyncio.Future[pathlib.Path]] = {}
        self._processes: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task[None]] = set()

    def thumbnail_path(
        self, asset_id: str, settings: dict[str, Any] | None = None
    ) -> pathlib.Path:
        thumb_dir = get_thumbnail_dir(settings or self._load_settings())
        return thumb_dir / f"{cache_key(asset_id)}{THUMBNAIL_SUFFIX}"

    async def get_thumbnail(self, asset_id: str, source: pathlib.Path) -> pathlib.Path:
        """Return the cached thumbnail, extracting it first if needed.

        Raises GateBusy when no thumbnail slot is free, ThumbnailTimeout when
        extraction outlasts thumbnail_wait_secs (it keeps running), and
        ThumbnailError when extraction fails.
        """
        settings = self._load_settings()
        out = self.thumbnail_path(asset_id, settings)
        if out.exists():
            return out

        start = False
        with self._lock:
            future = self._inflight.get(asset_id)
            if future is None:
                if not self.gate.try_acquire():
                    raise GateBusy(self.gate.name)
                future = asyncio.get_running_loop().create_future()
                future.add_done_callback(transcoding.discard_future_exception)
                self._inflight[asset_id] = future
                start = True

        if start:
            timeout = float(settings.get("thumbnail_timeout_secs", _EXTRACT_TIMEOUT_SEC))
            task = asyncio.create_task(self._extract(asset_id, source, out, future, timeout))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        wait = float(settings.get("thumbnail_wait_secs", _THUMBNAIL_WAIT_SEC))
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=wait)
        except TimeoutError as e:
            raise ThumbnailTimeout(f"Thumbnail for {asset_id} not ready after {wait:g}s") from e

    async def _extract(
        self,
        asset_id: str,
        source: pathlib.Path,
        out: pathlib.Path,
        future: asyncio.Future[pathlib.Path],
        timeout: float,
    ) -> None:
        # Written under a temporary name so a partial image is never served
        partial = out.with_name(f"{out.stem}.part{THUMBNAIL_SUFFIX}")
        try:
            media_info = await asyncio.to_thread(transcoding.probe_media, str(source))
            timestamp = capture_timestamp(media_info.duration if media_info else None)
            cmd = transcoding.build_thumbnail_cmd(str(source), str(partial), timestamp)
            log.info("Extracting thumbnail for %s at %s", asset_id, timestamp)
            try:
                process = await transcoding.spawn_ffmpeg(cmd)
            except transcoding.SpawnFailure as e:
                raise ThumbnailError(str(e)) from e
            with self._lock:
                self._processes[asset_id] = process

            stderr_lines: list[str] = []
            monitor = asyncio.create_task(
                transcoding.monitor_ffmpeg_stderr(process, f"thumb:{asset_id}", stderr_lines)
            )
            try:
                returncode = await asyncio.wait_for(process.wait(), timeout=timeout)
                await monitor
            except TimeoutError as e:
                transcoding.kill_process(process)
                raise ThumbnailError(
                    f"Thumbnail extraction for {asset_id} exceeded {timeout:g}s"
                ) from e
            finally:
                monitor.cancel()
                with suppress(asyncio.CancelledError):
                    await monitor
                with self._lock:
                    self._processes.pop(asset_id, None)

            if returncode != 0 or not partial.exists():
                log.warning(
                    "Thumbnail failed for %s (exit %s): %s",
                    asset_id,
                    returncode,
                    "\n".join(stderr_lines) or "no output",
                )
                raise ThumbnailError(f"Thumbnail extraction failed for {asset_id}")
            os.replace(partial, out)
            future.set_result(out)
        except ThumbnailError as e:
            future.set_exception(e)
        except Exception as e:
            log.exception("Thumbnail job %s crashed", asset_id)
            future.set_exception(ThumbnailError(str(e)))
        finally:
            self.gate.release()
            with self._lock:
                self._inflight.pop(asset_id, None)
            partial.unlink(missing_ok=True)
            if not future.done():
                future.set_exception(ThumbnailError(f"Thumbnail for {asset_id} cancelled"))

    def shutdown(self) -> None:
        """Kill running extractions and cancel their jobs."""
        with self._lock:
            processes = list(self._processes.items())
            self._processes.clear()
        for asset_id, process in processes:
            if process.returncode is None and transcoding.kill_process(process):
                log.info("Shutdown: killed thumbnail ffmpeg for %s", asset_id)
        for task in list(self._tasks):
            task.cancel()


def init(load_settings: Callable[[], dict[str, Any]]) -> ThumbnailGenerator:
    global _generator
    _generator = ThumbnailGenerator(load_settings)
    return _generator


def get_generator() -> ThumbnailGenerator:
    if _generator is None:
        raise RuntimeError("thumbnails.init() has not been called")
    return _generator


def shutdown() -> None:
    """Kill running thumbnail ffmpeg processes for clean shutdown."""
    if _generator is not None:
        _generator.shutdown()
