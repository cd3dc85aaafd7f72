"""Settings, cache directories and in-memory cache."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import hashlib
import json
import logging
import os
import pathlib
import subprocess
import threading


log = logging.getLogger(__name__)

SETTINGS_FILE_NAME = "server_settings.json"
THUMBNAIL_DIR_NAME = "thumbs"

# Longest id used verbatim as a file name (NAME_MAX is 255, minus ".part.jpg")
_MAX_KEY_LEN = 200

DEFAULT_LIBRARY_ROOT = "./videos"
DEFAULT_CACHE_ROOT = "./cache"
DEFAULT_MEDIA_EXTENSIONS = [".mp4", ".mkv", ".mov", ".m4v", ".webm"]

# In-memory cache
_cache: dict[str, Any] = {}
_cache_lock = threading.Lock()
_available_encoders: dict[str, bool] | None = None  # None = not detected yet


def _parse_extensions(value: str) -> list[str]:
    exts = []
    for ext in value.split(","):
        ext = ext.strip().lower()
        if ext:
            exts.append(ext if ext.startswith(".") else f".{ext}")
    return exts


# Environment variable -> (settings key, parser)
_ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "VIDEO_ROOT": ("library_root", str),
    "CACHE_ROOT": ("cache_root", str),
    "PORT": ("port", int),
    "MEDIA_EXTENSIONS": ("media_extensions", _parse_extensions),
    "MAX_TRANSCODES": ("max_transcodes", int),
    "MAX_THUMBNAILS": ("max_thumbnails", int),
    "HLS_SEGMENT_SECS": ("hls_segment_secs", float),
    "HLS_LIST_SIZE": ("hls_list_size", int),
    "TRANSCODE_HW": ("transcode_hw", str),
}


# ===========================================================================
# Memory Cache
# ===========================================================================


def get_cache() -> dict[str, Any]:
    """Get reference to memory cache."""
    return _cache


def get_cache_lock() -> threading.Lock:
    """Get cache lock."""
    return _cache_lock


def clear_all_caches() -> None:
    """Clear memory cache."""
    with _cache_lock:
        _cache.clear()


# ===========================================================================
# Encoder Detection
# ===========================================================================


def _encoder_error(cmd: list[str], timeout: float = 5) -> str | None:
    """Run a one-frame trial encode. Returns None if it worked, else a reason."""
    try:
        result = subprocess.run(
            cmd, check=False, capture_output=True, text=True, errors="replace", timeout=timeout
        )
    except subprocess.TimeoutExpired:
        return f"no result within {timeout:g}s"
    except FileNotFoundError:
        return f"{cmd[0]} not found"
    except OSError as e:
        return str(e)
    if result.returncode == 0:
        return None
    # "[h264_nvenc @ 0x...]" context lines come before the actual cause
    lines = [line for line in result.stderr.splitlines() if line.strip()]
    cause = next((line for line in lines if not line.startswith("[")), None)
    return cause or (lines[-1] if lines else f"exit status {result.returncode}")


def detect_encoders() -> dict[str, bool]:
    """Detect available FFmpeg H.264 encoders by testing actual hardware."""
    log.info("Detecting hardware encoders...")

    # Test input: 1 frame of 64x64 black
    test_input = ["-f", "lavfi", "-i", "color=black:s=64x64:d=0.04", "-frames:v", "1"]
    base_cmd = ["ffmpeg", "-hide_banner", "-loglevel", "error", "-y"]
    null_out = ["-f", "null", "-"]

    candidates = {
        "nvidia": ("h264_nvenc", base_cmd + test_input + ["-c:v", "h264_nvenc"] + null_out),
        "amf": ("h264_amf", base_cmd + test_input + ["-c:v", "h264_amf"] + null_out),
        # Intel QSV: needs hwaccel init
        "intel": (
            "h264_qsv",
            base_cmd
            + ["-hwaccel", "qsv", "-hwaccel_output_format", "qsv"]
            + test_input
            + ["-c:v", "h264_qsv"]
            + null_out,
        ),
        # VA-API: needs device and hwupload
        "vaapi": (
            "h264_vaapi",
            base_cmd
            + ["-vaapi_device", "/dev/dri/renderD128"]
            + test_input
            + ["-vf", "format=nv12,hwupload", "-c:v", "h264_vaapi"]
            + null_out,
        ),
        "software": (
            "libx264",
            base_cmd + test_input + ["-c:v", "libx264", "-preset", "ultrafast"] + null_out,
        ),
    }

    encoders: dict[str, bool] = {}
    for name, (codec, cmd) in candidates.items():
        error = _encoder_error(cmd)
        encoders[name] = error is None
        status = "available" if error is None else f"unavailable - {error}"
        log.info("  %s (%s): %s", name, codec, status)
    return encoders


def get_available_encoders() -> dict[str, bool]:
    """Detected encoders, probing ffmpeg on first call."""
    global _available_encoders
    if _available_encoders is None:
        _available_encoders = detect_encoders()
    return _available_encoders


def _default_encoder() -> str:
    """Return first available encoder, preferring hardware."""
    available = get_available_encoders()
    for enc in ("nvidia", "amf", "intel", "vaapi", "software"):
        if available.get(enc):
            return enc
    return "software"


# ===========================================================================
# Settings
# ===========================================================================


def _settings_file() -> pathlib.Path:
    cache_root = os.environ.get("CACHE_ROOT") or DEFAULT_CACHE_ROOT
    return pathlib.Path(cache_root).resolve() / SETTINGS_FILE_NAME


def load_settings() -> dict[str, Any]:
    """Load settings: defaults < settings file < environment variables."""
    path = _settings_file()
    data: dict[str, Any] = {}
    if path.exists():
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable settings file %s: %s", path, e)

    for env_name, (key, parse) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            data[key] = parse(raw)
        except ValueError:
            log.warning("Ignoring invalid %s=%r", env_name, raw)

    data.setdefault("library_root", DEFAULT_LIBRARY_ROOT)
    data.setdefault("cache_root", DEFAULT_CACHE_ROOT)
    data.setdefault("port", 8787)
    data.setdefault("media_extensions", list(DEFAULT_MEDIA_EXTENSIONS))
    data.setdefault("max_transcodes", 2)
    data.setdefault("max_thumbnails", 3)
    data.setdefault("hls_segment_secs", 2)
    data.setdefault("hls_list_size", 6)
    data.setdefault("max_resolution", "480p")
    data.setdefault("transcode_qp", 24)
    data.setdefault("catalog_ttl_secs", 20)
    data.setdefault("catalog_limit", 300)
    data.setdefault("manifest_wait_secs", 30)
    data.setdefault("thumbnail_wait_secs", 30)
    data.setdefault("thumbnail_timeout_secs", 60)
    if "transcode_hw" not in data:
        data["transcode_hw"] = _default_encoder()

    data["library_root"] = str(pathlib.Path(data["library_root"]).resolve())
    data["cache_root"] = str(pathlib.Path(data["cache_root"]).resolve())
    return data


def save_settings(settings: dict[str, Any]) -> None:
    """Save settings to the cache root."""
    path = _settings_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, indent=2))


# ===========================================================================
# Cache Directories
# ===========================================================================


def get_cache_root(settings: dict[str, Any] | None = None) -> pathlib.Path:
    """Get the cache root, creating it if missing."""
    path = pathlib.Path((settings or load_settings())["cache_root"])
    path.mkdir(parents=True, exist_ok=True)
    return path


def cache_key(asset_id: str) -> str:
    """File-name-safe key for an asset id.

    Ids grow with the relative path, so long ones are replaced by a digest
    to stay under the filesystem's name limit.
    """
    if len(asset_id) <= _MAX_KEY_LEN:
        return asset_id
    return hashlib.sha256(asset_id.encode("ascii")).hexdigest()


def get_hls_dir(asset_id: str, settings: dict[str, Any] | None = None) -> pathlib.Path:
    """Get the HLS output directory for an asset (not created)."""
    return get_cache_root(settings) / cache_key(asset_id)


def get_thumbnail_dir(settings: dict[str, Any] | None = None) -> pathlib.Path:
    """Get the shared thumbnail directory, creating it if missing."""
    path = get_cache_root(settings) / THUMBNAIL_DIR_NAME
    path.mkdir(exist_ok=True)
    return path
