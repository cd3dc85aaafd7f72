#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]"]
# ///
"""Personal video library over HLS.

Usage:
    ./main.py [--port PORT] [--debug]

Options:
    --port PORT     Port to listen on (default: $PORT or 8787)
    --debug         Enable debug logging

Environment:
    VIDEO_ROOT      Library root (default: ./videos)
    CACHE_ROOT      HLS/thumbnail cache root (default: ./cache)
"""

from __future__ import annotations

import asyncio
import logging
import pathlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi.responses import FileResponse
from fastapi.responses import Response

import thumbnails
import transcoding
from cache import get_cache_root
from cache import get_hls_dir
from cache import load_settings
from catalog import decode_id
from catalog import display_name
from catalog import list_directory
from catalog import resolve_library_path
from catalog import search_catalog
from thumbnails import ThumbnailError
from thumbnails import ThumbnailTimeout
from transcoding import MANIFEST_NAME
from transcoding import SEGMENT_SUFFIX
from transcoding import GateBusy
from transcoding import ManifestTimeout
from transcoding import TranscodeError


log = logging.getLogger()

_RETRY_AFTER_SEC = "2"
_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


# =============================================================================
# App Setup
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create cache dirs and workers on startup, kill encoders on shutdown."""
    settings = load_settings()
    cache_root = get_cache_root(settings)
    transcoding.init(load_settings)
    thumbnails.init(load_settings)
    log.info("VIDEO_ROOT = %s", settings["library_root"])
    log.info("CACHE_ROOT = %s", cache_root)
    log.info(
        "Encoder: %s, max transcodes: %d, max thumbnails: %d",
        settings["transcode_hw"],
        settings["max_transcodes"],
        settings["max_thumbnails"],
    )
    yield
    transcoding.shutdown()
    thumbnails.shutdown()


app = FastAPI(title="HLS Library", lifespan=lifespan)


def _busy_response() -> Response:
    return Response(status_code=202, headers={"Retry-After": _RETRY_AFTER_SEC})


def _resolve_asset(asset_id: str, settings: dict[str, Any]) -> tuple[str, pathlib.Path]:
    """Map an id to (relative path, absolute file). Raises HTTPException."""
    rel_path = decode_id(asset_id)
    if rel_path is None:
        raise HTTPException(400, "Invalid id")
    abs_path = resolve_library_path(rel_path, settings["library_root"])
    if abs_path is None:
        raise HTTPException(403, "Forbidden")
    try:
        is_file = abs_path.is_file()
    except OSError:  # e.g. ENAMETOOLONG
        is_file = False
    if not is_file:
        raise HTTPException(404, "Not found")
    return rel_path, abs_path


# =============================================================================
# Catalog
# =============================================================================


@app.get("/catalog")
async def catalog_list(query: str = ""):
    """List (or search) library assets, capped."""
    settings = load_settings()
    assets = await asyncio.to_thread(search_catalog, settings, query)
    return [a.to_dict() for a in assets]


@app.get("/asset/{asset_id}")
async def asset_detail(asset_id: str):
    settings = load_settings()
    rel_path, abs_path = _resolve_asset(asset_id, settings)
    return {
        "id": asset_id,
        "name": display_name(abs_path.name),
        "relativePath": display_name(rel_path),
        "manifestUrl": f"/stream/{asset_id}/manifest",
        "thumbnailUrl": f"/thumbnail/{asset_id}",
    }


@app.get("/browse")
async def browse(dir: str = ""):
    """Non-recursive listing of one library directory."""
    settings = load_settings()
    try:
        return await asyncio.to_thread(
            list_directory, dir, settings["library_root"], settings["media_extensions"]
        )
    except PermissionError as e:
        raise HTTPException(403, "Forbidden") from e
    except FileNotFoundError as e:
        raise HTTPException(404, "Directory not found") from e


# =============================================================================
# Streaming
# =============================================================================


@app.get("/stream/jobs")
async def stream_jobs():
    """Active transcode jobs and encode slot usage."""
    orchestrator = transcoding.get_orchestrator()
    return {
        "active": orchestrator.gate.active,
        "capacity": orchestrator.gate.capacity,
        "jobs": orchestrator.get_job_status(),
    }


@app.get("/stream/{asset_id}/manifest")
async def stream_manifest(asset_id: str):
    """Serve the HLS manifest, starting or joining a transcode as needed."""
    settings = load_settings()
    _, abs_path = _resolve_asset(asset_id, settings)
    try:
        result = await transcoding.get_orchestrator().ensure_hls(asset_id, abs_path)
    except GateBusy:
        return _busy_response()
    except ManifestTimeout:
        log.info("Manifest for %s still pending", asset_id)
        return _busy_response()
    except TranscodeError as e:
        log.warning("Transcode failed for %s: %s", asset_id, e)
        raise HTTPException(500, "Transcode failed - check server logs for details") from e

    content = result.manifest.read_bytes()
    return Response(
        content=content,
        media_type="application/vnd.apple.mpegurl",
        headers=_NO_CACHE_HEADERS,
    )


@app.get("/stream/{asset_id}/{segment_name}")
async def stream_segment(asset_id: str, segment_name: str):
    """Serve a segment if the encoder has written it yet (404 = retry later)."""
    if segment_name == MANIFEST_NAME:
        return await stream_manifest(asset_id)
    # Only segment files; anything else in the cache dir stays private
    if not segment_name.endswith(SEGMENT_SUFFIX) or pathlib.Path(segment_name).name != segment_name:
        raise HTTPException(404, "Not found")
    if decode_id(asset_id) is None:
        raise HTTPException(400, "Invalid id")

    segment_path = get_hls_dir(asset_id) / segment_name
    if not segment_path.is_file():
        raise HTTPException(404, "Segment not ready")
    return FileResponse(
        segment_path,
        media_type="video/mp2t",
        headers={"Cache-Control": "no-cache, no-store"},
    )


# =============================================================================
# Thumbnails
# =============================================================================


@app.get("/thumbnail/{asset_id}")
async def thumbnail(asset_id: str):
    settings = load_settings()
    _, abs_path = _resolve_asset(asset_id, settings)
    try:
        path = await thumbnails.get_generator().get_thumbnail(asset_id, abs_path)
    except (GateBusy, ThumbnailTimeout):
        return _busy_response()
    except ThumbnailError as e:
        log.warning("Thumbnail failed for %s: %s", asset_id, e)
        raise HTTPException(500, "Thumbnail failed") from e
    return FileResponse(path, media_type="image/jpeg")


if __name__ == "__main__":
    import argparse

    import uvicorn  # pyright: ignore[reportMissingImports]

    parser = argparse.ArgumentParser(description="HLS video library server")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    port = args.port if args.port is not None else int(load_settings()["port"])
    uv_log = "debug" if args.debug else "info"
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        access_log=args.debug,
        log_level=uv_log,
    )
