"""Tests for main.py - FastAPI routes."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import asyncio
import os
import sys

import pytest

from fastapi.testclient import TestClient

import cache
import main
import thumbnails
import transcoding
from catalog import encode_id


MOVIE_ID = encode_id("A Movie.mp4")


class FakeStderr:
    async def readline(self) -> bytes:
        return b""


class FakeProcess:
    """Fake ffmpeg writing a one-segment playlist (or nothing)."""

    def __init__(
        self, cmd: list[str], returncode: int = 0, write: bool = True, hang: bool = False
    ):
        self.cmd = cmd
        self.stderr = FakeStderr()
        self.returncode: int | None = None
        self._exit = returncode
        self._write = write
        self._hang = hang

    async def wait(self) -> int:
        while self._hang and self.returncode is None:
            await asyncio.sleep(0.01)
        if self.returncode is not None:
            return self.returncode
        out = Path(self.cmd[-1])
        if self._write:
            if out.suffix == ".m3u8":
                (out.parent / "seg000.ts").write_bytes(b"ts")
                out.write_text("#EXTM3U\n#EXTINF:2.0,\nseg000.ts\n#EXT-X-ENDLIST\n")
            else:
                out.write_bytes(b"\xff\xd8jpeg")
        self.returncode = self._exit
        return self._exit

    def kill(self) -> None:
        self.returncode = -9


def _spawner(**kwargs):
    spawned: list[FakeProcess] = []

    async def fake_spawn(cmd):
        proc = FakeProcess(cmd, **kwargs)
        spawned.append(proc)
        return proc

    return fake_spawn, spawned


@pytest.fixture
def library(tmp_path: Path) -> Path:
    root = tmp_path / "videos"
    (root / "Shows").mkdir(parents=True)
    (root / "A Movie.mp4").write_bytes(b"x")
    (root / "Shows" / "Pilot.mkv").write_bytes(b"x")
    (root / "readme.txt").write_text("x")
    (tmp_path / "outside.mp4").write_bytes(b"x")
    return root


@pytest.fixture
def env(tmp_path: Path, library: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the app at a temp library and cache."""
    for env_name in cache._ENV_OVERRIDES:
        monkeypatch.delenv(env_name, raising=False)
    monkeypatch.setenv("VIDEO_ROOT", str(library))
    monkeypatch.setenv("CACHE_ROOT", str(tmp_path / "cache"))
    monkeypatch.setenv("TRANSCODE_HW", "software")
    cache.clear_all_caches()
    yield
    cache.clear_all_caches()


@pytest.fixture
def client(env):
    """Test client with ffprobe stubbed out."""
    with patch.object(transcoding, "probe_media", return_value=None):
        with TestClient(main.app) as test_client:
            yield test_client


@pytest.fixture
def cached_hls(tmp_path: Path) -> Path:
    out = tmp_path / "cache" / MOVIE_ID
    out.mkdir(parents=True)
    (out / "index.m3u8").write_text("#EXTM3U\nseg000.ts\n")
    (out / "seg000.ts").write_bytes(b"segment-bytes")
    return out


class TestCatalog:
    def test_lists_media_only(self, client):
        resp = client.get("/catalog")
        assert resp.status_code == 200
        names = sorted(item["name"] for item in resp.json())
        assert names == ["A Movie.mp4", "Pilot.mkv"]

    def test_query_filters(self, client):
        resp = client.get("/catalog", params={"query": "pilot"})
        assert resp.json() == [
            {"id": encode_id("Shows/Pilot.mkv"), "name": "Pilot.mkv", "relativePath": "Shows/Pilot.mkv"}
        ]


class TestAsset:
    def test_detail(self, client):
        resp = client.get(f"/asset/{MOVIE_ID}")
        assert resp.status_code == 200
        assert resp.json() == {
            "id": MOVIE_ID,
            "name": "A Movie.mp4",
            "relativePath": "A Movie.mp4",
            "manifestUrl": f"/stream/{MOVIE_ID}/manifest",
            "thumbnailUrl": f"/thumbnail/{MOVIE_ID}",
        }

    def test_malformed_id(self, client):
        assert client.get("/asset/not!valid").status_code == 400

    def test_traversal_forbidden(self, client):
        assert client.get(f"/asset/{encode_id('../outside.mp4')}").status_code == 403

    def test_missing_file(self, client):
        assert client.get(f"/asset/{encode_id('gone.mp4')}").status_code == 404


class TestBrowse:
    def test_root(self, client):
        data = client.get("/browse").json()
        assert data["dir"] == ""
        assert data["parent"] is None
        assert [f["name"] for f in data["folders"]] == ["Shows"]
        assert [v["name"] for v in data["videos"]] == ["A Movie.mp4"]

    def test_subdir(self, client):
        data = client.get("/browse", params={"dir": "Shows"}).json()
        assert data["parent"] == ""
        assert data["videos"][0]["id"] == encode_id("Shows/Pilot.mkv")

    def test_traversal_forbidden(self, client):
        assert client.get("/browse", params={"dir": "../.."}).status_code == 403

    def test_missing_dir(self, client):
        assert client.get("/browse", params={"dir": "Nope"}).status_code == 404


class TestManifest:
    def test_transcodes_and_serves_manifest(self, client):
        fake_spawn, spawned = _spawner()
        with patch.object(transcoding, "spawn_ffmpeg", fake_spawn):
            resp = client.get(f"/stream/{MOVIE_ID}/manifest")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/vnd.apple.mpegurl"
        assert resp.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert resp.text.startswith("#EXTM3U")
        assert len(spawned) == 1

    def test_cached_manifest_not_retranscoded(self, client, cached_hls):
        fake_spawn, spawned = _spawner()
        with patch.object(transcoding, "spawn_ffmpeg", fake_spawn):
            resp = client.get(f"/stream/{MOVIE_ID}/manifest")
        assert resp.status_code == 200
        assert spawned == []

    def test_index_alias(self, client, cached_hls):
        resp = client.get(f"/stream/{MOVIE_ID}/index.m3u8")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/vnd.apple.mpegurl"

    def test_busy_returns_202(self, client):
        gate = transcoding.get_orchestrator().gate
        for _ in range(gate.capacity):
            gate.try_acquire()
        try:
            resp = client.get(f"/stream/{MOVIE_ID}/manifest")
        finally:
            for _ in range(gate.capacity):
                gate.release()
        assert resp.status_code == 202
        assert resp.headers["retry-after"] == "2"

    def test_encode_failure_returns_500(self, client):
        fake_spawn, _ = _spawner(returncode=1, write=False)
        with patch.object(transcoding, "spawn_ffmpeg", fake_spawn):
            resp = client.get(f"/stream/{MOVIE_ID}/manifest")
        assert resp.status_code == 500

    def test_bad_id(self, client):
        assert client.get("/stream/@@@/manifest").status_code == 400

    def test_missing_asset(self, client):
        assert client.get(f"/stream/{encode_id('gone.mp4')}/manifest").status_code == 404

    def test_jobs_idle(self, client):
        resp = client.get("/stream/jobs")
        assert resp.json() == {"active": 0, "capacity": 2, "jobs": []}


class TestSegments:
    def test_serves_segment(self, client, cached_hls):
        resp = client.get(f"/stream/{MOVIE_ID}/seg000.ts")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "video/mp2t"
        assert resp.headers["cache-control"] == "no-cache, no-store"
        assert resp.content == b"segment-bytes"

    def test_segment_not_ready(self, client, cached_hls):
        assert client.get(f"/stream/{MOVIE_ID}/seg001.ts").status_code == 404

    def test_non_segment_files_hidden(self, client, cached_hls):
        (cached_hls / "notes.txt").write_text("private")
        assert client.get(f"/stream/{MOVIE_ID}/notes.txt").status_code == 404

    def test_bad_id(self, client):
        assert client.get("/stream/@@@/seg000.ts").status_code == 400


class TestThumbnail:
    def test_generates_jpeg(self, client):
        fake_spawn, spawned = _spawner()
        with patch.object(transcoding, "spawn_ffmpeg", fake_spawn):
            resp = client.get(f"/thumbnail/{MOVIE_ID}")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/jpeg"
        assert resp.content.startswith(b"\xff\xd8")
        assert len(spawned) == 1

    def test_busy_returns_202(self, client):
        gate = thumbnails.get_generator().gate
        for _ in range(gate.capacity):
            gate.try_acquire()
        try:
            resp = client.get(f"/thumbnail/{MOVIE_ID}")
        finally:
            for _ in range(gate.capacity):
                gate.release()
        assert resp.status_code == 202

    def test_failure_returns_500(self, client):
        fake_spawn, _ = _spawner(returncode=1, write=False)
        with patch.object(transcoding, "spawn_ffmpeg", fake_spawn):
            assert client.get(f"/thumbnail/{MOVIE_ID}").status_code == 500

    def test_missing_asset(self, client):
        assert client.get(f"/thumbnail/{encode_id('gone.mp4')}").status_code == 404


LONG_REL = "/".join(["d" * 60] * 3 + ["e" * 40 + ".mp4"])
LONG_ID = encode_id(LONG_REL)


class TestLongPaths:
    @pytest.fixture
    def long_asset(self, library: Path) -> Path:
        path = library / LONG_REL
        path.parent.mkdir(parents=True)
        path.write_bytes(b"x")
        return path

    def test_id_longer_than_a_file_name(self):
        assert len(LONG_ID) > 255

    def test_manifest_and_segment(self, client, long_asset, tmp_path):
        fake_spawn, spawned = _spawner()
        with patch.object(transcoding, "spawn_ffmpeg", fake_spawn):
            resp = client.get(f"/stream/{LONG_ID}/manifest")
        assert resp.status_code == 200
        assert resp.text.startswith("#EXTM3U")
        assert len(spawned) == 1

        seg = client.get(f"/stream/{LONG_ID}/seg000.ts")
        assert seg.status_code == 200
        assert seg.content == b"ts"
        assert (tmp_path / "cache" / cache.cache_key(LONG_ID)).is_dir()

    def test_thumbnail(self, client, long_asset):
        fake_spawn, _ = _spawner()
        with patch.object(transcoding, "spawn_ffmpeg", fake_spawn):
            resp = client.get(f"/thumbnail/{LONG_ID}")
        assert resp.status_code == 200
        assert resp.content.startswith(b"\xff\xd8")

    def test_detail(self, client, long_asset):
        resp = client.get(f"/asset/{LONG_ID}")
        assert resp.status_code == 200
        assert resp.json()["relativePath"] == LONG_REL

    def test_oversized_name_is_not_found(self, client):
        assert client.get(f"/asset/{encode_id('x' * 300 + '.mp4')}").status_code == 404


# Name bytes that are not valid UTF-8, as os.walk/os.scandir report them
ODD_NAME = os.fsdecode(b"\xa5\xd1.mkv")


@pytest.mark.skipif(sys.platform != "linux", reason="needs byte-oriented filenames")
class TestNonUtf8Names:
    @pytest.fixture
    def odd_id(self, library: Path) -> str:
        (library / ODD_NAME).write_bytes(b"x")
        return encode_id(ODD_NAME)

    def test_catalog(self, client, odd_id):
        resp = client.get("/catalog")
        assert resp.status_code == 200
        items = {item["id"]: item for item in resp.json()}
        assert items[odd_id]["name"] == "\ufffd\ufffd.mkv"
        assert "A Movie.mp4" in [item["name"] for item in resp.json()]

    def test_browse(self, client, odd_id):
        resp = client.get("/browse")
        assert resp.status_code == 200
        assert odd_id in [v["id"] for v in resp.json()["videos"]]

    def test_detail(self, client, odd_id):
        resp = client.get(f"/asset/{odd_id}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "\ufffd\ufffd.mkv"

    def test_thumbnail(self, client, odd_id):
        fake_spawn, _ = _spawner()
        with patch.object(transcoding, "spawn_ffmpeg", fake_spawn):
            assert client.get(f"/thumbnail/{odd_id}").status_code == 200


class TestSlowThumbnail:
    def test_returns_202_then_killed_on_shutdown(self, env):
        cache.save_settings({"thumbnail_wait_secs": 0.3})
        fake_spawn, spawned = _spawner(hang=True)
        with (
            patch.object(transcoding, "spawn_ffmpeg", fake_spawn),
            patch.object(transcoding, "probe_media", return_value=None),
        ):
            with TestClient(main.app) as client:
                resp = client.get(f"/thumbnail/{MOVIE_ID}")
                assert thumbnails.get_generator().gate.active == 1
        assert resp.status_code == 202
        assert resp.headers["retry-after"] == "2"
        assert len(spawned) == 1
        assert spawned[0].returncode == -9
