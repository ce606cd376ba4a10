"""
Tests for the artifact uploader.
"""
from pathlib import Path

import pytest

from deployer.core.commands import CancelToken
from deployer.core.errors import PipelineCancelled
from deployer.core.uploader import (
    ArtifactUploader,
    UPLOADED_PREVIEW_LIMIT,
    content_type_for,
    object_key,
    upload_progress,
)

from conftest import FlakyObjectStore, write_tree


class Recorder:
    def __init__(self):
        self.progress: list[int] = []
        self.logs: list[str] = []

    async def on_progress(self, value: int) -> None:
        self.progress.append(value)

    async def on_log(self, line: str) -> None:
        self.logs.append(line)


@pytest.fixture
def artifact(tmp_path):
    return write_tree(tmp_path / "artifact", {
        "index.html": "<html></html>",
        "assets/app.js": "console.log(1)",
        "assets/style.css": "body {}",
        "img/logo.svg": "<svg/>",
    })


class TestHelpers:

    @pytest.mark.parametrize("name,expected", [
        ("index.html", "text/html"),
        ("style.CSS", "text/css"),
        ("app.js", "application/javascript"),
        ("data.json", "application/json"),
        ("logo.png", "image/png"),
        ("photo.jpeg", "image/jpeg"),
        ("icon.svg", "image/svg+xml"),
        ("font.woff2", "font/woff2"),
        ("archive.tar.gz", "application/octet-stream"),
        ("Makefile", "application/octet-stream"),
    ])
    def test_content_type(self, name, expected):
        assert content_type_for(Path(name)) == expected

    def test_object_key_uses_forward_slashes(self):
        assert object_key("abc123", Path("assets") / "app.js") == "abc123/assets/app.js"

    def test_upload_progress_spans_75_to_100(self):
        assert upload_progress(0, 4) == 75
        assert upload_progress(2, 4) == 87
        assert upload_progress(4, 4) == 100
        assert upload_progress(0, 0) == 100


class TestUpload:

    @pytest.mark.asyncio
    async def test_uploads_every_file_with_content_type(self, artifact):
        store = FlakyObjectStore()
        result = await ArtifactUploader(store).upload("dep1", artifact)

        assert result.total_files == 4
        assert result.uploaded_count == 4
        assert result.failed_files == []
        assert set(store.objects) == {
            "dep1/index.html",
            "dep1/assets/app.js",
            "dep1/assets/style.css",
            "dep1/img/logo.svg",
        }
        body, content_type = store.objects["dep1/assets/app.js"]
        assert body == b"console.log(1)"
        assert content_type == "application/javascript"
        assert result.bucket == "test-bucket"
        assert result.object_store_url == store.public_url("dep1/index.html")

    @pytest.mark.asyncio
    async def test_failed_file_does_not_abort_batch(self, artifact):
        store = FlakyObjectStore(failing_keys={"dep1/assets/style.css"})
        recorder = Recorder()

        result = await ArtifactUploader(store).upload(
            "dep1", artifact, on_progress=recorder.on_progress, on_log=recorder.on_log
        )

        assert result.uploaded_count == 3
        assert [f.path for f in result.failed_files] == ["assets/style.css"]
        assert "simulated transient fault" in result.failed_files[0].error
        assert result.uploaded_count + len(result.failed_files) == result.total_files
        assert "dep1/assets/style.css" not in store.objects
        assert any("Failed to upload assets/style.css" in line for line in recorder.logs)

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_ends_at_100(self, artifact):
        recorder = Recorder()
        await ArtifactUploader(FlakyObjectStore()).upload(
            "dep1", artifact, on_progress=recorder.on_progress
        )

        assert recorder.progress == sorted(recorder.progress)
        assert recorder.progress[-1] == 100
        assert all(75 <= p <= 100 for p in recorder.progress)

    @pytest.mark.asyncio
    async def test_empty_artifact(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        recorder = Recorder()

        result = await ArtifactUploader(FlakyObjectStore()).upload(
            "dep1", empty, on_progress=recorder.on_progress, on_log=recorder.on_log
        )

        assert result.total_files == 0
        assert result.uploaded_count == 0
        assert recorder.progress == [100]
        assert any("No index.html" in line for line in recorder.logs)

    @pytest.mark.asyncio
    async def test_logs_running_count_every_ten_files(self, tmp_path):
        artifact = write_tree(
            tmp_path / "many",
            {f"file{n:02d}.txt": str(n) for n in range(25)} | {"index.html": ""},
        )
        recorder = Recorder()

        await ArtifactUploader(FlakyObjectStore()).upload("dep1", artifact, on_log=recorder.on_log)

        counts = [line for line in recorder.logs if line.startswith("Uploaded ")]
        assert counts == ["Uploaded 10/26 files", "Uploaded 20/26 files"]

    @pytest.mark.asyncio
    async def test_uploaded_preview_is_capped(self, tmp_path):
        artifact = write_tree(tmp_path / "many", {f"f{n:02d}.txt": "x" for n in range(30)})

        result = await ArtifactUploader(FlakyObjectStore()).upload("dep1", artifact)

        assert result.uploaded_count == 30
        assert len(result.uploaded_files) == UPLOADED_PREVIEW_LIMIT

    @pytest.mark.asyncio
    async def test_symlinks_are_not_uploaded(self, artifact, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("do not publish")
        (artifact / "leak.txt").symlink_to(secret)

        store = FlakyObjectStore()
        result = await ArtifactUploader(store).upload("dep1", artifact)

        assert result.total_files == 4
        assert "dep1/leak.txt" not in store.objects

    @pytest.mark.asyncio
    async def test_cancel_stops_upload(self, artifact):
        cancel = CancelToken()
        cancel.cancel("worker shutting down")

        with pytest.raises(PipelineCancelled):
            await ArtifactUploader(FlakyObjectStore()).upload("dep1", artifact, cancel=cancel)
