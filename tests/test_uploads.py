import asyncio
import io
import os

import pytest
from fastapi import UploadFile

from uploads import UploadRejected, UploadedFile, ensure_templates_directory, store_upload


def make_upload(name: str, content: bytes = b"\xff\xa0wsq") -> UploadFile:
    return UploadFile(file=io.BytesIO(content), filename=name)


def test_template_path_replaces_suffix():
    stored = UploadedFile(path="templates/abc.wsq", original_name="f.wsq", file_id="abc")
    assert stored.template_path == os.path.join("templates", "abc.xyt")


def test_store_upload_writes_uuid_named_file(tmp_path):
    directory = str(tmp_path / "templates")

    stored = asyncio.run(store_upload(make_upload("Finger.WSQ", b"payload"), directory))

    assert stored.original_name == "Finger.WSQ"
    assert os.path.dirname(stored.path) == directory
    assert os.path.basename(stored.path) == f"{stored.file_id}.WSQ"
    with open(stored.path, "rb") as f:
        assert f.read() == b"payload"


def test_unique_names_per_upload(tmp_path):
    directory = str(tmp_path)

    async def store_twice():
        return await asyncio.gather(
            store_upload(make_upload("a.wsq"), directory),
            store_upload(make_upload("a.wsq"), directory),
        )

    first, second = asyncio.run(store_twice())
    assert first.path != second.path


def test_rejects_non_wsq(tmp_path):
    with pytest.raises(UploadRejected) as excinfo:
        asyncio.run(store_upload(make_upload("finger.png"), str(tmp_path)))
    assert excinfo.value.code == "INVALID_FILE_TYPE"
    assert os.listdir(tmp_path) == []


def test_rejects_oversized(tmp_path):
    with pytest.raises(UploadRejected) as excinfo:
        asyncio.run(store_upload(make_upload("finger.wsq", b"x" * 11), str(tmp_path), max_bytes=10))
    assert excinfo.value.code == "FILE_TOO_LARGE"
    assert os.listdir(tmp_path) == []


def test_ensure_templates_directory_is_idempotent(tmp_path):
    directory = str(tmp_path / "a" / "b")
    asyncio.run(ensure_templates_directory(directory))
    asyncio.run(ensure_templates_directory(directory))
    assert os.path.isdir(directory)
