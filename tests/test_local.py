"""Tests for the local provider."""

import os

import pytest

from groundwork.errors import NotFoundError, ProviderError
from groundwork.providers.local import LocalProvider


@pytest.fixture
def files(tmp_path):
    return LocalProvider({"base_dir": str(tmp_path)}).handler("local_file")


# ---------------------------------------------------------------------------
# local_file
# ---------------------------------------------------------------------------

class TestLocalFile:

    def test_create_writes_file(self, files, tmp_path):
        resource_id, outputs = files.create({"filename": "keys/id_rsa", "content": "secret", "file_permission": "0600"})

        path = tmp_path / "keys" / "id_rsa"
        assert resource_id == str(path)
        assert path.read_text() == "secret"
        assert oct(os.stat(path).st_mode & 0o777) == "0o600"
        assert len(outputs["content_sha1"]) == 40

    def test_read_reports_content(self, files):
        resource_id, outputs = files.create({"filename": "a.txt", "content": "hello"})

        assert files.read(resource_id) == {"content": "hello", "content_sha1": outputs["content_sha1"]}

    def test_read_missing_file(self, files, tmp_path):
        with pytest.raises(NotFoundError):
            files.read(str(tmp_path / "gone.txt"))

    def test_delete(self, files, tmp_path):
        resource_id, _ = files.create({"filename": "a.txt", "content": "x"})

        files.delete(resource_id)

        assert not (tmp_path / "a.txt").exists()
        with pytest.raises(NotFoundError):
            files.delete(resource_id)

    def test_update_is_rejected(self, files):
        with pytest.raises(ProviderError):
            files.update("/tmp/whatever", {})

    def test_lookup_adopts_matching_file(self, files, tmp_path):
        (tmp_path / "a.txt").write_text("same")

        assert files.lookup({"filename": "a.txt", "content": "same"}) == str(tmp_path / "a.txt")
        assert files.lookup({"filename": "a.txt", "content": "different"}) is None
        assert files.lookup({"filename": "b.txt", "content": "same"}) is None

    def test_schema(self, files):
        assert "content" in files.schema.immutable
        assert files.schema.supports_lookup


# ---------------------------------------------------------------------------
# null_resource
# ---------------------------------------------------------------------------

def test_null_resource_ids_are_unique():
    handler = LocalProvider().handler("null_resource")

    first, outputs = handler.create({"triggers": {"a": "1"}})
    second, _ = handler.create({"triggers": {"a": "1"}})

    assert first != second
    assert outputs == {}
    assert handler.read(first) == {}
    assert handler.schema.immutable == frozenset({"triggers"})
