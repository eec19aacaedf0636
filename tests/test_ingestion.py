# =============================================================================
# Unit Tests — Upload Storage
# =============================================================================

import asyncio
from pathlib import Path

from legal_qa.services.ingestion import LocalUploadStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class TestLocalUploadStore:
    def test_save_keeps_only_the_file_name(self, tmp_path):
        store = LocalUploadStore(tmp_path)

        path = Path(_run(store.save(b"%PDF-1.4", "../../договор.pdf", "files")))

        assert path.parent == tmp_path / "files"
        assert path.name.endswith("_договор.pdf")
        assert path.read_bytes() == b"%PDF-1.4"

    def test_delete_removes_file(self, tmp_path):
        store = LocalUploadStore(tmp_path)
        path = _run(store.save(b"audio", "voice.ogg", "audio"))

        _run(store.delete(path))

        assert not Path(path).exists()

    def test_delete_missing_file_is_quiet(self, tmp_path):
        _run(LocalUploadStore(tmp_path).delete(str(tmp_path / "gone.txt")))
