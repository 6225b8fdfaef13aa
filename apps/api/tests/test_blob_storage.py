import pytest

from services.blob_storage import LocalBlobStorage


@pytest.mark.asyncio
async def test_put_get_delete(blob_storage):
    ref = await blob_storage.put(b"pixels", suffix=".webp", prefix="results")

    assert ref.startswith("results/")
    assert ref.endswith(".webp")
    assert await blob_storage.get(ref) == b"pixels"

    await blob_storage.delete(ref)
    with pytest.raises(FileNotFoundError):
        await blob_storage.get(ref)
    # Deleting twice is harmless.
    await blob_storage.delete(ref)


@pytest.mark.asyncio
async def test_refs_cannot_escape_root(tmp_path):
    storage = LocalBlobStorage(str(tmp_path / "root"))
    (tmp_path / "secret.txt").write_bytes(b"secret")

    with pytest.raises(ValueError):
        await storage.get("../secret.txt")
    with pytest.raises(ValueError):
        await storage.delete("../secret.txt")


def test_url_for_uses_public_base(blob_storage, monkeypatch):
    monkeypatch.setattr("config.settings.PUBLIC_BASE_URL", "https://api.example.com/")
    assert blob_storage.url_for("originals/a.png") == "https://api.example.com/uploads/originals/a.png"
