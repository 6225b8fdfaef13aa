from unittest.mock import patch

import pytest


STRONG_SECRET = "x" * 40


@pytest.mark.asyncio
async def test_liveness_and_root(api_client):
    assert (await api_client.get("/health/live")).json() == {"alive": True}
    root = await api_client.get("/")
    assert root.json()["name"] == "PhotoX API"


@pytest.mark.asyncio
async def test_readiness_lists_missing_configuration(api_client, tmp_path):
    with patch("config.settings.OPENROUTER_API_KEY", ""), patch(
        "config.settings.JWT_SECRET", "change_me_in_production"
    ), patch("config.settings.UPLOAD_DIR", str(tmp_path / "uploads")):
        missing = await api_client.get("/health/ready")

    assert missing.status_code == 503
    assert missing.json()["missing"] == ["OPENROUTER_API_KEY", "JWT_SECRET"]


@pytest.mark.asyncio
async def test_readiness_when_configured(api_client, tmp_path):
    with patch("config.settings.OPENROUTER_API_KEY", "sk-or-live"), patch(
        "config.settings.JWT_SECRET", STRONG_SECRET
    ), patch("config.settings.UPLOAD_DIR", str(tmp_path)):
        ready = await api_client.get("/health/ready")

    assert ready.status_code == 200
    assert ready.json() == {"ready": True}


@pytest.mark.asyncio
async def test_readiness_flags_unusable_upload_dir(api_client, tmp_path):
    blocker = tmp_path / "file"
    blocker.write_bytes(b"")
    with patch("config.settings.OPENROUTER_API_KEY", "sk-or-live"), patch(
        "config.settings.JWT_SECRET", STRONG_SECRET
    ), patch("config.settings.UPLOAD_DIR", str(blocker / "uploads")):
        response = await api_client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["missing"] == ["UPLOAD_DIR"]


@pytest.mark.asyncio
async def test_domain_errors_render_code(api_client, make_user, auth_headers):
    user = await make_user()
    response = await api_client.get("/edits/does-not-exist", headers=auth_headers(user))
    assert response.status_code == 404
    assert response.json() == {"detail": "Edit not found", "code": "NOT_FOUND"}
