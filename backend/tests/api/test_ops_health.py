import pytest
from httpx import AsyncClient

from app.settings import settings


@pytest.mark.asyncio
async def test_liveness(api_client: AsyncClient):
	resp = await api_client.get("/health/live")
	assert resp.status_code == 200
	assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_readiness_reports_missing_postgres(api_client: AsyncClient):
	resp = await api_client.get("/health/ready")
	assert resp.status_code == 503
	body = resp.json()
	assert body["status"] == "degraded"
	assert body["checks"]["redis"]["ok"] is True
	assert body["checks"]["postgres"]["ok"] is False


@pytest.mark.asyncio
async def test_metrics_fail_closed_without_token(api_client: AsyncClient, monkeypatch):
	monkeypatch.setattr(settings, "obs_metrics_public", False)
	monkeypatch.setattr(settings, "obs_admin_token", None)
	resp = await api_client.get("/metrics")
	assert resp.status_code == 403
	assert resp.json()["detail"] == "admin_token_not_configured"


@pytest.mark.asyncio
async def test_metrics_require_matching_token(api_client: AsyncClient, monkeypatch):
	monkeypatch.setattr(settings, "obs_metrics_public", False)
	monkeypatch.setattr(settings, "obs_admin_token", "s3cret")

	wrong = await api_client.get("/metrics", headers={"X-Admin-Token": "nope"})
	bearer = await api_client.get("/metrics", headers={"Authorization": "Bearer s3cret"})

	assert wrong.status_code == 403
	assert bearer.status_code == 200
	assert "# TYPE mod_reports_total counter" in bearer.text
