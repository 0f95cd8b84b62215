"""Tests for the crab classifier HTTP API."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from conftest import FakeRuntime

    from crabclassifier.config import Settings

import httpx
import pytest
from fastapi import FastAPI, status

from crabclassifier.config import get_settings
from crabclassifier.main import create_app, init_app_state
from crabclassifier.ml.inference import InferencePool

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 2048


def _init_app_state(app: FastAPI, settings: Settings, runtime: FakeRuntime) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    init_app_state(app, settings, runtime)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    await app.state.session.shutdown()
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app(settings_factory: Callable[..., Settings], runtime: FakeRuntime) -> FastAPI:
    """Create a fresh app instance backed by the fake runtime."""
    application = create_app()
    _init_app_state(application, settings_factory(), runtime)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async for ac in _make_client(app):
        yield ac


async def _load(app: FastAPI, client: httpx.AsyncClient) -> None:
    response = await client.post("/api/v1/model/load")
    assert response.status_code == status.HTTP_202_ACCEPTED
    await app.state.session.wait_for_load()


async def _upload(client: httpx.AsyncClient, data: bytes = JPEG, content_type: str = "image/jpeg") -> httpx.Response:
    return await client.post("/api/v1/image", files={"file": ("crab.jpg", io.BytesIO(data), content_type)})


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["loader_state"] == "idle"
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)


class TestModelEndpoints:
    async def test_initial_status(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/model")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "idle"
        assert data["progress"] == 0
        assert data["can_retry"] is False
        assert data["retries_left"] == 3

    async def test_load_reaches_loaded(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load(app, client)

        data = (await client.get("/api/v1/model")).json()
        assert data["state"] == "loaded"
        assert data["progress"] == 100
        assert data["backend"] == "FakeExecutionProvider"
        assert data["format"] == "graph"
        assert data["error"] is None

    async def test_failed_load_offers_retry(
        self, app: FastAPI, client: httpx.AsyncClient, runtime: FakeRuntime
    ) -> None:
        runtime.init_error = RuntimeError("no backend")
        await _load(app, client)

        data = (await client.get("/api/v1/model")).json()
        assert data["state"] == "failed"
        assert data["progress"] == 0
        assert data["error"] == "no backend"
        assert data["can_retry"] is True
        assert data["retries_left"] == 3

    async def test_retry_exhaustion(self, app: FastAPI, client: httpx.AsyncClient, runtime: FakeRuntime) -> None:
        runtime.init_error = RuntimeError("no backend")
        await _load(app, client)

        for _ in range(3):
            response = await client.post("/api/v1/model/retry")
            assert response.status_code == status.HTTP_202_ACCEPTED
            await app.state.session.wait_for_load()

        data = (await client.get("/api/v1/model")).json()
        assert data["retry_count"] == 3
        assert data["can_retry"] is False
        response = await client.post("/api/v1/model/retry")
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_retry_after_success_conflicts(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load(app, client)
        response = await client.post("/api/v1/model/retry")
        assert response.status_code == status.HTTP_409_CONFLICT


class TestImageEndpoints:
    async def test_upload_and_fetch(self, client: httpx.AsyncClient) -> None:
        response = await _upload(client)
        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["ref"].startswith("blob:")
        assert data["size"] == len(JPEG)

        image = await client.get("/api/v1/image")
        assert image.status_code == status.HTTP_200_OK
        assert image.content == JPEG
        assert image.headers["content-type"] == "image/jpeg"

    async def test_upload_rejects_non_image(self, client: httpx.AsyncClient) -> None:
        response = await _upload(client, content_type="application/pdf")
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_upload_rejects_tiny_file(self, client: httpx.AsyncClient) -> None:
        response = await _upload(client, data=b"tiny")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "too small" in response.json()["detail"]

    async def test_upload_rejects_oversized_file(
        self, settings_factory: Callable[..., Settings], runtime: FakeRuntime
    ) -> None:
        app = create_app()
        _init_app_state(app, settings_factory(max_image_size=4096), runtime)
        async for ac in _make_client(app):
            response = await _upload(ac, data=b"\x00" * 64 * 1024)
            assert response.status_code == status.HTTP_400_BAD_REQUEST
            assert "smaller than" in response.json()["detail"]
            assert app.state.session.image is None
            assert len(app.state.session.images) == 0

    async def test_remove_image(self, client: httpx.AsyncClient) -> None:
        await _upload(client)
        response = await client.delete("/api/v1/image")
        assert response.status_code == status.HTTP_204_NO_CONTENT
        assert (await client.get("/api/v1/image")).status_code == status.HTTP_404_NOT_FOUND


class TestClassifyEndpoints:
    async def test_classify_requires_loaded_model(self, client: httpx.AsyncClient) -> None:
        await _upload(client)
        response = await client.post("/api/v1/classify")
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_classify_requires_image(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load(app, client)
        response = await client.post("/api/v1/classify")
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_full_flow(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load(app, client)
        await _upload(client)

        response = await client.post("/api/v1/classify")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["label"] in ("Male", "Female")
        assert 60.0 <= data["confidence"] <= 99.0
        assert data["alternative_label"] != data["label"]
        assert data["alternative_confidence"] == pytest.approx(100.0 - data["confidence"], abs=0.05)
        assert data["confidence_level"] in ("Very High", "High", "Moderate")

        held = await client.get("/api/v1/classify")
        assert held.json() == data

        await client.delete("/api/v1/image")
        assert (await client.get("/api/v1/classify")).status_code == status.HTTP_404_NOT_FOUND

    async def test_reset_result(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _load(app, client)
        await _upload(client)
        await client.post("/api/v1/classify")

        for _ in range(2):
            response = await client.delete("/api/v1/classify")
            assert response.status_code == status.HTTP_204_NO_CONTENT
            assert (await client.get("/api/v1/classify")).status_code == status.HTTP_404_NOT_FOUND


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(
        self, settings_factory: Callable[..., Settings], runtime: FakeRuntime
    ) -> None:
        app = create_app()
        _init_app_state(app, settings_factory(api_key="test-secret-key"), runtime)
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_correct_key(
        self, settings_factory: Callable[..., Settings], runtime: FakeRuntime
    ) -> None:
        app = create_app()
        _init_app_state(app, settings_factory(api_key="test-secret-key"), runtime)
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(
        self, settings_factory: Callable[..., Settings], runtime: FakeRuntime
    ) -> None:
        app = create_app()
        _init_app_state(app, settings_factory(api_key="test-secret-key"), runtime)
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED


class TestSettingsFromEnvironment:
    def test_env_prefix(self) -> None:
        with patch.dict("os.environ", {"CRABCLASSIFIER_DEVICE": "cuda", "CRABCLASSIFIER_MAX_LOAD_RETRIES": "5"}):
            settings = get_settings()
        assert settings.device == "cuda"
        assert settings.max_load_retries == 5

    def test_rejects_inverted_delay_range(self, settings_factory: Callable[..., Settings]) -> None:
        with pytest.raises(ValueError, match="inference_delay_min"):
            settings_factory(inference_delay_min=3.0, inference_delay_max=1.0)
