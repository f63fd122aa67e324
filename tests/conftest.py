from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from mapagent.config import AppSettings
from mapagent.main import create_app
from tests.fakes import FakeMapApi, FakeTokenSource


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        ollama_base_url="http://ollama.test",
        ollama_model="test-model",
        map_api_base_url="http://map.test",
        map_api_key=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=3001,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeTokenSource | None = None,
        fake_map: FakeMapApi | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm = fake_llm or FakeTokenSource()
        map_api = fake_map or FakeMapApi()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm=llm, map_api=map_api, config_path=cfg_path)
        return app, cfg_path, llm, map_api

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm, map_api = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm  # type: ignore[attr-defined]
            http_client.fake_map = map_api  # type: ignore[attr-defined]
            yield http_client
