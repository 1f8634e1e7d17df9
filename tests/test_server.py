from fastapi.testclient import TestClient

from campaign_mailer import api
from campaign_mailer.config_loader import ServiceSettings
from campaign_mailer.server import build_app

from conftest import SECRET


def test_build_app_starts_and_stops_core(tmp_path):
    original = api.service
    settings = ServiceSettings(db_path=str(tmp_path / "server.db"), encryption_key=SECRET, log_level="WARNING")
    try:
        with TestClient(build_app(settings)) as client:
            assert client.get("/health").json() == {"status": "ok"}
            assert api.service.settings is settings
            assert api.service._task_scheduler is not None
            assert client.get("/metrics").status_code == 200
        assert api.service._task_scheduler.done()
    finally:
        api.service = original
