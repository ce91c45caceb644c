from chatcommerce.main import _is_job_worker_enabled
from chatcommerce.models import RecurringJob


class TestJobWorkerToggle:
    def test_disabled_under_pytest(self, test_settings):
        test_settings.job_worker_enabled = True
        assert _is_job_worker_enabled(test_settings) is False

    def test_respects_setting(self, test_settings, monkeypatch):
        monkeypatch.delenv("PYTEST_CURRENT_TEST", raising=False)
        test_settings.job_worker_enabled = True
        assert _is_job_worker_enabled(test_settings) is True
        test_settings.job_worker_enabled = False
        assert _is_job_worker_enabled(test_settings) is False


class TestStartup:
    def test_startup_registers_maintenance_triggers(self, client, db_session):
        names = {row.name for row in db_session.query(RecurringJob).all()}
        assert names == {"expire_conversations", "sweep_stale_carts"}

    def test_worker_not_started_in_tests(self, client):
        assert client.app.state.job_worker_task is None
