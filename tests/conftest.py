import pytest

from strata_cmms.store import EntityStore
import strata_cmms.app as app_module


@pytest.fixture
def store(tmp_path):
    s = EntityStore(str(tmp_path / "test.db"))
    s.init_schema()
    return s


@pytest.fixture
def flask_app(store):
    app = app_module.app
    app.config.update(TESTING=True, SECRET_KEY="test-secret", DATABASE=store.db_path, SOON_WINDOW_DAYS=30)
    return app


@pytest.fixture
def client(flask_app):
    c = flask_app.test_client()
    with c.session_transaction() as sess:
        sess['user_id'] = 1
        sess['role'] = 'manager'
    return c


@pytest.fixture
def admin_client(flask_app):
    c = flask_app.test_client()
    with c.session_transaction() as sess:
        sess['user_id'] = 2
        sess['role'] = 'admin'
    return c
