from concurrent.futures import Executor, Future

import pytest

from smartmarks import create_app
from smartmarks.config import TestConfig
from smartmarks.extensions import db


class ImmediateExecutor(Executor):
    """Runs submitted work inline so store completions queue up deterministically."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return future


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def immediate_executor():
    return ImmediateExecutor()
