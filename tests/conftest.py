import pytest

from support import DummyGateway, add_resources, make_app, seed_schemas


@pytest.fixture
def gateway():
    return DummyGateway()


@pytest.fixture
def app(tmp_path, gateway):
    application = make_app(tmp_path, gateway)
    yield application
    application.close()


@pytest.fixture
def seeded_app(app):
    seed_schemas(app)
    add_resources(app, "R1", "R2", "R3")
    return app
