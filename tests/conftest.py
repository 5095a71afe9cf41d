import os

import pytest

from app import create_app
from services.paths import RootContext
from services.settings import Settings
from services.trash import TrashStore


@pytest.fixture
def root_dir(tmp_path):
    d = tmp_path / "root"
    d.mkdir()
    return d


@pytest.fixture
def root(root_dir):
    return RootContext.from_path(str(root_dir))


@pytest.fixture
def settings(tmp_path, root_dir):
    return Settings(root=str(root_dir), data_dir=str(tmp_path / "data"))


@pytest.fixture
def trash(tmp_path):
    return TrashStore(str(tmp_path / "trash"))


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def write(base, rel, data=b""):
    """Create ``rel`` (with parent folders) under ``base``."""
    p = os.path.join(str(base), *rel.split("/"))
    os.makedirs(os.path.dirname(p), exist_ok=True)
    mode = "w" if isinstance(data, str) else "wb"
    with open(p, mode) as f:
        f.write(data)
    return p
