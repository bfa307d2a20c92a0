import os

import pytest

from library import Library
from utils.ui_helpers import OUTPUT_MODE_ENV


@pytest.fixture
def db_file(tmp_path, request):
    # A unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file, strict_isbn=False)
    yield lib
    lib.close()


@pytest.fixture(autouse=True)
def _plain_cli_output(monkeypatch):
    # CLI output mode is kept in the environment; keep tests independent of it
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)
    monkeypatch.delenv("LIBRARY_DB_FILE", raising=False)
    yield
    os.environ.pop(OUTPUT_MODE_ENV, None)
