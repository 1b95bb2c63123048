import os
import pytest

from library import Library


@pytest.fixture
def data_file(tmp_path):
    # Each test gets its own snapshot file
    return str(tmp_path / "library.json")


@pytest.fixture
def lib(data_file):
    lib = Library(data_file)
    yield lib
    lib.close()


@pytest.fixture(autouse=True)
def _plain_cli_output():
    os.environ.pop("LIB_CLI_OUTPUT", None)
    yield
    os.environ.pop("LIB_CLI_OUTPUT", None)
