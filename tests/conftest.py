import os

import pytest
from typer.testing import CliRunner


@pytest.fixture(autouse=True)
def clean_smoke_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("TESTNET_SMOKE_"):
            monkeypatch.delenv(name)


@pytest.fixture()
def cli_runner():
    import testnet_smoke.cli as cli

    return CliRunner(), cli.app
