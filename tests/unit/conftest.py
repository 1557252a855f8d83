from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeTransportFactory

from agentdesk.config import AgentConfig, AppConfig, AppSettings
from agentdesk.db import ThreadSafeConnection, init_memory_db


@pytest.fixture()
def db() -> ThreadSafeConnection:
    return init_memory_db()


@pytest.fixture()
def config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        agent=AgentConfig(output_base_dir=tmp_path / "output"),
        app=AppSettings(data_dir=tmp_path / "data"),
    )


@pytest.fixture()
def factory() -> FakeTransportFactory:
    return FakeTransportFactory()
