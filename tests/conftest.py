"""
Shared fixtures: a sample Hacker News database and isolated settings.
"""

import pytest

from pixlie_analyst.adapters import SQLAlchemyConnector
from pixlie_analyst.sample_data import create_sample_database
from pixlie_analyst.settings import Settings


@pytest.fixture
def sample_db(tmp_path):
    path = tmp_path / "hn_sample.db"
    create_sample_database(path)
    return path


@pytest.fixture
def connector(sample_db):
    conn = SQLAlchemyConnector(url=f"sqlite:///{sample_db}", dialect="sqlite")
    yield conn
    conn.close()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        workspace_root=str(tmp_path / "workspaces"),
        autosave_interval_seconds=0,
        default_llm_provider="mock",
        max_iterations=5,
        max_consecutive_tool_failures=3,
        provider_retries=0,
        provider_timeout_seconds=5,
        tool_timeout_seconds=5,
        subscriber_put_timeout_seconds=1,
        log_level="WARNING",
    )
