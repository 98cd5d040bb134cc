"""
Shared fixtures for IOC Ingest tests.

Network access goes through a mocked requests.Session and every sleep is
recorded instead of performed.
"""

from unittest.mock import MagicMock

import pytest

from ioc_ingest.core.config import (
    ApiKeyConfig,
    AppConfig,
    IngestConfig,
    NormalizeConfig,
    SourceConfig,
    SourceUrlConfig,
    StoreConfig,
)
from ioc_ingest.feeds.catalog import SOURCE_TABLE

SOURCE_KEYS = [row[0] for row in SOURCE_TABLE]


@pytest.fixture
def feeds_dir(tmp_path):
    path = tmp_path / "ingested"
    path.mkdir()
    return path


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "normalized"


@pytest.fixture
def app_config(tmp_path, feeds_dir, output_dir):
    """Configuration with every source enabled and pointed at a fake host."""
    return AppConfig(
        ingest=IngestConfig(
            sources_enabled=True,
            feeds_path=str(feeds_dir),
            request_delay_seconds=0,
        ),
        sources=SourceConfig(**{key: True for key in SOURCE_KEYS}),
        urls=SourceUrlConfig(**{key: f"https://feeds.example.test/{key}" for key in SOURCE_KEYS}),
        api_keys=ApiKeyConfig(otx_api_key="otx-key", malshare_api_key="malshare-key"),
        normalize=NormalizeConfig(
            run_jobs=True,
            input_path=str(feeds_dir),
            output_path=str(output_dir),
            ip_lists=True,
            threat_intel=True,
            phishing_urls=True,
            software_detections=True,
        ),
        store=StoreConfig(path=str(tmp_path / "indicators.db")),
    )


@pytest.fixture
def sleeps():
    """Records requested sleep durations."""
    return []


@pytest.fixture
def make_response():
    """Factory for fake requests responses."""
    def _make(status_code=200, content=b""):
        if isinstance(content, str):
            content = content.encode("utf-8")
        response = MagicMock()
        response.status_code = status_code
        response.content = content
        return response
    return _make


@pytest.fixture
def mock_session():
    return MagicMock()
