"""
Tests for the feed HTTP client retry policy.
"""

import pytest
import requests

from ioc_ingest.core.config import IngestConfig
from ioc_ingest.core.errors import FetchError
from ioc_ingest.feeds.http import FeedClient

URL = "https://feeds.example.test/list.txt"


@pytest.fixture
def client(mock_session, sleeps):
    return FeedClient(IngestConfig(), session=mock_session, sleep=sleeps.append)


class TestFeedClient:
    """Test FeedClient.get."""

    def test_success(self, client, mock_session, make_response, sleeps):
        mock_session.get.return_value = make_response(200, "1.2.3.4")

        response = client.get(URL, headers={"Referer": "https://example.test/"})

        assert response.content == b"1.2.3.4"
        assert sleeps == []
        _, kwargs = mock_session.get.call_args
        assert kwargs["timeout"] == 30
        assert kwargs["allow_redirects"] is True
        assert kwargs["headers"]["User-Agent"] == IngestConfig().user_agent
        assert kwargs["headers"]["Referer"] == "https://example.test/"

    def test_client_error_not_retried(self, client, mock_session, make_response, sleeps):
        mock_session.get.return_value = make_response(404)

        with pytest.raises(FetchError) as exc_info:
            client.get(URL)

        assert exc_info.value.status_code == 404
        assert exc_info.value.retryable is False
        assert mock_session.get.call_count == 1
        assert sleeps == []

    def test_server_error_then_success(self, client, mock_session, make_response, sleeps):
        mock_session.get.side_effect = [make_response(500), make_response(200, "ok")]

        response = client.get(URL)

        assert response.status_code == 200
        assert sleeps == [2]

    def test_attempts_exhausted(self, client, mock_session, make_response, sleeps):
        mock_session.get.return_value = make_response(503)

        with pytest.raises(FetchError) as exc_info:
            client.get(URL)

        assert exc_info.value.status_code == 503
        assert mock_session.get.call_count == 3
        assert sleeps == [2, 4]

    def test_rate_limit_retried(self, client, mock_session, make_response, sleeps):
        mock_session.get.side_effect = [make_response(429), make_response(200)]
        assert client.get(URL).status_code == 200
        assert mock_session.get.call_count == 2

    def test_connection_error_retried(self, client, mock_session, make_response, sleeps):
        mock_session.get.side_effect = [
            requests.ConnectionError("connection refused"),
            make_response(200, "ok"),
        ]
        assert client.get(URL).content == b"ok"
        assert sleeps == [2]

    def test_attempts_override(self, client, mock_session, make_response, sleeps):
        mock_session.get.return_value = make_response(502)
        with pytest.raises(FetchError):
            client.get(URL, attempts=1)
        assert mock_session.get.call_count == 1
        assert sleeps == []
