"""
Tests for the blocking HTTP helper used by the search history store.

Retries cover rate limits, server errors and network failures; waits are
jittered, so tests pin `random.random` to 0.5 (a factor of exactly 1.0).
"""

from unittest.mock import Mock, patch
from urllib.error import HTTPError, URLError

import pytest
from lead_pipeline import _http_request, _retry_after_delay


def response(body: bytes) -> Mock:
    resp = Mock()
    resp.read.return_value = body
    resp.__enter__ = Mock(return_value=resp)
    resp.__exit__ = Mock(return_value=False)
    return resp


def http_error(code, headers=None):
    return HTTPError("https://db.example.test", code, "error", headers or {}, None)


@pytest.mark.unit
@pytest.mark.http
class TestRequestBuilding:
    @patch("lead_pipeline.urllib.request.urlopen")
    def test_json_body_and_headers(self, mock_urlopen):
        mock_urlopen.return_value = response(b'{"ok": true}')

        result = _http_request(
            "post",
            "https://db.example.test/rest/v1/search_results",
            headers={"apikey": "k"},
            json_body={"query": "gyms"},
        )

        request = mock_urlopen.call_args[0][0]
        assert result == {"ok": True}
        assert request.get_method() == "POST"
        assert request.data == b'{"query": "gyms"}'
        assert request.headers["Content-type"] == "application/json"
        assert request.headers["Apikey"] == "k"

    @patch("lead_pipeline.urllib.request.urlopen")
    def test_params_skip_none_values(self, mock_urlopen):
        mock_urlopen.return_value = response(b"[]")

        _http_request("GET", "https://db.example.test/t", params={"user_id": "eq.u1", "limit": None})

        url = mock_urlopen.call_args[0][0].full_url
        assert url == "https://db.example.test/t?user_id=eq.u1"


@pytest.mark.unit
@pytest.mark.http
class TestResponseParsing:
    @pytest.mark.parametrize(
        "body,expected",
        [
            (b'[{"lead_data": []}]', [{"lead_data": []}]),
            (b"", {}),
            (b"created", "created"),
        ],
    )
    @patch("lead_pipeline.urllib.request.urlopen")
    def test_body_decoding(self, mock_urlopen, body, expected):
        mock_urlopen.return_value = response(body)

        assert _http_request("GET", "https://db.example.test/t") == expected


@pytest.mark.unit
@pytest.mark.http
@patch("lead_pipeline.random.random", return_value=0.5)
@patch("lead_pipeline.time.sleep")
@patch("lead_pipeline.urllib.request.urlopen")
class TestRetries:
    def test_server_errors_back_off_linearly(self, mock_urlopen, mock_sleep, _random):
        mock_urlopen.side_effect = [http_error(502), http_error(503), response(b'{"ok": 1}')]

        result = _http_request("GET", "https://db.example.test/t", max_retries=3, retry_backoff=2.0)

        assert result == {"ok": 1}
        assert [c.args[0] for c in mock_sleep.call_args_list] == [2.0, 4.0]

    def test_rate_limit_uses_retry_after(self, mock_urlopen, mock_sleep, _random):
        mock_urlopen.side_effect = [http_error(429, {"Retry-After": "7"}), response(b"{}")]

        _http_request("GET", "https://db.example.test/t")

        mock_sleep.assert_called_once_with(7.0)

    def test_network_errors_are_retried(self, mock_urlopen, mock_sleep, _random):
        mock_urlopen.side_effect = [URLError("reset"), response(b'{"ok": 1}')]

        assert _http_request("GET", "https://db.example.test/t") == {"ok": 1}
        assert mock_urlopen.call_count == 2

    def test_gives_up_after_max_retries(self, mock_urlopen, mock_sleep, _random):
        mock_urlopen.side_effect = http_error(500)

        with pytest.raises(HTTPError):
            _http_request("GET", "https://db.example.test/t", max_retries=3)

        assert mock_urlopen.call_count == 3
        assert mock_sleep.call_count == 2

    def test_client_errors_fail_fast(self, mock_urlopen, mock_sleep, _random):
        mock_urlopen.side_effect = http_error(401)

        with pytest.raises(HTTPError):
            _http_request("GET", "https://db.example.test/t")

        assert mock_urlopen.call_count == 1
        mock_sleep.assert_not_called()


@pytest.mark.unit
@pytest.mark.http
class TestRetryAfterDelay:
    @pytest.mark.parametrize(
        "headers,expected",
        [
            ({"Retry-After": "30"}, 30.0),
            ({}, None),
            ({"Retry-After": "soon"}, None),
            ({"Retry-After": "Thu, 01 Jan 1970 00:00:00 GMT"}, 0.0),
        ],
    )
    def test_header_values(self, headers, expected):
        error = Mock(spec=HTTPError)
        error.headers = headers

        assert _retry_after_delay(error) == expected

    def test_error_without_headers(self):
        error = Mock(spec=HTTPError)
        del error.headers

        assert _retry_after_delay(error) is None
