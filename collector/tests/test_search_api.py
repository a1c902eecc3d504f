"""search_api モジュールのユニットテスト."""

from unittest.mock import MagicMock

import pytest
import requests

from rankwatch.errors import ConfigurationError, RateLimitError, SearchError
from rankwatch.search_api import GoogleCustomSearch, parse_search_response


def _response(status_code=200, data=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = data if data is not None else {}
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return resp


SAMPLE = {
    "searchInformation": {"totalResults": "1230", "searchTime": 0.21},
    "items": [
        {"title": "A", "link": "https://a.com/", "snippet": "first"},
        {"title": "no link"},
        {"title": "B", "link": "https://b.com/", "snippet": None},
    ],
}


class TestParseSearchResponse:
    """parse_search_response のテスト."""

    def test_parse(self):
        page = parse_search_response(SAMPLE)

        assert [item.url for item in page.items] == ["https://a.com/", "https://b.com/"]
        assert page.items[1].snippet == ""
        assert page.total_results_reported == 1230
        assert page.search_latency == pytest.approx(0.21)

    def test_empty_response(self):
        page = parse_search_response({})

        assert page.items == []
        assert page.total_results_reported == 0

    @pytest.mark.parametrize("data", [
        [],
        "error",
        {"items": {"link": "https://a.com/"}},
        {"items": ["https://a.com/"]},
        {"items": [{"link": 42}]},
    ])
    def test_malformed_structure_is_search_error(self, data):
        with pytest.raises(SearchError):
            parse_search_response(data)

    def test_non_object_search_information_ignored(self):
        page = parse_search_response({"items": [], "searchInformation": "n/a"})

        assert page.total_results_reported == 0


class TestGoogleCustomSearch:
    """GoogleCustomSearch のテスト."""

    def test_request_params(self):
        session = MagicMock()
        session.get.return_value = _response(data=SAMPLE)
        api = GoogleCustomSearch("key", "cx", session=session, sleep=lambda _: None)

        page = api.search("bounce house", 11, 10)

        params = session.get.call_args.kwargs["params"]
        assert params["q"] == "bounce house"
        assert params["start"] == 11
        assert params["num"] == 10
        assert len(page.items) == 2

    def test_rate_limit_retried_once(self):
        sleeps = []
        session = MagicMock()
        session.get.side_effect = [_response(429), _response(data=SAMPLE)]
        api = GoogleCustomSearch("key", "cx", session=session, sleep=sleeps.append)

        page = api.search("kw", 1, 10)

        assert session.get.call_count == 2
        assert len(sleeps) == 1
        assert 5.0 <= sleeps[0] <= 30.0
        assert len(page.items) == 2

    def test_rate_limit_twice_raises(self):
        session = MagicMock()
        session.get.return_value = _response(429)
        api = GoogleCustomSearch("key", "cx", session=session, sleep=lambda _: None)

        with pytest.raises(RateLimitError):
            api.search("kw", 1, 10)
        assert session.get.call_count == 2

    def test_server_error_not_retried(self):
        session = MagicMock()
        session.get.return_value = _response(500)
        api = GoogleCustomSearch("key", "cx", session=session, sleep=lambda _: None)

        with pytest.raises(SearchError) as exc_info:
            api.search("kw", 1, 10)
        assert not isinstance(exc_info.value, RateLimitError)
        assert session.get.call_count == 1

    def test_network_error(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("boom")
        api = GoogleCustomSearch("key", "cx", session=session, sleep=lambda _: None)

        with pytest.raises(SearchError):
            api.search("kw", 1, 10)

    def test_malformed_json(self):
        session = MagicMock()
        resp = _response()
        resp.json.side_effect = ValueError("not json")
        session.get.return_value = resp
        api = GoogleCustomSearch("key", "cx", session=session, sleep=lambda _: None)

        with pytest.raises(SearchError):
            api.search("kw", 1, 10)

    def test_json_array_is_search_error(self):
        session = MagicMock()
        session.get.return_value = _response(data=[{"link": "https://a.com/"}])
        api = GoogleCustomSearch("key", "cx", session=session, sleep=lambda _: None)

        with pytest.raises(SearchError):
            api.search("kw", 1, 10)

    def test_from_env_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_CX", "cx")

        with pytest.raises(ConfigurationError):
            GoogleCustomSearch.from_env()
