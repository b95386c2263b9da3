import pytest
from lead_pipeline import SearchChannel, SearchRequest, SupabaseHistoryStore
from tests.conftest import make_config


@pytest.fixture
def store():
    return SupabaseHistoryStore(make_config(supabase_url="https://db.example.test/", supabase_key="svc"))


@pytest.mark.unit
def test_from_config_requires_url_and_key():
    assert SupabaseHistoryStore.from_config(make_config()) is None
    assert SupabaseHistoryStore.from_config(make_config(supabase_url="https://db.example.test")) is None
    assert SupabaseHistoryStore.from_config(
        make_config(supabase_url="https://db.example.test", supabase_key="k")
    ) is not None


@pytest.mark.unit
def test_endpoint_and_auth_headers(store):
    assert store.endpoint == "https://db.example.test/rest/v1/search_results"
    assert store.headers["apikey"] == "svc"
    assert store.headers["Authorization"] == "Bearer svc"


@pytest.mark.unit
def test_load_leads_flattens_rows(mocker, store):
    mock_request = mocker.patch("lead_pipeline._http_request")
    mock_request.return_value = [
        {"lead_data": [{"companyName": "A"}, "junk", {"companyName": "B"}]},
        {"lead_data": {"companyName": "C"}},
        {"lead_data": None},
        "not-a-row",
    ]

    leads = store.load_leads("user-9")

    assert [lead["companyName"] for lead in leads] == ["A", "B", "C"]
    args, kwargs = mock_request.call_args
    assert args == ("GET", store.endpoint)
    assert kwargs["params"] == {"select": "lead_data", "user_id": "eq.user-9"}


@pytest.mark.unit
def test_load_leads_ignores_non_list_payload(mocker, store):
    mocker.patch("lead_pipeline._http_request", return_value="unexpected")
    assert store.load_leads("user-9") == []


@pytest.mark.unit
@pytest.mark.parametrize("origin,status", [("manual", "new"), ("scheduled", "autopilot")])
def test_append_run_tags_status_by_origin(mocker, origin, status, store):
    mock_request = mocker.patch("lead_pipeline._http_request")
    request = SearchRequest("gyms", SearchChannel.MAPS, 3, user_id="user-9", origin=origin)

    store.append_run("user-9", "run-1", request, [{"companyName": "A"}])

    args, kwargs = mock_request.call_args
    assert args == ("POST", store.endpoint)
    assert kwargs["json_body"] == {
        "user_id": "user-9",
        "session_id": "run-1",
        "platform": "maps",
        "query": "gyms",
        "lead_data": [{"companyName": "A"}],
        "status": status,
    }
