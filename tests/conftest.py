import os
import sys
from typing import Any, Callable, Dict, List, Optional

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from job_client import JobHandle, JobState, JobStatus  # noqa: E402
from lead_pipeline import Config, OwnerMatch  # noqa: E402

MAPS_ACTOR = "maps-actor"
CONTACT_ACTOR = "contact-actor"
SEARCH_ACTOR = "search-actor"


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: full pipeline runs against fakes")
    config.addinivalue_line("markers", "http: tests exercising HTTP helpers")


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    # Keep tests offline: no LLM, no webhook, no Supabase
    for name in (
        "OPENAI_API_KEY",
        "OWNER_DISCOVERY_WEBHOOK",
        "SUPABASE_URL",
        "NEXT_PUBLIC_SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "SUPABASE_ANON_KEY",
        "NEXT_PUBLIC_SUPABASE_ANON_KEY",
        "LEAD_PIPELINE_ENV_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("APIFY_API_TOKEN", "test-token")
    monkeypatch.setenv("JOB_POLL_INTERVAL", "0")
    monkeypatch.setenv("ATTEMPT_DELAY", "0")
    monkeypatch.setenv("ANALYSIS_RETRY_DELAY", "0")


def make_config(**overrides: Any) -> Config:
    values: Dict[str, Any] = dict(
        apify_token="test-token",
        maps_actor_id=MAPS_ACTOR,
        contact_actor_id=CONTACT_ACTOR,
        search_actor_id=SEARCH_ACTOR,
        openai_api_key="",
        owner_discovery_webhook="",
        supabase_url="",
        supabase_key="",
        job_poll_interval=0,
        attempt_delay=0,
        analysis_retry_delay=0,
    )
    values.update(overrides)
    return Config(**values)


def maps_item(i: int, prefix: str = "Novel", email: Optional[str] = None) -> Dict[str, Any]:
    item = {
        "title": f"{prefix} Gym {i}",
        "website": f"https://www.{prefix.lower()}{i}.com/",
        "address": f"Calle Mayor {i}, Madrid",
        "totalScore": 4.5,
        "reviewsCount": 10 + i,
        "categoryName": "Gym",
    }
    if email:
        item["emails"] = [email]
    return item


class FakeJobProvider:
    """In-memory job provider. Each submit consumes the next queued batch for its job type."""

    def __init__(
        self,
        results: Optional[Dict[str, List[List[Dict[str, Any]]]]] = None,
        status_for: Optional[Dict[str, JobStatus]] = None,
    ):
        self.results = results or {}
        self.status_for = status_for or {}
        self.submitted: List[tuple] = []
        self.status_calls = 0
        self.fetch_calls = 0
        self._datasets: Dict[str, List[Dict[str, Any]]] = {}

    def submitted_types(self) -> List[str]:
        return [job_type for job_type, _ in self.submitted]

    async def submit_job(self, job_type: str, payload: Dict[str, Any]) -> JobHandle:
        self.submitted.append((job_type, payload))
        run_id = f"run-{len(self.submitted)}"
        queue = self.results.get(job_type) or []
        self._datasets[run_id] = queue.pop(0) if queue else []
        return JobHandle(job_id=run_id, dataset_id=f"ds-{run_id}", job_type=job_type)

    async def get_status(self, handle: JobHandle) -> JobStatus:
        self.status_calls += 1
        return self.status_for.get(handle.job_type, JobStatus(JobState.SUCCEEDED))

    async def get_result_items(self, handle: JobHandle) -> List[Dict[str, Any]]:
        self.fetch_calls += 1
        return list(self._datasets.get(handle.job_id, []))


class FakeOwnerResolver:
    def __init__(self, matches: Optional[Dict[str, OwnerMatch]] = None, fail_for: Optional[set] = None):
        self.matches = matches or {}
        self.fail_for = fail_for or set()
        self.available = True
        self.calls: List[str] = []

    async def discover_owner(self, company_name, website, industry="", location=""):
        self.calls.append(website)
        if website in self.fail_for:
            raise RuntimeError(f"resolver exploded for {website}")
        return self.matches.get(website)


class FakeHistoryStore:
    def __init__(self, records: Optional[List[Dict[str, Any]]] = None):
        self.records = records or []
        self.saved: List[tuple] = []

    def load_leads(self, user_id: str) -> List[Dict[str, Any]]:
        return list(self.records)

    def append_run(self, user_id, run_id, request, leads) -> None:
        self.saved.append((user_id, run_id, request, leads))


class FakeOracle:
    """Stands in for AIOracle; `responder(system, user)` returns the parsed JSON dict."""

    def __init__(self, responder: Callable[[str, str], Dict[str, Any]]):
        self.responder = responder
        self.available = True
        self.unavailable_reason = ""
        self.calls: List[str] = []

    async def complete_json(self, system: str, user: str, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append(system)
        return self.responder(system, user)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def fake_provider():
    return FakeJobProvider()
