#!/usr/bin/env python3
"""
Lead Discovery Pipeline - Quota-Guaranteed Lead Search

Features:
- Async scraping jobs with bounded polling and stuck-job detection
- Six-criteria duplicate detection seeded from the user's search history
- Adaptive over-fetching across a bounded number of discovery attempts
- Contact discovery chain (owner resolver -> contact pages -> placeholder email)
- AI research and sales analysis with deterministic offline fallbacks
- Buffered results with a guarantee phase that fills the requested quota
- Cooperative cancellation and a wall-clock budget per run

Steps:
1. Seed the duplicate index from previously delivered leads (Supabase history).
2. Interpret the free-text query into a search term, industry, roles and location.
3. Run discovery attempts on the chosen channel (maps or professional network),
   over-fetching to absorb attrition, until the quota is met or the effort budget
   is spent. Each attempt dedups, resolves contacts and analyses just enough leads.
4. Classify every surviving lead into raw / discovered / enriched / ready buffers.
5. Promote buffered leads (enriched, then discovered, then raw) to fill any shortfall.

Environment variables configure API endpoints and credentials. Run with
`python lead_pipeline.py --query "boutique gyms" --source maps --quantity 10`.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
import os
import random
import re
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from ai_oracle import AIOracle, LeadAnalyst, QueryInterpreter, SearchIntent
from job_client import ApifyJobProvider, JobClient
from log_capture import RunLogCapture

UNNAMED_COMPANY = "Unnamed company"
DEFAULT_CONTACT_ROLE = "Owner"

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[a-z]{2,}$", re.IGNORECASE)
# Contact-page scrapers pick up addresses of site builders and error trackers.
JUNK_EMAIL_FRAGMENTS = ("wix", "sentry")

SOCIAL_HOSTS = (
    "linkedin.com",
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "x.com",
    "youtube.com",
    "tiktok.com",
)
# Hosts that never count as a company's own website.
DIRECTORY_HOSTS = SOCIAL_HOSTS + (
    "google.com",
    "wikipedia.org",
    "yelp.com",
    "glassdoor.com",
    "indeed.com",
    "crunchbase.com",
    "paginasamarillas.es",
    "einforma.com",
)

RUN_STATUS_BY_ORIGIN = {"manual": "new", "scheduled": "autopilot"}


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

def normalize_website(value: Optional[str]) -> str:
    """Strip the scheme and trailing slashes from a website URL."""
    site = (value or "").strip()
    if not site:
        return ""
    site = re.sub(r"^[a-z][a-z0-9+.-]*://", "", site, flags=re.IGNORECASE)
    return site.rstrip("/")


def normalize_domain(value: Optional[str]) -> str:
    d = (value or "").strip().lower()
    if not d:
        return ""
    if "://" in d:
        parsed = urllib.parse.urlparse(d)
        d = parsed.netloc or parsed.path
    d = d.split("/")[0].split("?")[0].split(":")[0]
    if d.startswith("www."):
        d = d[4:]
    # Normalize internationalized domains to ASCII (IDNA encoding)
    try:
        d = d.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return d.strip(".")


def normalize_company_name(name: Optional[str]) -> str:
    n = (name or "").lower()
    n = re.sub(r"[^\w\s]", "", n)
    n = re.sub(r"\s+", " ", n).strip()
    return n


def normalize_social_url(value: Optional[str]) -> str:
    url = (value or "").strip().lower()
    if not url:
        return ""
    url = re.sub(r"^[a-z][a-z0-9+.-]*://", "", url)
    if url.startswith("www."):
        url = url[4:]
    return url.split("?")[0].rstrip("/")


def is_usable_email(value: Optional[str]) -> bool:
    email = (value or "").strip().lower()
    if not email or not EMAIL_PATTERN.match(email):
        return False
    return not any(fragment in email for fragment in JUNK_EMAIL_FRAGMENTS)


def _host_matches(host: str, candidates: Iterable[str]) -> bool:
    return any(host == item or host.endswith("." + item) for item in candidates)


# ---------------------------------------------------------------------------
# HTTP utilities
# ---------------------------------------------------------------------------

def _http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    json_body: Optional[Any] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 60.0,
    max_retries: int = 4,
    retry_backoff: float = 2.0,
) -> Any:
    """
    Perform a blocking HTTP request with JSON support and retry handling.

    Args:
        method: HTTP method (GET/POST/PATCH/etc.)
        url: Base URL (without query params)
        headers: Optional request headers
        json_body: Optional payload; serialized to JSON if provided
        params: Optional dict appended as query string
        timeout: Request timeout in seconds
        max_retries: Total attempts before failing
        retry_backoff: Base backoff (seconds) for retryable errors

    Returns:
        Parsed JSON response (dict/list) when possible, else decoded text.

    Raises:
        urllib.error.URLError / urllib.error.HTTPError if all retries fail.
    """
    headers = dict(headers or {})
    data: Optional[bytes] = None

    if json_body is not None:
        headers.setdefault("Content-Type", "application/json")
        data = json.dumps(json_body).encode("utf-8")

    if params:
        encoded = urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})
        url = f"{url}?{encoded}"

    attempt = 0
    while True:
        attempt += 1
        req = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                raw = resp.read()
                if not raw:
                    return {}
                text = raw.decode("utf-8", errors="ignore")
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    logging.debug("Response from %s is not JSON; returning text", url)
                return text

        except urllib.error.HTTPError as exc:
            if exc.code == 429 and attempt < max_retries:
                base_wait = _retry_after_delay(exc) or (retry_backoff * attempt)
                wait_for = base_wait * (0.5 + random.random())
                logging.warning("HTTP 429 from %s; retrying in %.1fs (attempt %d/%d)", url, wait_for, attempt, max_retries)
                time.sleep(wait_for)
                continue
            if exc.code >= 500 and attempt < max_retries:
                wait_for = retry_backoff * attempt * (0.5 + random.random())
                logging.warning(
                    "Server error %s from %s; retrying in %.1fs (attempt %d/%d)",
                    exc.code,
                    url,
                    wait_for,
                    attempt,
                    max_retries,
                )
                time.sleep(wait_for)
                continue
            raise

        except urllib.error.URLError as exc:
            if attempt < max_retries:
                wait_for = retry_backoff * attempt * (0.5 + random.random())
                logging.warning("Network error %s; retrying in %.1fs (attempt %d/%d)", exc, wait_for, attempt, max_retries)
                time.sleep(wait_for)
                continue
            raise


def _retry_after_delay(error: urllib.error.HTTPError) -> Optional[float]:
    """Helper to parse Retry-After header."""
    retry_after = error.headers.get("Retry-After") if getattr(error, "headers", None) else None
    if not retry_after:
        return None
    try:
        return float(retry_after)
    except ValueError:
        try:
            parsed = datetime.strptime(retry_after, "%a, %d %b %Y %H:%M:%S %Z")
            delta = parsed.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
            return max(delta.total_seconds(), 0.0)
        except ValueError:
            return None


def _load_env_file(path: str = ".env.local") -> None:
    """
    Load environment variables from a simple KEY=VALUE file if present.

    Existing environment variables take precedence. Search order:
    1. Explicit override via LEAD_PIPELINE_ENV_FILE environment variable.
    2. The provided `path` relative to the current working directory.
    3. The same path relative to this script's directory.
    """
    if not path:
        return

    candidates: List[Path] = []
    override = os.getenv("LEAD_PIPELINE_ENV_FILE")
    if override:
        candidates.append(Path(override).expanduser())

    raw_path = Path(path)
    if raw_path.is_absolute():
        candidates.append(raw_path)
    else:
        candidates.append(Path.cwd() / raw_path)
        candidates.append(Path(__file__).resolve().parent / raw_path)

    seen: Set[Path] = set()
    for candidate in candidates:
        resolved = candidate.resolve()
        if resolved in seen or not resolved.exists():
            continue
        seen.add(resolved)

        try:
            with resolved.open("r", encoding="utf-8") as handle:
                for raw_line in handle:
                    line = raw_line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip()
                    if not key:
                        continue
                    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                        value = value[1:-1]
                    os.environ.setdefault(key, value)
            return
        except OSError as exc:
            print(f"Warning: failed to load environment file {resolved}: {exc}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class Config:
    """Environment-driven configuration container with validation."""

    apify_token: str = field(
        default_factory=lambda: os.getenv("APIFY_API_TOKEN") or os.getenv("APIFY_TOKEN", "")
    )
    apify_base_url: str = field(default_factory=lambda: os.getenv("APIFY_BASE_URL", "https://api.apify.com/v2"))
    maps_actor_id: str = field(default_factory=lambda: os.getenv("APIFY_MAPS_ACTOR", "nwua9Gu5YrADL7ZDj"))
    contact_actor_id: str = field(default_factory=lambda: os.getenv("APIFY_CONTACT_ACTOR", "vdrmO1lXCkhbPjE9j"))
    search_actor_id: str = field(default_factory=lambda: os.getenv("APIFY_SEARCH_ACTOR", "nFJndFXA5zjCTuudP"))
    openai_api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    openai_model: str = field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini"))
    owner_discovery_webhook: str = field(default_factory=lambda: os.getenv("OWNER_DISCOVERY_WEBHOOK", ""))
    owner_discovery_timeout: float = field(
        default_factory=lambda: float(os.getenv("OWNER_DISCOVERY_TIMEOUT", "90"))
    )
    supabase_url: str = field(
        default_factory=lambda: os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL", "")
    )
    supabase_key: str = field(
        default_factory=lambda: (
            os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or os.getenv("NEXT_PUBLIC_SUPABASE_ANON_KEY")
            or ""
        )
    )
    history_table: str = field(default_factory=lambda: os.getenv("SUPABASE_HISTORY_TABLE", "search_results"))

    # Job polling
    job_poll_interval: float = field(default_factory=lambda: float(os.getenv("JOB_POLL_INTERVAL", "5")))
    job_max_polls: int = field(default_factory=lambda: int(os.getenv("JOB_MAX_POLLS", "30")))
    job_stuck_threshold: int = field(default_factory=lambda: int(os.getenv("JOB_STUCK_THRESHOLD", "10")))
    http_request_timeout: float = field(default_factory=lambda: float(os.getenv("HTTP_REQUEST_TIMEOUT", "60")))

    # Effort budget
    run_timeout_seconds: float = field(default_factory=lambda: float(os.getenv("RUN_TIMEOUT_SECONDS", "600")))
    max_attempts: int = field(default_factory=lambda: int(os.getenv("MAX_ATTEMPTS", "5")))
    attempt_delay: float = field(default_factory=lambda: float(os.getenv("ATTEMPT_DELAY", "1.0")))
    enrichment_batch_size: int = field(default_factory=lambda: int(os.getenv("ENRICHMENT_BATCH_SIZE", "5")))
    overfetch_max_multiplier: float = field(
        default_factory=lambda: float(os.getenv("OVERFETCH_MAX_MULTIPLIER", "10"))
    )
    max_fetch_per_attempt: int = field(default_factory=lambda: int(os.getenv("MAX_FETCH_PER_ATTEMPT", "250")))
    max_results_per_run: int = field(default_factory=lambda: int(os.getenv("MAX_RESULTS_PER_RUN", "50")))
    analysis_max_retries: int = field(default_factory=lambda: int(os.getenv("ANALYSIS_MAX_RETRIES", "3")))
    analysis_retry_delay: float = field(default_factory=lambda: float(os.getenv("ANALYSIS_RETRY_DELAY", "1.0")))

    # Policies
    allow_duplicates_on_final_attempt: bool = field(
        default_factory=lambda: os.getenv("ALLOW_DUPLICATES_ON_FINAL_ATTEMPT", "false").lower() == "true"
    )
    strict_dedup: bool = field(default_factory=lambda: os.getenv("STRICT_DEDUP", "false").lower() == "true")
    placeholder_email_enabled: bool = field(
        default_factory=lambda: os.getenv("PLACEHOLDER_EMAIL_ENABLED", "true").lower() == "true"
    )

    # Search locale
    default_location: str = field(default_factory=lambda: os.getenv("DEFAULT_LOCATION", "Spain"))
    search_language: str = field(default_factory=lambda: os.getenv("SEARCH_LANGUAGE", "es"))
    search_country: str = field(default_factory=lambda: os.getenv("SEARCH_COUNTRY", "es"))

    def validate(self) -> None:
        """Ensure critical configuration exists and is valid."""
        missing = []
        invalid = []

        if not self.apify_token:
            missing.append("APIFY_API_TOKEN")

        if self.job_poll_interval < 0:
            invalid.append(f"JOB_POLL_INTERVAL cannot be negative (got {self.job_poll_interval})")
        if self.job_max_polls < 1:
            invalid.append(f"JOB_MAX_POLLS too low: {self.job_max_polls}")
        if self.job_stuck_threshold < 1:
            invalid.append(f"JOB_STUCK_THRESHOLD too low: {self.job_stuck_threshold}")
        if self.run_timeout_seconds <= 0:
            invalid.append(f"RUN_TIMEOUT_SECONDS must be positive (got {self.run_timeout_seconds})")
        if self.max_attempts < 1:
            invalid.append(f"MAX_ATTEMPTS too low: {self.max_attempts}")
        if self.enrichment_batch_size < 1 or self.enrichment_batch_size > 20:
            invalid.append(f"ENRICHMENT_BATCH_SIZE out of range: {self.enrichment_batch_size} (1-20)")
        if self.overfetch_max_multiplier < 1:
            invalid.append(f"OVERFETCH_MAX_MULTIPLIER too low: {self.overfetch_max_multiplier}")
        if self.max_fetch_per_attempt < 1:
            invalid.append(f"MAX_FETCH_PER_ATTEMPT too low: {self.max_fetch_per_attempt}")
        if self.max_results_per_run < 1:
            invalid.append(f"MAX_RESULTS_PER_RUN too low: {self.max_results_per_run}")
        if self.analysis_max_retries < 1:
            invalid.append(f"ANALYSIS_MAX_RETRIES too low: {self.analysis_max_retries}")

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")
        if invalid:
            raise ValueError(f"Invalid configuration: {'; '.join(invalid)}")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class SearchChannel(Enum):
    MAPS = "maps"
    PROFESSIONAL_NETWORK = "professional_network"

    @classmethod
    def parse(cls, value: Any) -> "SearchChannel":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower()
        aliases = {"gmail": cls.MAPS, "google_maps": cls.MAPS, "linkedin": cls.PROFESSIONAL_NETWORK}
        if key in aliases:
            return aliases[key]
        for member in cls:
            if member.value == key:
                return member
        raise ValueError(f"Unknown search channel: {value!r}")


class LeadStatus(Enum):
    SCRAPED = "scraped"
    ENRICHED = "enriched"
    READY = "ready"

    @property
    def rank(self) -> int:
        return list(LeadStatus).index(self)


class BufferStage(Enum):
    RAW = "raw"
    DISCOVERED = "discovered"
    ENRICHED = "enriched"
    READY = "ready"


@dataclass
class SearchFilters:
    locations: List[str] = field(default_factory=list)
    industries: List[str] = field(default_factory=list)
    job_titles: List[str] = field(default_factory=list)
    company_sizes: List[str] = field(default_factory=list)


@dataclass
class SearchRequest:
    query: str
    source: SearchChannel
    quota: int
    filters: SearchFilters = field(default_factory=SearchFilters)
    user_id: Optional[str] = None
    origin: str = "manual"

    def __post_init__(self) -> None:
        self.query = (self.query or "").strip()
        if not self.query:
            raise ValueError("Search query cannot be empty")
        self.source = SearchChannel.parse(self.source)
        if isinstance(self.quota, bool) or not isinstance(self.quota, int) or self.quota < 1:
            raise ValueError(f"Quota must be a positive integer (got {self.quota!r})")
        if self.filters is None:
            self.filters = SearchFilters()
        if self.origin not in RUN_STATUS_BY_ORIGIN:
            raise ValueError(f"Unknown run origin: {self.origin!r}")


@dataclass(frozen=True)
class Fingerprint:
    """Normalized identity keys used for duplicate detection."""

    domain: str = ""
    name: str = ""
    email: str = ""
    social: str = ""

    @classmethod
    def build(cls, company_name: str = "", website: str = "", email: str = "", social: str = "") -> "Fingerprint":
        name = normalize_company_name(company_name)
        if name == normalize_company_name(UNNAMED_COMPANY):
            name = ""
        return cls(
            domain=normalize_domain(website),
            name=name,
            email=(email or "").strip().lower(),
            social=normalize_social_url(social),
        )


@dataclass
class Candidate:
    """A raw search hit before enrichment."""

    company_name: str
    website: str = ""
    address: str = ""
    email: str = ""
    phone: str = ""
    rating_summary: str = ""
    person_name: str = ""
    person_role: str = ""
    linkedin: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.website = normalize_website(self.website)

    def fingerprint(self) -> Fingerprint:
        return Fingerprint.build(self.company_name, self.website, self.email, self.linkedin)


@dataclass
class DecisionMaker:
    name: str = ""
    role: str = ""
    email: str = ""
    linkedin: str = ""
    social_links: List[str] = field(default_factory=list)
    email_is_placeholder: bool = False
    confidence: Optional[float] = None
    source: str = ""


@dataclass
class AIAnalysis:
    summary: str = ""
    executive_summary: str = ""
    bottleneck: str = ""
    psychological_profile: str = ""
    business_moment: str = ""
    sales_angle: str = ""
    personalized_message: str = ""
    full_analysis: str = ""
    ad_status: str = ""
    social_status: str = ""
    research_notes: str = ""


@dataclass
class Lead:
    id: str
    source: str
    company_name: str
    website: str = ""
    location: str = ""
    decision_maker: DecisionMaker = field(default_factory=DecisionMaker)
    ai_analysis: AIAnalysis = field(default_factory=AIAnalysis)
    status: LeadStatus = LeadStatus.SCRAPED

    @classmethod
    def from_candidate(
        cls,
        candidate: Candidate,
        channel: SearchChannel,
        attempt: int,
        index: int,
        default_location: str = "",
    ) -> "Lead":
        return cls(
            id=f"lead-{int(time.time() * 1000)}-{attempt}-{index}",
            source=channel.value,
            company_name=candidate.company_name or UNNAMED_COMPANY,
            website=candidate.website,
            location=candidate.address or default_location,
            decision_maker=DecisionMaker(
                name=candidate.person_name,
                role=candidate.person_role or DEFAULT_CONTACT_ROLE,
                email=candidate.email.strip().lower() if is_usable_email(candidate.email) else "",
                linkedin=candidate.linkedin,
                source=channel.value if candidate.email else "",
            ),
            ai_analysis=AIAnalysis(summary=candidate.rating_summary),
        )

    @property
    def has_real_email(self) -> bool:
        email = (self.decision_maker.email or "").lower()
        return bool(email) and not self.decision_maker.email_is_placeholder and "@example" not in email

    def advance(self, status: LeadStatus) -> None:
        if status.rank < self.status.rank:
            raise ValueError(f"Lead {self.id} cannot move from {self.status.value} back to {status.value}")
        self.status = status

    def force_status(self, status: LeadStatus) -> None:
        """Guarantee promotion bypasses the lifecycle order."""
        self.status = status

    def fingerprint(self) -> Fingerprint:
        return Fingerprint.build(
            self.company_name,
            self.website,
            self.decision_maker.email,
            self.decision_maker.linkedin,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class BufferedLead:
    lead: Lead
    stage: BufferStage
    attempt_number: int
    discovery_channel: SearchChannel


@dataclass
class RunMetrics:
    candidates_seen: int = 0
    duplicates_found: int = 0
    success_rate: float = 0.0
    attempts_used: int = 0
    elapsed_seconds: float = 0.0
    promoted: int = 0

    def finalize(self, ready_count: int, started: float) -> None:
        self.success_rate = round(ready_count / self.candidates_seen, 4) if self.candidates_seen else 0.0
        self.elapsed_seconds = round(time.monotonic() - started, 2)


@dataclass
class SearchResult:
    run_id: str
    leads: List[Lead]
    metrics: RunMetrics
    log: List[str] = field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "returned": len(self.leads),
            "leads": [lead.to_dict() for lead in self.leads],
            "metrics": asdict(self.metrics),
            "error": self.error,
            "cancelled": self.cancelled,
        }


# ---------------------------------------------------------------------------
# Lead deduplication
# ---------------------------------------------------------------------------

class LeadDeduplicator:
    """Reject leads already delivered or already collected in this run.

    Keys are prefixed strings (``domain:``, ``label:``, ``name:``, ``email:``,
    ``social:``). Criteria in order: exact domain, domain variants (strict),
    company name, name containment (strict), decision-maker email and social
    profile URL.
    """

    def __init__(self):
        self.seen_keys: Set[str] = set()

    def __len__(self) -> int:
        return len(self.seen_keys)

    @staticmethod
    def _domain_label(domain: str) -> str:
        return domain.split(".")[0] if "." in domain else ""

    @classmethod
    def _keys(cls, fp: Fingerprint) -> List[str]:
        keys = []
        if fp.domain:
            keys.append(f"domain:{fp.domain}")
            label = cls._domain_label(fp.domain)
            if label:
                keys.append(f"label:{label}")
        if fp.name:
            keys.append(f"name:{fp.name}")
        if fp.email:
            keys.append(f"email:{fp.email}")
        if fp.social:
            keys.append(f"social:{fp.social}")
        return keys

    @classmethod
    def _domain_variants(cls, domain: str) -> List[str]:
        variants: List[str] = []
        base, _, tld = domain.rpartition(".")
        if not base:
            return variants
        if tld == "es":
            variants.append(f"{base}.com")
        elif tld == "com":
            variants.append(f"{base}.es")
        label = cls._domain_label(domain)
        if label:
            variants.append(label)
        return variants

    def is_duplicate(self, fp: Fingerprint, strict: bool = False) -> Optional[str]:
        """Return the name of the first matching criterion, or None."""
        if fp.domain and f"domain:{fp.domain}" in self.seen_keys:
            return "domain"
        if strict and fp.domain:
            for variant in self._domain_variants(fp.domain):
                if {f"domain:{variant}", f"name:{variant}", f"label:{variant}"} & self.seen_keys:
                    return "domain_variant"
        if fp.name and f"name:{fp.name}" in self.seen_keys:
            return "company_name"
        if strict and fp.name:
            for key in self.seen_keys:
                value = key.split(":", 1)[1]
                if len(value) >= 3 and value in fp.name:
                    return "name_contains"
        if fp.email and f"email:{fp.email}" in self.seen_keys:
            return "email"
        if fp.social and f"social:{fp.social}" in self.seen_keys:
            return "social"
        return None

    def mark_seen(self, fp: Fingerprint) -> None:
        self.seen_keys.update(self._keys(fp))

    @staticmethod
    def fingerprint_record(record: Dict[str, Any]) -> Fingerprint:
        """Fingerprint a persisted lead (camelCase or snake_case keys)."""
        dm = record.get("decision_maker") or record.get("decisionMaker") or {}
        if not isinstance(dm, dict):
            dm = {}
        return Fingerprint.build(
            company_name=record.get("company_name") or record.get("companyName") or "",
            website=record.get("website") or "",
            email=dm.get("email") or "",
            social=dm.get("linkedin") or "",
        )

    def seed_from_history(self, records: Iterable[Dict[str, Any]]) -> int:
        count = 0
        for record in records:
            if not isinstance(record, dict):
                continue
            self.mark_seen(self.fingerprint_record(record))
            count += 1
        return count


# ---------------------------------------------------------------------------
# Per-run state
# ---------------------------------------------------------------------------

def _empty_buffers() -> Dict[BufferStage, List[BufferedLead]]:
    return {stage: [] for stage in BufferStage}


@dataclass
class RunContext:
    """Mutable state of one search run, shared by the engine and orchestrator."""

    run_id: str
    request: SearchRequest
    config: Config
    dedup: LeadDeduplicator = field(default_factory=LeadDeduplicator)
    buffers: Dict[BufferStage, List[BufferedLead]] = field(default_factory=_empty_buffers)
    metrics: RunMetrics = field(default_factory=RunMetrics)
    running: bool = True
    started: float = field(default_factory=time.monotonic)
    scan_depth: int = 0
    intent: Optional[SearchIntent] = None

    def ready_count(self) -> int:
        return len(self.buffers[BufferStage.READY])

    def timed_out(self) -> bool:
        return time.monotonic() - self.started > self.config.run_timeout_seconds

    def should_continue(self) -> bool:
        return self.running and not self.timed_out()


async def run_while_active(coro: Awaitable[Any], ctx: RunContext, fallback: Any = None) -> Any:
    """
    Await a collaborator call, abandoning it once the run is stopped or out of time.

    The run flag is checked every job poll interval; when it drops the call is
    cancelled and `fallback` is returned. Exceptions from the call propagate.
    """
    task = asyncio.ensure_future(coro)
    interval = max(0.05, ctx.config.job_poll_interval)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=interval)
            if done:
                return task.result()
            if not ctx.should_continue():
                task.cancel()
                await asyncio.wait({task}, timeout=interval)
                if task.done() and not task.cancelled():
                    task.exception()
                logging.info("Abandoned an in-flight call after the run stopped")
                return fallback
    except asyncio.CancelledError:
        task.cancel()
        raise


# ---------------------------------------------------------------------------
# Discovery channels
# ---------------------------------------------------------------------------

def render_filter_clause(filters: SearchFilters, skip: Iterable[str] = ()) -> str:
    """Render structured filters as AND-ed OR-groups, e.g. ``(A OR B) AND C``."""
    groups = []
    for name in ("locations", "industries", "job_titles", "company_sizes"):
        if name in skip:
            continue
        values = [value.strip() for value in getattr(filters, name) if value and value.strip()]
        if not values:
            continue
        groups.append(values[0] if len(values) == 1 else "(" + " OR ".join(values) + ")")
    return " AND ".join(groups)


class DiscoveryChannel:
    """Base class for the two supported discovery channels."""

    channel: SearchChannel
    label = ""
    actor_attr = ""

    def __init__(self, config: Config):
        self.config = config

    @property
    def job_type(self) -> str:
        return getattr(self.config, self.actor_attr)

    def build_query(self, request: SearchRequest, intent: SearchIntent) -> str:
        raise NotImplementedError

    def build_job_input(self, query: str, fetch_amount: int) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_candidates(self, items: List[Dict[str, Any]]) -> List[Candidate]:
        raise NotImplementedError

    async def establish_identity(self, candidates: List[Candidate], jobs: JobClient, ctx: RunContext) -> List[Candidate]:
        return candidates


class MapsChannel(DiscoveryChannel):
    """Company-first search over map listings."""

    channel = SearchChannel.MAPS
    label = "Google Maps"
    actor_attr = "maps_actor_id"

    def build_query(self, request: SearchRequest, intent: SearchIntent) -> str:
        parts = [intent.search_query]
        if intent.location and not request.filters.locations:
            parts.append(intent.location)
        clause = render_filter_clause(request.filters)
        if clause:
            parts.append(clause)
        return " ".join(part for part in parts if part)

    def build_job_input(self, query: str, fetch_amount: int) -> Dict[str, Any]:
        return {
            "searchStringsArray": [query],
            "maxCrawledPlacesPerSearch": fetch_amount,
            "language": self.config.search_language,
            "includeWebsiteEmail": True,
            "scrapeContacts": True,
            "skipClosedPlaces": True,
        }

    def parse_candidates(self, items: List[Dict[str, Any]]) -> List[Candidate]:
        candidates = []
        for item in items:
            emails = [e for e in (item.get("emails") or []) if isinstance(e, str)]
            email = item.get("email") or (emails[0] if emails else "")
            linkedins = item.get("linkedIns") or []
            score = item.get("totalScore")
            reviews = item.get("reviewsCount") or 0
            candidates.append(
                Candidate(
                    company_name=(item.get("title") or "").strip() or UNNAMED_COMPANY,
                    website=item.get("website") or "",
                    address=item.get("address") or "",
                    email=email if is_usable_email(email) else "",
                    phone=item.get("phone") or "",
                    rating_summary=f"{score if score is not None else 'N/A'}★ ({reviews} reviews)",
                    linkedin=linkedins[0] if linkedins and isinstance(linkedins[0], str) else "",
                    metadata={"category": item.get("categoryName") or ""},
                )
            )
        return candidates


class ProfessionalNetworkChannel(DiscoveryChannel):
    """Person-first search over indexed professional profiles."""

    channel = SearchChannel.PROFESSIONAL_NETWORK
    label = "LinkedIn"
    actor_attr = "search_actor_id"

    TITLE_SUFFIX = re.compile(r"\s*[|\-–]\s*LinkedIn\s*$", re.IGNORECASE)
    TITLE_SEPARATOR = re.compile(r"\s+[-–—|]\s+")
    HEADLINE_SEPARATOR = re.compile(r"\s+(?:at|en|@)\s+", re.IGNORECASE)
    DOMAIN_IN_TEXT = re.compile(r"\b((?:[a-z0-9-]+\.)+[a-z]{2,})\b", re.IGNORECASE)

    def build_query(self, request: SearchRequest, intent: SearchIntent) -> str:
        roles = request.filters.job_titles or intent.target_roles
        parts = ["site:linkedin.com/in"]
        if roles:
            parts.append("(" + " OR ".join(f'"{role}"' for role in roles) + ")")
        parts.append(f'"{intent.search_query}"')
        if intent.location and not request.filters.locations:
            parts.append(f'"{intent.location}"')
        clause = render_filter_clause(request.filters, skip=("job_titles",))
        if clause:
            parts.append(clause)
        return " ".join(parts)

    def build_job_input(self, query: str, fetch_amount: int) -> Dict[str, Any]:
        per_page = max(10, min(100, fetch_amount))
        return {
            "queries": query,
            "maxPagesPerQuery": max(1, math.ceil(fetch_amount / per_page)),
            "resultsPerPage": per_page,
            "languageCode": self.config.search_language,
            "countryCode": self.config.search_country,
        }

    @classmethod
    def parse_profile_title(cls, title: Optional[str]) -> Optional[Tuple[str, str, str]]:
        """Split ``"Name - Role - Company | LinkedIn"`` into its parts."""
        if not title:
            return None
        cleaned = cls.TITLE_SUFFIX.sub("", title.strip())
        parts = [part.strip() for part in cls.TITLE_SEPARATOR.split(cleaned) if part.strip()]
        if len(parts) >= 3:
            return parts[0], parts[1], parts[2]
        if len(parts) == 2:
            role_and_company = cls.HEADLINE_SEPARATOR.split(parts[1], maxsplit=1)
            if len(role_and_company) == 2:
                return parts[0], role_and_company[0].strip(), role_and_company[1].strip()
        return None

    @classmethod
    def website_from_text(cls, text: Optional[str]) -> str:
        for match in cls.DOMAIN_IN_TEXT.findall(text or ""):
            host = normalize_domain(match)
            if host and not _host_matches(host, DIRECTORY_HOSTS):
                return host
        return ""

    def parse_candidates(self, items: List[Dict[str, Any]]) -> List[Candidate]:
        candidates = []
        for item in items:
            for result in item.get("organicResults") or []:
                url = result.get("url") or ""
                if "linkedin.com/in" not in url.lower():
                    continue
                person = self.parse_profile_title(result.get("title"))
                if not person:
                    logging.debug("Could not parse profile title %r", result.get("title"))
                    continue
                name, role, company = person
                candidates.append(
                    Candidate(
                        company_name=company,
                        website=self.website_from_text(result.get("description")),
                        person_name=name,
                        person_role=role,
                        linkedin=url,
                        rating_summary=result.get("description") or "",
                    )
                )
        return candidates

    @staticmethod
    def _site_query(company_name: str) -> str:
        return f'"{company_name}" official website'

    async def establish_identity(self, candidates: List[Candidate], jobs: JobClient, ctx: RunContext) -> List[Candidate]:
        missing = [c for c in candidates if not c.website]
        if not missing or not ctx.should_continue():
            return candidates
        logging.info("Resolving websites for %d profile companies", len(missing))
        payload = {
            "queries": "\n".join(self._site_query(c.company_name) for c in missing),
            "maxPagesPerQuery": 1,
            "resultsPerPage": 3,
            "languageCode": self.config.search_language,
            "countryCode": self.config.search_country,
        }
        try:
            items = await jobs.run(self.config.search_actor_id, payload, ctx.should_continue)
        except Exception as exc:  # noqa: BLE001
            logging.warning("Website lookup job failed: %s", exc)
            return candidates

        sites: Dict[str, str] = {}
        for item in items:
            term = ((item.get("searchQuery") or {}).get("term") or "").strip()
            for result in item.get("organicResults") or []:
                host = normalize_domain(result.get("url"))
                if host and not _host_matches(host, DIRECTORY_HOSTS):
                    sites.setdefault(term, host)
                    break
        for candidate in missing:
            site = sites.get(self._site_query(candidate.company_name))
            if site:
                candidate.website = normalize_website(site)
        return candidates


CHANNELS = {
    SearchChannel.MAPS: MapsChannel,
    SearchChannel.PROFESSIONAL_NETWORK: ProfessionalNetworkChannel,
}


def build_channel(source: SearchChannel, config: Config) -> DiscoveryChannel:
    return CHANNELS[source](config)


# ---------------------------------------------------------------------------
# Contact discovery and enrichment
# ---------------------------------------------------------------------------

@dataclass
class OwnerMatch:
    email: str = ""
    name: str = ""
    role: str = ""
    linkedin: str = ""
    confidence: Optional[float] = None
    source: str = "owner_resolver"


class OwnerResolverClient:
    """Client for the owner/email discovery webhook."""

    def __init__(self, session: aiohttp.ClientSession, url: str, timeout: float = 90.0):
        self.session = session
        self.url = url
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.url)

    async def discover_owner(
        self,
        company_name: str,
        website: str,
        industry: str = "",
        location: str = "",
    ) -> Optional[OwnerMatch]:
        if not self.url:
            return None
        payload = {
            "company_name": company_name,
            "company_domain": normalize_domain(website),
            "website": website,
            "industry": industry,
            "location": location,
        }
        async with self.session.post(
            self.url,
            json=payload,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            if resp.status >= 400:
                logging.warning("Owner discovery for %s failed with HTTP %s", company_name, resp.status)
                return None
            data = await resp.json(content_type=None)
        return self.parse_response(data)

    @staticmethod
    def parse_response(data: Any) -> Optional[OwnerMatch]:
        node = data
        while isinstance(node, list):
            node = node[0] if node else None
        if isinstance(node, dict):
            for key in ("owner", "data", "result"):
                if isinstance(node.get(key), dict):
                    node = node[key]
                    break
        if not isinstance(node, dict):
            return None

        def _sanitize(value: Any) -> str:
            return value.strip() if isinstance(value, str) else ""

        email = _sanitize(node.get("email")).lower()
        if email and not is_usable_email(email):
            email = ""
        name = _sanitize(node.get("ownerName") or node.get("owner_name") or node.get("full_name") or node.get("name"))
        if not email and not name:
            return None
        confidence = node.get("confidence")
        try:
            confidence = float(confidence) if confidence is not None else None
        except (TypeError, ValueError):
            confidence = None
        return OwnerMatch(
            email=email,
            name=name,
            role=_sanitize(node.get("ownerRole") or node.get("role") or node.get("title")),
            linkedin=_sanitize(node.get("linkedin") or node.get("linkedin_url")),
            confidence=confidence,
            source=_sanitize(node.get("source")) or "owner_resolver",
        )


class EnrichmentChain:
    """Contact discovery, web research and AI synthesis for a batch of leads."""

    def __init__(self, config: Config, jobs: JobClient, owner_resolver: Optional[Any], analyst: LeadAnalyst):
        self.config = config
        self.jobs = jobs
        self.owner_resolver = owner_resolver
        self.analyst = analyst

    async def _run_batched(
        self,
        leads: List[Lead],
        worker: Callable[[Lead], Any],
        ctx: RunContext,
        label: str,
    ) -> None:
        size = max(1, self.config.enrichment_batch_size)
        for start in range(0, len(leads), size):
            if not ctx.should_continue():
                logging.info("%s interrupted after %d/%d leads", label, start, len(leads))
                return
            batch = leads[start:start + size]
            results = await asyncio.gather(*(worker(lead) for lead in batch), return_exceptions=True)
            for lead, result in zip(batch, results):
                if isinstance(result, Exception):
                    logging.warning("%s failed for %s: %s", label, lead.company_name, result)

    async def discover_contacts(self, leads: List[Lead], intent: SearchIntent, ctx: RunContext) -> None:
        resolver = self.owner_resolver
        if leads and resolver is not None and getattr(resolver, "available", True):
            logging.info("Looking up owners for %d companies", len(leads))

            async def _resolve(lead: Lead) -> None:
                await self._resolve_owner(resolver, lead, intent, ctx)

            await self._run_batched(leads, _resolve, ctx, "Owner lookup")

        pending = [lead for lead in leads if not lead.decision_maker.email]
        if pending and ctx.should_continue():
            await self._scrape_contact_pages(pending, ctx)

        if self.config.placeholder_email_enabled:
            for lead in leads:
                if not lead.decision_maker.email:
                    self._assign_placeholder(lead)

        found = sum(1 for lead in leads if lead.has_real_email)
        logging.info("Contact discovery: %d/%d leads with a verified-looking email", found, len(leads))

    @staticmethod
    async def _resolve_owner(resolver: Any, lead: Lead, intent: SearchIntent, ctx: RunContext) -> None:
        match = await run_while_active(
            resolver.discover_owner(lead.company_name, lead.website, intent.industry, lead.location or intent.location),
            ctx,
        )
        if match is None:
            return
        dm = lead.decision_maker
        if match.email:
            dm.email = match.email
            dm.email_is_placeholder = False
            dm.source = match.source
        if match.name and not dm.name:
            dm.name = match.name
        if match.role and (not dm.role or dm.role == DEFAULT_CONTACT_ROLE):
            dm.role = match.role
        if match.linkedin and not dm.linkedin:
            dm.linkedin = match.linkedin
        if match.confidence is not None:
            dm.confidence = match.confidence

    async def _scrape_contact_pages(self, leads: List[Lead], ctx: RunContext) -> None:
        targets = [lead for lead in leads if lead.website]
        if not targets:
            return
        logging.info("Scraping contact pages for %d companies", len(targets))
        payload = {
            "startUrls": [{"url": f"https://{lead.website}"} for lead in targets],
            "maxRequestsPerWebsite": 2,
            "sameDomainOnly": True,
        }
        try:
            items = await run_while_active(
                self.jobs.run(self.config.contact_actor_id, payload, ctx.should_continue), ctx, fallback=[]
            )
        except Exception as exc:  # noqa: BLE001
            logging.warning("Contact page scrape failed: %s", exc)
            return

        by_domain: Dict[str, List[Dict[str, Any]]] = {}
        for item in items:
            domain = normalize_domain(item.get("domain") or item.get("url"))
            if domain:
                by_domain.setdefault(domain, []).append(item)

        for lead in targets:
            pages = by_domain.get(normalize_domain(lead.website), [])
            dm = lead.decision_maker
            emails = [
                email.strip().lower()
                for page in pages
                for email in (page.get("emails") or [])
                if isinstance(email, str) and is_usable_email(email)
            ]
            if emails and not dm.email:
                dm.email = emails[0]
                dm.source = "contact_page"
            for page in pages:
                for key in ("linkedIns", "facebooks", "instagrams", "twitters"):
                    for link in page.get(key) or []:
                        if isinstance(link, str) and link not in dm.social_links:
                            dm.social_links.append(link)
            if not dm.linkedin:
                profile = next((link for link in dm.social_links if "linkedin.com/in" in link.lower()), "")
                dm.linkedin = profile

    @staticmethod
    def _assign_placeholder(lead: Lead) -> None:
        domain = normalize_domain(lead.website)
        if not domain:
            return
        lead.decision_maker.email = f"contact@{domain}"
        lead.decision_maker.email_is_placeholder = True
        logging.debug("Assigned placeholder email for %s", lead.company_name)

    @staticmethod
    def _research_queries(lead: Lead) -> List[str]:
        queries = []
        if lead.company_name != UNNAMED_COMPANY:
            queries.append(f'"{lead.company_name}" values mission products')
            queries.append(f'"{lead.company_name}" CEO OR Founder OR Owner')
            if lead.decision_maker.name:
                queries.append(f'"{lead.decision_maker.name}" "{lead.company_name}"')
        if lead.website:
            queries.append(f'site:{normalize_domain(lead.website)} "about us" OR team OR founder')
        return queries

    async def research(self, lead: Lead, ctx: RunContext) -> str:
        queries = self._research_queries(lead)
        if not queries:
            return ""
        payload = {
            "queries": "\n".join(queries),
            "maxPagesPerQuery": 1,
            "resultsPerPage": 4,
            "languageCode": self.config.search_language,
            "countryCode": self.config.search_country,
        }
        try:
            items = await self.jobs.run(self.config.search_actor_id, payload, ctx.should_continue)
        except Exception as exc:  # noqa: BLE001
            logging.warning("Research for %s failed: %s", lead.company_name, exc)
            return ""
        notes = []
        for item in items:
            for result in (item.get("organicResults") or [])[:3]:
                title = result.get("title") or ""
                description = result.get("description") or ""
                if title or description:
                    notes.append(f"- {title}: {description}")
        return "\n".join(notes)

    async def analyze_leads(self, leads: List[Lead], ctx: RunContext) -> None:
        """Research and synthesize each lead; leads reach READY only when both finish."""

        async def _analyze(lead: Lead) -> None:
            if not ctx.should_continue():
                return
            notes = await run_while_active(self.research(lead, ctx), ctx)
            if notes is None:
                return
            lead.ai_analysis.research_notes = notes
            lead.advance(LeadStatus.ENRICHED)
            if not ctx.should_continue():
                logging.info("Run stopped before analysing %s", lead.company_name)
                return
            analysis = await run_while_active(
                self.analyst.analyze(
                    {
                        "company_name": lead.company_name,
                        "website": lead.website,
                        "location": lead.location,
                        "contact_name": lead.decision_maker.name,
                        "contact_role": lead.decision_maker.role,
                        "summary": lead.ai_analysis.summary,
                        "research": lead.ai_analysis.research_notes,
                    },
                    ctx.should_continue,
                ),
                ctx,
            )
            if analysis is None:
                logging.info("Run stopped while analysing %s", lead.company_name)
                return
            self._apply_analysis(lead, analysis)
            lead.advance(LeadStatus.READY)
            logging.info("✓ %s ready (%s)", lead.company_name, lead.decision_maker.email)

        logging.info("Analysing %d leads", len(leads))
        await self._run_batched(leads, _analyze, ctx, "Analysis")

    @staticmethod
    def _apply_analysis(lead: Lead, analysis: Dict[str, str]) -> None:
        for key, value in analysis.items():
            if key == "detected_owner":
                if value and not lead.decision_maker.name:
                    lead.decision_maker.name = value
                continue
            if hasattr(lead.ai_analysis, key) and key not in ("summary", "research_notes"):
                setattr(lead.ai_analysis, key, value)


# ---------------------------------------------------------------------------
# Discovery orchestrator
# ---------------------------------------------------------------------------

@dataclass
class AttemptOutcome:
    attempt: int
    fetch_amount: int = 0
    candidates_seen: int = 0
    duplicates: int = 0
    ready: List[Lead] = field(default_factory=list)
    leftovers: List[Lead] = field(default_factory=list)
    allow_duplicates: bool = False
    exhausted: bool = False
    error: Optional[str] = None

    @property
    def leads(self) -> List[Lead]:
        return self.ready + self.leftovers


class SearchService:
    """Runs bounded discovery attempts on one channel, yielding each attempt's leads."""

    def __init__(self, config: Config, jobs: JobClient, enrichment: EnrichmentChain, interpreter: QueryInterpreter):
        self.config = config
        self.jobs = jobs
        self.enrichment = enrichment
        self.interpreter = interpreter

    def _calculate_fetch_amount(self, needed: int, attempt: int, scan_depth: int) -> Tuple[int, float]:
        """
        Decide how many raw hits to request for the next attempt.

        Small shortfalls need a large multiplier since most raw hits are lost to
        duplicates and missing contacts. Later attempts widen the multiplier and
        reach past the hits already scanned.
        """
        needed = max(1, needed)
        thresholds: List[Tuple[int, float]] = [
            (1, 10.0),
            (3, 8.0),
            (10, 6.0),
            (25, 5.0),
        ]
        multiplier = 4.0
        for limit, candidate in thresholds:
            if needed <= limit:
                multiplier = candidate
                break
        multiplier = min(self.config.overfetch_max_multiplier, multiplier * (1 + 0.5 * (attempt - 1)))
        amount = math.ceil(needed * multiplier) + scan_depth
        amount = min(amount, self.config.max_fetch_per_attempt)
        return amount, multiplier

    def _filter_duplicates(self, candidates: List[Candidate], ctx: RunContext, outcome: AttemptOutcome) -> List[Candidate]:
        batch = LeadDeduplicator()
        fresh = []
        for candidate in candidates:
            fp = candidate.fingerprint()
            reason = ctx.dedup.is_duplicate(fp, strict=self.config.strict_dedup) or batch.is_duplicate(fp)
            if reason:
                outcome.duplicates += 1
                ctx.metrics.duplicates_found += 1
                logging.debug("Duplicate %s (%s)", candidate.company_name, reason)
                continue
            batch.mark_seen(fp)
            fresh.append(candidate)
        return fresh

    async def attempts(self, ctx: RunContext) -> AsyncIterator[AttemptOutcome]:
        request = ctx.request
        channel = build_channel(request.source, self.config)
        ctx.intent = await run_while_active(
            self.interpreter.interpret(request.query, channel.label),
            ctx,
            fallback=self.interpreter.fallback(request.query),
        )
        logging.info(
            "Search intent: query=%r industry=%r location=%r roles=%s",
            ctx.intent.search_query,
            ctx.intent.industry,
            ctx.intent.location,
            ", ".join(ctx.intent.target_roles),
        )

        attempt = 0
        while True:
            if not ctx.running:
                logging.info("Search stopped by caller")
                return
            if ctx.timed_out():
                logging.warning("Run time budget of %.0fs exhausted", self.config.run_timeout_seconds)
                return
            needed = request.quota - ctx.ready_count()
            if needed <= 0:
                logging.info("Quota of %d ready leads reached", request.quota)
                return
            if attempt >= self.config.max_attempts:
                logging.warning("Attempt budget of %d exhausted with %d leads still needed", self.config.max_attempts, needed)
                return

            attempt += 1
            ctx.metrics.attempts_used = attempt
            outcome = await self._run_attempt(attempt, needed, channel, ctx)
            yield outcome

            if outcome.exhausted:
                logging.warning("%s returned no more results; stopping", channel.label)
                return
            if self.config.attempt_delay > 0 and attempt < self.config.max_attempts and ctx.should_continue():
                await asyncio.sleep(self.config.attempt_delay)

    async def _run_attempt(self, attempt: int, needed: int, channel: DiscoveryChannel, ctx: RunContext) -> AttemptOutcome:
        final = attempt >= self.config.max_attempts
        fetch_amount, multiplier = self._calculate_fetch_amount(needed, attempt, ctx.scan_depth)
        outcome = AttemptOutcome(attempt=attempt, fetch_amount=fetch_amount)
        logging.info("=" * 70)
        logging.info(
            "ATTEMPT %d/%d on %s: need %d, fetching %d (%.1fx)",
            attempt,
            self.config.max_attempts,
            channel.label,
            needed,
            fetch_amount,
            multiplier,
        )
        logging.info("=" * 70)

        query = channel.build_query(ctx.request, ctx.intent)
        logging.info("Query: %s", query)
        try:
            items = await run_while_active(
                self.jobs.run(channel.job_type, channel.build_job_input(query, fetch_amount), ctx.should_continue),
                ctx,
                fallback=[],
            )
        except Exception as exc:  # noqa: BLE001
            logging.warning("Discovery job failed on attempt %d: %s", attempt, exc)
            outcome.error = str(exc)
            return outcome
        if not ctx.should_continue():
            return outcome

        candidates = channel.parse_candidates(items)
        outcome.candidates_seen = len(candidates)
        ctx.metrics.candidates_seen += len(candidates)
        ctx.scan_depth += len(candidates)
        if not items:
            outcome.exhausted = True
            return outcome

        fresh = self._filter_duplicates(candidates, ctx, outcome)
        logging.info("Found %d candidates, %d new, %d duplicates", len(candidates), len(fresh), outcome.duplicates)
        if not fresh:
            if final and self.config.allow_duplicates_on_final_attempt and candidates:
                fresh = candidates[:needed]
                outcome.allow_duplicates = True
                logging.warning("Final attempt found only duplicates; accepting %d of them", len(fresh))
            else:
                return outcome

        fresh = await channel.establish_identity(fresh, self.jobs, ctx)
        with_site = [candidate for candidate in fresh if candidate.website]
        if len(with_site) < len(fresh):
            logging.info("Dropped %d candidates without a website", len(fresh) - len(with_site))
        leads = [
            Lead.from_candidate(candidate, channel.channel, attempt, index, ctx.intent.location)
            for index, candidate in enumerate(with_site)
        ]
        if not leads or not ctx.should_continue():
            return outcome

        await self.enrichment.discover_contacts(leads, ctx.intent, ctx)
        contactable = [lead for lead in leads if lead.decision_maker.email]
        if len(contactable) < len(leads):
            logging.info("Dropped %d leads without any email", len(leads) - len(contactable))

        slots = max(0, ctx.request.quota - ctx.ready_count())
        to_analyze = [lead for lead in contactable if lead.has_real_email][:slots]
        if to_analyze and ctx.should_continue():
            await self.enrichment.analyze_leads(to_analyze, ctx)

        outcome.ready = [lead for lead in to_analyze if lead.status == LeadStatus.READY]
        outcome.leftovers = [lead for lead in contactable if lead.status != LeadStatus.READY]
        return outcome


# ---------------------------------------------------------------------------
# Search history persistence
# ---------------------------------------------------------------------------

class SupabaseHistoryStore:
    """Supabase REST client for the per-user search history table."""

    def __init__(self, config: Config):
        self.base_url = config.supabase_url.rstrip("/")
        self.table = config.history_table
        self.timeout = config.http_request_timeout
        self.headers = {
            "apikey": config.supabase_key,
            "Authorization": f"Bearer {config.supabase_key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    @classmethod
    def from_config(cls, config: Config) -> Optional["SupabaseHistoryStore"]:
        if not config.supabase_url or not config.supabase_key:
            return None
        return cls(config)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def load_leads(self, user_id: str) -> List[Dict[str, Any]]:
        rows = _http_request(
            "GET",
            self.endpoint,
            headers=self.headers,
            params={"select": "lead_data", "user_id": f"eq.{user_id}"},
            timeout=self.timeout,
        )
        leads: List[Dict[str, Any]] = []
        if not isinstance(rows, list):
            return leads
        for row in rows:
            data = row.get("lead_data") if isinstance(row, dict) else None
            if isinstance(data, list):
                leads.extend(item for item in data if isinstance(item, dict))
            elif isinstance(data, dict):
                leads.append(data)
        return leads

    def append_run(self, user_id: str, run_id: str, request: SearchRequest, leads: List[Dict[str, Any]]) -> None:
        payload = {
            "user_id": user_id,
            "session_id": run_id,
            "platform": request.source.value,
            "query": request.query,
            "lead_data": leads,
            "status": RUN_STATUS_BY_ORIGIN.get(request.origin, "new"),
        }
        _http_request("POST", self.endpoint, headers=self.headers, json_body=payload, timeout=self.timeout)
        logging.info("Saved %d leads to search history", len(leads))


# ---------------------------------------------------------------------------
# Buffer & guarantee engine
# ---------------------------------------------------------------------------

def classify_stage(lead: Lead) -> BufferStage:
    stage = BufferStage.RAW
    if lead.has_real_email:
        stage = BufferStage.DISCOVERED
    if lead.status == LeadStatus.ENRICHED:
        stage = BufferStage.ENRICHED
    if lead.status == LeadStatus.READY:
        stage = BufferStage.READY
    return stage


class BufferedSearchService:
    """Public entry point: runs a search and guarantees the quota where possible."""

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        job_provider: Optional[Any] = None,
        owner_resolver: Optional[Any] = None,
        oracle: Optional[Any] = None,
        history_store: Optional[Any] = None,
    ):
        self.config = config or Config()
        self.job_provider = job_provider
        self.owner_resolver = owner_resolver
        self.oracle = oracle
        self.history_store = history_store if history_store is not None else SupabaseHistoryStore.from_config(self.config)
        self._active: Optional[RunContext] = None

    def stop(self) -> None:
        """Request cancellation of the active run. Safe to call at any time."""
        ctx = self._active
        if ctx is not None and ctx.running:
            ctx.running = False
            logging.info("Stop requested; finishing the current step")

    def run(
        self,
        request: SearchRequest,
        on_log: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[List[Lead]], None]] = None,
    ) -> SearchResult:
        """
        Blocking entry point. Inside a running event loop use `await run_async(...)`;
        calling `run` there raises RuntimeError before any work starts, so
        `on_complete` is not invoked.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.run_async(request, on_log=on_log, on_complete=on_complete))
        raise RuntimeError("BufferedSearchService.run() called from a running event loop; await run_async() instead")

    async def run_async(
        self,
        request: SearchRequest,
        on_log: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[List[Lead]], None]] = None,
    ) -> SearchResult:
        run_id = str(uuid.uuid4())
        ctx: Optional[RunContext] = None
        leads: List[Lead] = []
        error: Optional[str] = None

        with RunLogCapture(run_id, on_log) as capture:
            try:
                self.config.validate()
                if request.quota > self.config.max_results_per_run:
                    logging.warning("Quota %d capped at %d", request.quota, self.config.max_results_per_run)
                    request = replace(request, quota=self.config.max_results_per_run)
                ctx = RunContext(run_id=run_id, request=request, config=self.config)
                self._active = ctx

                logging.info("=" * 70)
                logging.info("LEAD SEARCH: %r on %s, quota %d", request.query, request.source.value, request.quota)
                logging.info("=" * 70)
                await self._load_history(ctx)

                async with aiohttp.ClientSession() as session:
                    service = self._build_search_service(session)
                    async for outcome in service.attempts(ctx):
                        self._ingest(outcome, ctx)

                self._log_buffer_status(ctx)
                if ctx.running:
                    self._guarantee_results(ctx)
                else:
                    logging.info("Run cancelled; skipping guarantee phase")
                leads = self._compile_final_results(ctx)
                self._log_phase_summary(ctx, len(leads))
                await self._persist_run(ctx, leads)
            except Exception as exc:  # noqa: BLE001
                logging.error("Fatal error: %s", exc)
                error = str(exc)
                if ctx is not None:
                    leads = [item.lead for item in ctx.buffers[BufferStage.READY]][: ctx.request.quota]
            finally:
                self._active = None

        metrics = ctx.metrics if ctx is not None else RunMetrics()
        if ctx is not None:
            metrics.finalize(len(leads), ctx.started)
        result = SearchResult(
            run_id=run_id,
            leads=leads,
            metrics=metrics,
            log=list(capture.lines),
            error=error,
            cancelled=ctx is not None and not ctx.running,
        )
        if on_complete is not None:
            on_complete(result.leads)
        return result

    def _build_search_service(self, session: aiohttp.ClientSession) -> SearchService:
        config = self.config
        provider = self.job_provider
        if provider is None:
            provider = ApifyJobProvider(session, config.apify_token, config.apify_base_url, config.http_request_timeout)
        jobs = JobClient(
            provider,
            poll_interval=config.job_poll_interval,
            max_polls=config.job_max_polls,
            stuck_threshold=config.job_stuck_threshold,
        )
        resolver = self.owner_resolver
        if resolver is None:
            resolver = OwnerResolverClient(session, config.owner_discovery_webhook, config.owner_discovery_timeout)
        oracle = self.oracle
        if oracle is None:
            oracle = AIOracle(api_key=config.openai_api_key, model=config.openai_model)
        interpreter = QueryInterpreter(oracle, config.default_location)
        analyst = LeadAnalyst(oracle, config.analysis_max_retries, config.analysis_retry_delay)
        enrichment = EnrichmentChain(config, jobs, resolver, analyst)
        return SearchService(config, jobs, enrichment, interpreter)

    async def _load_history(self, ctx: RunContext) -> None:
        user_id = ctx.request.user_id
        if self.history_store is None or not user_id:
            logging.info("No search history available; duplicate index starts empty")
            return
        try:
            records = await asyncio.to_thread(self.history_store.load_leads, user_id)
        except Exception as exc:  # noqa: BLE001
            logging.warning("Could not load search history: %s", exc)
            return
        seeded = ctx.dedup.seed_from_history(records)
        logging.info("Loaded %d previous leads into the duplicate index (%d keys)", seeded, len(ctx.dedup))

    def _ingest(self, outcome: AttemptOutcome, ctx: RunContext) -> None:
        for lead in outcome.leads:
            fp = lead.fingerprint()
            if not outcome.allow_duplicates:
                reason = ctx.dedup.is_duplicate(fp, strict=self.config.strict_dedup)
                if reason:
                    ctx.metrics.duplicates_found += 1
                    logging.debug("Buffer rejected duplicate %s (%s)", lead.company_name, reason)
                    continue
            stage = classify_stage(lead)
            if stage == BufferStage.READY and ctx.ready_count() >= ctx.request.quota:
                stage = BufferStage.ENRICHED
            ctx.buffers[stage].append(
                BufferedLead(lead=lead, stage=stage, attempt_number=outcome.attempt, discovery_channel=ctx.request.source)
            )
            ctx.dedup.mark_seen(fp)
        logging.info(
            "Buffer after attempt %d: %s",
            outcome.attempt,
            ", ".join(f"{stage.value}={len(items)}" for stage, items in ctx.buffers.items()),
        )

    def _log_buffer_status(self, ctx: RunContext) -> None:
        logging.info("Buffered leads by stage:")
        for stage, items in ctx.buffers.items():
            logging.info("  %-11s %5d", stage.value, len(items))

    def _guarantee_results(self, ctx: RunContext) -> None:
        """Promote buffered leads (enriched, then discovered, then raw) to fill the quota."""
        quota = ctx.request.quota
        ready = ctx.buffers[BufferStage.READY]
        for stage in (BufferStage.ENRICHED, BufferStage.DISCOVERED, BufferStage.RAW):
            deficit = quota - len(ready)
            if deficit <= 0:
                return
            source = ctx.buffers[stage]
            take = min(deficit, len(source))
            for _ in range(take):
                item = source.pop()
                item.lead.force_status(LeadStatus.READY)
                item.stage = BufferStage.READY
                ready.append(item)
            if take:
                ctx.metrics.promoted += take
                logging.info("Promoted %d leads from the %s buffer", take, stage.value)

    def _compile_final_results(self, ctx: RunContext) -> List[Lead]:
        return [item.lead for item in ctx.buffers[BufferStage.READY][: ctx.request.quota]]

    def _log_phase_summary(self, ctx: RunContext, delivered: int) -> None:
        metrics = ctx.metrics
        requested = ctx.request.quota
        logging.info("=" * 70)
        logging.info("LEAD SEARCH SUMMARY")
        logging.info("=" * 70)
        logging.info("Discovery Funnel:")
        logging.info("  Attempts used:      %5d", metrics.attempts_used)
        logging.info("  Raw candidates:     %5d", metrics.candidates_seen)
        if metrics.duplicates_found > 0:
            logging.info("  - Duplicates:          -%4d", metrics.duplicates_found)
        if metrics.promoted > 0:
            logging.info("  Promoted from buffer:  %4d", metrics.promoted)
        logging.info("")
        logging.info("Final Delivery:")
        logging.info("  Requested:          %5d", requested)
        logging.info("  Delivered:          %5d", delivered)
        if delivered >= requested:
            logging.info("  Status: ✓ Target met")
        else:
            shortfall = requested - delivered
            logging.info("  Status: ⚠ Short by %d (%.1f%% of target)", shortfall, 100 * shortfall / requested)
        logging.info("=" * 70)

    async def _persist_run(self, ctx: RunContext, leads: List[Lead]) -> None:
        user_id = ctx.request.user_id
        if self.history_store is None or not user_id or not leads:
            return
        try:
            await asyncio.to_thread(
                self.history_store.append_run,
                user_id,
                ctx.run_id,
                ctx.request,
                [lead.to_dict() for lead in leads],
            )
        except Exception as exc:  # noqa: BLE001
            logging.warning("Could not save search history: %s", exc)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Lead discovery pipeline with quota guarantee")
    parser.add_argument("--query", required=True, help="Free-text description of the leads to find")
    parser.add_argument(
        "--source",
        default="maps",
        choices=["maps", "professional_network", "gmail", "linkedin"],
        help="Discovery channel",
    )
    parser.add_argument("--quantity", type=int, default=10, help="Number of leads to return")
    parser.add_argument("--locations", nargs="*", default=[], help="Location filters (OR-ed)")
    parser.add_argument("--industries", nargs="*", default=[], help="Industry filters (OR-ed)")
    parser.add_argument("--job-titles", dest="job_titles", nargs="*", default=[], help="Job title filters (OR-ed)")
    parser.add_argument(
        "--company-sizes", dest="company_sizes", nargs="*", default=[], help="Company size filters (OR-ed)"
    )
    parser.add_argument("--user-id", dest="user_id", help="User id for search history dedup and persistence")
    parser.add_argument("--scheduled", action="store_true", help="Mark the run as a scheduled (autopilot) run")
    parser.add_argument("--max-attempts", dest="max_attempts", type=int, help="Override discovery attempt budget")
    parser.add_argument("--strict-dedup", dest="strict_dedup", action="store_true", help="Enable fuzzy dedup criteria")
    parser.add_argument(
        "--allow-duplicates",
        dest="allow_duplicates",
        action="store_true",
        help="Accept duplicates on the final attempt when nothing new is found",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--output",
        help="Optional path to write JSON results (defaults to stdout only)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    _load_env_file()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    try:
        config = Config()
        if args.max_attempts is not None:
            config.max_attempts = args.max_attempts
        if args.strict_dedup:
            config.strict_dedup = True
        if args.allow_duplicates:
            config.allow_duplicates_on_final_attempt = True
        request = SearchRequest(
            query=args.query,
            source=SearchChannel.parse(args.source),
            quota=args.quantity,
            filters=SearchFilters(
                locations=args.locations,
                industries=args.industries,
                job_titles=args.job_titles,
                company_sizes=args.company_sizes,
            ),
            user_id=args.user_id,
            origin="scheduled" if args.scheduled else "manual",
        )
        result = BufferedSearchService(config).run(request)
    except Exception as exc:  # pylint: disable=broad-except
        logging.error("Fatal error: %s", exc)
        return 1

    output_json = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
    print(output_json)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(output_json)
        logging.info("Wrote results to %s", args.output)

    return 1 if result.error else 0


if __name__ == "__main__":
    sys.exit(main())
