import os
import re
import json
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

DEFAULT_TARGET_ROLES = ["CEO", "Founder", "Owner", "General Manager"]

ANALYSIS_KEYS = {
    "executive_summary": "executiveSummary",
    "bottleneck": "bottleneck",
    "psychological_profile": "psychologicalProfile",
    "business_moment": "businessMoment",
    "sales_angle": "salesAngle",
    "personalized_message": "personalizedMessage",
    "ad_status": "adStatus",
    "social_status": "socialStatus",
    "detected_owner": "detectedOwner",
}


class OracleError(Exception):
    """Raised when the language model cannot produce a usable answer."""


class OracleUnavailable(OracleError):
    """Raised when no language model client is configured."""


def extract_json_object(text: Optional[str]) -> Dict[str, Any]:
    """Pull the first {...} block out of a model reply and decode it."""
    if not text:
        raise OracleError("Empty model response")
    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        raise OracleError("No JSON object in model response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise OracleError(f"Malformed JSON in model response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise OracleError("Model response JSON is not an object")
    return parsed


class AIOracle:
    """
    Async chat-completions wrapper. When OPENAI_API_KEY is missing the oracle
    stays unavailable and callers use their deterministic fallbacks.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, timeout: float = 30.0):
        self.api_key = os.getenv("OPENAI_API_KEY", "") if api_key is None else api_key
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.timeout = timeout
        self._client = None
        self._init_error: Optional[str] = None
        self._try_init_client()

    def _try_init_client(self) -> None:
        if not self.api_key:
            self._init_error = "No LLM API key configured (OPENAI_API_KEY)"
            return
        try:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        except Exception as exc:  # noqa: BLE001
            self._init_error = f"OpenAI init failed: {exc}"
            self._client = None

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def unavailable_reason(self) -> str:
        return self._init_error or ""

    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 600,
    ) -> Dict[str, Any]:
        if self._client is None:
            raise OracleUnavailable(self._init_error or "LLM client not initialized")
        resp = await self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        content = resp.choices[0].message.content if resp and resp.choices else None
        return extract_json_object(content)


# ---------------------------------------------------------------------------
# Query interpretation
# ---------------------------------------------------------------------------

@dataclass
class SearchIntent:
    search_query: str
    industry: str
    target_roles: List[str] = field(default_factory=lambda: list(DEFAULT_TARGET_ROLES))
    location: str = ""


class QueryInterpreter:
    """Turn a free-text request into a structured search intent."""

    SYSTEM_PROMPT = (
        "You turn a lead-search request into search parameters. Reply only with JSON "
        'containing: "searchQuery" (short keyword phrase for a search engine), "industry", '
        '"targetRoles" (list of decision-maker job titles) and "location".'
    )

    def __init__(self, oracle: AIOracle, default_location: str = "Spain"):
        self.oracle = oracle
        self.default_location = default_location

    def fallback(self, query: str) -> SearchIntent:
        return SearchIntent(
            search_query=query,
            industry=query,
            target_roles=list(DEFAULT_TARGET_ROLES),
            location=self.default_location,
        )

    async def interpret(self, query: str, channel: str) -> SearchIntent:
        if not self.oracle.available:
            logging.info("Query interpreter offline (%s); using raw query", self.oracle.unavailable_reason)
            return self.fallback(query)
        try:
            data = await self.oracle.complete_json(
                self.SYSTEM_PROMPT,
                f'Request: "{query}"\nSearch platform: {channel}',
                temperature=0.2,
                max_tokens=300,
            )
        except Exception as exc:  # noqa: BLE001
            logging.info("Query interpretation failed (%s); using raw query", exc)
            return self.fallback(query)
        return self._coerce(data, query)

    def _coerce(self, data: Dict[str, Any], query: str) -> SearchIntent:
        fallback = self.fallback(query)
        roles = data.get("targetRoles") or data.get("target_roles")
        if isinstance(roles, str):
            roles = [part.strip() for part in roles.split(",")]
        if not isinstance(roles, list):
            roles = []
        roles = [str(role).strip() for role in roles if str(role).strip()]

        def _text(*keys: str) -> str:
            for key in keys:
                value = data.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
            return ""

        return SearchIntent(
            search_query=_text("searchQuery", "search_query") or fallback.search_query,
            industry=_text("industry") or fallback.industry,
            target_roles=roles or fallback.target_roles,
            location=_text("location") or fallback.location,
        )


# ---------------------------------------------------------------------------
# Lead analysis
# ---------------------------------------------------------------------------

class LeadAnalyst:
    """
    Produce the qualitative sales analysis for a lead.

    Without a model, a deterministic offline analysis is returned. With a
    model, the call is retried `max_retries` times with a fixed delay; after
    that a placeholder analysis is returned so the lead is never lost.
    """

    SYSTEM_PROMPT = (
        "You are a B2B sales analyst. Using the company data and web research provided, reply only "
        "with JSON containing: executiveSummary, bottleneck, psychologicalProfile, businessMoment, "
        "salesAngle, personalizedMessage (a short first-contact email), adStatus (whether the company "
        "runs ads), socialStatus (social media activity) and detectedOwner (owner or CEO name if found, "
        "else empty)."
    )

    def __init__(self, oracle: AIOracle, max_retries: int = 3, retry_delay: float = 1.0):
        self.oracle = oracle
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    @staticmethod
    def offline_analysis(company_name: str, summary: str = "") -> Dict[str, str]:
        return {
            "executive_summary": f"Company: {company_name}",
            "bottleneck": "",
            "psychological_profile": "Analysis unavailable (no API key)",
            "business_moment": "Unknown",
            "sales_angle": "Generic",
            "personalized_message": "",
            "ad_status": "Unknown",
            "social_status": "Unknown",
            "detected_owner": "",
            "full_analysis": f"{company_name}: {summary}" if summary else company_name,
        }

    @staticmethod
    def failed_analysis(company_name: str) -> Dict[str, str]:
        return {
            "executive_summary": f"Company: {company_name}",
            "bottleneck": "N/A",
            "psychological_profile": "N/A",
            "business_moment": "N/A",
            "sales_angle": "N/A",
            "personalized_message": "",
            "ad_status": "Unknown",
            "social_status": "Unknown",
            "detected_owner": "",
            "full_analysis": "Analysis failed",
        }

    @staticmethod
    def _build_prompt(context: Dict[str, Any]) -> str:
        lines = [
            f"Company: {context.get('company_name') or 'Unknown'}",
            f"Website: {context.get('website') or 'Unknown'}",
            f"Location: {context.get('location') or 'Unknown'}",
            f"Contact: {context.get('contact_name') or 'Unknown'} ({context.get('contact_role') or 'Unknown'})",
            f"Listing summary: {context.get('summary') or 'N/A'}",
            "",
            "Web research:",
            context.get("research") or "(none)",
        ]
        return "\n".join(lines)

    @staticmethod
    def _coerce(data: Dict[str, Any]) -> Dict[str, str]:
        analysis: Dict[str, str] = {}
        for attr, key in ANALYSIS_KEYS.items():
            value = data.get(key, data.get(attr, ""))
            analysis[attr] = value.strip() if isinstance(value, str) else ("" if value is None else str(value))
        analysis["full_analysis"] = analysis["executive_summary"]
        return analysis

    async def analyze(
        self,
        context: Dict[str, Any],
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> Dict[str, str]:
        company_name = context.get("company_name") or "Unknown"
        if not self.oracle.available:
            return self.offline_analysis(company_name, context.get("summary") or "")

        prompt = self._build_prompt(context)
        for attempt in range(1, self.max_retries + 1):
            try:
                data = await self.oracle.complete_json(self.SYSTEM_PROMPT, prompt, temperature=0.5, max_tokens=800)
                return self._coerce(data)
            except Exception as exc:  # noqa: BLE001
                logging.warning(
                    "Analysis for %s failed (attempt %d/%d): %s", company_name, attempt, self.max_retries, exc
                )
            if attempt < self.max_retries:
                if should_continue is not None and not should_continue():
                    break
                await asyncio.sleep(self.retry_delay)
        return self.failed_analysis(company_name)
