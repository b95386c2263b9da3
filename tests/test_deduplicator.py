"""
Tests for LeadDeduplicator.

The deduplicator keeps leads that were already delivered (history) or already
collected in the current run out of the results.
"""

import pytest
from lead_pipeline import Fingerprint, LeadDeduplicator, UNNAMED_COMPANY


@pytest.fixture
def dedup():
    return LeadDeduplicator()


def fp(name="", website="", email="", social=""):
    return Fingerprint.build(company_name=name, website=website, email=email, social=social)


@pytest.mark.unit
class TestLeadDeduplicatorBasics:
    """Basic seen-key behaviour."""

    def test_initialization(self, dedup):
        """Deduplicator should start with an empty index."""
        assert len(dedup) == 0

    def test_first_occurrence_is_not_duplicate(self, dedup):
        assert dedup.is_duplicate(fp("Acme Gym", "acme.com")) is None

    def test_second_occurrence_is_duplicate(self, dedup):
        lead = fp("Acme Gym", "acme.com")
        dedup.mark_seen(lead)

        assert dedup.is_duplicate(lead) == "domain"

    def test_check_is_idempotent(self, dedup):
        """Checking twice must not change the answer or the index."""
        dedup.mark_seen(fp("Acme Gym", "acme.com"))
        probe = fp("Other", "other.com")
        size = len(dedup)

        assert dedup.is_duplicate(probe) is None
        assert dedup.is_duplicate(probe) is None
        assert len(dedup) == size

    def test_empty_fingerprint_never_duplicate(self, dedup):
        dedup.mark_seen(fp("Acme Gym", "acme.com"))
        assert dedup.is_duplicate(Fingerprint()) is None


@pytest.mark.unit
class TestDedupCriteria:
    """Each of the six criteria."""

    def test_domain_ignores_scheme_www_and_slash(self, dedup):
        dedup.mark_seen(fp("A", "https://www.acme.com/"))
        assert dedup.is_duplicate(fp("B", "acme.com")) == "domain"
        assert dedup.is_duplicate(fp("C", "http://ACME.com/contact")) == "domain"

    def test_domain_variant_only_in_strict_mode(self, dedup):
        dedup.mark_seen(fp("Acme Spain", "acme.es"))
        probe = fp("Acme Global", "acme.com")

        assert dedup.is_duplicate(probe) is None
        assert dedup.is_duplicate(probe, strict=True) == "domain_variant"

    def test_bare_label_matches_company_name_in_strict_mode(self, dedup):
        dedup.mark_seen(fp("Zenfit", ""))
        assert dedup.is_duplicate(fp("Zen Fit Studio", "zenfit.io"), strict=True) == "domain_variant"

    def test_company_name_normalized(self, dedup):
        dedup.mark_seen(fp("Acme  Gym!", "acme.com"))
        assert dedup.is_duplicate(fp("acme gym", "acme-madrid.com")) == "company_name"

    def test_name_containment_only_in_strict_mode(self, dedup):
        dedup.mark_seen(fp("Crossbox", "crossbox.es"))
        probe = fp("Crossbox Madrid Centro", "crossboxmadrid.com")

        assert dedup.is_duplicate(probe) is None
        assert dedup.is_duplicate(probe, strict=True) in {"domain_variant", "name_contains"}

    def test_email_case_insensitive(self, dedup):
        dedup.mark_seen(fp("A", "a.com", email="Owner@Acme.com"))
        assert dedup.is_duplicate(fp("B", "b.com", email="owner@acme.com")) == "email"

    def test_social_url_normalized(self, dedup):
        dedup.mark_seen(fp("A", "a.com", social="https://www.linkedin.com/in/jane-doe/"))
        assert dedup.is_duplicate(fp("B", "b.com", social="linkedin.com/in/Jane-Doe")) == "social"

    def test_placeholder_company_name_not_indexed(self, dedup):
        dedup.mark_seen(fp(UNNAMED_COMPANY, "one.com"))
        assert dedup.is_duplicate(fp(UNNAMED_COMPANY, "two.com")) is None


@pytest.mark.unit
class TestHistorySeeding:
    """Seeding from persisted leads."""

    def test_seed_accepts_camel_and_snake_case(self, dedup):
        records = [
            {"companyName": "Old Gym", "website": "oldgym.com", "decisionMaker": {"email": "boss@oldgym.com"}},
            {"company_name": "Past Studio", "website": "https://past.es", "decision_maker": {"linkedin": "linkedin.com/in/past"}},
            "not-a-record",
        ]

        seeded = dedup.seed_from_history(records)

        assert seeded == 2
        assert dedup.is_duplicate(fp("Whatever", "www.oldgym.com")) == "domain"
        assert dedup.is_duplicate(fp("Past Studio", "new.es")) == "company_name"
        assert dedup.is_duplicate(fp("X", "x.com", social="https://linkedin.com/in/past/")) == "social"
