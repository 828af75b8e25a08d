import json

import pytest

from conftest import make_threat
from models.stac import MatchResult
from services.stac_enrichment import STACEnrichment
from services.stac_knowledge_base import KnowledgeBaseValidator


@pytest.fixture
def enrichment():
    return STACEnrichment()


@pytest.fixture
def shared_guidance_snapshot():
    shared = {"name": "Input Validation", "details": "Validate every request parameter"}
    data = {
        "Web Application Security": {"threats": [make_threat("SQL Injection", requirement=shared)]},
        "API Security": {"threats": [make_threat("Mass Assignment", requirement=shared)]},
    }
    return KnowledgeBaseValidator().parse(json.dumps(data))


def match(scenario, confidence=0.5, **kwargs):
    return MatchResult(scenario=scenario, confidence=confidence, keyword_matches=1, **kwargs)


def test_requirements_deduplicated_keeping_highest_confidence(enrichment, shared_guidance_snapshot):
    matches = [match("Web Application Security", 0.4), match("API Security", 0.8)]
    requirements = enrichment.derive_requirements(matches, shared_guidance_snapshot)

    assert len(requirements) == 1
    assert requirements[0].scenario == "API Security"
    assert requirements[0].confidence == 0.8


def test_derived_records_have_unique_name_details(enrichment, sample_snapshot):
    matches = [match(name, 0.6) for name in sample_snapshot.scenarios]
    requirements = enrichment.derive_requirements(matches, sample_snapshot)
    test_cases = enrichment.derive_test_cases(matches, sample_snapshot)

    assert len({(r.name, r.details) for r in requirements}) == len(requirements)
    assert len({(t.name, t.details) for t in test_cases}) == len(test_cases)
    priorities = [r.priority for r in requirements]
    assert priorities == sorted(priorities, reverse=True)


def test_sql_injection_requirement_linked(enrichment, sample_snapshot):
    requirements = enrichment.derive_requirements([match("Web Application Security", 0.5)], sample_snapshot)
    names = [r.name for r in requirements]
    assert "Input Validation" in names
    input_validation = next(r for r in requirements if r.name == "Input Validation")
    assert input_validation.threat_name == "SQL Injection"
    assert input_validation.source == "STAC"


def test_requirement_priority(enrichment):
    assert enrichment.requirement_priority("Log all events", 0.5) == pytest.approx(0.3)
    assert enrichment.requirement_priority(
        "Authentication and authorization with encryption", 0.5) == pytest.approx(0.6)
    assert enrichment.requirement_priority(
        "authentication authorization encryption access control", 1.0) == 1.0


def test_test_case_priority(enrichment):
    assert enrichment.test_case_priority("Manually review", 0.4) == pytest.approx(0.2)
    assert enrichment.test_case_priority("Run the automated scanner", 0.4) == pytest.approx(0.4)
    assert enrichment.test_case_priority("使用自动化工具测试", 0.4) == pytest.approx(0.4)
    assert enrichment.test_case_priority("automated", 2.0) == 1.0


@pytest.mark.parametrize("details,category", [
    ("Enforce multi-factor authentication", "Authentication"),
    ("Check authorization on each call", "Authorization"),
    ("Apply encryption at rest", "Encryption"),
    ("Enforce access control lists", "Access Control"),
    ("Classify sensitive data", "Data Protection"),
    ("Segment the network", "Network Security"),
    ("Keep an inventory", "General Security"),
    ("实施认证机制", "Authentication"),
])
def test_categorize_requirement(enrichment, details, category):
    assert enrichment.categorize_requirement(details) == category


@pytest.mark.parametrize("details,category", [
    ("Penetration test the login", "Penetration Testing"),
    ("Automated regression suite", "Automated Testing"),
    ("Manual review of sessions", "Manual Testing"),
    ("Use a fuzzing tool", "Tool-based Testing"),
    ("Verify the happy path", "Functional Testing"),
])
def test_categorize_test_case(enrichment, details, category):
    assert enrichment.categorize_test_case(details) == category


@pytest.mark.parametrize("text,category", [
    ("SQL Injection in queries", "Injection Attacks"),
    ("Weak authentication flow", "Authentication Threats"),
    ("Missing authorization", "Authorization Threats"),
    ("Broken encryption", "Cryptographic Threats"),
    ("Session fixation", "Session Management"),
    ("Stored XSS", "Cross-Site Scripting"),
    ("Clickjacking", "General Threats"),
])
def test_categorize_threat(enrichment, text, category):
    assert enrichment.categorize_threat(text) == category


def test_assess_risk_level(enrichment):
    assert enrichment.assess_risk_level("SQL injection", 0.4) == "High"
    assert enrichment.assess_risk_level("Privilege escalation via role bypass", 0.1) == "Medium"
    assert enrichment.assess_risk_level("Verbose errors", 0.5) == "Medium"
    assert enrichment.assess_risk_level("Verbose errors", 0.3) == "Low"


def test_aggregate_threats(enrichment, sample_snapshot):
    aggregate = enrichment.aggregate_threats(
        [match("Authentication System", 0.3), match("Web Application Security", 0.6)], sample_snapshot
    )

    assert len(aggregate.threats) == 5
    assert aggregate.threats[0].scenario == "Web Application Security"
    assert aggregate.categories["Injection Attacks"] >= 1
    assert sum(aggregate.risk_levels.values()) == 5
    summary = aggregate.to_dict()["summary"]
    assert summary["total_threats"] == 5
    assert summary["scenarios"] == 2


def test_unknown_scenarios_use_filtered_fallback_records(enrichment, sample_snapshot):
    matches = [match("Data Protection", 0.25, source="fallback_mode", fallback_used=True)]

    requirements = enrichment.derive_requirements(matches, sample_snapshot)
    test_cases = enrichment.derive_test_cases(matches, sample_snapshot)

    assert [r.name for r in requirements] == ["Data Protection"]
    assert requirements[0].source == "FALLBACK"
    assert [t.name for t in test_cases] == ["Data Protection Test"]


def test_no_knowledge_base_no_matches_returns_all_fallback_records(enrichment):
    assert len(enrichment.derive_requirements([], None)) == 4
    assert len(enrichment.derive_test_cases([], None)) == 4


def test_known_scenarios_without_matches_returns_nothing(enrichment, sample_snapshot):
    assert enrichment.derive_requirements([], sample_snapshot) == []


def test_recommendations(enrichment, sample_snapshot):
    matches = [match("Authentication System", 0.9)]
    requirements = enrichment.derive_requirements(matches, sample_snapshot)
    test_cases = enrichment.derive_test_cases(matches, sample_snapshot)

    recommendations = enrichment.generate_recommendations(matches, requirements, test_cases)
    types = [rec["type"] for rec in recommendations]

    assert types == ["security_requirement", "test_case", "coverage"]
    assert "Strong Authentication Controls" in recommendations[0]["items"]
    assert recommendations[1]["items"] == ["Brute Force Resistance Test"]


def test_format_analysis_results(enrichment, sample_snapshot):
    matches = [match("Web Application Security", 0.6), match("API Security", 0.3)]
    report = enrichment.format_analysis_results(matches, sample_snapshot)

    assert report["summary"]["total_scenarios"] == 2
    assert report["summary"]["average_confidence"] == 0.45
    assert report["summary"]["total_threats"] == 5
    assert report["summary"]["total_requirements"] == len(report["security_requirements"])
    assert [s["name"] for s in report["scenarios"]] == ["Web Application Security", "API Security"]
    assert "timestamp" in report


def test_format_analysis_results_invalid_input(enrichment, sample_snapshot):
    report = enrichment.format_analysis_results(None, sample_snapshot)
    assert report == {**enrichment.empty_analysis_results(), "timestamp": report["timestamp"]}
    assert report["summary"]["total_scenarios"] == 0
