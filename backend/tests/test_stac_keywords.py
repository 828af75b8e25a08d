import pytest

from models.stac import SemanticProfile
from services.stac_index import build_index, scenario_keywords
from services.stac_keywords import (
    VOCABULARIES,
    classify,
    extract_keywords,
    jaccard_similarity,
    profile_similarity,
)


@pytest.mark.parametrize("text", ["", None, 42, ["sql"]])
def test_extract_keywords_invalid_input(text):
    assert extract_keywords(text) == []


def test_extract_keywords_normalizes_and_dedupes():
    keywords = extract_keywords("SQL-Injection in the API; sql (injection) is bad!")
    assert keywords == ["sql", "injection", "api", "bad"]


def test_extract_keywords_drops_short_tokens_and_stop_words():
    keywords = extract_keywords("an ox is at the door with these keys")
    assert "ox" not in keywords
    assert "the" not in keywords
    assert "these" not in keywords
    assert keywords == ["door", "keys"]


def test_extract_keywords_keeps_slashes_inside_tokens():
    assert extract_keywords("input/output validation") == ["input/output", "validation"]


def test_vocabulary_term_placement():
    assert "risk" in VOCABULARIES["security_terms"]
    assert "risk" not in VOCABULARIES["risk_indicators"]
    assert "service" in VOCABULARIES["technical_terms"]
    assert "service" in VOCABULARIES["business_terms"]
    for term in ("pii", "phi", "gdpr", "compliance", "regulation", "audit"):
        assert term in VOCABULARIES["risk_indicators"]


def test_classify_groups_terms_by_vocabulary():
    profile = classify("Users upload PII through the REST api; encryption is a GDPR risk")
    assert "encryption" in profile.security_terms
    assert "api" in profile.technical_terms
    assert "rest" in profile.technical_terms
    assert "upload" in profile.business_terms
    assert "risk" in profile.security_terms
    assert "pii" in profile.risk_indicators
    assert "pii" in profile.compliance_terms
    assert "gdpr" in profile.compliance_terms


def test_classify_invalid_input_is_empty():
    assert classify(None) == SemanticProfile()


def test_jaccard_similarity():
    assert jaccard_similarity(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
    assert jaccard_similarity([], ["a"]) == 0.0
    assert jaccard_similarity(["a"], ["a"]) == 1.0


def test_profile_similarity_dilutes_across_texts():
    profile = classify("authentication")
    single = profile_similarity(profile, ["authentication"])
    diluted = profile_similarity(profile, ["authentication", "shipping", "catalog"])

    # one matching category out of four comparisons per text
    assert single == pytest.approx(1 / 4)
    assert diluted == pytest.approx(1 / 12)
    assert profile_similarity(profile, []) == 0.0


def test_scenario_keywords_and_index(sample_snapshot):
    record = sample_snapshot.scenarios["Web Application Security"]
    keywords = scenario_keywords("Web Application Security", record)
    assert {"web", "application", "sql", "injection"} <= keywords

    index = build_index(sample_snapshot.scenarios)
    assert "Web Application Security" in index["sql"]
    assert "Authentication System" in index["authentication"]
    for ids in index.values():
        assert isinstance(ids, frozenset)


def test_every_scenario_name_reachable_through_index(sample_snapshot):
    index = sample_snapshot.index
    for scenario in sample_snapshot.scenarios:
        reachable = {sid for keyword in extract_keywords(scenario) for sid in index.get(keyword, ())}
        assert scenario in reachable


def test_profile_similarity_ignores_compliance_terms():
    profile = classify("sql injection attack")
    assert profile_similarity(profile, ["sql injection attack"]) == pytest.approx(0.25)

    compliance_only = classify("hipaa")
    assert compliance_only.compliance_terms == ("hipaa",)
    assert profile_similarity(compliance_only, ["hipaa"]) == 0.0
