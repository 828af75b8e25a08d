"""
Inverted keyword index over the STAC knowledge base
"""
from collections import defaultdict
from typing import Dict, FrozenSet, Mapping, Set

from models.stac import ScenarioRecord
from services.stac_keywords import extract_keywords


def scenario_keywords(scenario: str, record: ScenarioRecord) -> Set[str]:
    """Union of keywords from the scenario name and every threat's name and details"""
    keywords = set(extract_keywords(scenario))
    for threat in record.threats:
        keywords.update(extract_keywords(threat.name))
        keywords.update(extract_keywords(threat.details))
    return keywords


def build_index(scenarios: Mapping[str, ScenarioRecord]) -> Dict[str, FrozenSet[str]]:
    """
    Build keyword -> scenario ids postings for a whole knowledge base.

    The index is always built from scratch; callers swap it in together with
    the knowledge base it was built from.
    """
    postings: Dict[str, Set[str]] = defaultdict(set)

    for scenario, record in scenarios.items():
        for keyword in scenario_keywords(scenario, record):
            postings[keyword].add(scenario)

    return {keyword: frozenset(ids) for keyword, ids in postings.items()}
