"""
STAC Scenario Matcher
Ranks knowledge base scenarios against free-form text using the inverted
keyword index, semantic vocabulary similarity and threat-level overlap.
"""
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from core.exceptions import MatchCancelledError
from models.stac import (
    InvertedIndex,
    KnowledgeBase,
    MatchResult,
    ScenarioRecord,
    SemanticProfile,
    Threat,
    ThreatMatch,
)
from services.stac_keywords import classify, extract_keywords, profile_similarity


class CancellationToken:
    """Cooperative cancellation signal checked by long matching loops"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise MatchCancelledError("Matching process was aborted")


@dataclass
class ScenarioCandidate:
    """Mutable scoring state for one scenario during a single match call"""
    scenario: str
    keyword_matches: int = 0
    matched_keywords: List[str] = field(default_factory=list)
    semantic_score: float = 0.0
    matched_threats: List[ThreatMatch] = field(default_factory=list)
    total_score: float = 0.0

    def to_result(self) -> MatchResult:
        return MatchResult(
            scenario=self.scenario,
            confidence=round(self.total_score, 2),
            keyword_matches=self.keyword_matches,
            matched_keywords=tuple(self.matched_keywords[:ScenarioMatcher.MAX_MATCHED_KEYWORDS]),
            matched_threats=tuple(self.matched_threats[:ScenarioMatcher.MAX_MATCHED_THREATS]),
            semantic_score=round(self.semantic_score, 2),
        )


class ScenarioMatcher:
    """Fuzzy scenario matching with confidence scoring"""

    MAX_RESULTS = 10
    MAX_MATCHED_KEYWORDS = 5
    MAX_MATCHED_THREATS = 3

    LONG_TEXT_LENGTH = 1000
    LONG_TEXT_MIN_CONFIDENCE = 0.15
    SHORT_TEXT_MIN_CONFIDENCE = 0.2

    # Confidence weights
    KEYWORD_SCORE_CAP = 0.5
    SEMANTIC_WEIGHT = 0.3
    THREAT_WEIGHT = 0.05
    THREAT_SCORE_CAP = 0.2

    # Threat ranking weights
    THREAT_KEYWORD_WEIGHT = 0.6
    THREAT_SEMANTIC_WEIGHT = 0.4

    CANCEL_CHECK_INTERVAL = 64

    def match(self, text, index: InvertedIndex, knowledge_base: KnowledgeBase,
              cancel_token: Optional[CancellationToken] = None) -> List[MatchResult]:
        """
        Rank scenarios for the given text

        Args:
            text: Free-form document text
            index: Keyword -> scenario ids postings built from knowledge_base
            knowledge_base: Scenario id -> record
            cancel_token: Checked periodically; cancellation raises MatchCancelledError

        Returns:
            Up to MAX_RESULTS matches sorted by descending confidence
        """
        if not isinstance(text, str) or not text.strip():
            return []

        token = cancel_token or CancellationToken()
        text_keywords = extract_keywords(text)
        profile = classify(text)
        token.raise_if_cancelled()

        candidates: Dict[str, ScenarioCandidate] = {}
        for position, keyword in enumerate(text_keywords):
            for scenario in index.get(keyword, ()):
                candidate = candidates.get(scenario)
                if candidate is None:
                    candidate = candidates[scenario] = ScenarioCandidate(scenario=scenario)
                candidate.keyword_matches += 1
                candidate.matched_keywords.append(keyword)
            if position % self.CANCEL_CHECK_INTERVAL == 0:
                token.raise_if_cancelled()

        if not text_keywords:
            # Semantic profile alone; the keyword term contributes nothing
            candidates = {scenario: ScenarioCandidate(scenario=scenario) for scenario in knowledge_base}

        for scenario, candidate in candidates.items():
            record = knowledge_base.get(scenario)
            if record is None:
                continue
            candidate.semantic_score = self.semantic_similarity(profile, scenario, record)
            candidate.matched_threats = self.find_matching_threats(text_keywords, profile, record.threats)
            candidate.total_score = self.confidence_score(
                candidate.keyword_matches,
                len(text_keywords),
                candidate.semantic_score,
                len(candidate.matched_threats),
            )
            token.raise_if_cancelled()

        scored = [candidate for scenario, candidate in candidates.items() if scenario in knowledge_base]
        return self.rank_and_filter(scored, text)

    def semantic_similarity(self, profile: SemanticProfile, scenario: str, record: ScenarioRecord) -> float:
        """Category-averaged similarity against the scenario name and every threat"""
        return profile_similarity(profile, [scenario] + [threat.text for threat in record.threats])

    def find_matching_threats(self, text_keywords: Sequence[str], profile: SemanticProfile,
                              threats: Sequence[Threat]) -> List[ThreatMatch]:
        """Threats sharing at least one keyword with the text, best first"""
        text_keyword_set = set(text_keywords)
        matches = []

        for threat in threats:
            overlap = len(text_keyword_set.intersection(extract_keywords(threat.text)))
            if overlap == 0:
                continue
            semantic_score = profile_similarity(profile, [threat.name, threat.text])
            matches.append(ThreatMatch(
                threat=threat,
                keyword_matches=overlap,
                semantic_score=semantic_score,
                total_score=overlap * self.THREAT_KEYWORD_WEIGHT + semantic_score * self.THREAT_SEMANTIC_WEIGHT,
            ))

        matches.sort(key=lambda match: match.total_score, reverse=True)
        return matches

    def confidence_score(self, keyword_matches: int, total_text_keywords: int,
                         semantic_score: float, matched_threat_count: int) -> float:
        """Keyword share (<= 0.5) + semantic (<= 0.3) + threat density (<= 0.2)"""
        keyword_score = 0.0
        if total_text_keywords > 0:
            keyword_score = min(keyword_matches / total_text_keywords, self.KEYWORD_SCORE_CAP)
        threat_score = min(matched_threat_count * self.THREAT_WEIGHT, self.THREAT_SCORE_CAP)
        return keyword_score + semantic_score * self.SEMANTIC_WEIGHT + threat_score

    def min_confidence_for(self, text: str) -> float:
        # Short text is less diluted, so it needs a stronger signal
        if len(text) > self.LONG_TEXT_LENGTH:
            return self.LONG_TEXT_MIN_CONFIDENCE
        return self.SHORT_TEXT_MIN_CONFIDENCE

    def rank_and_filter(self, candidates: Sequence[ScenarioCandidate], text: str) -> List[MatchResult]:
        min_confidence = self.min_confidence_for(text)
        ranked = sorted(
            (candidate for candidate in candidates if candidate.total_score >= min_confidence),
            key=lambda candidate: candidate.total_score,
            reverse=True,
        )
        return [candidate.to_result() for candidate in ranked[:self.MAX_RESULTS]]
