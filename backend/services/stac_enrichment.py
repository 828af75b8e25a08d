"""
STAC Enrichment Service
Turns ranked scenario matches into prioritized security requirements, test
cases, threat summaries and recommendations.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from models.stac import (
    DerivedRequirement,
    DerivedTestCase,
    KnowledgeBaseSnapshot,
    MatchResult,
    ThreatInfo,
)

logger = logging.getLogger(__name__)


@dataclass
class ThreatAggregate:
    threats: List[ThreatInfo] = field(default_factory=list)
    categories: Dict[str, int] = field(default_factory=dict)
    risk_levels: Dict[str, int] = field(default_factory=dict)
    scenarios: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threats": [threat.to_dict() for threat in self.threats],
            "summary": {
                "total_threats": len(self.threats),
                "categories": dict(self.categories),
                "risk_levels": dict(self.risk_levels),
                "scenarios": self.scenarios,
            },
        }


class STACEnrichment:
    """Derives requirements, test cases and threat information from scenario matches"""

    CRITICAL_REQUIREMENT_TERMS = ['authentication', 'authorization', 'encryption', 'access control']
    AUTOMATION_TERMS = ['automated', 'automation', 'tool', '自动', '工具']
    CRITICAL_THREAT_TERMS = ['injection', '注入', 'bypass', '绕过', 'privilege escalation', '权限提升']

    REQUIREMENT_BASE_WEIGHT = 0.6
    REQUIREMENT_TERM_BONUS = 0.1
    TEST_CASE_BASE_WEIGHT = 0.5
    TEST_CASE_AUTOMATION_BONUS = 0.2
    CRITICAL_THREAT_BONUS = 0.3

    HIGH_RISK_THRESHOLD = 0.7
    MEDIUM_RISK_THRESHOLD = 0.4

    HIGH_PRIORITY_REQUIREMENT = 0.7
    CRITICAL_TEST_CASE = 0.6
    MIN_SCENARIO_COVERAGE = 3

    # First matching row wins
    REQUIREMENT_CATEGORIES = [
        (('authentication', '认证'), 'Authentication'),
        (('authorization', '授权'), 'Authorization'),
        (('encryption', '加密'), 'Encryption'),
        (('access control', '访问控制'), 'Access Control'),
        (('data', '数据'), 'Data Protection'),
        (('network', '网络'), 'Network Security'),
    ]
    TEST_CASE_CATEGORIES = [
        (('penetration', '渗透'), 'Penetration Testing'),
        (('automated', '自动'), 'Automated Testing'),
        (('manual', '手工'), 'Manual Testing'),
        (('tool', '工具'), 'Tool-based Testing'),
    ]
    THREAT_CATEGORIES = [
        (('injection', '注入'), 'Injection Attacks'),
        (('authentication', '认证'), 'Authentication Threats'),
        (('authorization', '授权'), 'Authorization Threats'),
        (('encryption', '加密'), 'Cryptographic Threats'),
        (('session', '会话'), 'Session Management'),
        (('xss', '跨站'), 'Cross-Site Scripting'),
    ]

    FALLBACK_REQUIREMENTS = [
        DerivedRequirement(
            name="Basic Authentication Security",
            details="Implement secure authentication mechanisms to verify user identity",
            scenario="Authentication Security", threat_name="Authentication Bypass",
            confidence=0.4, priority=0.8, category="Authentication", source="FALLBACK",
        ),
        DerivedRequirement(
            name="Access Control Implementation",
            details="Implement proper authorization controls to restrict access to resources",
            scenario="Authorization Security", threat_name="Unauthorized Access",
            confidence=0.4, priority=0.7, category="Authorization", source="FALLBACK",
        ),
        DerivedRequirement(
            name="Input Validation",
            details="Validate and sanitize all user inputs to prevent injection attacks",
            scenario="Input Validation", threat_name="Injection Attack",
            confidence=0.3, priority=0.6, category="Input Validation", source="FALLBACK",
        ),
        DerivedRequirement(
            name="Data Protection",
            details="Implement encryption and secure storage for sensitive data",
            scenario="Data Protection", threat_name="Data Exposure",
            confidence=0.3, priority=0.5, category="Data Protection", source="FALLBACK",
        ),
    ]

    FALLBACK_TEST_CASES = [
        DerivedTestCase(
            name="Authentication Bypass Test",
            details="Test for authentication bypass vulnerabilities using various techniques",
            scenario="Authentication Security", threat_name="Authentication Bypass",
            confidence=0.4, priority=0.8, category="Penetration Testing",
            related_requirement="Basic Authentication Security", source="FALLBACK",
        ),
        DerivedTestCase(
            name="Authorization Test",
            details="Test access controls to ensure proper authorization enforcement",
            scenario="Authorization Security", threat_name="Unauthorized Access",
            confidence=0.4, priority=0.7, category="Functional Testing",
            related_requirement="Access Control Implementation", source="FALLBACK",
        ),
        DerivedTestCase(
            name="Input Validation Test",
            details="Test input validation mechanisms against various injection attacks",
            scenario="Input Validation", threat_name="Injection Attack",
            confidence=0.3, priority=0.6, category="Automated Testing",
            related_requirement="Input Validation", source="FALLBACK",
        ),
        DerivedTestCase(
            name="Data Protection Test",
            details="Test data encryption and secure storage mechanisms",
            scenario="Data Protection", threat_name="Data Exposure",
            confidence=0.3, priority=0.5, category="Manual Testing",
            related_requirement="Data Protection", source="FALLBACK",
        ),
    ]

    # ==================== Requirements and test cases ====================

    def derive_requirements(self, matches: Sequence[MatchResult],
                            snapshot: Optional[KnowledgeBaseSnapshot]) -> List[DerivedRequirement]:
        """
        Security requirements linked to the matched scenarios' threats

        Identical (name, details) pairs collapse to one entry linked to the
        highest-confidence match. Sorted by descending priority.
        """
        known, unknown = self._split_matches(matches, snapshot)
        derived: Dict[Tuple[str, str], DerivedRequirement] = {}

        for match in known:
            for threat in snapshot.scenarios[match.scenario].threats:
                requirement = threat.security_requirement
                _keep_best(derived, DerivedRequirement(
                    name=requirement.name,
                    details=requirement.details,
                    scenario=match.scenario,
                    threat_name=threat.name,
                    confidence=match.confidence,
                    priority=self.requirement_priority(requirement.details, match.confidence),
                    category=self.categorize_requirement(requirement.details),
                    source=match.source,
                ))

        if unknown or (snapshot is None and not matches):
            for requirement in self._filter_fallback(self.FALLBACK_REQUIREMENTS, unknown):
                _keep_best(derived, requirement)

        return sorted(derived.values(), key=lambda requirement: requirement.priority, reverse=True)

    def derive_test_cases(self, matches: Sequence[MatchResult],
                          snapshot: Optional[KnowledgeBaseSnapshot]) -> List[DerivedTestCase]:
        """Test cases linked to the matched scenarios' threats, deduplicated like requirements"""
        known, unknown = self._split_matches(matches, snapshot)
        derived: Dict[Tuple[str, str], DerivedTestCase] = {}

        for match in known:
            for threat in snapshot.scenarios[match.scenario].threats:
                test_case = threat.test_case
                _keep_best(derived, DerivedTestCase(
                    name=test_case.name,
                    details=test_case.details,
                    scenario=match.scenario,
                    threat_name=threat.name,
                    confidence=match.confidence,
                    priority=self.test_case_priority(test_case.details, match.confidence),
                    category=self.categorize_test_case(test_case.details),
                    related_requirement=threat.security_requirement.name,
                    source=match.source,
                ))

        if unknown or (snapshot is None and not matches):
            for test_case in self._filter_fallback(self.FALLBACK_TEST_CASES, unknown):
                _keep_best(derived, test_case)

        return sorted(derived.values(), key=lambda test_case: test_case.priority, reverse=True)

    def _split_matches(self, matches: Sequence[MatchResult], snapshot: Optional[KnowledgeBaseSnapshot]):
        known, unknown = [], []
        for match in matches or ():
            if snapshot is not None and match.scenario in snapshot.scenarios:
                known.append(match)
            else:
                unknown.append(match)
        if unknown:
            logger.info(f"[STACEnrichment] Using fallback records for {len(unknown)} unknown scenarios")
        return known, unknown

    @staticmethod
    def _filter_fallback(records: Sequence, matches: Sequence[MatchResult]) -> List:
        """Fallback records whose scenario partially overlaps a matched scenario name"""
        if not matches:
            return list(records)
        names = [match.scenario.lower() for match in matches]
        return [
            record for record in records
            if any(name in record.scenario.lower() or record.scenario.lower() in name for name in names)
        ]

    # ==================== Threats ====================

    def aggregate_threats(self, matches: Sequence[MatchResult],
                          snapshot: Optional[KnowledgeBaseSnapshot]) -> ThreatAggregate:
        """Every threat of every matched scenario with risk level and category counts"""
        aggregate = ThreatAggregate(scenarios=len(matches or ()))
        if snapshot is None:
            return aggregate

        for match in matches or ():
            record = snapshot.scenarios.get(match.scenario)
            if record is None:
                continue
            for threat in record.threats:
                info = ThreatInfo(
                    name=threat.name,
                    details=threat.details,
                    scenario=match.scenario,
                    confidence=match.confidence,
                    risk_level=self.assess_risk_level(threat.text, match.confidence),
                    category=self.categorize_threat(threat.text),
                    threat=threat,
                )
                aggregate.threats.append(info)
                aggregate.categories[info.category] = aggregate.categories.get(info.category, 0) + 1
                aggregate.risk_levels[info.risk_level] = aggregate.risk_levels.get(info.risk_level, 0) + 1

        aggregate.threats.sort(key=lambda info: info.confidence, reverse=True)
        return aggregate

    # ==================== Scoring and categorization ====================

    def requirement_priority(self, details: str, confidence: float) -> float:
        text = (details or "").lower()
        priority = confidence * self.REQUIREMENT_BASE_WEIGHT
        priority += self.REQUIREMENT_TERM_BONUS * sum(1 for term in self.CRITICAL_REQUIREMENT_TERMS if term in text)
        return min(priority, 1.0)

    def test_case_priority(self, details: str, confidence: float) -> float:
        text = (details or "").lower()
        priority = confidence * self.TEST_CASE_BASE_WEIGHT
        if any(term in text for term in self.AUTOMATION_TERMS):
            priority += self.TEST_CASE_AUTOMATION_BONUS
        return min(priority, 1.0)

    def assess_risk_level(self, threat_text: str, confidence: float) -> str:
        text = (threat_text or "").lower()
        risk_score = confidence
        if any(term in text for term in self.CRITICAL_THREAT_TERMS):
            risk_score += self.CRITICAL_THREAT_BONUS

        if risk_score >= self.HIGH_RISK_THRESHOLD:
            return "High"
        if risk_score >= self.MEDIUM_RISK_THRESHOLD:
            return "Medium"
        return "Low"

    def categorize_requirement(self, details: str) -> str:
        return _categorize(details, self.REQUIREMENT_CATEGORIES, "General Security")

    def categorize_test_case(self, details: str) -> str:
        return _categorize(details, self.TEST_CASE_CATEGORIES, "Functional Testing")

    def categorize_threat(self, threat_text: str) -> str:
        return _categorize(threat_text, self.THREAT_CATEGORIES, "General Threats")

    # ==================== Reporting ====================

    @staticmethod
    def average_confidence(matches: Sequence[MatchResult]) -> float:
        if not matches:
            return 0
        return round(sum(match.confidence for match in matches) / len(matches), 2)

    def generate_recommendations(self, matches: Sequence[MatchResult],
                                 requirements: Sequence[DerivedRequirement],
                                 test_cases: Sequence[DerivedTestCase]) -> List[Dict[str, Any]]:
        recommendations = []

        high_priority = [req for req in requirements if req.priority > self.HIGH_PRIORITY_REQUIREMENT]
        if high_priority:
            recommendations.append({
                "type": "security_requirement",
                "priority": "High",
                "title": "Implement high-priority security requirements first",
                "description": f"Found {len(high_priority)} high-priority security requirements; "
                               f"implement these first",
                "items": [req.name for req in high_priority[:3]],
            })

        critical_tests = [test for test in test_cases if test.priority > self.CRITICAL_TEST_CASE]
        if critical_tests:
            recommendations.append({
                "type": "test_case",
                "priority": "High",
                "title": "Run critical security tests",
                "description": f"Found {len(critical_tests)} critical test cases; run them immediately",
                "items": [test.name for test in critical_tests[:3]],
            })

        if len(matches) < self.MIN_SCENARIO_COVERAGE:
            recommendations.append({
                "type": "coverage",
                "priority": "Medium",
                "title": "Broaden security analysis coverage",
                "description": "Few security scenarios matched; add more security-relevant content to the analysis",
            })

        return recommendations

    def format_analysis_results(self, matches: Sequence[MatchResult],
                                snapshot: Optional[KnowledgeBaseSnapshot]) -> Dict[str, Any]:
        """Complete analysis report for a set of matches"""
        if not isinstance(matches, (list, tuple)):
            return self.empty_analysis_results()

        requirements = self.derive_requirements(matches, snapshot)
        test_cases = self.derive_test_cases(matches, snapshot)
        threats = self.aggregate_threats(matches, snapshot)

        return {
            "timestamp": datetime.now().isoformat(),
            "summary": {
                "total_scenarios": len(matches),
                "total_requirements": len(requirements),
                "total_test_cases": len(test_cases),
                "total_threats": len(threats.threats),
                "average_confidence": self.average_confidence(matches),
            },
            "scenarios": [
                {
                    "name": match.scenario,
                    "confidence": match.confidence,
                    "keyword_matches": match.keyword_matches,
                    "matched_keywords": list(match.matched_keywords),
                    "threat_count": len(match.matched_threats),
                    "source": match.source,
                    "fallback_used": match.fallback_used,
                }
                for match in matches
            ],
            "security_requirements": [req.to_dict() for req in requirements],
            "test_cases": [test.to_dict() for test in test_cases],
            "threats": [threat.to_dict() for threat in threats.threats],
            "recommendations": self.generate_recommendations(matches, requirements, test_cases),
        }

    @staticmethod
    def empty_analysis_results() -> Dict[str, Any]:
        return {
            "timestamp": datetime.now().isoformat(),
            "summary": {
                "total_scenarios": 0,
                "total_requirements": 0,
                "total_test_cases": 0,
                "total_threats": 0,
                "average_confidence": 0,
            },
            "scenarios": [],
            "security_requirements": [],
            "test_cases": [],
            "threats": [],
            "recommendations": [],
        }


def _categorize(text: str, table: Iterable[Tuple[Tuple[str, ...], str]], default: str) -> str:
    lower_text = (text or "").lower()
    for terms, category in table:
        if any(term in lower_text for term in terms):
            return category
    return default


def _keep_best(derived: Dict[Tuple[str, str], Any], record: Any) -> None:
    key = (record.name, record.details)
    existing = derived.get(key)
    if existing is None or record.confidence > existing.confidence:
        derived[key] = record
