"""
STAC knowledge base and match result models
"""
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Requirement:
    name: str
    details: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "details": self.details}


@dataclass(frozen=True)
class Design:
    name: str
    details: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "details": self.details}


@dataclass(frozen=True)
class TestCase:
    __test__ = False  # not a pytest class

    name: str
    details: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "details": self.details}


@dataclass(frozen=True)
class Threat:
    """A specific risk within a scenario with its linked guidance"""
    name: str
    details: str
    security_requirement: Requirement
    security_design: Design
    test_case: TestCase
    industry_standard: Optional[Dict[str, Any]] = None

    @property
    def text(self) -> str:
        """Name and details joined, the text used for indexing and scoring"""
        return f"{self.name} {self.details or ''}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Threat':
        """Build a threat from an already validated knowledge base entry"""
        return cls(
            name=data["name"],
            details=data.get("details") or "",
            security_requirement=Requirement(**_name_details(data["security_requirement"])),
            security_design=Design(**_name_details(data["security_design"])),
            test_case=TestCase(**_name_details(data["test_case"])),
            industry_standard=data.get("industry_standard"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "details": self.details,
            "security_requirement": self.security_requirement.to_dict(),
            "security_design": self.security_design.to_dict(),
            "test_case": self.test_case.to_dict(),
            "industry_standard": self.industry_standard,
        }


def _name_details(data: Dict[str, Any]) -> Dict[str, str]:
    return {"name": data["name"], "details": data["details"]}


@dataclass(frozen=True)
class ScenarioRecord:
    threats: Tuple[Threat, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"threats": [threat.to_dict() for threat in self.threats]}


# Scenario id -> record
KnowledgeBase = Mapping[str, ScenarioRecord]

# Normalized keyword -> scenario ids
InvertedIndex = Mapping[str, FrozenSet[str]]


@dataclass(frozen=True)
class SemanticProfile:
    """Domain terms found in a piece of text, grouped by vocabulary"""
    security_terms: Tuple[str, ...] = ()
    technical_terms: Tuple[str, ...] = ()
    business_terms: Tuple[str, ...] = ()
    risk_indicators: Tuple[str, ...] = ()
    compliance_terms: Tuple[str, ...] = ()

    CATEGORIES = ("security_terms", "technical_terms", "business_terms", "risk_indicators", "compliance_terms")
    # compliance_terms is reported but not scored
    SCORED_CATEGORIES = ("security_terms", "technical_terms", "business_terms", "risk_indicators")

    def terms(self, category: str) -> Tuple[str, ...]:
        return getattr(self, category)

    def to_dict(self) -> Dict[str, List[str]]:
        return {category: list(self.terms(category)) for category in self.CATEGORIES}


@dataclass(frozen=True)
class ThreatMatch:
    """A threat of a candidate scenario that shares keywords with the text"""
    threat: Threat
    keyword_matches: int
    semantic_score: float
    total_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.threat.name,
            "details": self.threat.details,
            "keyword_matches": self.keyword_matches,
            "semantic_score": round(self.semantic_score, 2),
            "total_score": round(self.total_score, 2),
        }


@dataclass(frozen=True)
class MatchResult:
    """One ranked scenario match"""
    scenario: str
    confidence: float
    keyword_matches: int
    matched_keywords: Tuple[str, ...] = ()
    matched_threats: Tuple[ThreatMatch, ...] = ()
    semantic_score: float = 0.0
    source: str = "STAC"
    fallback_used: bool = False
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "scenario": self.scenario,
            "confidence": self.confidence,
            "keyword_matches": self.keyword_matches,
            "matched_keywords": list(self.matched_keywords),
            "matched_threats": [match.to_dict() for match in self.matched_threats],
            "semantic_score": self.semantic_score,
            "source": self.source,
            "fallback_used": self.fallback_used,
        }
        if self.warning:
            data["warning"] = self.warning
        return data


@dataclass
class CacheEntry:
    """Cached match result. Owned by the result cache."""
    key: str
    result: Tuple[MatchResult, ...]
    created_at: datetime
    last_accessed_at: datetime
    # Knowledge base snapshot the result was computed against
    scope: Any = field(default=None, repr=False, compare=False)


@dataclass
class ValidationStatistics:
    total_scenarios: int = 0
    valid_scenarios: int = 0
    total_threats: int = 0
    valid_threats: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_scenarios": self.total_scenarios,
            "valid_scenarios": self.valid_scenarios,
            "total_threats": self.total_threats,
            "valid_threats": self.valid_threats,
        }


@dataclass(frozen=True)
class KnowledgeBaseSnapshot:
    """
    A loaded knowledge base together with its inverted index.

    Snapshots are never mutated; a reload builds a new snapshot and swaps the
    reference, so readers always see a complete knowledge base and index.
    """
    scenarios: KnowledgeBase
    index: InvertedIndex
    fallback_mode: bool = False
    source: str = ""
    loaded_at: datetime = field(default_factory=datetime.now)
    statistics: ValidationStatistics = field(default_factory=ValidationStatistics)
    warnings: Tuple[str, ...] = ()

    @classmethod
    def create(cls, scenarios: Dict[str, ScenarioRecord], index: Dict[str, FrozenSet[str]],
               **kwargs: Any) -> 'KnowledgeBaseSnapshot':
        return cls(scenarios=MappingProxyType(dict(scenarios)), index=MappingProxyType(dict(index)), **kwargs)

    @property
    def threat_count(self) -> int:
        return sum(len(record.threats) for record in self.scenarios.values())


@dataclass(frozen=True)
class DerivedRequirement:
    name: str
    details: str
    scenario: str
    threat_name: str
    confidence: float
    priority: float
    category: str
    source: str = "STAC"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "details": self.details,
            "scenario": self.scenario,
            "threat_name": self.threat_name,
            "confidence": self.confidence,
            "priority": round(self.priority, 2),
            "category": self.category,
            "source": self.source,
        }


@dataclass(frozen=True)
class DerivedTestCase:
    __test__ = False

    name: str
    details: str
    scenario: str
    threat_name: str
    confidence: float
    priority: float
    category: str
    related_requirement: Optional[str] = None
    source: str = "STAC"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "details": self.details,
            "scenario": self.scenario,
            "threat_name": self.threat_name,
            "confidence": self.confidence,
            "priority": round(self.priority, 2),
            "category": self.category,
            "related_requirement": self.related_requirement,
            "source": self.source,
        }


@dataclass(frozen=True)
class ThreatInfo:
    name: str
    details: str
    scenario: str
    confidence: float
    risk_level: str
    category: str
    threat: Threat

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "details": self.details,
            "scenario": self.scenario,
            "confidence": self.confidence,
            "risk_level": self.risk_level,
            "category": self.category,
            "security_requirement": self.threat.security_requirement.to_dict(),
            "security_design": self.threat.security_design.to_dict(),
            "test_case": self.threat.test_case.to_dict(),
            "industry_standard": self.threat.industry_standard,
        }
