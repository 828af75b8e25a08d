from models.stac import (
    Requirement, Design, TestCase, Threat, ScenarioRecord,
    KnowledgeBase, InvertedIndex, KnowledgeBaseSnapshot, ValidationStatistics,
    SemanticProfile, ThreatMatch, MatchResult, CacheEntry,
    DerivedRequirement, DerivedTestCase, ThreatInfo
)

__all__ = [
    "Requirement",
    "Design",
    "TestCase",
    "Threat",
    "ScenarioRecord",
    "KnowledgeBase",
    "InvertedIndex",
    "KnowledgeBaseSnapshot",
    "ValidationStatistics",
    "SemanticProfile",
    "ThreatMatch",
    "MatchResult",
    "CacheEntry",
    "DerivedRequirement",
    "DerivedTestCase",
    "ThreatInfo",
]
