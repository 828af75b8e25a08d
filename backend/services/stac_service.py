"""
STAC Service
Facade over the scenario matching engine: knowledge base lifecycle, degraded
matching, enrichment and diagnostics.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from core.config import STACSettings
from core.events import STACEventLog
from core.exceptions import STACError
from models.stac import (
    DerivedRequirement,
    DerivedTestCase,
    KnowledgeBaseSnapshot,
    MatchResult,
    ScenarioRecord,
)
from services.stac_cache import MatchResultCache
from services.stac_degradation import DegradationController
from services.stac_enrichment import STACEnrichment, ThreatAggregate
from services.stac_knowledge_base import TRANSIENT_ERRORS, KnowledgeBaseLoader
from services.stac_matcher import ScenarioMatcher

logger = logging.getLogger(__name__)


class STACService:
    """Security threat scenario matching with graceful degradation"""

    def __init__(self, settings: Optional[STACSettings] = None,
                 loader: Optional[KnowledgeBaseLoader] = None,
                 matcher: Optional[ScenarioMatcher] = None,
                 cache: Optional[MatchResultCache] = None,
                 events: Optional[STACEventLog] = None):
        self.settings = settings or STACSettings()
        self.events = events or STACEventLog(component="STACService")
        self.loader = loader or KnowledgeBaseLoader(self.settings.load_options, events=self.events)
        self.cache = cache or MatchResultCache(
            max_size=self.settings.cache_max_size,
            ttl=timedelta(minutes=self.settings.cache_ttl_minutes),
            cleanup_interval=timedelta(minutes=self.settings.cache_cleanup_interval_minutes),
        )
        self.controller = DegradationController(
            lambda: self.loader.snapshot,
            matcher=matcher,
            cache=self.cache,
            events=self.events,
        )
        self.enrichment = STACEnrichment()

    @property
    def snapshot(self) -> Optional[KnowledgeBaseSnapshot]:
        return self.loader.snapshot

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start the periodic cache sweep"""
        self.cache.start_cleanup_task()
        logger.info("[STACService] Cache cleanup task started")

    async def cleanup(self) -> None:
        """Stop background work and drop cached results"""
        await self.cache.stop_cleanup_task()
        self.cache.clear()
        logger.info("[STACService] Cleaned up")

    # ==================== Knowledge base ====================

    async def load_knowledge_base(self, source: Optional[str] = None) -> bool:
        """
        Load the knowledge base from a URL or file path

        Returns:
            True when the real knowledge base was loaded, False when the
            service fell back to the built-in minimal knowledge base
        """
        try:
            await self.loader.load(source or self.settings.knowledge_base_source)
        except (STACError,) + TRANSIENT_ERRORS as e:
            logger.warning(f"[STACService] Knowledge base unavailable, running in fallback mode: {e}")
            return False
        finally:
            # Cached matches belong to the previous snapshot
            self.cache.clear()
        return True

    def load_knowledge_base_from_text(self, raw_text: str, source: str = "<inline>") -> bool:
        try:
            self.loader.load_from_text(raw_text, source=source)
        except STACError as e:
            logger.warning(f"[STACService] Knowledge base rejected, running in fallback mode: {e}")
            return False
        finally:
            self.cache.clear()
        return True

    def is_knowledge_base_loaded(self) -> bool:
        return self.snapshot is not None

    def is_fallback_mode(self) -> bool:
        return self.loader.fallback_mode

    def get_available_scenarios(self) -> List[str]:
        snapshot = self.snapshot
        return list(snapshot.scenarios) if snapshot else []

    def get_scenario_data(self, name: str) -> Optional[ScenarioRecord]:
        snapshot = self.snapshot
        return snapshot.scenarios.get(name) if snapshot else None

    def get_statistics(self) -> Dict[str, Any]:
        snapshot = self.snapshot
        if snapshot is None:
            return {"scenarios": 0, "threats": 0, "keywords": 0, "fallback_mode": False}
        return {
            "scenarios": len(snapshot.scenarios),
            "threats": snapshot.threat_count,
            "keywords": len(snapshot.index),
            "fallback_mode": snapshot.fallback_mode,
            "source": snapshot.source,
            "loaded_at": snapshot.loaded_at.isoformat(),
            "validation": snapshot.statistics.to_dict(),
            "warnings": list(snapshot.warnings),
            "cache": self.cache.stats(),
        }

    # ==================== Matching ====================

    async def match_scenarios(self, content, bypass_cache: bool = False,
                              timeout_ms: Optional[int] = None) -> List[MatchResult]:
        """Ranked scenario matches for the content. Never raises for match-time failures."""
        report = await self.controller.run(
            content,
            timeout_ms=timeout_ms or self.settings.match_timeout_ms,
            bypass_cache=bypass_cache,
        )
        self.events.record_request(
            report.processing_time_ms,
            success=report.step is not None or not report.errors,
            fallback_used=report.fallback_used,
        )
        return report.results

    # ==================== Enrichment ====================

    def get_security_requirements(self, matches: List[MatchResult]) -> List[DerivedRequirement]:
        return self.enrichment.derive_requirements(matches, self.snapshot)

    def get_test_cases(self, matches: List[MatchResult]) -> List[DerivedTestCase]:
        return self.enrichment.derive_test_cases(matches, self.snapshot)

    def extract_threat_information(self, matches: List[MatchResult]) -> ThreatAggregate:
        return self.enrichment.aggregate_threats(matches, self.snapshot)

    def format_analysis_results(self, matches: List[MatchResult]) -> Dict[str, Any]:
        return self.enrichment.format_analysis_results(matches, self.snapshot)

    def get_empty_analysis_results(self) -> Dict[str, Any]:
        return self.enrichment.empty_analysis_results()

    # ==================== Diagnostics ====================

    def get_performance_metrics(self) -> Dict[str, Any]:
        return self.events.metrics()

    def get_service_logs(self) -> List[Dict[str, Any]]:
        return self.events.entries()

    def clear_service_logs(self) -> None:
        self.events.clear()


# Singleton instance
_stac_service: Optional[STACService] = None


def get_stac_service() -> STACService:
    """Get or create the singleton STAC service configured from the environment."""
    global _stac_service
    if _stac_service is None:
        _stac_service = STACService(STACSettings.from_env())
    return _stac_service
