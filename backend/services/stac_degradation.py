"""
STAC Degradation Controller
Runs the full scenario matcher under a hard timeout and falls back through
progressively cruder matching strategies so callers always get a result list.
"""
import asyncio
import re
import string
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional

from core.events import STACEventLog
from core.exceptions import MatchTimeoutError, STACError
from models.stac import KnowledgeBaseSnapshot, MatchResult
from services.stac_cache import MatchResultCache
from services.stac_matcher import CancellationToken, ScenarioMatcher

STEP_PRIMARY = "primary"
STEP_SIMPLE_KEYWORD = "simple_keyword_matching"
STEP_FALLBACK_MODE = "fallback_mode"
STEP_BASIC_SCENARIOS = "basic_scenarios"

BASIC_PATTERN_WARNING = "Generated from basic pattern matching due to STAC service failure"

# Generic scenarios scored while the real knowledge base is unavailable: (patterns, confidence cap)
FALLBACK_MODE_SCENARIOS = {
    "Generic Security Analysis": (['security', 'authentication', 'authorization', 'encryption', 'access'], 0.3),
    "Data Protection": (['data', 'database', 'storage', 'information', 'privacy'], 0.25),
    "Input Validation": (['input', 'form', 'validation', 'sanitization', 'injection'], 0.25),
}

BASIC_SECURITY_PATTERNS = [
    (re.compile(r"authentication|login|signin|password"), "Authentication Security", 0.3),
    (re.compile(r"authorization|permission|access|role"), "Authorization Security", 0.3),
    (re.compile(r"data|database|storage|information"), "Data Protection", 0.25),
    (re.compile(r"input|form|validation|sanitization"), "Input Validation", 0.25),
    (re.compile(r"network|communication|transmission"), "Network Security", 0.2),
]


@dataclass
class StepOutcome:
    """Result of one degradation step: either matches or the error it raised"""
    step: str
    results: List[MatchResult] = field(default_factory=list)
    error: Optional[Exception] = None
    elapsed_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.results)


@dataclass
class DegradationReport:
    """Final outcome of a degraded match call"""
    results: List[MatchResult] = field(default_factory=list)
    step: Optional[str] = None
    attempted: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    processing_time_ms: float = 0.0

    @property
    def degraded(self) -> bool:
        return self.step != STEP_PRIMARY

    @property
    def fallback_used(self) -> bool:
        return (self.step is not None and self.degraded) or any(match.fallback_used for match in self.results)


class DegradationController:
    """
    Ordered fallback chain around the scenario matcher.

    Steps run in order and each is attempted at most once; the next step runs
    only when the previous one raised or produced no matches:

    1. primary: cached full matcher under a hard timeout
    2. simple_keyword_matching: index lookups of the first 100 words
    3. fallback_mode: generic patterns, only when the knowledge base failed to load
    4. basic_scenarios: five fixed regexes
    5. empty result

    ``match_with_degradation`` never raises.
    """

    SIMPLE_MAX_WORDS = 100
    SIMPLE_MIN_WORD_LENGTH = 4
    SIMPLE_MIN_HITS = 2
    SIMPLE_CONFIDENCE_PER_HIT = 0.05
    SIMPLE_MAX_CONFIDENCE = 0.5
    SIMPLE_MAX_RESULTS = 5

    FALLBACK_TERM_SCORE = 0.1
    FALLBACK_MAX_RESULTS = 3

    def __init__(self, snapshot_provider: Callable[[], Optional[KnowledgeBaseSnapshot]],
                 matcher: Optional[ScenarioMatcher] = None,
                 cache: Optional[MatchResultCache] = None,
                 events: Optional[STACEventLog] = None):
        self.snapshot_provider = snapshot_provider
        self.matcher = matcher or ScenarioMatcher()
        self.cache = cache
        self.events = events or STACEventLog()

    async def match_with_degradation(self, text, timeout_ms: int = 15000,
                                     bypass_cache: bool = False) -> List[MatchResult]:
        report = await self.run(text, timeout_ms=timeout_ms, bypass_cache=bypass_cache)
        return report.results

    async def run(self, text, timeout_ms: int = 15000, bypass_cache: bool = False) -> DegradationReport:
        """
        Match text against the current knowledge base snapshot

        Args:
            text: Document text; empty or non-string input yields no matches
            timeout_ms: Hard limit for the primary matcher
            bypass_cache: Recompute the primary match even if cached

        Returns:
            DegradationReport naming the step that produced the matches
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        report = DegradationReport()

        if not isinstance(text, str) or not text.strip():
            self.events.record("Invalid or empty content provided for matching",
                               content_type=type(text).__name__,
                               content_length=len(text) if isinstance(text, str) else 0)
            return report

        # Pin one snapshot for the whole chain so a concurrent reload cannot mix knowledge bases
        snapshot = self.snapshot_provider()

        steps: List[tuple] = [
            (STEP_PRIMARY, lambda: self._primary(text, snapshot, timeout_ms, bypass_cache)),
            (STEP_SIMPLE_KEYWORD, lambda: self._sync(self.simple_keyword_matching, text, snapshot)),
        ]
        if snapshot is not None and snapshot.fallback_mode:
            steps.append((STEP_FALLBACK_MODE, lambda: self._sync(self.fallback_mode_matching, text)))
        steps.append((STEP_BASIC_SCENARIOS, lambda: self._sync(self.basic_pattern_generation, text)))

        for name, step_fn in steps:
            report.attempted.append(name)
            outcome = await self._attempt(name, step_fn)
            elapsed_ms = (loop.time() - start_time) * 1000

            if outcome.error is not None:
                report.errors[name] = str(outcome.error)
                self.events.record(f"STAC matching step '{name}' failed",
                                   content_length=len(text),
                                   processing_time_ms=round(elapsed_ms, 1),
                                   fallbacks_attempted=list(report.attempted),
                                   error=str(outcome.error),
                                   error_type=type(outcome.error).__name__)
                continue

            if outcome.succeeded:
                report.results = outcome.results
                report.step = name
                report.processing_time_ms = elapsed_ms
                self.events.record(f"STAC matching step '{name}' succeeded",
                                   content_length=len(text),
                                   processing_time_ms=round(elapsed_ms, 1),
                                   fallbacks_attempted=list(report.attempted),
                                   match_count=len(outcome.results),
                                   top_confidence=outcome.results[0].confidence)
                return report

            self.events.record(f"STAC matching step '{name}' found no matches",
                               content_length=len(text),
                               processing_time_ms=round(elapsed_ms, 1),
                               fallbacks_attempted=list(report.attempted))

        report.processing_time_ms = (loop.time() - start_time) * 1000
        self.events.record("All STAC matching fallbacks exhausted",
                           content_length=len(text),
                           processing_time_ms=round(report.processing_time_ms, 1),
                           fallbacks_attempted=list(report.attempted),
                           errors=dict(report.errors))
        return report

    async def _attempt(self, name: str, step_fn: Callable[[], Awaitable[List[MatchResult]]]) -> StepOutcome:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            results = await step_fn()
        except Exception as e:
            return StepOutcome(step=name, error=e, elapsed_ms=(loop.time() - started) * 1000)
        return StepOutcome(step=name, results=list(results), elapsed_ms=(loop.time() - started) * 1000)

    @staticmethod
    async def _sync(fn, *args) -> List[MatchResult]:
        return fn(*args)

    async def _primary(self, text: str, snapshot: Optional[KnowledgeBaseSnapshot],
                       timeout_ms: int, bypass_cache: bool) -> List[MatchResult]:
        if snapshot is None:
            raise STACError("Knowledge base not loaded and no fallback mode available")

        async def compute() -> List[MatchResult]:
            token = CancellationToken()
            try:
                results = await asyncio.wait_for(
                    asyncio.to_thread(self.matcher.match, text, snapshot.index, snapshot.scenarios, token),
                    timeout=timeout_ms / 1000,
                )
            except asyncio.TimeoutError as e:
                token.cancel()
                raise MatchTimeoutError(timeout_ms) from e
            if snapshot.fallback_mode:
                results = [replace(match, fallback_used=True) for match in results]
            return results

        if self.cache is None:
            return await compute()
        return await self.cache.get_or_compute(
            text, compute,
            bypass_cache=bypass_cache,
            scope=snapshot,
            is_current=lambda: self.snapshot_provider() is snapshot,
        )

    def simple_keyword_matching(self, text: str, snapshot: Optional[KnowledgeBaseSnapshot]) -> List[MatchResult]:
        """Whitespace words looked up in the index; no semantic scoring"""
        if snapshot is None:
            return []

        words = [word.strip(string.punctuation) for word in text.lower().split()]
        words = [word for word in words if len(word) >= self.SIMPLE_MIN_WORD_LENGTH][:self.SIMPLE_MAX_WORDS]

        hits: Dict[str, List[str]] = {}
        for word in words:
            for scenario in snapshot.index.get(word, ()):
                hits.setdefault(scenario, []).append(word)

        matches = [
            MatchResult(
                scenario=scenario,
                confidence=round(min(self.SIMPLE_MAX_CONFIDENCE, len(matched) * self.SIMPLE_CONFIDENCE_PER_HIT), 2),
                keyword_matches=len(matched),
                matched_keywords=tuple(matched[:ScenarioMatcher.MAX_MATCHED_KEYWORDS]),
                source="simple_keyword_fallback",
                fallback_used=True,
            )
            for scenario, matched in hits.items()
            if len(matched) >= self.SIMPLE_MIN_HITS
        ]
        matches.sort(key=lambda match: match.confidence, reverse=True)
        return matches[:self.SIMPLE_MAX_RESULTS]

    def fallback_mode_matching(self, text: str) -> List[MatchResult]:
        """Substring presence of generic patterns, +0.1 per term up to each scenario's cap"""
        lower_text = text.lower()
        matches = []

        for scenario, (patterns, max_confidence) in FALLBACK_MODE_SCENARIOS.items():
            matched_terms = [pattern for pattern in patterns if pattern in lower_text]
            if not matched_terms:
                continue
            matches.append(MatchResult(
                scenario=scenario,
                confidence=round(min(len(matched_terms) * self.FALLBACK_TERM_SCORE, max_confidence), 2),
                keyword_matches=len(matched_terms),
                matched_keywords=tuple(matched_terms),
                source="fallback_mode",
                fallback_used=True,
            ))

        matches.sort(key=lambda match: match.confidence, reverse=True)
        return matches[:self.FALLBACK_MAX_RESULTS]

    def basic_pattern_generation(self, text: str) -> List[MatchResult]:
        lower_text = text.lower()
        matches = [
            MatchResult(
                scenario=scenario,
                confidence=confidence,
                keyword_matches=1,
                matched_keywords=(pattern.pattern,),
                source="basic_pattern_generation",
                fallback_used=True,
                warning=BASIC_PATTERN_WARNING,
            )
            for pattern, scenario, confidence in BASIC_SECURITY_PATTERNS
            if pattern.search(lower_text)
        ]
        matches.sort(key=lambda match: match.confidence, reverse=True)
        return matches
