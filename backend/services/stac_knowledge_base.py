"""
STAC Knowledge Base Loader
Fetches, sanitizes, validates and security-checks the STAC knowledge base and
builds the immutable snapshot used for matching. Falls back to a minimal
built-in knowledge base when loading fails.
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from core.config import LoadOptions
from core.events import STACEventLog
from core.exceptions import (
    KnowledgeBaseSecurityError,
    KnowledgeBaseValidationError,
    LoadSizeExceededError,
    LoadTimeoutError,
    STACError,
)
from models.stac import KnowledgeBaseSnapshot, ScenarioRecord, Threat, ValidationStatistics
from services.stac_index import build_index

logger = logging.getLogger(__name__)

FALLBACK_SCENARIO = "Generic Security Analysis"

FALLBACK_KNOWLEDGE_BASE = {
    FALLBACK_SCENARIO: {
        "threats": [{
            "name": "General Security Assessment",
            "details": "Baseline security assessment covering authentication, authorization, "
                       "data protection and input validation while the STAC knowledge base is unavailable",
            "security_requirement": {
                "name": "Basic Security Review",
                "details": "Enforce authentication and authorization on every entry point, protect sensitive "
                           "data with encryption and validate all user input",
            },
            "security_design": {
                "name": "Manual Security Design",
                "details": "Design authentication, access control, data protection and input validation "
                           "controls manually without STAC guidance",
            },
            "test_case": {
                "name": "Manual Security Testing",
                "details": "Manually test authentication failure handling, authorization checks, "
                           "data protection and input validation",
            },
            "industry_standard": None,
        }]
    }
}

# Failures worth another attempt. Parse, validation and security failures are deterministic.
TRANSIENT_ERRORS = (LoadTimeoutError, httpx.TransportError, httpx.HTTPStatusError, OSError)

NULL_BYTE_THREAT = "Null bytes detected in knowledge base data"


def is_retryable(error: Exception) -> bool:
    """HTTP status failures are retried only for throttling and server errors"""
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return status_code == 429 or status_code >= 500
    return isinstance(error, TRANSIENT_ERRORS)


@dataclass
class ValidationReport:
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    statistics: ValidationStatistics = field(default_factory=ValidationStatistics)
    scenarios: Dict[str, ScenarioRecord] = field(default_factory=dict)


@dataclass
class SecurityReport:
    is_safe: bool = True
    threats: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    checks_performed: List[str] = field(default_factory=list)


class KnowledgeBaseValidator:
    """Sanitization, structural, semantic and security validation of knowledge base documents"""

    MAX_NESTING_DEPTH = 1000
    MAX_SCENARIOS = 10000
    MAX_SCENARIO_ID_LENGTH = 200
    MAX_URL_CHECK_SCENARIOS = 100
    MAX_URLS_PER_SCENARIO = 10
    MAX_MEMORY_BYTES = 50 * 1024 * 1024

    REQUIRED_THREAT_FIELDS = ['name', 'security_requirement', 'security_design', 'test_case']

    # Replaced with [REMOVED] before parsing
    DANGEROUS_PATTERNS = [
        re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"data:(?!image/)[a-z0-9.+-]+/[a-z0-9.+-]+", re.IGNORECASE),
        re.compile(r"eval\s*\(", re.IGNORECASE),
        re.compile(r"Function\s*\(", re.IGNORECASE),
        re.compile(r"setTimeout\s*\(", re.IGNORECASE),
        re.compile(r"setInterval\s*\(", re.IGNORECASE),
        re.compile(r"\b(?:document|window|location)\.(?=[A-Za-z_$])", re.IGNORECASE),
        re.compile(r"XMLHttpRequest", re.IGNORECASE),
        re.compile(r"fetch\s*\(", re.IGNORECASE),
    ]

    SUSPICIOUS_PATTERNS = [
        re.compile(r"eval\s*\("),
        re.compile(r"Function\s*\("),
        re.compile(r"constructor"),
        re.compile(r"__proto__"),
        re.compile(r"prototype\s*\["),
    ]

    SUSPICIOUS_DOMAINS = [
        'bit.ly', 'tinyurl.com', 't.co',  # URL shorteners
        'tempfile.org', 'temp-share.com',  # temporary file hosts
        'pastebin.com', 'paste.ee',  # paste sites
    ]

    SUSPICIOUS_URL_PATTERNS = [
        re.compile(r"\d+\.\d+\.\d+\.\d+"),  # IP literals
        re.compile(r"[0-9a-f]{32,}"),
        re.compile(r"localhost"),
    ]

    SUSPICIOUS_TLD_PATTERN = re.compile(r"\.(tk|ml|ga|cf)$")
    URL_PATTERN = re.compile(r"https?://[^\s\"'<>]+")

    def sanitize(self, raw_text: str) -> Tuple[str, List[str]]:
        """Replace dangerous substrings. Each hit is reported as a warning."""
        warnings = []
        sanitized = raw_text
        for pattern in self.DANGEROUS_PATTERNS:
            sanitized, replaced = pattern.subn("[REMOVED]", sanitized)
            if replaced:
                warnings.append(f"Potentially dangerous pattern removed ({replaced}x): {pattern.pattern}")
                logger.warning(f"[KnowledgeBaseValidator] Dangerous pattern detected and removed: {pattern.pattern}")
        return sanitized, warnings

    def check_structure(self, text: str) -> None:
        """
        Scan brace nesting outside of string literals.

        Raises KnowledgeBaseValidationError for unbalanced braces or nesting
        deeper than MAX_NESTING_DEPTH.
        """
        depth = 0
        in_string = False
        escape_next = False

        for char in text:
            if escape_next:
                escape_next = False
                continue
            if char == '\\' and in_string:
                escape_next = True
                continue
            if char == '"':
                in_string = not in_string
                continue
            if in_string:
                continue

            if char == '{':
                depth += 1
                if depth > self.MAX_NESTING_DEPTH:
                    raise KnowledgeBaseValidationError(
                        "JSON validation failed: structure too deeply nested - potential security risk")
            elif char == '}':
                depth -= 1
                if depth < 0:
                    break

        if depth != 0:
            raise KnowledgeBaseValidationError("JSON validation failed: unbalanced braces")

    def validate_threat(self, threat: Any, scenario: str, position: int) -> List[str]:
        """Return the problems with one threat entry (empty when valid)"""
        label = f'Threat {position} in scenario "{scenario}"'
        if not isinstance(threat, dict):
            return [f"{label} must be an object"]

        errors = []
        for field_name in self.REQUIRED_THREAT_FIELDS:
            value = threat.get(field_name)
            if not value:
                errors.append(f"{label} missing required field: {field_name}")
                continue
            if field_name == 'name':
                if not isinstance(value, str):
                    errors.append(f"{label} name must be a string")
                continue
            if not isinstance(value, dict) or not _non_empty_str(value.get('name')) \
                    or not _non_empty_str(value.get('details')):
                errors.append(f'{label} field "{field_name}" must have name and details')

        details = threat.get('details')
        if details is not None and not isinstance(details, str):
            errors.append(f"{label} details must be a string")
        return errors

    def validate(self, data: Any) -> ValidationReport:
        """
        Semantic validation.

        Invalid threats are dropped and counted; a scenario stays valid while
        it keeps at least one valid threat. The report is invalid only when
        no scenario survives.
        """
        report = ValidationReport()

        if not isinstance(data, dict):
            report.is_valid = False
            report.errors.append("Knowledge base must be an object")
            return report

        report.statistics.total_scenarios = len(data)
        if not data:
            report.is_valid = False
            report.errors.append("Knowledge base must contain at least one scenario")
            return report

        for scenario, scenario_data in data.items():
            threats = scenario_data.get('threats') if isinstance(scenario_data, dict) else None
            if not isinstance(threats, list):
                report.errors.append(f'Scenario "{scenario}" must have a threats array')
                continue

            report.statistics.total_threats += len(threats)
            valid_threats = []
            for position, threat in enumerate(threats):
                threat_errors = self.validate_threat(threat, scenario, position)
                if threat_errors:
                    report.errors.extend(threat_errors)
                    continue
                valid_threats.append(Threat.from_dict(threat))

            report.statistics.valid_threats += len(valid_threats)
            if valid_threats:
                report.scenarios[scenario] = ScenarioRecord(threats=tuple(valid_threats))
                report.statistics.valid_scenarios += 1
            else:
                report.errors.append(f'Scenario "{scenario}" has no valid threats')

        stats = report.statistics
        if stats.valid_scenarios < stats.total_scenarios * 0.8:
            report.warnings.append(f"Only {stats.valid_scenarios}/{stats.total_scenarios} scenarios are valid")
        if stats.valid_threats < stats.total_threats * 0.9:
            report.warnings.append(f"Only {stats.valid_threats}/{stats.total_threats} threats are valid")

        report.is_valid = stats.valid_scenarios > 0
        return report

    def security_check(self, data: Dict[str, Any], raw_text: str = "") -> SecurityReport:
        report = SecurityReport()

        report.checks_performed.append("structure_limits_check")
        if len(data) > self.MAX_SCENARIOS:
            report.is_safe = False
            report.threats.append(f"Too many scenarios: {len(data)} (maximum {self.MAX_SCENARIOS})")
            return report

        report.checks_performed.append("content_pattern_check")
        json_string = json.dumps(data, ensure_ascii=False)
        for pattern in self.SUSPICIOUS_PATTERNS:
            if pattern.search(json_string):
                report.warnings.append(f"Potentially suspicious pattern detected: {pattern.pattern}")

        report.checks_performed.append("scenario_content_check")
        for checked, (scenario_id, scenario) in enumerate(data.items()):
            if checked >= self.MAX_URL_CHECK_SCENARIOS:
                break
            if len(scenario_id) > self.MAX_SCENARIO_ID_LENGTH:
                report.warnings.append(f"Invalid scenario ID format: {scenario_id[:50]}...")
                continue
            urls = self.URL_PATTERN.findall(json.dumps(scenario, ensure_ascii=False))
            for url in urls[:self.MAX_URLS_PER_SCENARIO]:
                if self.is_suspicious_url(url):
                    report.warnings.append(f"Potentially suspicious URL in scenario {scenario_id}: {url}")

        report.checks_performed.append("memory_usage_check")
        estimated_memory = len(json_string) * 2
        if estimated_memory > self.MAX_MEMORY_BYTES:
            report.warnings.append(f"High memory usage estimated: {round(estimated_memory / 1024 / 1024)}MB")

        report.checks_performed.append("data_integrity_check")
        if '\x00' in raw_text or '\x00' in json_string or '\\u0000' in json_string:
            report.is_safe = False
            report.threats.append(NULL_BYTE_THREAT)

        return report

    def is_suspicious_url(self, url: str) -> bool:
        try:
            hostname = urlparse(url).hostname
        except ValueError:
            return True
        if not hostname:
            return True

        if any(domain in hostname for domain in self.SUSPICIOUS_DOMAINS):
            return True
        if self.SUSPICIOUS_TLD_PATTERN.search(hostname):
            return True
        return any(pattern.search(url) for pattern in self.SUSPICIOUS_URL_PATTERNS)

    def parse(self, raw_text: str, source: str = "<inline>",
              fallback_mode: bool = False) -> KnowledgeBaseSnapshot:
        """Run the full sanitize -> structure -> parse -> validate -> security pipeline"""
        if '\x00' in raw_text:
            # json.loads rejects raw control characters as a syntax error
            raise KnowledgeBaseSecurityError([NULL_BYTE_THREAT])

        sanitized, warnings = self.sanitize(raw_text)
        self.check_structure(sanitized)

        try:
            data = json.loads(sanitized)
        except json.JSONDecodeError as e:
            raise KnowledgeBaseValidationError(f"Knowledge base is not valid JSON: {e}") from e

        if not data or not isinstance(data, dict):
            raise KnowledgeBaseValidationError("Knowledge base file is empty or invalid JSON")

        report = self.validate(data)
        if not report.is_valid:
            raise KnowledgeBaseValidationError(
                f"Knowledge base validation failed: {', '.join(report.errors[:10])}", report.errors)

        security = self.security_check(data, raw_text)
        if not security.is_safe:
            raise KnowledgeBaseSecurityError(security.threats)

        return KnowledgeBaseSnapshot.create(
            report.scenarios,
            build_index(report.scenarios),
            fallback_mode=fallback_mode,
            source=source,
            statistics=report.statistics,
            warnings=tuple(warnings + report.warnings + security.warnings),
        )


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


class KnowledgeBaseLoader:
    """
    Loads the STAC knowledge base with timeout, size limit and retries.

    Transient failures (network, timeout, I/O, HTTP 429 and 5xx) are
    retried with linear backoff. Any final failure installs the fallback knowledge base before
    the error is raised, so the loader always holds a usable snapshot after
    ``load`` returns or raises.
    """

    def __init__(self, options: Optional[LoadOptions] = None,
                 validator: Optional[KnowledgeBaseValidator] = None,
                 events: Optional[STACEventLog] = None,
                 client_factory=httpx.AsyncClient):
        self.options = options or LoadOptions()
        self.validator = validator or KnowledgeBaseValidator()
        self.events = events
        self.client_factory = client_factory
        self.snapshot: Optional[KnowledgeBaseSnapshot] = None
        self.last_error: Optional[Exception] = None

    @property
    def fallback_mode(self) -> bool:
        return self.snapshot is not None and self.snapshot.fallback_mode

    def _log(self, message: str, **context: Any) -> None:
        if self.events is not None:
            self.events.record(message, **context)
        elif context.get("error"):
            logger.warning(f"[KnowledgeBaseLoader] {message} {context}")
        else:
            logger.info(f"[KnowledgeBaseLoader] {message} {context}")

    async def load(self, source: str) -> KnowledgeBaseSnapshot:
        """
        Load and validate a knowledge base from a URL or filesystem path

        Args:
            source: http(s) URL or path of the knowledge base JSON document

        Returns:
            The new snapshot, which also becomes ``self.snapshot``

        Raises:
            STACError (or the transient transport error) once all attempts
            failed; the fallback knowledge base is installed first.
        """
        source = str(source)
        max_retries = max(1, self.options.max_retries)
        last_error: Optional[Exception] = None
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        for attempt in range(1, max_retries + 1):
            self._log(f"Loading STAC knowledge base (attempt {attempt}/{max_retries})",
                      source=source, attempt=attempt)
            try:
                raw = await self._fetch_with_timeout(source)
                snapshot = self._parse_bytes(raw, source)
            except TRANSIENT_ERRORS as e:
                last_error = e
                self._log(f"Knowledge base loading attempt {attempt} failed",
                          error=str(e), error_type=type(e).__name__, attempt=attempt)
                if not is_retryable(e):
                    break
                if attempt < max_retries:
                    await asyncio.sleep(self.options.retry_delay_ms * attempt / 1000)
                continue
            except STACError as e:
                last_error = e
                self._log("Knowledge base rejected, not retrying",
                          error=str(e), error_type=type(e).__name__, attempt=attempt)
                break

            self.snapshot = snapshot
            self.last_error = None
            self._log("STAC knowledge base loaded successfully",
                      scenario_count=len(snapshot.scenarios),
                      index_size=len(snapshot.index),
                      load_time_ms=int((loop.time() - start_time) * 1000),
                      attempt=attempt,
                      warnings=len(snapshot.warnings))
            return snapshot

        self.install_fallback(last_error)
        raise last_error

    def load_from_text(self, raw_text: str, source: str = "<inline>") -> KnowledgeBaseSnapshot:
        """Validate an in-memory knowledge base document. Failures install the fallback."""
        try:
            encoded_size = len(raw_text.encode("utf-8"))
            if encoded_size > self.options.max_size_bytes:
                raise LoadSizeExceededError(encoded_size, self.options.max_size_bytes)
            snapshot = self.validator.parse(raw_text, source=source)
        except STACError as e:
            self._log("Knowledge base rejected", error=str(e), error_type=type(e).__name__)
            self.install_fallback(e)
            raise

        self.snapshot = snapshot
        self.last_error = None
        return snapshot

    def install_fallback(self, error: Optional[Exception]) -> KnowledgeBaseSnapshot:
        """Replace the current snapshot with the minimal built-in knowledge base"""
        self.last_error = error
        self._log("Setting up STAC fallback mode", error=str(error) if error else "unknown")
        self.snapshot = self.validator.parse(json.dumps(FALLBACK_KNOWLEDGE_BASE),
                                             source="fallback", fallback_mode=True)
        return self.snapshot

    def _parse_bytes(self, raw: bytes, source: str) -> KnowledgeBaseSnapshot:
        if len(raw) > self.options.max_size_bytes:
            raise LoadSizeExceededError(len(raw), self.options.max_size_bytes)
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise KnowledgeBaseValidationError(f"Knowledge base is not valid UTF-8: {e}") from e
        return self.validator.parse(text, source=source)

    async def _fetch_with_timeout(self, source: str) -> bytes:
        try:
            return await asyncio.wait_for(self._fetch(source), timeout=self.options.timeout_ms / 1000)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise LoadTimeoutError(source, self.options.timeout_ms) from e

    async def _fetch(self, source: str) -> bytes:
        if source.startswith(("http://", "https://")):
            return await self._fetch_url(source)
        return await self._fetch_file(Path(source))

    async def _fetch_url(self, url: str) -> bytes:
        max_size = self.options.max_size_bytes
        async with self.client_factory(timeout=self.options.timeout_ms / 1000) as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()

                content_length = response.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > max_size:
                    raise LoadSizeExceededError(int(content_length), max_size)

                chunks = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > max_size:
                        raise LoadSizeExceededError(received, max_size)
                    chunks.append(chunk)
                return b"".join(chunks)

    async def _fetch_file(self, path: Path) -> bytes:
        size = path.stat().st_size
        if size > self.options.max_size_bytes:
            raise LoadSizeExceededError(size, self.options.max_size_bytes)
        return await asyncio.to_thread(path.read_bytes)
