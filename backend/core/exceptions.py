"""
STAC engine exceptions
"""
from typing import List, Optional


class STACError(Exception):
    """Base class for all scenario matching engine errors"""


class LoadTimeoutError(STACError):
    """Fetching the knowledge base took longer than the configured timeout"""

    def __init__(self, source: str, timeout_ms: int):
        self.source = source
        self.timeout_ms = timeout_ms
        super().__init__(f"Loading knowledge base from {source} timed out after {timeout_ms}ms")


class LoadSizeExceededError(STACError):
    """Knowledge base payload is larger than the configured ceiling"""

    def __init__(self, size_bytes: int, max_size_bytes: int):
        self.size_bytes = size_bytes
        self.max_size_bytes = max_size_bytes
        super().__init__(
            f"Knowledge base too large: {round(size_bytes / 1024 / 1024)}MB "
            f"(maximum {round(max_size_bytes / 1024 / 1024)}MB)"
        )


class KnowledgeBaseValidationError(STACError):
    """Knowledge base failed structural or semantic validation"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        super().__init__(message)


class KnowledgeBaseSecurityError(STACError):
    """Knowledge base contains dangerous content"""

    def __init__(self, threats: List[str]):
        self.threats = threats
        super().__init__(f"Knowledge base security validation failed: {', '.join(threats)}")


class MatchTimeoutError(STACError):
    """Scenario matching did not finish within the match timeout"""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Scenario matching timed out after {timeout_ms}ms")


class MatchCancelledError(STACError):
    """Raised inside the matcher when its cancellation token fires"""


class CacheError(STACError):
    """Result cache failure. Always absorbed by the cache itself."""
