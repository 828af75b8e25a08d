"""
STAC engine configuration
Plain parameter objects for the engine plus an environment loader for the app
"""
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_KNOWLEDGE_BASE_PATH = str(Path(__file__).resolve().parent.parent / "data" / "stac_knowledge_base.json")


@dataclass
class LoadOptions:
    """Knowledge base loading options"""
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 10000
    max_size_bytes: int = 10 * 1024 * 1024  # 10MB


@dataclass
class STACSettings:
    """Configuration for the scenario matching engine"""
    knowledge_base_source: str = DEFAULT_KNOWLEDGE_BASE_PATH
    load_options: LoadOptions = field(default_factory=LoadOptions)
    match_timeout_ms: int = 15000
    cache_max_size: int = 100
    cache_ttl_minutes: int = 30
    cache_cleanup_interval_minutes: int = 10

    @classmethod
    def from_env(cls) -> 'STACSettings':
        """Create settings from environment variables (.env supported)"""
        load_dotenv()

        load_options = LoadOptions(
            max_retries=int(os.getenv("STAC_LOAD_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("STAC_LOAD_RETRY_DELAY_MS", "1000")),
            timeout_ms=int(os.getenv("STAC_LOAD_TIMEOUT_MS", "10000")),
            max_size_bytes=int(os.getenv("STAC_MAX_KB_SIZE_BYTES", str(10 * 1024 * 1024))),
        )
        return cls(
            knowledge_base_source=os.getenv("STAC_KNOWLEDGE_BASE", DEFAULT_KNOWLEDGE_BASE_PATH),
            load_options=load_options,
            match_timeout_ms=int(os.getenv("STAC_MATCH_TIMEOUT_MS", "15000")),
            cache_max_size=int(os.getenv("STAC_CACHE_MAX_SIZE", "100")),
            cache_ttl_minutes=int(os.getenv("STAC_CACHE_TTL_MINUTES", "30")),
            cache_cleanup_interval_minutes=int(os.getenv("STAC_CACHE_CLEANUP_MINUTES", "10")),
        )
