import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import make_threat
from core.config import LoadOptions
from core.exceptions import (
    KnowledgeBaseSecurityError,
    KnowledgeBaseValidationError,
    LoadSizeExceededError,
    LoadTimeoutError,
)
from services.stac_knowledge_base import (
    FALLBACK_SCENARIO,
    KnowledgeBaseLoader,
    KnowledgeBaseValidator,
)
from services.stac_matcher import ScenarioMatcher


def fast_options(**overrides):
    options = dict(max_retries=3, retry_delay_ms=1, timeout_ms=2000)
    options.update(overrides)
    return LoadOptions(**options)


# ==================== Validator ====================

def test_parse_valid_knowledge_base(sample_kb_text, sample_kb_dict):
    snapshot = KnowledgeBaseValidator().parse(sample_kb_text, source="sample")

    assert set(snapshot.scenarios) == set(sample_kb_dict)
    assert snapshot.fallback_mode is False
    assert snapshot.statistics.valid_scenarios == len(sample_kb_dict)
    assert snapshot.threat_count == snapshot.statistics.valid_threats
    sql = snapshot.scenarios["Web Application Security"].threats[0]
    assert sql.name == "SQL Injection"
    assert sql.security_requirement.name == "Input Validation"


def test_snapshot_is_read_only(sample_snapshot):
    with pytest.raises(TypeError):
        sample_snapshot.scenarios["New"] = None
    with pytest.raises(TypeError):
        sample_snapshot.index["new"] = frozenset()


def test_check_structure_unbalanced_braces():
    with pytest.raises(KnowledgeBaseValidationError, match="unbalanced"):
        KnowledgeBaseValidator().check_structure('{"a": {"threats": []}')


def test_check_structure_ignores_braces_in_strings():
    KnowledgeBaseValidator().check_structure('{"a": "text with } and \\" {"}')


def test_check_structure_too_deep():
    validator = KnowledgeBaseValidator()
    deep = "{" * (validator.MAX_NESTING_DEPTH + 1) + "}" * (validator.MAX_NESTING_DEPTH + 1)
    with pytest.raises(KnowledgeBaseValidationError, match="deeply nested"):
        validator.check_structure(deep)


def test_sanitize_removes_dangerous_patterns():
    text, warnings = KnowledgeBaseValidator().sanitize(
        'details: <script>alert(1)</script> then javascript:void and eval (x) and window.location'
    )
    assert "<script>" not in text
    assert "javascript:" not in text
    assert "eval" not in text
    assert "window." not in text
    assert "[REMOVED]" in text
    assert len(warnings) >= 3


def test_validate_drops_invalid_threats_and_keeps_scenario():
    data = {
        "Mixed": {"threats": [make_threat("Good Threat"), {"name": "Broken"}]},
        "Empty": {"threats": [{"details": "no name"}]},
    }
    report = KnowledgeBaseValidator().validate(data)

    assert report.is_valid
    assert list(report.scenarios) == ["Mixed"]
    assert [t.name for t in report.scenarios["Mixed"].threats] == ["Good Threat"]
    assert report.statistics.total_threats == 3
    assert report.statistics.valid_threats == 1
    assert any("Empty" in error for error in report.errors)


def test_validate_rejects_non_object_and_empty():
    validator = KnowledgeBaseValidator()
    assert not validator.validate([]).is_valid
    assert not validator.validate({}).is_valid


def test_parse_rejects_when_no_scenario_is_valid():
    text = json.dumps({"Only": {"threats": [{"name": "x"}]}})
    with pytest.raises(KnowledgeBaseValidationError) as exc_info:
        KnowledgeBaseValidator().parse(text)
    assert exc_info.value.errors


def test_parse_rejects_null_bytes():
    text = json.dumps({"Scenario": {"threats": [make_threat("Null", details="bad\u0000byte")]}})
    with pytest.raises(KnowledgeBaseSecurityError):
        KnowledgeBaseValidator().parse(text)


def test_parse_rejects_raw_null_byte_before_json_parsing():
    text = '{"Scenario": {"threats": [{"name": "Null", "details": "bad\x00byte"}]}}'
    with pytest.raises(KnowledgeBaseSecurityError) as exc_info:
        KnowledgeBaseValidator().parse(text)
    assert "Null bytes" in str(exc_info.value)


def test_security_check_scenario_limit():
    validator = KnowledgeBaseValidator()
    validator.MAX_SCENARIOS = 2
    data = {f"Scenario {i}": {"threats": [make_threat("Threat")]} for i in range(3)}
    report = validator.security_check(data)
    assert not report.is_safe
    assert "Too many scenarios" in report.threats[0]


def test_security_check_flags_suspicious_urls():
    data = {"Scenario": {"threats": [make_threat("Threat", details="see https://bit.ly/abc and https://owasp.org/top10")]}}
    report = KnowledgeBaseValidator().security_check(data)
    assert report.is_safe
    assert any("bit.ly" in warning for warning in report.warnings)
    assert not any("owasp.org" in warning for warning in report.warnings)


@pytest.mark.parametrize("url,suspicious", [
    ("http://192.168.1.10/kb.json", True),
    ("http://localhost:8080/kb", True),
    ("https://free.tk/kb", True),
    ("https://pastebin.com/raw/x", True),
    ("https://owasp.org/www-project-top-ten/", False),
])
def test_is_suspicious_url(url, suspicious):
    assert KnowledgeBaseValidator().is_suspicious_url(url) is suspicious


# ==================== Loader ====================

@pytest.mark.asyncio
async def test_load_from_file(sample_kb_file, sample_kb_dict):
    loader = KnowledgeBaseLoader(fast_options())
    snapshot = await loader.load(str(sample_kb_file))

    assert loader.snapshot is snapshot
    assert not loader.fallback_mode
    assert set(snapshot.scenarios) == set(sample_kb_dict)
    for scenario in sample_kb_dict:
        assert any(scenario in ids for ids in snapshot.index.values())


@pytest.mark.asyncio
async def test_unbalanced_braces_fails_once_and_enters_fallback(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text('{"Web": {"threats": [}', encoding="utf-8")
    loader = KnowledgeBaseLoader(fast_options())

    with patch.object(loader, "_fetch", wraps=loader._fetch) as fetch:
        with pytest.raises(KnowledgeBaseValidationError):
            await loader.load(str(path))

    assert fetch.call_count == 1
    assert loader.fallback_mode
    assert FALLBACK_SCENARIO in loader.snapshot.scenarios

    matches = ScenarioMatcher().match("authentication failure", loader.snapshot.index, loader.snapshot.scenarios)
    assert len(matches) >= 1
    assert matches[0].scenario == FALLBACK_SCENARIO


@pytest.mark.asyncio
async def test_transient_errors_are_retried(sample_kb_text):
    loader = KnowledgeBaseLoader(fast_options(max_retries=3))
    fetch = AsyncMock(side_effect=[OSError("disk busy"), httpx.ConnectError("refused"), sample_kb_text.encode()])

    with patch.object(loader, "_fetch", fetch):
        snapshot = await loader.load("kb.json")

    assert fetch.call_count == 3
    assert not snapshot.fallback_mode
    assert loader.last_error is None


@pytest.mark.asyncio
async def test_retries_exhausted_raises_last_error_and_falls_back():
    loader = KnowledgeBaseLoader(fast_options(max_retries=2))
    fetch = AsyncMock(side_effect=OSError("missing"))

    with patch.object(loader, "_fetch", fetch):
        with pytest.raises(OSError):
            await loader.load("missing.json")

    assert fetch.call_count == 2
    assert loader.fallback_mode
    assert isinstance(loader.last_error, OSError)


@pytest.mark.asyncio
async def test_load_timeout():
    loader = KnowledgeBaseLoader(fast_options(max_retries=1, timeout_ms=20))

    async def slow_fetch(source):
        import asyncio
        await asyncio.sleep(1)
        return b"{}"

    with patch.object(loader, "_fetch", slow_fetch):
        with pytest.raises(LoadTimeoutError):
            await loader.load("slow.json")
    assert loader.fallback_mode


@pytest.mark.asyncio
async def test_file_size_limit(sample_kb_file):
    loader = KnowledgeBaseLoader(fast_options(max_size_bytes=100))
    with pytest.raises(LoadSizeExceededError):
        await loader.load(str(sample_kb_file))
    assert loader.fallback_mode


@pytest.mark.asyncio
async def test_load_from_url(sample_kb_text):
    def handler(request):
        return httpx.Response(200, content=sample_kb_text.encode("utf-8"))

    def client_factory(**kwargs):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    loader = KnowledgeBaseLoader(fast_options(), client_factory=client_factory)
    snapshot = await loader.load("https://kb.example.com/stac.json")
    assert "Web Application Security" in snapshot.scenarios


@pytest.mark.asyncio
async def test_url_content_length_over_limit():
    def handler(request):
        return httpx.Response(200, content=b"{" + b" " * 500 + b"}")

    def client_factory(**kwargs):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    loader = KnowledgeBaseLoader(fast_options(max_size_bytes=100), client_factory=client_factory)
    with pytest.raises(LoadSizeExceededError):
        await loader.load("https://kb.example.com/stac.json")


def test_load_from_text_rejects_and_falls_back():
    loader = KnowledgeBaseLoader(fast_options())
    with pytest.raises(KnowledgeBaseValidationError):
        loader.load_from_text("not json at all")
    assert loader.fallback_mode


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code,expected_requests", [(404, 1), (403, 1), (503, 3), (429, 3)])
async def test_http_status_retries_only_throttling_and_server_errors(status_code, expected_requests):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(status_code)

    def client_factory(**kwargs):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    loader = KnowledgeBaseLoader(fast_options(max_retries=3), client_factory=client_factory)
    with pytest.raises(httpx.HTTPStatusError):
        await loader.load("https://kb.example.com/stac.json")

    assert len(requests) == expected_requests
    assert loader.fallback_mode
