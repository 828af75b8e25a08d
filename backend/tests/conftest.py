"""
Shared fixtures for the STAC engine tests
"""
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import DEFAULT_KNOWLEDGE_BASE_PATH
from services.stac_knowledge_base import KnowledgeBaseValidator

SQL_INJECTION_TEXT = (
    "This application handles user input for database queries and may be "
    "vulnerable to SQL injection attacks"
)


def make_threat(name, details="", requirement=None, test_case=None):
    requirement = requirement or {"name": f"{name} Requirement", "details": f"Mitigate {name.lower()}"}
    return {
        "name": name,
        "details": details,
        "security_requirement": requirement,
        "security_design": {"name": f"{name} Design", "details": f"Design against {name.lower()}"},
        "test_case": test_case or {"name": f"{name} Test", "details": f"Verify {name.lower()} is mitigated"},
        "industry_standard": None,
    }


@pytest.fixture
def sample_kb_text():
    with open(DEFAULT_KNOWLEDGE_BASE_PATH, encoding="utf-8") as f:
        return f.read()


@pytest.fixture
def sample_kb_dict(sample_kb_text):
    return json.loads(sample_kb_text)


@pytest.fixture
def sample_snapshot(sample_kb_text):
    return KnowledgeBaseValidator().parse(sample_kb_text, source="sample")


@pytest.fixture
def sample_kb_file(tmp_path, sample_kb_text):
    path = tmp_path / "stac_knowledge_base.json"
    path.write_text(sample_kb_text, encoding="utf-8")
    return path
