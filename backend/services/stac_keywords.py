"""
Keyword extraction and semantic classification for STAC scenario matching
"""
import re
from typing import Iterable, List, Sequence

from models.stac import SemanticProfile

TOKEN_SPLIT_PATTERN = re.compile(r"[\s\-_()\[\]{}.,;:!?'\"]+")

MIN_KEYWORD_LENGTH = 3

STOP_WORDS = frozenset([
    'the', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of', 'with', 'by',
    'from', 'up', 'about', 'into', 'through', 'during', 'before', 'after', 'above',
    'below', 'between', 'among', 'is', 'are', 'was', 'were', 'be', 'been', 'being',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'could', 'should',
    'may', 'might', 'must', 'can', 'this', 'that', 'these', 'those', 'a', 'an',
])

SECURITY_TERMS = [
    'authentication', 'authorization', 'encryption', 'security', 'vulnerability',
    'attack', 'threat', 'risk', 'access control', 'permission', 'privilege',
    'token', 'session', 'password', 'credential', 'certificate', 'ssl', 'tls',
    'https', 'firewall', 'intrusion', 'malware', 'virus', 'phishing',
    'injection', 'xss', 'csrf', 'sql injection', 'buffer overflow',
]

TECHNICAL_TERMS = [
    'api', 'database', 'server', 'client', 'web', 'mobile', 'application',
    'system', 'network', 'protocol', 'interface', 'service', 'endpoint',
    'json', 'xml', 'http', 'rest', 'soap', 'oauth', 'jwt', 'saml',
    'ldap', 'active directory', 'cloud', 'aws', 'azure', 'docker',
]

BUSINESS_TERMS = [
    'user', 'customer', 'account', 'profile', 'data', 'information',
    'document', 'file', 'upload', 'download', 'payment', 'transaction',
    'order', 'product', 'service', 'business', 'process', 'workflow',
]

RISK_INDICATORS = [
    'sensitive', 'confidential', 'private', 'personal', 'financial',
    'medical', 'critical', 'important', 'restricted', 'classified',
    'pii', 'phi', 'gdpr', 'compliance', 'regulation', 'audit',
]

COMPLIANCE_TERMS = [
    'pii', 'phi', 'gdpr', 'hipaa', 'pci', 'sox', 'iso 27001', 'nist',
    'owasp', 'compliance', 'regulation', 'audit',
]

VOCABULARIES = {
    "security_terms": SECURITY_TERMS,
    "technical_terms": TECHNICAL_TERMS,
    "business_terms": BUSINESS_TERMS,
    "risk_indicators": RISK_INDICATORS,
    "compliance_terms": COMPLIANCE_TERMS,
}


def is_stop_word(word: str) -> bool:
    return word in STOP_WORDS


def extract_keywords(text) -> List[str]:
    """
    Tokenize text into normalized keywords.

    Lowercases, splits on whitespace and punctuation, drops tokens shorter
    than three characters and stop words, and removes duplicates while
    keeping first-seen order. Non-string input yields no keywords.
    """
    if not text or not isinstance(text, str):
        return []

    keywords = []
    seen = set()
    for token in TOKEN_SPLIT_PATTERN.split(text.lower()):
        if len(token) < MIN_KEYWORD_LENGTH or is_stop_word(token) or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
    return keywords


def classify(text) -> SemanticProfile:
    """Find which vocabulary terms occur (as substrings) in the text"""
    if not text or not isinstance(text, str):
        return SemanticProfile()

    lower_text = text.lower()
    found = {
        category: tuple(term for term in terms if term in lower_text)
        for category, terms in VOCABULARIES.items()
    }
    return SemanticProfile(**found)


def jaccard_similarity(first: Sequence[str], second: Sequence[str]) -> float:
    """|A ∩ B| / |A ∪ B|, or 0 when either side is empty"""
    if not first or not second:
        return 0.0
    first_set, second_set = set(first), set(second)
    return len(first_set & second_set) / len(first_set | second_set)


def profile_similarity(profile: SemanticProfile, texts: Iterable[str]) -> float:
    """
    Category-averaged similarity between a profile and a list of texts.

    Every text contributes four comparisons, one per scored vocabulary
    (compliance terms are not scored); the summed Jaccard scores are
    normalized by the total number of comparisons. A scenario with many
    unrelated threats therefore scores lower than one with a single relevant
    threat.
    """
    total_score = 0.0
    comparisons = 0

    for text in texts:
        other = classify(text)
        for category in SemanticProfile.SCORED_CATEGORIES:
            total_score += jaccard_similarity(profile.terms(category), other.terms(category))
            comparisons += 1

    return total_score / comparisons if comparisons > 0 else 0.0
