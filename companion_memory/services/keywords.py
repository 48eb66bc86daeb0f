"""
Keyword extraction and corpus keyword index for memory retrieval.

Keywords are lowercased tokens with stop words removed, plus entity-like
terms (technology names, proper nouns, CamelCase identifiers, acronyms).
"""

import math
import re
from typing import Dict, Iterable, List, Optional, Sequence, Set

STOP_WORDS = frozenset([
    'a', 'an', 'and', 'are', 'as', 'at', 'be', 'by', 'for', 'from', 'has', 'he', 'in', 'is', 'it', 'its', 'of', 'on',
    'or', 'that', 'the', 'to', 'was', 'were', 'will', 'with', 'this', 'they', 'their', 'them', 'been', 'have', 'had',
    'being', 'but', 'not', 'what', 'when', 'where', 'which', 'who', 'whom', 'why', 'how', 'all', 'each', 'every',
    'both', 'few', 'more', 'most', 'other', 'some', 'such', 'no', 'nor', 'only', 'own', 'same', 'so', 'than', 'too',
    'very', 'just', 'can', 'should', 'now', 'also', 'into', 'over', 'after', 'before', 'between', 'under', 'again',
    'then', 'once', 'here', 'there', 'about', 'if',
    # Common verbs
    'do', 'does', 'did', 'doing', 'would', 'could', 'might', 'must', 'shall', 'may', 'get', 'got', 'getting', 'make',
    'made', 'making', 'go', 'goes', 'went', 'going', 'come', 'comes', 'came', 'coming', 'take', 'takes', 'took',
    'taking', 'give', 'gives', 'gave', 'giving', 'know', 'knows', 'knew', 'knowing', 'think', 'thinks', 'thought',
    'see', 'sees', 'saw', 'seeing', 'want', 'wants', 'wanted', 'wanting', 'use', 'uses', 'used', 'using', 'find',
    'finds', 'found', 'finding', 'tell', 'tells', 'told', 'telling', 'ask', 'asks', 'asked', 'asking', 'work',
    'works', 'worked', 'working', 'seem', 'seems', 'seemed', 'feel', 'feels', 'felt', 'feeling', 'try', 'tries',
    'tried', 'trying', 'leave', 'leaves', 'left', 'leaving', 'call', 'calls', 'called', 'need', 'needs', 'needed',
    'needing', 'keep', 'keeps', 'kept', 'let', 'lets', 'putting', 'put', 'mean', 'means', 'meant', 'become',
    'becomes', 'became', 'becoming', 'begin', 'begins', 'began',
    # Pronouns
    'i', 'me', 'my', 'myself', 'we', 'our', 'ours', 'ourselves', 'you', 'your', 'yours', 'yourself', 'yourselves',
    'she', 'her', 'hers', 'herself', 'him', 'his', 'himself', 'itself', 'themselves',
    # Words every memory shares
    'user', 'person', 'like', 'likes', 'prefer', 'prefers', 'favorite', 'mentioned', 'said', 'shared', 'discussed',
    'talked',
])

TECH_TERMS = frozenset([
    # Languages
    'javascript', 'typescript', 'python', 'rust', 'go', 'java', 'kotlin', 'swift', 'ruby', 'php', 'c++', 'c#',
    'scala', 'haskell', 'elixir',
    # Frameworks
    'react', 'vue', 'angular', 'svelte', 'next', 'nextjs', 'nuxt', 'remix', 'express', 'fastify', 'nest', 'nestjs',
    'django', 'flask', 'fastapi', 'rails', 'spring', 'laravel', 'phoenix',
    # Tools and platforms
    'node', 'nodejs', 'deno', 'bun', 'npm', 'yarn', 'pnpm', 'vite', 'webpack', 'rollup', 'esbuild', 'docker',
    'kubernetes', 'k8s', 'aws', 'gcp', 'azure', 'vercel', 'netlify', 'cloudflare', 'github', 'gitlab', 'bitbucket',
    'git',
    # Databases
    'postgres', 'postgresql', 'mysql', 'sqlite', 'mongodb', 'redis', 'dynamodb', 'firebase', 'supabase', 'prisma',
    'drizzle',
    # AI/ML
    'openai', 'anthropic', 'claude', 'gpt', 'chatgpt', 'llm', 'ai', 'ml', 'tensorflow', 'pytorch', 'huggingface',
    # Web and systems
    'api', 'rest', 'graphql', 'websocket', 'http', 'https', 'json', 'xml', 'css', 'html', 'sass', 'less', 'tailwind',
    'bootstrap', 'linux', 'macos', 'windows', 'ubuntu', 'debian',
])

# Share of the keyword score from IDF-weighted overlap; the rest is the overlap coefficient
IDF_OVERLAP_SHARE = 0.8
UNSEEN_KEYWORD_WEIGHT = 2.0

_PROPER_NOUN = re.compile(r'\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b')
_CAMEL_CASE = re.compile(r'\b[A-Z][a-z]+[A-Z][a-zA-Z]*\b')
_ACRONYM = re.compile(r'\b[A-Z]{2,}\b')
_TOKEN = re.compile(r'[A-Za-z0-9_][A-Za-z0-9_+#]*')
_NUMBER = re.compile(r'^\d+$')

# Lookarounds instead of \b so terms ending in symbols (c++, c#) still match
_TECH_TERM_PATTERNS = {
    term: re.compile(r'(?<![\w+#])' + re.escape(term) + r'(?![\w+#])', re.IGNORECASE)
    for term in TECH_TERMS
}


def extract_keyword_entities(text: str) -> List[str]:
    """Entity-like terms: technology names, proper nouns, CamelCase and acronyms.

    Technology names come back lowercased, other entities keep their casing.
    """
    if not text:
        return []

    entities: List[str] = []
    seen: Set[str] = set()

    def add(term: str) -> None:
        if term not in seen:
            seen.add(term)
            entities.append(term)

    for term, pattern in _TECH_TERM_PATTERNS.items():
        if pattern.search(text):
            add(term)

    for match in _PROPER_NOUN.findall(text):
        if match.lower() not in STOP_WORDS and len(match) > 1:
            add(match)

    for match in _CAMEL_CASE.findall(text):
        add(match)

    for match in _ACRONYM.findall(text):
        add(match)

    return entities


def tokenize(text: str) -> List[str]:
    tokens = []
    for token in _TOKEN.findall(text or ''):
        lower = token.lower()
        if lower not in TECH_TERMS:
            lower = lower.rstrip('+#')
        if lower:
            tokens.append(lower)
    return tokens


def extract_keywords(text: str) -> List[str]:
    """
    Extract normalized keywords from free text.

    Args:
        text: Memory content, context or query text

    Returns:
        Unique lowercased keywords in first-seen order
    """
    keywords: Dict[str, None] = {}

    for entity in extract_keyword_entities(text):
        lower = entity.lower()
        if lower not in STOP_WORDS:
            keywords[lower] = None

    for token in tokenize(text):
        if token in STOP_WORDS:
            continue
        if len(token) < 3 and token not in TECH_TERMS:
            continue
        if _NUMBER.match(token):
            continue
        keywords[token] = None

    return list(keywords)


def memory_text(content: str, context: Optional[str] = None) -> str:
    """Text a memory is indexed by: content plus its optional context."""
    return f'{content} {context}' if context else content


def jaccard_similarity(first: Iterable[str], second: Iterable[str]) -> float:
    """Jaccard similarity of two keyword collections; two empty sets are identical."""
    a = {k.lower() for k in first}
    b = {k.lower() for k in second}
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    intersection = len(a & b)
    return intersection / (len(a) + len(b) - intersection)


def overlap_coefficient(first: Iterable[str], second: Iterable[str]) -> float:
    """|A ∩ B| / min(|A|, |B|), 0 when either side is empty."""
    a = {k.lower() for k in first}
    b = {k.lower() for k in second}
    if not a or not b:
        return 0.0
    return len(a & b) / min(len(a), len(b))


def matching_keywords(query_keywords: Sequence[str], memory_keywords: Iterable[str]) -> List[str]:
    """Query keywords also present in the memory, in query order."""
    memory_set = {k.lower() for k in memory_keywords}
    return [k for k in query_keywords if k.lower() in memory_set]


class KeywordIndex:
    """Document frequency of each keyword over a corpus of memories."""

    def __init__(self):
        self.document_count = 0
        self.document_frequency: Dict[str, int] = {}

    @classmethod
    def build(cls, keyword_sets: Iterable[Iterable[str]]) -> 'KeywordIndex':
        index = cls()
        for keywords in keyword_sets:
            index.add_document(keywords)
        return index

    def add_document(self, keywords: Iterable[str]) -> None:
        self.document_count += 1
        for keyword in {k.lower() for k in keywords}:
            self.document_frequency[keyword] = self.document_frequency.get(keyword, 0) + 1

    def weight(self, keyword: str) -> float:
        """IDF-style weight: ln(N / df) + 1, or a fixed high weight for unseen keywords."""
        frequency = self.document_frequency.get(keyword.lower(), 0)
        if frequency <= 0:
            return UNSEEN_KEYWORD_WEIGHT
        return math.log(max(self.document_count, 1) / frequency) + 1.0

    def __len__(self) -> int:
        return self.document_count


def weighted_keyword_score(query_keywords: Sequence[str], memory_keywords: Iterable[str], index: KeywordIndex) -> float:
    """
    Keyword relevance of a memory to a query, in [0, 1].

    Rare shared keywords count for more than common ones. The IDF-weighted
    overlap is blended with the plain overlap coefficient so short memories
    sharing most of their keywords with the query still score.

    Args:
        query_keywords: Keywords extracted from the query
        memory_keywords: Keywords extracted from the memory text
        index: Corpus index the memory belongs to

    Returns:
        Blended keyword score
    """
    memory_set = {k.lower() for k in memory_keywords}
    query_set = list(dict.fromkeys(k.lower() for k in query_keywords))
    if not query_set or not memory_set:
        return 0.0

    matched = 0.0
    possible = 0.0
    for keyword in query_set:
        weight = index.weight(keyword)
        possible += weight
        if keyword in memory_set:
            matched += weight

    weighted = matched / possible if possible > 0 else 0.0
    return IDF_OVERLAP_SHARE * weighted + (1.0 - IDF_OVERLAP_SHARE) * overlap_coefficient(query_set, memory_set)
