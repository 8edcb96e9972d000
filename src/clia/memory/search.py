"""Multi-strategy retrieval over remembered commands.

Each entry is rated against the query by five independent matchers
(exact, fuzzy, keyword, command pattern, semantic). The best of the five is
scaled by the entry's own relevance score; results are filtered, sorted and
truncated according to ``SearchOptions``.
"""

from __future__ import annotations

import re
from datetime import datetime
from functools import lru_cache

from clia.memory.errors import EntryValidationError
from clia.memory.types import (
    DEFAULT_SEARCH_OPTIONS,
    MatchType,
    MemoryEntry,
    SearchOptions,
    SearchResult,
    SortBy,
    normalize_request,
    utcnow,
)


STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "is", "are", "was", "were", "be", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should",
        "i", "you", "he", "she", "it", "we", "they",
    }
)

COMMON_COMMANDS = frozenset(
    {
        "ls", "cd", "pwd", "cat", "grep", "find", "cp", "mv", "rm", "mkdir", "rmdir",
        "chmod", "tar", "zip", "unzip", "gzip", "gunzip", "wget", "curl", "ssh", "scp",
        "rsync", "git", "npm", "pip", "apt", "yum", "brew", "docker", "kubectl",
        "vim", "nano", "emacs",
    }
)

# action -> words that imply it
ACTION_SYNONYMS: dict[str, frozenset[str]] = {
    "list": frozenset({"ls", "dir", "show", "display", "find"}),
    "find": frozenset({"search", "locate", "grep", "look"}),
    "copy": frozenset({"cp", "duplicate", "backup"}),
    "move": frozenset({"mv", "rename", "relocate"}),
    "delete": frozenset({"rm", "remove", "erase"}),
    "extract": frozenset({"unzip", "tar", "decompress"}),
    "compress": frozenset({"zip", "tar", "gzip"}),
    "edit": frozenset({"vim", "nano", "modify"}),
    "install": frozenset({"apt", "yum", "brew", "pip"}),
    "download": frozenset({"wget", "curl", "fetch"}),
}

SEMANTIC_SCORE = 0.6

_WORD_RE = re.compile(r"[^\W_]+")

KEYWORD_CACHE_SIZE = 4096


def extract_keywords(text: str) -> tuple[str, ...]:
    """Split text into lowercase alphanumeric runs, minus stop words and short tokens."""
    return tuple(
        word
        for word in (w.lower() for w in _WORD_RE.findall(text))
        if len(word) > 2 and word not in STOP_WORDS
    )


def extract_command_patterns(text: str) -> list[str]:
    """Return the words of `text` that are well-known shell command names."""
    return [w for w in (w.lower() for w in text.split()) if w in COMMON_COMMANDS]


def edit_distance(s1: str, s2: str) -> int:
    """Levenshtein distance via the full dynamic-programming matrix."""
    len1, len2 = len(s1), len(s2)
    matrix = [[0] * (len2 + 1) for _ in range(len1 + 1)]
    for i in range(len1 + 1):
        matrix[i][0] = i
    for j in range(len2 + 1):
        matrix[0][j] = j

    for i in range(1, len1 + 1):
        for j in range(1, len2 + 1):
            cost = 0 if s1[i - 1] == s2[j - 1] else 1
            matrix[i][j] = min(
                matrix[i - 1][j] + 1,
                matrix[i][j - 1] + 1,
                matrix[i - 1][j - 1] + cost,
            )
    return matrix[len1][len2]


def similarity(s1: str, s2: str) -> float:
    """1 - distance / max length, in [0, 1]."""
    if s1 == s2:
        return 1.0
    max_len = max(len(s1), len(s2))
    if max_len == 0:
        return 0.0
    return max(0.0, 1.0 - edit_distance(s1, s2) / max_len)


def _mentions_action(words: list[str], action: str, synonyms: frozenset[str]) -> bool:
    return any(word == action or word in synonyms for word in words)


class MemorySearch:
    """Scores entries against a query and ranks the matches."""

    def __init__(self, cache_size: int = KEYWORD_CACHE_SIZE):
        self._keywords = lru_cache(maxsize=cache_size)(extract_keywords)

    def search(
        self,
        query: str,
        entries: list[MemoryEntry],
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        options = options or DEFAULT_SEARCH_OPTIONS
        sort_by = self._validate_options(options)

        normalized_query = normalize_request(query)
        if not normalized_query:
            return []
        query_keywords = self._keywords(normalized_query)
        now = utcnow()

        results: list[SearchResult] = []
        for entry in entries:
            if not options.include_failures and not entry.success:
                continue
            score, match_type, reason = self.calculate_relevance(
                normalized_query, query_keywords, entry, now
            )
            if score >= options.min_score:
                results.append(
                    SearchResult(
                        entry=entry.copy(),
                        score=score,
                        reason=reason,
                        match_type=match_type,
                    )
                )

        self.sort_results(results, sort_by, now)
        if options.max_results > 0:
            results = results[: options.max_results]
        return results

    def _validate_options(self, options: SearchOptions) -> SortBy:
        if options.max_results < 0:
            raise EntryValidationError(f"max_results must be >= 0, got {options.max_results}")
        try:
            return SortBy(options.sort_by)
        except ValueError as e:
            raise EntryValidationError(f"unknown sort order: {options.sort_by!r}") from e

    def calculate_relevance(
        self,
        query: str,
        query_keywords: tuple[str, ...],
        entry: MemoryEntry,
        now: datetime | None = None,
    ) -> tuple[float, MatchType | None, str]:
        """Best matcher score scaled by 0.7 + 0.3 * entry relevance."""
        candidates = [
            (MatchType.EXACT, self.check_exact_match(query, entry)),
            (MatchType.FUZZY, self.check_fuzzy_match(query, entry)),
            (MatchType.KEYWORD, self.check_keyword_match(query_keywords, entry)),
            (MatchType.COMMAND, self.check_command_match(query, entry)),
            (MatchType.SEMANTIC, self.check_semantic_match(query, entry)),
        ]

        max_score = 0.0
        best_type: MatchType | None = None
        best_reason = ""
        for match_type, (score, reason) in candidates:
            # strict comparison: earlier matchers win ties
            if score > max_score:
                max_score, best_type, best_reason = score, match_type, reason

        final = max_score * (0.7 + entry.relevance_score(now) * 0.3)
        return final, best_type, best_reason

    # ── Matchers ──────────────────────────────────────────────

    def check_exact_match(self, query: str, entry: MemoryEntry) -> tuple[float, str]:
        request = entry.normalized_request.lower()
        if request == query:
            return 1.0, "Exact request match"
        if query in request:
            return 0.9, "Request contains query"
        if request and request in query:
            return 0.8, "Query contains request"
        return 0.0, ""

    def check_fuzzy_match(self, query: str, entry: MemoryEntry) -> tuple[float, str]:
        request_similarity = similarity(query, entry.normalized_request)
        if request_similarity > 0.7:
            return request_similarity, "Similar request pattern"

        if entry.description:
            desc_similarity = similarity(query, entry.description.lower())
            if desc_similarity > 0.6:
                return desc_similarity * 0.8, "Similar description"
        return 0.0, ""

    def check_keyword_match(
        self, query_keywords: tuple[str, ...], entry: MemoryEntry
    ) -> tuple[float, str]:
        if not query_keywords:
            return 0.0, ""

        entry_keywords = self._keywords(entry.normalized_request)
        if entry.description:
            entry_keywords += self._keywords(entry.description.lower())

        matched = [
            kw
            for kw in query_keywords
            if any(kw == ek or kw in ek for ek in entry_keywords)
        ]
        if not matched:
            return 0.0, ""

        score = len(matched) / len(query_keywords)
        return score * 0.85, "Matched keywords: " + ", ".join(matched)

    def check_command_match(self, query: str, entry: MemoryEntry) -> tuple[float, str]:
        query_commands = extract_command_patterns(query)
        entry_commands = extract_command_patterns(entry.selected_command)
        if not query_commands or not entry_commands:
            return 0.0, ""

        matched = [cmd for cmd in query_commands if cmd in entry_commands]
        if not matched:
            return 0.0, ""

        score = len(matched) / max(len(query_commands), len(entry_commands))
        return score * 0.75, "Command pattern match: " + ", ".join(matched)

    def check_semantic_match(self, query: str, entry: MemoryEntry) -> tuple[float, str]:
        query_words = query.split()
        entry_words = f"{entry.normalized_request} {entry.selected_command.lower()}".split()

        for action, synonyms in ACTION_SYNONYMS.items():
            if _mentions_action(query_words, action, synonyms) and _mentions_action(
                entry_words, action, synonyms
            ):
                return SEMANTIC_SCORE, f"Semantic action match: {action}"
        return 0.0, ""

    # ── Ranking ───────────────────────────────────────────────

    def sort_results(
        self, results: list[SearchResult], sort_by: SortBy, now: datetime | None = None
    ) -> None:
        if sort_by is SortBy.RELEVANCE:
            results.sort(key=lambda r: r.score, reverse=True)
        elif sort_by is SortBy.FREQUENCY:
            results.sort(key=lambda r: r.entry.usage_count, reverse=True)
        elif sort_by is SortBy.RECENCY:
            results.sort(key=lambda r: r.entry.timestamp, reverse=True)
        elif sort_by is SortBy.COMBINED:
            results.sort(key=lambda r: self.combined_score(r, now), reverse=True)

    @staticmethod
    def combined_score(result: SearchResult, now: datetime | None = None) -> float:
        frequency = min(result.entry.usage_count / 10.0, 1.0)
        return result.score * 0.5 + frequency * 0.3 + result.entry.relevance_score(now) * 0.2
