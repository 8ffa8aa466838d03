"""Batch rule matching with an inverted keyword index.

Builds the index once per engine instead of scanning every keyword for every
transaction: O(n x k) with k the number of words in a description rather than
O(n x m) over all keywords. Answers are identical to RuleEngine: the same
scoring helpers, user rule compilation and result builders are used.
"""

import re
from collections import defaultdict
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.models.transaction import Transaction
from spendsense.services.normalization import normalize
from spendsense.services.results import CategorizationResult
from spendsense.services.rule_engine import (
    SYSTEM_RULES,
    USER_RULE_MIN_CONFIDENCE,
    CompiledUserRule,
    RuleResultBuilder,
    best_global_pattern,
    best_user_rule,
    keyword_pattern,
    keyword_weight,
    load_user_rules,
    load_verified_patterns,
    no_rule_match,
)
from spendsense.services.taxonomy_cache import CategoryCache, SubcategoryCache
from spendsense.services.transfer_classifier import TransferClassifier

logger = structlog.get_logger()

_WORD = re.compile(r"\w+")


@dataclass(frozen=True)
class _IndexedKeyword:
    group: str
    keyword: str
    position: int  # index in the group's keyword list
    weight: int
    pattern: re.Pattern


class BatchRuleEngine:
    """Categorize many transactions with rules, sharing indexes across them."""

    def __init__(
        self,
        db: AsyncSession,
        category_cache: CategoryCache,
        subcategory_cache: SubcategoryCache,
        transfer_classifier: TransferClassifier | None = None,
    ):
        self.db = db
        self.transfer_classifier = transfer_classifier or TransferClassifier()
        self.builder = RuleResultBuilder(category_cache, subcategory_cache)
        self._keyword_index: dict[str, list[_IndexedKeyword]] | None = None
        self._exact_keywords: dict[str, list[_IndexedKeyword]] = {}
        self._user_rules: dict[int, list[CompiledUserRule]] = {}

    async def categorize_batch(
        self,
        transactions: list[Transaction],
        user_id: int | None = None,
    ) -> dict[int, CategorizationResult]:
        """Map of transaction id to result (a miss result when nothing matched)."""
        if not transactions:
            return {}

        self._build_keyword_index()
        if user_id is not None and user_id not in self._user_rules:
            self._user_rules[user_id] = await load_user_rules(self.db, user_id)
        global_patterns = await load_verified_patterns(self.db)

        results: dict[int, CategorizationResult] = {}
        for tx in transactions:
            results[tx.id] = await self._match_transaction(tx, user_id, global_patterns)

        await self.db.flush()
        matched = sum(1 for r in results.values() if r.success)
        logger.info("batch_rules_matched", total=len(transactions), matched=matched)
        return results

    # ── Index ───────────────────────────────────────────

    def _build_keyword_index(self) -> None:
        if self._keyword_index is not None:
            return

        index: dict[str, list[_IndexedKeyword]] = defaultdict(list)
        exact: dict[str, list[_IndexedKeyword]] = defaultdict(list)
        for group, keywords in SYSTEM_RULES.items():
            for position, keyword in enumerate(keywords):
                kw = keyword.lower().strip()
                words = _WORD.findall(kw)
                if not words:
                    continue
                entry = _IndexedKeyword(
                    group=group,
                    keyword=keyword,
                    position=position,
                    weight=keyword_weight(keyword),
                    pattern=keyword_pattern(kw),
                )
                if words == [kw]:
                    # Whole keyword is one token: a token hit is a boundary match
                    exact[kw].append(entry)
                else:
                    index[words[0]].append(entry)

        self._keyword_index = dict(index)
        self._exact_keywords = dict(exact)

    def _score_indexed(self, normalized: str) -> tuple[str | None, int, list[str]]:
        hits: dict[str, dict[str, _IndexedKeyword]] = defaultdict(dict)
        for token in set(_WORD.findall(normalized)):
            for entry in self._exact_keywords.get(token, ()):
                hits[entry.group][entry.keyword] = entry
            for entry in self._keyword_index.get(token, ()):
                if entry.keyword not in hits[entry.group] and entry.pattern.search(normalized):
                    hits[entry.group][entry.keyword] = entry

        best_group, best_score, best_matched = None, 0, []
        # Walk groups in table order so ties resolve as in RuleEngine
        for group in SYSTEM_RULES:
            entries = hits.get(group)
            if not entries:
                continue
            score = sum(e.weight for e in entries.values())
            if score > best_score:
                ordered = sorted(entries.values(), key=lambda e: e.position)
                best_group, best_score, best_matched = group, score, [e.keyword for e in ordered]
        return best_group, best_score, best_matched

    # ── Matching ────────────────────────────────────────

    async def _match_transaction(
        self,
        transaction: Transaction,
        user_id: int | None,
        global_patterns: list,
    ) -> CategorizationResult:
        description = transaction.text
        normalized = normalize(description)

        transfer = self.transfer_classifier.classify(description, normalized)
        if transfer:
            result = await self.builder.from_transfer(transfer)
            if result:
                return result

        rules = self._user_rules.get(user_id) if user_id is not None else None
        if rules:
            compiled, confidence = best_user_rule(rules, normalized, description)
            if compiled and confidence >= USER_RULE_MIN_CONFIDENCE:
                result = await self.builder.from_user_rule(compiled, confidence, transaction)
                if result:
                    return result

        group, score, matched = self._score_indexed(normalized)
        if group and score > 0:
            result = await self.builder.from_system_rule(group, score, matched, transaction)
            if result:
                return result

        pattern, confidence = best_global_pattern(global_patterns, normalized)
        if pattern:
            result = await self.builder.from_global_pattern(pattern, confidence, transaction)
            if result:
                return result

        return no_rule_match(description)
