"""Rule-based categorization: transfers, user rules, system keywords, global patterns.

The cheapest tier. Tried in order, first hit wins:

1. Transfer classifier (P2P / self / wallet detection)
2. The user's own rules (only accepted at >= 0.70)
3. System keyword table, scored by matched keyword weight
4. Verified cross-user global patterns

Scoring helpers and user rule compilation live at module level so the batch
engine produces exactly the same answers.
"""

import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from spendsense.models.global_pattern import GlobalPattern
from spendsense.models.transaction import Transaction
from spendsense.models.user_rule import UserRule
from spendsense.services.normalization import normalize
from spendsense.services.results import CategorizationResult, MissReason, tx_kind_for
from spendsense.services.taxonomy_cache import CategoryCache, SubcategoryCache
from spendsense.services.transfer_classifier import TransferClassifier

logger = structlog.get_logger()

# ── System keyword table ────────────────────────────────
# Matched with word boundaries against the normalized description.
# Dict order is the tie-break order between equally scored groups.

SYSTEM_RULES: dict[str, tuple[str, ...]] = {
    "food": (
        "zomato", "swiggy", "uber eats", "dominos", "pizza", "mcdonalds", "kfc",
        "starbucks", "dunkin", "cafe", "restaurant", "food", "dining", "hotel",
        "kitchen", "biryani", "burger", "coffee", "tea", "bakery", "sweet",
        "foodpanda", "payzomato", "payswiggy", "starbucksin",
    ),
    "transport": (
        "uber", "ola", "rapido", "metro", "irctc", "railway", "bus", "cab", "taxi",
        "petrol", "diesel", "fuel", "parking", "toll", "fastag", "airlines",
        "flight", "makemytrip", "goibibo", "redbus", "ola money", "indigo",
        "spicejet", "vistara", "air india",
    ),
    "shopping": (
        "amazon", "flipkart", "myntra", "ajio", "nykaa", "meesho", "snapdeal",
        "shopclues", "reliance", "bigbasket", "grofers", "blinkit", "zepto",
        "instamart", "mall", "store", "mart", "retail", "bazaar", "grofersindia",
        "groceries", "bharatpe",
    ),
    "utilities": (
        "electricity", "electric", "bescom", "power", "water", "gas", "lpg",
        "bharat gas", "indane", "hp gas", "airtel", "jio", "vodafone", "vi",
        "bsnl", "internet", "broadband", "wifi", "mobile", "recharge", "dth",
        "tata sky", "dish tv", "netflix", "amazon prime", "hotstar", "spotify",
        "disney", "youtube premium", "subscription", "playstore", "google play",
        "jiomobili",
    ),
    "housing": (
        "rent", "rental", "house", "flat", "apartment", "society", "maintenance",
        "housing", "property", "pg", "hostel", "lease", "rentomojo", "rentomojo42",
        "furlenco", "nestaway", "nobroker",
    ),
    "health": (
        "hospital", "clinic", "doctor", "medical", "medicine", "pharmacy", "apollo",
        "medplus", "netmeds", "pharmeasy", "practo", "lab", "test", "health",
        "dental", "eye", "diagnostic", "insurance premium",
    ),
    "entertainment": (
        "pvr", "inox", "cinema", "movie", "bookmyshow", "event", "concert", "game",
        "gaming", "playstation", "xbox", "steam", "pub", "bar", "club",
    ),
    "business": (
        "office", "business", "professional", "consulting", "freelance", "invoice",
        "client", "vendor", "supplier",
    ),
    # Payment rails (neft, upi, imps...) are deliberately absent: they say how
    # money moved, not what it was for. The transfer classifier handles them.
    "transfer": (
        "self", "own account", "internal", "fund transfer", "to self", "own transfer",
    ),
    "salary": (
        "salary", "payroll", "wages", "income", "credited by employer",
        "salary credit", "payroll credit", "cms", "ltimindtree", "tcs", "infosys",
        "wipro", "hcl", "cognizant", "accenture", "capgemini", "tech mahindra",
    ),
    "investment": (
        "mutual fund", "mf", "sip", "stock", "share", "demat", "zerodha", "groww",
        "upstox", "kuvera", "coin", "investment", "fd", "fixed deposit", "rd",
        "recurring deposit", "ppf", "nps", "nifty", "sensex",
    ),
    "emi": (
        "emi", "loan", "equated monthly", "installment", "bajaj", "hdfc loan",
        "personal loan", "home loan", "car loan", "credit card payment",
        "loan repayment", "bajajpay", "credit ca", "credit card", "bil",
    ),
    "tax": (
        "income tax", "gst", "tds", "tax", "government", "challan", "e-filing",
        "itr", "income tax return", "advance tax", "self assessment",
    ),
    "dividend": (
        "dividend", "div", "intdiv", "interim dividend", "final dividend", "bonus",
        "ach div", "nsdl", "cdsl", "depository",
    ),
}

# Keyword groups that are not categories of their own:
# group -> (category slug, subcategory slug, tx_kind on credit)
GROUP_ALIASES: dict[str, tuple[str, str, str]] = {
    "dividend": ("salary", "salary-investment", "income_investment"),
}

USER_RULE_MIN_CONFIDENCE = 0.70
NO_MATCH_EXPLANATION = "No rule matches found"


# ── Scoring (shared with the batch engine) ──────────────


def keyword_weight(keyword: str) -> int:
    """Multi-word keywords are stronger evidence."""
    return 3 if len(keyword.split()) > 1 else 2


def keyword_pattern(keyword: str) -> re.Pattern:
    return re.compile(rf"\b{re.escape(keyword.lower())}\b")


def system_rule_confidence(score: int, matched_keywords: Iterable[str]) -> float:
    base = 0.90 if any(len(k.split()) > 1 for k in matched_keywords) else 0.75
    return min(0.95, base + score * 0.02)


def global_pattern_confidence(user_count: int, match_count: int) -> float:
    user_boost = min((user_count or 0) * 0.02, 0.10)
    match_boost = min(math.log((match_count or 0) + 1) * 0.02, 0.05)
    return min(0.90, 0.75 + user_boost + match_boost)


_SYSTEM_PATTERNS: dict[str, list[tuple[str, re.Pattern]]] = {
    group: [(kw, keyword_pattern(kw)) for kw in keywords]
    for group, keywords in SYSTEM_RULES.items()
}


def score_system_rules(normalized: str) -> tuple[str | None, int, list[str]]:
    """Best keyword group for a text: (group, score, matched keywords in table order)."""
    best_group, best_score, best_matched = None, 0, []
    for group, patterns in _SYSTEM_PATTERNS.items():
        score = 0
        matched = []
        for keyword, pattern in patterns:
            if pattern.search(normalized):
                score += keyword_weight(keyword)
                matched.append(keyword)
        if score > best_score:
            best_group, best_score, best_matched = group, score, matched
    return best_group, best_score, best_matched


# ── User rules ──────────────────────────────────────────


class CompiledUserRule:
    """A user rule with its match pattern compiled once."""

    def __init__(self, rule: UserRule):
        self.rule = rule
        self.pattern = rule.pattern.lower()
        self._regex: re.Pattern | None = None
        self._words: list[re.Pattern] = []
        self.valid = True

        if rule.pattern_type == "regex":
            try:
                self._regex = re.compile(rule.pattern, re.IGNORECASE)
            except re.error:
                # Stored before validation existed; skip rather than fail the batch
                self.valid = False
                logger.warning("user_rule_invalid_regex", rule_id=rule.id)
        elif rule.pattern_type == "keyword":
            self._words = [keyword_pattern(w) for w in self.pattern.split()]

    def confidence(self, text: str | None) -> float | None:
        """Confidence if the rule matches ``text``, else None."""
        if not self.valid or not self.rule.is_active:
            return None
        text = (text or "").lower().strip()
        if not text:
            return None

        if self.rule.pattern_type == "exact":
            return 0.98 if text == self.pattern else None
        if self.rule.pattern_type == "keyword":
            if not self._words or not all(p.search(text) for p in self._words):
                return None
            boost = min((self.rule.match_count or 0) * 0.01, 0.10)
            return min(0.85 + boost, 0.98)
        if self.rule.pattern_type == "regex":
            return 0.90 if self._regex.search(text) else None
        return None


async def load_user_rules(db: AsyncSession, user_id: int) -> list[CompiledUserRule]:
    """Active rules of a user, highest priority first."""
    result = await db.execute(
        select(UserRule)
        .where(UserRule.user_id == user_id, UserRule.is_active.is_(True))
        .order_by(UserRule.priority.desc(), UserRule.match_count.desc(), UserRule.id)
    )
    return [CompiledUserRule(rule) for rule in result.scalars().all()]


def best_user_rule(
    rules: list[CompiledUserRule],
    normalized: str,
    description: str | None,
) -> tuple[CompiledUserRule | None, float]:
    """Highest-confidence rule, trying the normalized text before the raw one."""
    best, best_confidence = None, 0.0
    for compiled in rules:
        confidence = compiled.confidence(normalized)
        if confidence is None:
            confidence = compiled.confidence(description)
        if confidence is not None and confidence > best_confidence:
            best, best_confidence = compiled, confidence
    return best, best_confidence


async def load_verified_patterns(db: AsyncSession) -> list[GlobalPattern]:
    result = await db.execute(
        select(GlobalPattern)
        .where(GlobalPattern.is_verified.is_(True))
        .order_by(GlobalPattern.match_count.desc(), GlobalPattern.id)
    )
    return list(result.scalars().all())


def best_global_pattern(
    patterns: list[GlobalPattern], normalized: str
) -> tuple[GlobalPattern | None, float]:
    best, best_confidence = None, 0.0
    if not normalized:
        return None, 0.0
    for pattern in patterns:
        if not pattern.matches(normalized):
            continue
        confidence = global_pattern_confidence(pattern.user_count, pattern.match_count)
        if confidence > best_confidence:
            best, best_confidence = pattern, confidence
    return best, best_confidence


def _record_match(record) -> None:
    record.match_count = (record.match_count or 0) + 1
    record.last_matched_at = datetime.now(timezone.utc)


# ── Result builders (shared with the batch engine) ──────


class RuleResultBuilder:
    """Turns raw matches into CategorizationResults using the taxonomy caches."""

    def __init__(self, category_cache: CategoryCache, subcategory_cache: SubcategoryCache):
        self.category_cache = category_cache
        self.subcategory_cache = subcategory_cache

    async def from_transfer(self, transfer) -> CategorizationResult | None:
        category = await self.category_cache.find_by_slug("transfer")
        if category is None:
            return None
        subcategory = await self.subcategory_cache.find_by_slug(transfer.subcategory_slug)
        return CategorizationResult(
            method="transfer_classifier",
            category=category,
            subcategory=await self.subcategory_cache.resolve_for_category(category, subcategory),
            tx_kind=transfer.tx_kind,
            counterparty_name=transfer.counterparty_name,
            confidence=transfer.confidence,
            explanation=transfer.explanation,
        )

    async def from_user_rule(
        self,
        compiled: CompiledUserRule,
        confidence: float,
        transaction: Transaction,
    ) -> CategorizationResult | None:
        rule = compiled.rule
        category = await self.category_cache.find_by_id(rule.category_id)
        if category is None:
            logger.warning("user_rule_unknown_category", rule_id=rule.id, category_id=rule.category_id)
            return None

        subcategory = await self.subcategory_cache.find_by_id(rule.subcategory_id)
        if subcategory is None or subcategory.category_id != category.id:
            subcategory = await self.subcategory_cache.find_by_category_and_keyword(
                category, [rule.pattern]
            )

        _record_match(rule)
        return CategorizationResult(
            method="user_rule",
            category=category,
            subcategory=subcategory,
            tx_kind=tx_kind_for(category.slug, transaction.transaction_type),
            confidence=confidence,
            explanation=f"Matched user rule: '{rule.pattern}'",
            matched_keywords=[rule.pattern],
        )

    async def from_system_rule(
        self,
        group: str,
        score: int,
        matched_keywords: list[str],
        transaction: Transaction,
    ) -> CategorizationResult | None:
        alias = GROUP_ALIASES.get(group)
        category_slug = alias[0] if alias else group
        category = await self.category_cache.find_by_slug(category_slug)
        if category is None:
            return None

        if alias:
            subcategory = await self.subcategory_cache.resolve_for_category(
                category, await self.subcategory_cache.find_by_slug(alias[1])
            )
            tx_kind = alias[2] if transaction.transaction_type == "credit" else "spend"
        else:
            subcategory = await self.subcategory_cache.find_by_category_and_keyword(
                category, matched_keywords
            )
            tx_kind = tx_kind_for(category.slug, transaction.transaction_type)

        return CategorizationResult(
            method="rule",
            category=category,
            subcategory=subcategory,
            tx_kind=tx_kind,
            confidence=system_rule_confidence(score, matched_keywords),
            explanation=f"Matched keywords: {', '.join(matched_keywords)}",
            matched_keywords=list(matched_keywords),
        )

    async def from_global_pattern(
        self,
        pattern: GlobalPattern,
        confidence: float,
        transaction: Transaction,
    ) -> CategorizationResult | None:
        category = await self.category_cache.find_by_id(pattern.category_id)
        if category is None:
            return None
        subcategory = await self.subcategory_cache.find_by_category_and_keyword(
            category, [pattern.pattern]
        )
        _record_match(pattern)
        return CategorizationResult(
            method="global_pattern",
            category=category,
            subcategory=subcategory,
            tx_kind=tx_kind_for(category.slug, transaction.transaction_type),
            confidence=confidence,
            explanation=f"Matched global pattern '{pattern.pattern}' ({pattern.user_count} users)",
            matched_keywords=[pattern.pattern],
        )


def no_rule_match(description: str | None) -> CategorizationResult:
    reason = MissReason.NO_MATCH if (description or "").strip() else MissReason.BLANK_DESCRIPTION
    return CategorizationResult.miss("rule", reason, NO_MATCH_EXPLANATION)


# ── Single-transaction engine ───────────────────────────


class RuleEngine:
    """Categorize one transaction with rules only. No network calls."""

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

    async def categorize(
        self,
        transaction: Transaction,
        user_id: int | None = None,
    ) -> CategorizationResult:
        description = transaction.text
        normalized = normalize(description)

        transfer = self.transfer_classifier.classify(description, normalized)
        if transfer:
            result = await self.builder.from_transfer(transfer)
            if result:
                return result

        if user_id is not None:
            rules = await load_user_rules(self.db, user_id)
            compiled, confidence = best_user_rule(rules, normalized, description)
            if compiled and confidence >= USER_RULE_MIN_CONFIDENCE:
                result = await self.builder.from_user_rule(compiled, confidence, transaction)
                if result:
                    await self.db.flush()
                    return result

        group, score, matched = score_system_rules(normalized)
        if group and score > 0:
            result = await self.builder.from_system_rule(group, score, matched, transaction)
            if result:
                return result

        pattern, confidence = best_global_pattern(await load_verified_patterns(self.db), normalized)
        if pattern:
            result = await self.builder.from_global_pattern(pattern, confidence, transaction)
            if result:
                await self.db.flush()
                return result

        return no_rule_match(description)
