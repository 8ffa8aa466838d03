"""LLM fallback for hard-to-categorize transactions.

Only used when rules and embeddings fail; the goal is to call it for a small
minority of transactions. Without a configured provider every call is a
silent miss, not an error. Reported confidence is clamped to [0.5, 0.9]:
the model's self-assessment is trusted less than rule and similarity hits.
"""

import json
import math

import structlog
from pydantic import ValidationError

from spendsense.config import settings
from spendsense.core.exceptions import ProviderError
from spendsense.core.retry import rate_limit_retrying
from spendsense.models.transaction import Transaction
from spendsense.schemas.llm import DEFAULT_CONFIDENCE, LLMBatchItem, LLMCategorization
from spendsense.services.llm_provider import LLMProviderBase, get_llm_provider
from spendsense.services.normalization import normalize
from spendsense.services.results import CategorizationResult, MissReason, tx_kind_for
from spendsense.services.taxonomy_cache import (
    CategoryCache,
    CategoryEntry,
    SubcategoryCache,
    SubcategoryEntry,
)

logger = structlog.get_logger()

CONFIDENCE_FLOOR = 0.5
CONFIDENCE_CEILING = 0.9

SYSTEM_PROMPT = """You are a financial transaction categorizer for Indian bank statements.
Your job is to categorize transactions into the correct category AND subcategory.

Available categories and subcategories:
{taxonomy}

Important Rules:
1. TRANSFERS are critical - distinguish:
   - transfer-self: Own account, CC bill payment, savings to current
   - transfer-p2p: Person-to-person (UPI to individuals, NEFT to friends/family)
   - transfer-wallet: Paytm/PhonePe/GPay wallet loads
2. UPI to merchants (Zomato, Swiggy, Amazon) = NOT transfer, categorize by merchant type
3. EMI payments, loan repayments = "emi"
4. Salary credits, payroll = "salary" with subcategory "salary-monthly"
5. Dividends, interest = "salary" with subcategory "salary-investment"
6. Food delivery (Swiggy/Zomato) = "food" / "food-delivery"
7. Restaurants/cafes = "food" / "food-dining"
8. Groceries (Blinkit/BigBasket) = "food" / "food-groceries"
9. If unsure, use "other"

Respond ONLY with valid JSON (no markdown):
{{"category": "category-slug", "subcategory": "subcategory-slug", "tx_kind": "spend|transfer_p2p|transfer_self|income_salary|investment|loan_emi", "confidence": 0.0-1.0, "explanation": "brief reason"}}
"""

USER_PROMPT = """Categorize this transaction:

Description: {description}
Normalized: {normalized}
Amount: ₹{amount}
Type: {transaction_type}
Date: {date}
"""

BATCH_SYSTEM_PROMPT = "You are a financial transaction categorizer. Respond only with valid JSON array."

BATCH_PROMPT = """Categorize these Indian bank transactions. For each, provide category slug and confidence.

Transactions:
{transactions}

Available categories: {categories}

Respond with JSON array (no markdown):
[{{"id": transaction_id, "category": "slug", "confidence": 0.0-1.0, "explanation": "reason"}}, ...]
"""


def clamp_confidence(value: float) -> float:
    if value is None or math.isnan(value):
        value = DEFAULT_CONFIDENCE
    return min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, value))


class LLMService:
    """Categorize transactions with a text-generation model."""

    def __init__(
        self,
        category_cache: CategoryCache,
        subcategory_cache: SubcategoryCache,
        provider: LLMProviderBase | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        batch_size: int | None = None,
    ):
        self.category_cache = category_cache
        self.subcategory_cache = subcategory_cache
        self.provider = provider or get_llm_provider()
        self.max_retries = settings.llm_max_retries if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.llm_retry_base_delay if retry_base_delay is None else retry_base_delay
        )
        self.batch_size = batch_size or settings.llm_batch_size

    @property
    def configured(self) -> bool:
        return self.provider.configured

    # ── Single transaction ──────────────────────────────

    async def categorize(
        self,
        transaction: Transaction,
        normalized: str | None = None,
    ) -> CategorizationResult:
        if not self.configured:
            return CategorizationResult.miss("llm", MissReason.NOT_CONFIGURED)
        if normalized is None:
            normalized = normalize(transaction.text)
        if not normalized:
            return CategorizationResult.miss("llm", MissReason.BLANK_DESCRIPTION)

        content = await self._call(
            await self.build_system_prompt(),
            self.build_user_prompt(transaction, normalized),
            settings.llm_max_tokens,
        )
        if content is None:
            return CategorizationResult.miss("llm", MissReason.PROVIDER_FAILED, "LLM call failed")

        parsed = self.parse_response(content)
        if parsed is None:
            return CategorizationResult.miss("llm", MissReason.UNPARSEABLE, "Unparseable LLM response")

        result = await self._to_result(parsed, transaction)
        if result is None:
            logger.info("llm_unknown_category", transaction_id=transaction.id, category=parsed.category)
            return CategorizationResult.miss("llm", MissReason.UNKNOWN_CATEGORY, "Unknown category")

        logger.info(
            "llm_categorized",
            transaction_id=transaction.id,
            category=result.category.slug,
            confidence=result.confidence,
        )
        return result

    async def build_system_prompt(self) -> str:
        blocks = []
        for category in await self.category_cache.all():
            subcategories = await self.subcategory_cache.for_category(category)
            lines = "\n".join(f"  - {sub.slug}: {sub.name}" for sub in subcategories)
            blocks.append(f"{category.slug} ({category.description or category.name}):\n{lines}")
        return SYSTEM_PROMPT.format(taxonomy="\n\n".join(blocks))

    @staticmethod
    def build_user_prompt(transaction: Transaction, normalized: str) -> str:
        return USER_PROMPT.format(
            description=transaction.text,
            normalized=normalized,
            amount=transaction.amount,
            transaction_type=transaction.transaction_type,
            date=transaction.transaction_date.isoformat() if transaction.transaction_date else "",
        )

    @staticmethod
    def parse_response(content: str) -> LLMCategorization | None:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("llm_response_not_json", error=str(e)[:200])
            return None
        if not isinstance(data, dict):
            return None
        try:
            return LLMCategorization.model_validate(data)
        except ValidationError as e:
            logger.warning("llm_response_invalid", errors=e.error_count())
            return None

    # ── Batch ───────────────────────────────────────────

    async def categorize_batch(
        self, transactions: list[Transaction]
    ) -> dict[int, CategorizationResult]:
        """Up to ``batch_size`` transactions per call. Failed calls yield no entries."""
        if not transactions or not self.configured:
            return {}

        results: dict[int, CategorizationResult] = {}
        for start in range(0, len(transactions), self.batch_size):
            batch = transactions[start : start + self.batch_size]
            results.update(await self._process_batch(batch))
        return results

    async def _process_batch(self, transactions: list[Transaction]) -> dict[int, CategorizationResult]:
        lines = []
        for i, tx in enumerate(transactions, start=1):
            lines.append(
                f"{i}. [ID:{tx.id}] {tx.text} | Normalized: {normalize(tx.text)} "
                f"| ₹{tx.amount} | {tx.transaction_type}"
            )
        categories = ", ".join(c.slug for c in await self.category_cache.all())
        prompt = BATCH_PROMPT.format(transactions="\n".join(lines), categories=categories)

        content = await self._call(BATCH_SYSTEM_PROMPT, prompt, settings.llm_batch_max_tokens)
        if content is None:
            return {}
        return await self.parse_batch_response(content, transactions)

    async def parse_batch_response(
        self, content: str, transactions: list[Transaction]
    ) -> dict[int, CategorizationResult]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("llm_batch_response_not_json", error=str(e)[:200])
            return {}

        # A bare array, or an object wrapping one (JSON mode forces objects)
        if isinstance(data, dict):
            data = data.get("results") or data.get("transactions") or []
        if not isinstance(data, list):
            return {}

        by_id = {tx.id: tx for tx in transactions}
        results: dict[int, CategorizationResult] = {}
        for raw in data:
            if not isinstance(raw, dict):
                continue
            try:
                item = LLMBatchItem.model_validate(raw)
            except ValidationError:
                continue
            transaction = by_id.get(item.id)
            if transaction is None:
                continue
            result = await self._to_result(item, transaction)
            if result:
                results[item.id] = result
        return results

    # ── Internals ───────────────────────────────────────

    async def _call(self, system_prompt: str, user_prompt: str, max_tokens: int) -> str | None:
        try:
            async for attempt in rate_limit_retrying(self.max_retries, self.retry_base_delay):
                with attempt:
                    return await self.provider.complete(
                        system_prompt,
                        user_prompt,
                        max_tokens=max_tokens,
                        temperature=settings.llm_temperature,
                    )
        except ProviderError as e:
            logger.warning("llm_call_failed", provider=e.provider, error=type(e).__name__, detail=e.detail[:200])
            return None
        except Exception as e:
            logger.warning("llm_call_error", provider=self.provider.name, error=type(e).__name__)
            return None

    async def _to_result(
        self, parsed: LLMCategorization, transaction: Transaction
    ) -> CategorizationResult | None:
        category = await self.category_cache.find_by_slug(parsed.category)
        if category is None:
            return None
        subcategory = await self.subcategory_cache.resolve_for_category(
            category, await self._find_subcategory(category, parsed.subcategory)
        )
        return CategorizationResult(
            method="llm",
            category=category,
            subcategory=subcategory,
            tx_kind=parsed.tx_kind or tx_kind_for(category.slug, transaction.transaction_type),
            confidence=clamp_confidence(parsed.confidence),
            explanation=parsed.explanation or f"AI categorized as {category.name}",
        )

    async def _find_subcategory(
        self, category: CategoryEntry, slug: str | None
    ) -> SubcategoryEntry | None:
        if not slug:
            return None
        exact = await self.subcategory_cache.find_by_slug(slug)
        if exact is not None:
            return exact
        for sub in await self.subcategory_cache.for_category(category):
            if slug in sub.slug:
                return sub
        return None
