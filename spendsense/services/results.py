"""Result types shared by the categorization tiers.

Every tier answers with a CategorizationResult: either a category with a
confidence, or no category plus a MissReason explaining why. "No match" is
a value, never an exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from spendsense.services.taxonomy_cache import CategoryEntry, SubcategoryEntry


class MissReason(str, Enum):
    NO_MATCH = "no_match"
    BLANK_DESCRIPTION = "blank_description"
    NO_EMBEDDING = "no_embedding"
    NOT_CONFIGURED = "not_configured"
    UNKNOWN_CATEGORY = "unknown_category"
    BELOW_THRESHOLD = "below_threshold"
    PROVIDER_FAILED = "provider_failed"
    UNPARSEABLE = "unparseable"
    DISABLED = "disabled"


@dataclass
class CategorizationResult:
    """Outcome of one tier, or of the whole triage."""

    method: str
    category: CategoryEntry | None = None
    confidence: float = 0.0
    subcategory: SubcategoryEntry | None = None
    tx_kind: str | None = None
    counterparty_name: str | None = None
    explanation: str = ""
    reason: MissReason | None = None
    needs_embedding: bool = False
    matched_keywords: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.confidence = min(1.0, max(0.0, float(self.confidence)))
        if self.category is None and self.reason is None:
            self.reason = MissReason.NO_MATCH

    @property
    def success(self) -> bool:
        return self.category is not None

    @classmethod
    def miss(
        cls,
        method: str,
        reason: MissReason,
        explanation: str = "",
        needs_embedding: bool = False,
    ) -> CategorizationResult:
        return cls(
            method=method,
            reason=reason,
            explanation=explanation,
            needs_embedding=needs_embedding,
        )

    def to_dict(self) -> dict:
        return {
            "category": self.category.slug if self.category else None,
            "subcategory": self.subcategory.slug if self.subcategory else None,
            "tx_kind": self.tx_kind,
            "counterparty_name": self.counterparty_name,
            "confidence": self.confidence,
            "method": self.method,
            "explanation": self.explanation,
            "reason": self.reason.value if self.reason else None,
            "needs_embedding": self.needs_embedding,
        }


def best_of(*candidates: CategorizationResult | None) -> CategorizationResult | None:
    """Highest-confidence successful candidate; earlier candidates win ties."""
    best: CategorizationResult | None = None
    for candidate in candidates:
        if candidate is None or not candidate.success:
            continue
        if best is None or candidate.confidence > best.confidence:
            best = candidate
    return best


def tx_kind_for(category_slug: str, transaction_type: str | None) -> str:
    """Derive the transaction kind from the category and direction."""
    if category_slug == "transfer":
        return "transfer_p2p"
    if category_slug == "salary":
        return "income_salary" if transaction_type == "credit" else "spend"
    if category_slug == "investment":
        return "investment"
    if category_slug == "emi":
        return "loan_emi"
    if category_slug == "tax":
        return "tax"
    return "spend"
