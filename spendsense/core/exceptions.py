"""Custom exception classes for the categorization core.

Tier-level failures are absorbed by the services that raise them; only
StoreUpdateError is allowed to reach the caller of the orchestrator.
"""


class CategorizationError(Exception):
    """Base class for every error raised inside the categorization core."""


class InvalidRuleError(CategorizationError):
    def __init__(self, detail: str = "Invalid rule"):
        super().__init__(detail)
        self.detail = detail


class SubcategoryMismatchError(InvalidRuleError):
    def __init__(self, subcategory_slug: str, category_slug: str):
        super().__init__(
            f"Subcategory '{subcategory_slug}' does not belong to category '{category_slug}'"
        )
        self.subcategory_slug = subcategory_slug
        self.category_slug = category_slug


class ProviderError(CategorizationError):
    """Non-retryable failure of an external provider (LLM or embeddings)."""

    def __init__(self, provider: str, detail: str = "Provider call failed"):
        super().__init__(f"{provider}: {detail}")
        self.provider = provider
        self.detail = detail


class ProviderRateLimitedError(ProviderError):
    """The provider asked us to slow down; safe to retry after a pause."""

    def __init__(self, provider: str, detail: str = "Rate limited"):
        super().__init__(provider, detail)


class StoreUpdateError(CategorizationError):
    def __init__(self, transaction_id: int | None, detail: str = "Failed to persist result"):
        super().__init__(f"Transaction {transaction_id}: {detail}")
        self.transaction_id = transaction_id
        self.detail = detail
