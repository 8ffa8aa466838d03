"""Schemas for structured LLM categorization answers."""

from pydantic import BaseModel, field_validator

from spendsense.models.transaction import TX_KINDS

DEFAULT_CONFIDENCE = 0.7


class LLMCategorization(BaseModel):
    """One categorization as returned by the model. Slugs are lower-cased."""

    category: str
    subcategory: str | None = None
    tx_kind: str | None = None
    confidence: float = DEFAULT_CONFIDENCE
    explanation: str | None = None

    model_config = {"extra": "ignore"}

    @field_validator("category", mode="before")
    @classmethod
    def validate_category(cls, v) -> str:
        v = str(v or "").strip().lower()
        if not v:
            raise ValueError("category is required")
        return v

    @field_validator("subcategory", "tx_kind", mode="before")
    @classmethod
    def normalize_slug(cls, v) -> str | None:
        if v is None:
            return None
        v = str(v).strip().lower()
        return v or None

    @field_validator("tx_kind")
    @classmethod
    def validate_tx_kind(cls, v: str | None) -> str | None:
        # Unknown kinds are dropped; the kind is then derived from the category
        return v if v in TX_KINDS else None

    @field_validator("confidence", mode="before")
    @classmethod
    def coerce_confidence(cls, v) -> float:
        try:
            return float(v)
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE

    @field_validator("explanation", mode="before")
    @classmethod
    def stringify_explanation(cls, v) -> str | None:
        return None if v is None else str(v)


class LLMBatchItem(LLMCategorization):
    id: int

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v) -> int:
        v = int(v)
        if v <= 0:
            raise ValueError("id must be positive")
        return v
