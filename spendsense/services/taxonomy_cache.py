"""In-memory, TTL-bound read-through caches over the category taxonomy.

Both caches are plain instances built once at startup and handed to every
service that needs taxonomy lookups. Entries are frozen snapshots, not ORM
objects, so they can be shared across sessions and tasks.

Refresh policy: when an entry is read and the cache is stale, at most one
caller reloads. A caller that finds a reload already in progress reads
whatever is cached instead of waiting. A failed reload keeps the previous
data and leaves the cache stale so the next read tries again.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spendsense.config import settings
from spendsense.models.category import Category, Subcategory

logger = structlog.get_logger()


@dataclass(frozen=True)
class CategoryEntry:
    id: int
    slug: str
    name: str
    description: str | None = None
    parent_id: int | None = None


@dataclass(frozen=True)
class SubcategoryEntry:
    id: int
    category_id: int
    slug: str
    name: str
    keywords: tuple[str, ...] = ()
    is_default: bool = False
    display_order: int = 0


class _TaxonomyCache:
    """TTL + try-lock machinery shared by both caches."""

    name = "taxonomy"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = settings.taxonomy_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._loaded_at: float | None = None
        self._refreshed_at: datetime | None = None

    # ── Staleness / refresh ─────────────────────────────

    @property
    def stale(self) -> bool:
        return self._loaded_at is None or self._clock() - self._loaded_at > self._ttl

    async def ensure_loaded(self) -> None:
        if not self.stale:
            return
        # Someone else is reloading: serve what we have rather than wait
        if self._lock.locked():
            return
        async with self._lock:
            if self.stale:
                await self._reload()

    async def refresh(self) -> bool:
        """Force a reload. Returns False when the reload failed."""
        async with self._lock:
            return await self._reload()

    def clear(self) -> None:
        self._reset()
        self._loaded_at = None
        self._refreshed_at = None

    async def _reload(self) -> bool:
        try:
            async with self._session_factory() as session:
                rows = await self._fetch(session)
        except Exception as e:
            logger.warning(
                "taxonomy_cache_reload_failed",
                cache=self.name,
                error=type(e).__name__,
                detail=str(e)[:200],
            )
            return False

        self._reset()
        self._populate(rows)
        self._loaded_at = self._clock()
        self._refreshed_at = datetime.now(timezone.utc)
        logger.info("taxonomy_cache_loaded", cache=self.name, size=len(rows))
        return True

    # ── Hooks ───────────────────────────────────────────

    async def _fetch(self, session: AsyncSession) -> list:
        raise NotImplementedError

    def _reset(self) -> None:
        raise NotImplementedError

    def _populate(self, rows: list) -> None:
        raise NotImplementedError


class CategoryCache(_TaxonomyCache):
    """Categories by slug (case-insensitive) and by id."""

    name = "categories"

    def __init__(self, *args, **kwargs) -> None:
        self._by_slug: dict[str, CategoryEntry] = {}
        self._by_id: dict[int, CategoryEntry] = {}
        super().__init__(*args, **kwargs)

    async def find_by_slug(self, slug: str | None) -> CategoryEntry | None:
        if not slug:
            return None
        await self.ensure_loaded()
        return self._by_slug.get(str(slug).strip().lower())

    async def find_by_id(self, category_id: int | None) -> CategoryEntry | None:
        if category_id is None:
            return None
        await self.ensure_loaded()
        return self._by_id.get(int(category_id))

    async def all(self) -> list[CategoryEntry]:
        await self.ensure_loaded()
        return list(self._by_id.values())

    def stats(self) -> dict:
        return {
            "size": len(self._by_id),
            "last_refresh": self._refreshed_at,
            "stale": self.stale,
        }

    async def _fetch(self, session: AsyncSession) -> list[CategoryEntry]:
        result = await session.execute(
            select(Category).order_by(Category.display_order, Category.name)
        )
        return [
            CategoryEntry(
                id=c.id,
                slug=c.slug,
                name=c.name,
                description=c.description,
                parent_id=c.parent_id,
            )
            for c in result.scalars().all()
        ]

    def _reset(self) -> None:
        self._by_slug = {}
        self._by_id = {}

    def _populate(self, rows: list[CategoryEntry]) -> None:
        for entry in rows:
            self._by_slug[entry.slug.lower()] = entry
            self._by_id[entry.id] = entry


class SubcategoryCache(_TaxonomyCache):
    """Subcategories by slug and id, grouped per category with its default."""

    name = "subcategories"

    def __init__(self, *args, **kwargs) -> None:
        self._by_slug: dict[str, SubcategoryEntry] = {}
        self._by_id: dict[int, SubcategoryEntry] = {}
        self._by_category_id: dict[int, list[SubcategoryEntry]] = {}
        self._defaults_by_category_id: dict[int, SubcategoryEntry] = {}
        super().__init__(*args, **kwargs)

    async def find_by_slug(self, slug: str | None) -> SubcategoryEntry | None:
        if not slug:
            return None
        await self.ensure_loaded()
        return self._by_slug.get(str(slug).strip().lower())

    async def find_by_id(self, subcategory_id: int | None) -> SubcategoryEntry | None:
        if subcategory_id is None:
            return None
        await self.ensure_loaded()
        return self._by_id.get(int(subcategory_id))

    async def all(self) -> list[SubcategoryEntry]:
        await self.ensure_loaded()
        return list(self._by_id.values())

    async def for_category(self, category: CategoryEntry | None) -> list[SubcategoryEntry]:
        if category is None:
            return []
        await self.ensure_loaded()
        return list(self._by_category_id.get(category.id, []))

    async def default_for_category(self, category: CategoryEntry | None) -> SubcategoryEntry | None:
        if category is None:
            return None
        await self.ensure_loaded()
        return self._defaults_by_category_id.get(category.id)

    async def find_by_category_and_keyword(
        self,
        category: CategoryEntry | None,
        keywords: Iterable[str] | str,
    ) -> SubcategoryEntry | None:
        """First subcategory whose keyword appears in the matched keywords, else the default."""
        if category is None:
            return None
        await self.ensure_loaded()
        if isinstance(keywords, str):
            keywords = [keywords]
        keyword_text = " ".join(keywords).lower()

        for sub in self._by_category_id.get(category.id, []):
            if any(kw.lower() in keyword_text for kw in sub.keywords):
                return sub
        return self._defaults_by_category_id.get(category.id)

    async def resolve_for_category(
        self,
        category: CategoryEntry,
        subcategory: SubcategoryEntry | None,
    ) -> SubcategoryEntry | None:
        """Keep a subcategory only if it belongs to ``category``; otherwise use the default."""
        if subcategory is not None and subcategory.category_id == category.id:
            return subcategory
        return await self.default_for_category(category)

    def stats(self) -> dict:
        return {
            "size": len(self._by_id),
            "categories_with_subcategories": len(self._by_category_id),
            "last_refresh": self._refreshed_at,
            "stale": self.stale,
        }

    async def _fetch(self, session: AsyncSession) -> list[SubcategoryEntry]:
        result = await session.execute(
            select(Subcategory).order_by(Subcategory.display_order, Subcategory.name)
        )
        return [
            SubcategoryEntry(
                id=s.id,
                category_id=s.category_id,
                slug=s.slug,
                name=s.name,
                keywords=tuple(s.keywords or ()),
                is_default=bool(s.is_default),
                display_order=s.display_order or 0,
            )
            for s in result.scalars().all()
        ]

    def _reset(self) -> None:
        self._by_slug = {}
        self._by_id = {}
        self._by_category_id = {}
        self._defaults_by_category_id = {}

    def _populate(self, rows: list[SubcategoryEntry]) -> None:
        for entry in rows:
            self._by_slug[entry.slug.lower()] = entry
            self._by_id[entry.id] = entry
            self._by_category_id.setdefault(entry.category_id, []).append(entry)
            if entry.is_default and entry.category_id not in self._defaults_by_category_id:
                self._defaults_by_category_id[entry.category_id] = entry
