"""
Per-asset analysis, cached by asset content fingerprint.

Analysis is the expensive, deterministic step of turning an uploaded asset
into prompt material. The same picture referenced by many requests is only
analyzed once per TTL.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from storyforge.assets.resolver import Asset
from storyforge.cache.result_cache import ResultCache

logger = logging.getLogger(__name__)


class AssetAnalysis(BaseModel):
    asset_id: str
    fingerprint: str
    summary: str
    tags: list[str] = Field(default_factory=list)


class AssetAnalyzer(ABC):

    @abstractmethod
    async def analyze(self, asset: Asset) -> AssetAnalysis: ...


class DescriptorAssetAnalyzer(AssetAnalyzer):
    """Builds the analysis from the asset's stored description and tags."""

    def __init__(self) -> None:
        self.calls = 0

    async def analyze(self, asset: Asset) -> AssetAnalysis:
        self.calls += 1
        tags = sorted({t.strip().lower() for t in asset.tags if t.strip()})
        description = " ".join(asset.description.split())
        article = "An" if asset.kind[:1].lower() in "aeiou" else "A"
        if description:
            summary = f"{article} {asset.kind} showing {description}"
        elif tags:
            summary = f"{article} {asset.kind} featuring {', '.join(tags)}"
        else:
            summary = f"An untitled {asset.kind}"
        return AssetAnalysis(
            asset_id=asset.asset_id,
            fingerprint=asset.content_fingerprint(),
            summary=summary,
            tags=tags,
        )


class CachedAssetAnalyzer(AssetAnalyzer):
    """Decorator that adds result caching around any AssetAnalyzer."""

    def __init__(
        self,
        inner: AssetAnalyzer,
        cache: ResultCache,
        ttl_seconds: float = 86400,
    ) -> None:
        self._inner = inner
        self._cache = cache
        self._ttl = ttl_seconds

    async def analyze(self, asset: Asset) -> AssetAnalysis:
        key = f"asset_analysis:{asset.content_fingerprint()}"
        cached = await self._cache.get(key)
        if cached:
            logger.debug("Asset analysis cache HIT for %s", asset.asset_id)
            # Identical content may belong to a different asset id
            return AssetAnalysis.model_validate_json(cached).model_copy(
                update={"asset_id": asset.asset_id}
            )

        analysis = await self._inner.analyze(asset)
        await self._cache.put(key, analysis.model_dump_json(), ttl_seconds=self._ttl)
        return analysis
