"""Asset lookup with ownership checks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

import httpx
from pydantic import BaseModel, Field

from storyforge.contracts.errors import AssetForbidden, AssetNotFound
from storyforge.contracts.models import stable_hash, utcnow


class Asset(BaseModel):
    asset_id: str
    owner_id: str
    kind: str = "image"
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    shared_with: list[str] = Field(default_factory=list)
    uploaded_at: datetime = Field(default_factory=utcnow)

    def accessible_by(self, requester_id: str) -> bool:
        return requester_id == self.owner_id or requester_id in self.shared_with

    def content_fingerprint(self) -> str:
        return stable_hash(
            {
                "kind": self.kind,
                "description": self.description,
                "tags": sorted(self.tags),
            }
        )


class AssetResolver(ABC):

    @abstractmethod
    async def resolve(self, asset_id: str, requester_id: str) -> Asset:
        """Return the asset or raise AssetNotFound / AssetForbidden."""

    async def close(self) -> None:
        return None

    async def resolve_all(self, asset_ids: tuple[str, ...], requester_id: str) -> list[Asset]:
        return [await self.resolve(asset_id, requester_id) for asset_id in asset_ids]


class InMemoryAssetResolver(AssetResolver):

    def __init__(self, assets: list[Asset] | None = None) -> None:
        self._assets: dict[str, Asset] = {a.asset_id: a for a in assets or []}

    def add(self, asset: Asset) -> None:
        self._assets[asset.asset_id] = asset

    async def resolve(self, asset_id: str, requester_id: str) -> Asset:
        asset = self._assets.get(asset_id)
        if asset is None:
            raise AssetNotFound(asset_id)
        if not asset.accessible_by(requester_id):
            raise AssetForbidden(asset_id)
        return asset


class HttpAssetResolver(AssetResolver):
    """Resolves assets through the asset service's HTTP API."""

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout)

    async def resolve(self, asset_id: str, requester_id: str) -> Asset:
        resp = await self._client.get(
            f"{self._base_url}/assets/{asset_id}",
            params={"requester_id": requester_id},
        )
        if resp.status_code == 404:
            raise AssetNotFound(asset_id)
        if resp.status_code == 403:
            raise AssetForbidden(asset_id)
        resp.raise_for_status()
        asset = Asset.model_validate(resp.json())
        if not asset.accessible_by(requester_id):
            raise AssetForbidden(asset_id)
        return asset

    async def close(self) -> None:
        await self._client.aclose()
