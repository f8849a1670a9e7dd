from typing import Any, Dict, List, Optional

from .ledger import Ledger
from .models import Transfer
from .stores import OwnershipCache
from .util import canonical_address, log


class OwnershipInvalidator:
    """Drops cached holdings for both sides of every observed NFT transfer."""

    def __init__(self, cache: OwnershipCache):
        self.cache = cache

    async def handle(self, transfers: List[Transfer]) -> int:
        removed = 0
        for transfer in transfers:
            for wallet in (transfer.from_address, transfer.to_address):
                if canonical_address(wallet) is None:
                    continue
                if self.cache.invalidate(wallet, transfer.collection):
                    removed += 1
                    log(f"[ownership] {transfer.collection} cache invalidated for {wallet}")
        if removed:
            self.cache.save()
        return removed


class OwnershipService:
    """Read-through cache of owned NFTs per wallet and collection."""

    def __init__(self, cache: OwnershipCache, ledger: Ledger, collections: Dict[str, str]):
        self.cache = cache
        self.ledger = ledger
        self.collections = dict(collections)

    async def owned_assets(self, wallet: str, collection: str) -> List[Dict[str, Any]]:
        cached = self.cache.get(wallet, collection)
        if cached is not None:
            return cached
        contract = self.collections.get(collection)
        if contract is None:
            raise KeyError(f"Unknown collection: {collection}")
        generation = self.cache.generation(wallet, collection)
        token_ids = await self.ledger.get_owned_token_ids(contract, wallet)
        assets = [{"contract": contract, "tokenId": str(t)} for t in token_ids]
        if not self.cache.put(wallet, collection, assets, generation):
            log(f"[ownership] {collection} holdings for {canonical_address(wallet)} changed during lookup, not caching")
            return assets
        self.cache.save()
        log(f"[ownership] derived {len(assets)} {collection} token(s) for {canonical_address(wallet)}")
        return assets

    async def refresh(self, wallet: str, collection: Optional[str] = None) -> Dict[str, List[Dict[str, Any]]]:
        names = [collection] if collection else sorted(self.collections)
        for name in names:
            self.cache.invalidate(wallet, name)
        return {name: await self.owned_assets(wallet, name) for name in names}
