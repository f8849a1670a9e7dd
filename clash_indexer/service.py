import asyncio
import os
from typing import Any, Dict, Optional

from .config import require
from .dispatcher import EventDispatcher
from .jobs import DiscoveryJob, ReconciliationJob, run_periodic
from .ledger import Ledger, Web3Ledger
from .metadata import MetadataStore
from .mutex import FifoMutex
from .notify import Broadcaster, serve_websocket
from .ownership import OwnershipInvalidator, OwnershipService
from .repository import open_repository
from .resolution import Resolver
from .reveals import RevealService
from .scanner import game_scanner, transfer_scanner
from .stores import CursorStore, OwnershipCache
from .util import log


class IndexerService:
    """Every component wired together from one config dict."""

    def __init__(self, config: Dict[str, Any], ledger: Optional[Ledger] = None):
        self.config = config
        state_dir = config.get("state_dir", "./state")
        pool_width = int(config.get("pool_width", 5))
        collections = config.get("asset_contracts") or {}

        if ledger is None:
            require(config, "rpc_http", "game_address")
            ledger = Web3Ledger(config)
        self.ledger = ledger

        self.gate = FifoMutex("records")
        self.broadcaster = Broadcaster()
        self.repository = open_repository(config.get("records_backend", "json"), state_dir)
        self.game_cursor = CursorStore(os.path.join(state_dir, "lastBlock.json"))
        self.transfer_cursor = CursorStore(os.path.join(state_dir, "lastTransferBlock.json"))
        self.ownership_cache = OwnershipCache(os.path.join(state_dir, "owners.json"))

        self.metadata = MetadataStore(
            config.get("metadata_dir", "./metadata-cache/json"),
            config.get("mapping_path", "./mapping.json"),
            collections,
        )
        self.resolver = Resolver(self.metadata)

        self.dispatcher = EventDispatcher(self.repository, self.gate, self.broadcaster)
        self.invalidator = OwnershipInvalidator(self.ownership_cache)
        self.ownership = OwnershipService(self.ownership_cache, self.ledger, collections)
        self.reveals = RevealService(self.repository, self.gate, self.metadata, self.resolver, self.broadcaster)
        self.discovery = DiscoveryJob(self.ledger, self.repository, self.gate, pool_width, self.broadcaster)
        self.reconciliation = ReconciliationJob(
            self.ledger, self.repository, self.gate, self.resolver, pool_width, self.broadcaster
        )
        self.game_scanner = game_scanner(self.ledger, self.dispatcher, self.game_cursor, config)
        self.transfer_scanner = transfer_scanner(self.ledger, self.invalidator, self.transfer_cursor, config)

    async def start(self) -> None:
        self.repository.load()
        self.ownership_cache.load()
        delay = float(self.config.get("reconnect_delay", 5))
        tasks = [
            self.game_scanner.run_forever(),
            run_periodic("discover", float(self.config.get("discovery_interval", 60)), self.discovery.run_once, delay),
            run_periodic("reconcile", float(self.config.get("reconcile_interval", 120)), self.reconciliation.run_once, delay),
        ]
        if self.config.get("asset_contracts"):
            tasks.append(self.transfer_scanner.run_forever())
        if self.config.get("ws_port"):
            tasks.append(serve_websocket(self.broadcaster, self.config.get("ws_host", "127.0.0.1"), int(self.config["ws_port"])))
        log(f"Indexer started with {len(self.repository)} known game(s), cursor={self.game_cursor.load()}")
        await asyncio.gather(*tasks)

    async def scan_once(self) -> Dict[str, int]:
        result = {"games": await self.game_scanner.tick()}
        if self.config.get("asset_contracts"):
            result["transfers"] = await self.transfer_scanner.tick()
        return result
