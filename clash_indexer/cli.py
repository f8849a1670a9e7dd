"""Command line entry point.

Usage:
  clash-indexer --config config.json run
  clash-indexer --config config.json scan
  clash-indexer --config config.json discover
  clash-indexer --config config.json reconcile
  clash-indexer --config config.json resolve --game-id 4
  clash-indexer --config config.json games --game-id 4
  clash-indexer --config config.json cursor
  clash-indexer --config config.json settle --game-id 4
"""

import argparse
import asyncio
import os
import sys
from typing import Any, Dict, List, Optional

from .config import load_config
from .errors import IndexerError
from .metadata import MetadataStore
from .repository import open_repository
from .resolution import Resolver
from .stores import CursorStore
from .util import json_dumps


def _print(obj: Any) -> None:
    print(json_dumps(obj, indent=2))


def _offline_resolve(cfg: Dict[str, Any], game_id: int) -> Dict[str, Any]:
    repository = open_repository(cfg["records_backend"], cfg["state_dir"])
    record = repository.get(game_id)
    if record is None:
        raise IndexerError(f"Game {game_id} not found in local store")
    metadata = MetadataStore(cfg["metadata_dir"], cfg["mapping_path"], cfg["asset_contracts"])
    outcome = Resolver(metadata).resolve(record)
    return {
        "gameId": game_id,
        "winner": outcome.winner,
        "tie": outcome.tie,
        "points": [outcome.player1_points, outcome.player2_points],
        "totalDiff": outcome.total_diff,
        "roundResults": [r.to_dict() for r in outcome.round_results],
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Game contract indexer and battle resolver")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Start scanners and periodic jobs")
    sub.add_parser("scan", help="Run one scanner tick")
    sub.add_parser("discover", help="Fetch games missing from the local store")
    sub.add_parser("reconcile", help="Repair local games against the chain")

    resolve_parser = sub.add_parser("resolve", help="Compute a game's outcome from local reveal data")
    resolve_parser.add_argument("--game-id", type=int, required=True)

    games_parser = sub.add_parser("games", help="Dump local game records")
    games_parser.add_argument("--game-id", type=int, default=None)

    sub.add_parser("cursor", help="Show scanner cursors")

    settle_parser = sub.add_parser("settle", help="Submit settleGame for a resolved game")
    settle_parser.add_argument("--game-id", type=int, required=True)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
        _run(args, cfg)
    except IndexerError as exc:
        sys.stderr.write(f"error: {exc}\n")
        sys.exit(1)


def _run(args: argparse.Namespace, cfg: Dict[str, Any]) -> None:
    if args.command == "games":
        repository = open_repository(cfg["records_backend"], cfg["state_dir"])
        if args.game_id is None:
            _print([r.to_dict() for r in repository.list_all()])
            return
        record = repository.get(args.game_id)
        if record is None:
            raise IndexerError(f"Game {args.game_id} not found in local store")
        _print(dict(record.to_dict(), status=record.status.value))
        return

    if args.command == "cursor":
        _print(
            {
                "games": CursorStore(os.path.join(cfg["state_dir"], "lastBlock.json")).load(),
                "transfers": CursorStore(os.path.join(cfg["state_dir"], "lastTransferBlock.json")).load(),
            }
        )
        return

    if args.command == "resolve":
        _print(_offline_resolve(cfg, args.game_id))
        return

    from .service import IndexerService

    service = IndexerService(cfg)

    if args.command == "run":
        asyncio.run(service.start())
        return

    if args.command == "scan":
        _print(asyncio.run(service.scan_once()))
        return

    if args.command == "discover":
        _print({"added": asyncio.run(service.discovery.run_once())})
        return

    if args.command == "reconcile":
        _print({"updated": asyncio.run(service.reconciliation.run_once())})
        return

    if args.command == "settle":
        _print({"gameId": args.game_id, "txHash": asyncio.run(service.ledger.submit_settlement(args.game_id))})
        return


if __name__ == "__main__":
    main()
