import os
from typing import Any, Dict

from .errors import ConfigError
from .util import canonical_address, load_json


DEFAULTS: Dict[str, Any] = {
    "rpc_http": None,
    "game_address": None,
    "game_abi": None,
    "asset_contracts": {},
    "state_dir": "./state",
    "records_backend": "json",
    "poll_interval": 6,
    "chunk_size": 1000,
    "chunk_delay": 0.2,
    "bootstrap_window": 500,
    "discovery_interval": 60,
    "reconcile_interval": 120,
    "pool_width": 5,
    "reconnect_delay": 5,
    "metadata_dir": "./metadata-cache/json",
    "mapping_path": "./mapping.json",
    "ws_host": "127.0.0.1",
    "ws_port": None,
    "backend_private_key": None,
}

_POSITIVE_INTS = ("chunk_size", "pool_width")
_NON_NEGATIVE = (
    "poll_interval",
    "chunk_delay",
    "bootstrap_window",
    "discovery_interval",
    "reconcile_interval",
    "reconnect_delay",
)


def build_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    cfg = dict(DEFAULTS)
    cfg.update({k: v for k, v in raw.items() if v is not None})

    for key in _POSITIVE_INTS:
        cfg[key] = _as_number(cfg, key, int)
        if cfg[key] < 1:
            raise ConfigError(f"config.{key} must be >= 1")
    for key in _NON_NEGATIVE:
        cfg[key] = _as_number(cfg, key, float if key in ("chunk_delay", "poll_interval") else int)
        if cfg[key] < 0:
            raise ConfigError(f"config.{key} must be >= 0")

    if cfg["records_backend"] not in ("json", "sqlite"):
        raise ConfigError(f"Unknown records_backend: {cfg['records_backend']}")

    assets = cfg.get("asset_contracts") or {}
    if not isinstance(assets, dict):
        raise ConfigError("config.asset_contracts must map collection name to address")
    normalized = {}
    for name, address in assets.items():
        addr = canonical_address(address)
        if not addr:
            raise ConfigError(f"Missing address for collection {name}")
        normalized[str(name)] = addr
    cfg["asset_contracts"] = normalized

    if cfg["ws_port"] is not None:
        cfg["ws_port"] = _as_number(cfg, "ws_port", int)
    return cfg


def load_config(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")
    raw = load_json(path)
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be an object: {path}")
    return build_config(raw)


def require(cfg: Dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if not cfg.get(key)]
    if missing:
        raise ConfigError(f"Missing required config: {', '.join(missing)}")


def _as_number(cfg: Dict[str, Any], key: str, kind: type) -> Any:
    try:
        return kind(cfg[key])
    except (TypeError, ValueError):
        raise ConfigError(f"config.{key} must be numeric, got {cfg[key]!r}") from None
