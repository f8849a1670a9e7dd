import json
import os
import sys
import tempfile
import time
from datetime import datetime, timezone
from typing import Any, Optional

from hexbytes import HexBytes


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, HexBytes):
        return obj.hex()
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + obj.hex()
    if isinstance(obj, set):
        return sorted(obj)
    return str(obj)


def json_dumps(obj: Any, indent: Optional[int] = None) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True, indent=indent)


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json_atomic(path: str, obj: Any) -> None:
    """Replace ``path`` with the JSON encoding of ``obj``.

    The document is written to a temporary file in the same directory and moved
    into place, so readers only ever see the previous or the new snapshot.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json_dumps(obj, indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def canonical_address(addr: Any) -> Optional[str]:
    """Lower-cased address, or None for empty and zero addresses."""
    if addr is None:
        return None
    if isinstance(addr, (bytes, bytearray)):
        addr = "0x" + bytes(addr).hex()
    text = str(addr).strip().lower()
    if not text or text == ZERO_ADDRESS:
        return None
    return text


def is_zero_address(addr: Any) -> bool:
    return canonical_address(addr) is None


def parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not an integer value")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def iso_timestamp(ts: Optional[int] = None) -> str:
    if ts is None:
        moment = datetime.now(timezone.utc)
    else:
        moment = datetime.fromtimestamp(int(ts), tz=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")
