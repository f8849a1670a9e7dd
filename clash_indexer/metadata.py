import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import MetadataError
from .util import canonical_address, load_json


TRAIT_ORDER = ("attack", "defense", "vitality", "agility", "core")


@dataclass(frozen=True)
class TokenMeta:
    collection: str
    token_id: str
    token_uri: str
    traits: List[int]
    background: str


class MetadataStore:
    """Trait lookup against the local metadata cache.

    ``mapping_path`` holds ``{collection: {tokenId: {"token_uri": ...}}}`` and
    metadata documents live under ``metadata_dir/<collection>/<token_uri>``.
    """

    def __init__(self, metadata_dir: str, mapping_path: str, collections: Dict[str, str]):
        self.metadata_dir = metadata_dir
        self.mapping_path = mapping_path
        self.collections = {canonical_address(addr): name for name, addr in collections.items()}
        self._mapping: Optional[Dict[str, Dict[str, Any]]] = None
        self._docs: Dict[str, Dict[str, Any]] = {}

    def collection_for(self, contract: str) -> str:
        name = self.collections.get(canonical_address(contract))
        if name is None:
            raise MetadataError(f"Unknown collection contract {contract}")
        return name

    def token_uri(self, collection: str, token_id: Any) -> str:
        entry = self._load_mapping().get(collection, {}).get(str(token_id))
        if isinstance(entry, dict):
            entry = entry.get("token_uri")
        if not entry:
            raise MetadataError(f"No token_uri mapping for {collection} tokenId {token_id}")
        return str(entry)

    def document(self, collection: str, token_uri: str) -> Dict[str, Any]:
        path = os.path.join(self.metadata_dir, collection, token_uri)
        if path in self._docs:
            return self._docs[path]
        if not os.path.exists(path):
            raise MetadataError(f"Metadata file missing: {path}")
        try:
            doc = load_json(path)
        except ValueError as exc:
            raise MetadataError(f"Unreadable metadata {path}: {exc}") from exc
        self._docs[path] = doc
        return doc

    def describe(self, contract: str, token_id: Any) -> TokenMeta:
        collection = self.collection_for(contract)
        uri = self.token_uri(collection, token_id)
        doc = self.document(collection, uri)
        return TokenMeta(
            collection=collection,
            token_id=str(token_id),
            token_uri=uri,
            traits=extract_traits(doc),
            background=extract_background(doc),
        )

    def _load_mapping(self) -> Dict[str, Dict[str, Any]]:
        if self._mapping is None:
            if not os.path.exists(self.mapping_path):
                raise MetadataError(f"Token mapping not found: {self.mapping_path}")
            self._mapping = load_json(self.mapping_path)
        return self._mapping


def _attributes(doc: Dict[str, Any]) -> Dict[str, Any]:
    found = {}
    for attr in doc.get("attributes") or []:
        name = str(attr.get("trait_type") or "").lower()
        if name:
            found[name] = attr.get("value")
    return found


def extract_traits(doc: Dict[str, Any]) -> List[int]:
    attrs = _attributes(doc)
    traits = []
    for name in TRAIT_ORDER:
        value = attrs.get(name)
        if value is None:
            traits.append(0)
            continue
        try:
            traits.append(int(float(value)))
        except (TypeError, ValueError):
            raise MetadataError(f"Non-numeric {name} trait: {value!r}") from None
    return traits


def extract_background(doc: Dict[str, Any]) -> str:
    value = _attributes(doc).get("background")
    return str(value) if value else "Unknown"
