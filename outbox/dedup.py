"""
Dedup key strategies.

A dedup key is a deterministic fingerprint of (job_name, the payload fields
that make two requests "the same"). Each job name picks one strategy when it
is registered (see jobs/registry.py):

    ByField("recipient")               → one verification email per address
    ByField("payment._id", "payment.id") → first path that is present wins
    ByHash("email", "message")         → hash of a subset of fields
    ByHash()                           → hash of the whole payload (default)
    ByCompositeId("model", "documentIds") → "model:id1,id2" (lists sorted)

Strategies are pure: the same payload always produces the same key, no
matter the key order of the dicts inside it.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


def stable_json(value: Any) -> str:
    """JSON with sorted keys at every nesting level and no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _lookup(payload: dict, path: str) -> Any:
    """Resolve a dotted path ("payment._id") inside a payload."""
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    if current is None or current == "":
        return _MISSING
    return current


class DedupStrategy(ABC):

    @abstractmethod
    def stable_key(self, payload: dict) -> Optional[str]:
        """Return the string to fingerprint, or None if the payload lacks the fields."""
        ...

    def key_for(self, job_name: str, payload: dict) -> str:
        stable = self.stable_key(payload)
        if stable is None:
            logger.warning(
                f"Payload for {job_name} is missing dedup fields of {self!r}, "
                f"hashing the whole payload instead"
            )
            stable = stable_json(payload)
        digest = hashlib.sha256(stable.encode("utf-8")).hexdigest()
        return f"{job_name}:{digest}"


class ByField(DedupStrategy):

    def __init__(self, *paths: str):
        if not paths:
            raise ValueError("ByField needs at least one field path")
        self.paths = paths

    def stable_key(self, payload: dict) -> Optional[str]:
        for path in self.paths:
            value = _lookup(payload, path)
            if value is not _MISSING:
                return value if isinstance(value, str) else stable_json(value)
        return None

    def __repr__(self) -> str:
        return f"ByField{self.paths!r}"


class ByHash(DedupStrategy):

    def __init__(self, *fields: str):
        self.fields = fields

    def stable_key(self, payload: dict) -> Optional[str]:
        if not self.fields:
            return stable_json(payload)
        subset = {}
        for field in self.fields:
            value = _lookup(payload, field)
            if value is _MISSING:
                return None
            subset[field] = value
        return stable_json(subset)

    def __repr__(self) -> str:
        return f"ByHash{self.fields!r}"


class ByCompositeId(DedupStrategy):

    def __init__(self, *paths: str):
        if not paths:
            raise ValueError("ByCompositeId needs at least one field path")
        self.paths = paths

    def stable_key(self, payload: dict) -> Optional[str]:
        parts = []
        for path in self.paths:
            value = _lookup(payload, path)
            if value is _MISSING:
                return None
            if isinstance(value, (list, tuple)):
                parts.append(",".join(sorted(str(v) for v in value)))
            else:
                parts.append(str(value))
        return ":".join(parts)

    def __repr__(self) -> str:
        return f"ByCompositeId{self.paths!r}"


DEFAULT_STRATEGY = ByHash()
