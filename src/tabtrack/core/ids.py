from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def canonical_json(obj: dict[str, Any]) -> str:
    # stable serialization for hashing
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def deterministic_run_id_from_config(cfg_raw: dict[str, Any], length: int = 12) -> str:
    """
    Deterministic run_id derived from the full config content.
    - Replaying the same YAML twice gives the same run_id.
    - If config changes, run_id changes.
    """
    s = canonical_json(cfg_raw).encode("utf-8")
    h = hashlib.sha1(s).hexdigest()
    return h[:length]


def client_fingerprint(user_agent: str | None, length: int = 10) -> str:
    return _NON_ALNUM.sub("", user_agent or "")[:length]


def mint_session_id(*, epoch_ms: int, token: str, user_agent: str | None) -> str:
    """
    `{epoch_ms}_{token}_{fingerprint}`; the timestamp prefix is what
    session duration is derived from.
    """
    return f"{int(epoch_ms)}_{token}_{client_fingerprint(user_agent)}"


def session_created_ms(session_id: str | None) -> int | None:
    if not session_id:
        return None
    head = session_id.split("_", 1)[0]
    try:
        return int(head)
    except ValueError:
        return None


@dataclass(slots=True)
class IdsService:
    run_id: str
    _counters: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    def next_id(self, prefix: str) -> str:
        n = self._counters.get(prefix, 0) + 1
        self._counters[prefix] = n
        return f"{prefix}_{self.run_id}_{n:08d}"
