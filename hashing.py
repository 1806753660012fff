"""Content fingerprints used as response cache keys."""

import hashlib
import json
from typing import Optional, Union

from models import ActionKind


def fingerprint(action: Union[ActionKind, str], content: str, question: Optional[str] = None) -> str:
    """
    Deterministic SHA-256 fingerprint of an AI action request.

    Fields are framed as a JSON array so ("ab", "c") and ("a", "bc") can
    never produce the same digest input. Output is 64 lowercase hex chars.

    Raises:
        ValueError: action is not a known ActionKind.
    """
    kind = ActionKind(action)
    payload = json.dumps([kind.value, content, question], ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
