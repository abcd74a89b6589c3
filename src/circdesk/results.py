"""Result shape shared by every engine operation.

Business rejections (missing rows, conflicts) are returned, not raised::

    {"ok": False, "message": "...", "kind": ErrorKind.CONFLICT, "code": "SUBSCRIBER_FROZEN"}

``message`` is the human-readable wire string; ``code`` is a stable tag for
callers that branch on the outcome.
"""
from __future__ import annotations
import enum
from typing import Any, Dict

class ErrorKind(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    CONFLICT  = "CONFLICT"
    STORE     = "STORE"
    PROTOCOL  = "PROTOCOL"

def ok(msg: str, **data) -> Dict[str, Any]:
    return {"ok": True, "message": msg, "kind": None, "code": "", **({"data": data} if data else {})}

def err(kind: ErrorKind, msg: str, code: str = "", **data) -> Dict[str, Any]:
    return {"ok": False, "message": msg, "kind": kind, "code": code, **({"data": data} if data else {})}
