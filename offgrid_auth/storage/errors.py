from __future__ import annotations

from typing import Any, Dict, List, Optional

IDENTITY_FIELDS = ("username", "email")


class ConstraintViolation(Exception):
    """A write broke a rule the store enforces.

    Identity clashes put the offending columns under ``detail["fields"]``
    (``username`` and/or ``email``). Every other violation, such as a reused
    refresh-token id, a row pointing at a missing user or an anonymous account
    carrying a password, uses its own detail keys.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def fields(self) -> List[str]:
        return list(self.detail.get("fields") or [])

    @property
    def is_identity_clash(self) -> bool:
        return any(field in IDENTITY_FIELDS for field in self.fields)


__all__ = ["ConstraintViolation", "IDENTITY_FIELDS"]
