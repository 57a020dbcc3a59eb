from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A repository write collided with a unique column.

    ``detail["field"]`` names the column (``email`` or ``phone``).
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")
