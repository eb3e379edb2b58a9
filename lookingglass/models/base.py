"""
Shared pydantic base and small helpers for the record models.

Records use snake_case attributes in Python and camelCase names on the
wire, so definitions coming from the HTTP layer (``eventType``,
``autoGenerated``) validate as-is and ``to_document`` writes them back
out in the same shape.
"""

from __future__ import annotations

import datetime
import uuid
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        """Serialize using wire names, omitting unset optional values."""
        return self.model_dump(by_alias=True, exclude_none=True)


__all__ = ["CamelModel", "utc_now_iso", "new_id"]
