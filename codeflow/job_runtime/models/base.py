"""Base model shared by persisted records and API schemas.

Python attributes are snake_case; JSON on disk and on the wire is camelCase
(``workspaceId``, ``createdAt``) so existing dashboard and webhook consumers
keep working.  Both spellings are accepted on input.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
