"""Base model for relay payloads.

Every payload model inherits from :class:`RelayBaseModel` which provides:

* A ``model_validator(mode="before")`` that strips placeholder values
  (``None``, blank strings, NaN) so alias resolution falls through to the
  next alias and the field default is used when nothing is left.
* :meth:`RelayBaseModel.to_payload` producing the pruned JSON-ready dict
  that travels on the bus.
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

from georelay.ingestion.normalize import prune_patch


class RelayBaseModel(BaseModel):
    """Base for broker and bus payload models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        """Drop placeholder values so they never win an alias lookup."""
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_placeholders(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        return RelayBaseModel._clean_dict(values)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict with unset and empty values pruned."""
        dumped = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        pruned = prune_patch(dumped)
        return pruned if isinstance(pruned, dict) else {}
