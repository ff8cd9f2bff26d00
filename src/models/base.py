"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CyclelinkBase(BaseModel):
    """Base model with shared config for all Cyclelink wire schemas.

    ``from_attributes`` lets every schema validate straight from the
    telemetry dataclasses.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )
