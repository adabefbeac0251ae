"""Shared helpers for log-backed repositories."""
from __future__ import annotations

import logging
from typing import Iterable, Optional, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger("codemeter.db")

M = TypeVar("M", bound=BaseModel)


def parse_entity(model: type[M], data: object) -> Optional[M]:
    """Validate one stored entity; malformed data yields None instead of raising."""
    if not isinstance(data, dict):
        return None
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.debug("Skipping malformed %s: %s", model.__name__, exc.error_count())
        return None


def parse_entities(model: type[M], items: Iterable[object]) -> list[M]:
    parsed = []
    for item in items:
        entity = parse_entity(model, item)
        if entity is not None:
            parsed.append(entity)
    return parsed


def dump_entity(entity: BaseModel) -> dict:
    return entity.model_dump(exclude_none=True)
