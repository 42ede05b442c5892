"""Structured parsing of generation output.

Model output is parsed into a stage-specific pydantic schema. Anything
that cannot be parsed or fails validation is a ``GenerationError`` with
the raw text attached, never a crash.
"""

from __future__ import annotations

import json
import re
from typing import TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import GenerationError

M = TypeVar("M", bound=BaseModel)


def _strip_fences(text: str) -> str:
    cleaned = re.sub(r"```(?:json)?\s*", "", text).strip()
    return re.sub(r"```\s*$", "", cleaned).strip()


def extract_json(text: str) -> object:
    """Return the first JSON value found in ``text``.

    Handles markdown code fences and prose around the JSON body.
    """
    cleaned = _strip_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Fallback: outermost {...} or [...] span
    for opener, closer in (("{", "}"), ("[", "]")):
        start = cleaned.find(opener)
        end = cleaned.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                continue

    raise GenerationError("Generation output is not valid JSON", raw=text[:2000])


def parse_structured(text: str, model: type[M]) -> M:
    """Parse model output into ``model``; raise GenerationError on failure."""
    data = extract_json(text)
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise GenerationError(
            f"Generation output does not match {model.__name__}: {where} {first.get('msg', '')}".strip(),
            raw=text[:2000],
        ) from exc
