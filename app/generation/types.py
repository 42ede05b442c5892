"""Core types and DTOs for generation calls."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class CallStatus(str, Enum):
    """Outcome of one pooled generation call."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class GenerationRequest:
    """A single prompt sent to the generation capability."""

    user_prompt: str
    system_prompt: str = ""
    model: str = ""  # empty = client default
    temperature: float = 0.0
    max_tokens: int = 2048
    json_mode: bool = True
    purpose: str = ""  # e.g. "entity_enrichment", used in logs
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])


@dataclass
class GenerationResult:
    text: str
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_ms": self.latency_ms,
        }


@dataclass
class CallOutcome(Generic[T]):
    """Per-item result of a pooled batch: either ``value`` or ``error``."""

    item: Any
    status: CallStatus
    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == CallStatus.SUCCESS
