"""
Data models for the bulk import pipeline.

A Document is immutable once handed to the pipeline; a Batch is an ordered,
non-empty run of documents produced by the planner.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import SizingFailure
from .utils import byte_length, canonical_json, generate_id


class Document(BaseModel):
    """JSON document with a stable id and the partition key it is written under."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_id)
    partition_key: str
    body: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "partition_key")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty string")
        return v

    @classmethod
    def from_wire(cls, payload: Dict[str, Any], partition_key: str) -> "Document":
        """Build from a stored/serialized payload ({"id": ..., **body})."""
        body = dict(payload)
        doc_id = body.pop("id", None) or generate_id()
        return cls(id=str(doc_id), partition_key=partition_key, body=body)

    def to_wire(self) -> Dict[str, Any]:
        """Payload sent to the store: the body with ``id`` set."""
        return {**self.body, "id": self.id}

    def canonical_json(self) -> str:
        try:
            return canonical_json(self.to_wire())
        except (TypeError, ValueError) as exc:
            raise SizingFailure(f"document {self.id} is not JSON serializable: {exc}") from exc

    def size_bytes(self) -> int:
        """Byte length of the canonical, null-stripped serialization."""
        return byte_length(self.canonical_json())


@dataclass(frozen=True)
class Batch:
    """Ordered, non-empty sequence of documents handled by one worker."""

    documents: Tuple[Document, ...]

    def __post_init__(self) -> None:
        if not self.documents:
            raise ValueError("a batch must contain at least one document")

    @classmethod
    def of(cls, documents) -> "Batch":
        return cls(tuple(documents))

    def __len__(self) -> int:
        return len(self.documents)

    def __iter__(self) -> Iterator[Document]:
        return iter(self.documents)

    @property
    def partition_keys(self) -> Tuple[str, ...]:
        """Distinct partition keys in first-seen order."""
        return tuple(dict.fromkeys(d.partition_key for d in self.documents))

    def prefix(self, n: int) -> "Batch":
        return Batch(self.documents[: max(1, n)])

    def remainder(self, n: int) -> Optional["Batch"]:
        """Documents after the first ``n``, or None when nothing is left."""
        rest = self.documents[max(1, n) :]
        return Batch(rest) if rest else None
