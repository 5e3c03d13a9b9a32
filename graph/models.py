"""
models.py - Edge and snapshot types for the relationship graph.

Nodes are account ids.  An edge links two accounts through one kind of signal;
the same pair can be linked several times with different edge types (a shared
device *and* a payment loop), so an edge is identified by
``(user_a, user_b, edge_type)`` with ``user_a < user_b``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, NamedTuple, Tuple


class EdgeType(str, Enum):
    DEVICE = "DEVICE"
    NETWORK = "NETWORK"
    PAYMENT = "PAYMENT"
    BEHAVIOR = "BEHAVIOR"
    SOCIAL = "SOCIAL"
    ENFORCEMENT = "ENFORCEMENT"

    @classmethod
    def parse(cls, value: "EdgeType | str") -> "EdgeType":
        if isinstance(value, EdgeType):
            return value
        return cls(str(value).strip().upper())


EdgeKey = Tuple[str, str, EdgeType]


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """Order two account ids lexicographically."""
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


@dataclass
class Edge:
    user_a: str
    user_b: str
    edge_type: EdgeType
    weight: float
    last_reinforced_at: datetime
    created_at: datetime
    decay_anchor: datetime
    observation_count: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> EdgeKey:
        return (self.user_a, self.user_b, self.edge_type)

    def touches(self, user_id: str) -> bool:
        return user_id == self.user_a or user_id == self.user_b

    def other(self, user_id: str) -> str:
        return self.user_b if user_id == self.user_a else self.user_a

    def copy(self) -> "Edge":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_a": self.user_a,
            "user_b": self.user_b,
            "edge_type": self.edge_type.value,
            "weight": round(self.weight, 6),
            "last_reinforced_at": self.last_reinforced_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "observation_count": self.observation_count,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class GraphSnapshot:
    """Point-in-time, read-only copy of the edge store handed to detectors.

    Edges are sorted by key so iteration order never depends on insertion
    order in the store.
    """

    taken_at: datetime
    edges: Tuple[Edge, ...]
    min_weight: float = 0.0

    def __iter__(self) -> Iterator[Edge]:
        return iter(self.edges)

    def __len__(self) -> int:
        return len(self.edges)

    @property
    def nodes(self) -> Tuple[str, ...]:
        seen = set()
        for edge in self.edges:
            seen.add(edge.user_a)
            seen.add(edge.user_b)
        return tuple(sorted(seen))

    def filtered(self, min_weight: float) -> "GraphSnapshot":
        return GraphSnapshot(
            taken_at=self.taken_at,
            edges=tuple(e for e in self.edges if e.weight >= min_weight),
            min_weight=max(self.min_weight, min_weight),
        )


class DecayResult(NamedTuple):
    edges_updated: int
    edges_removed: int
    edges_failed: int = 0
