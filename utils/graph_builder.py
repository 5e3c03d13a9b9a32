"""
graph_builder.py - Build NetworkX graphs from an edge-store snapshot.

Each node is an account id.
The multigraph keeps one parallel edge per edge type (keyed by the type name);
the collapsed graph merges the types of a pair into a single edge so that
connectivity questions ("which accounts are strongly linked?") are simple.
"""

from __future__ import annotations

from typing import List

import networkx as nx
import pandas as pd

from graph.models import GraphSnapshot


# ── Public API ───────────────────────────────────────────────────────────────

def build_relationship_graph(snapshot: GraphSnapshot) -> nx.MultiGraph:
    """Build an undirected multigraph with one edge per (pair, edge type).

    Edge attributes
    ---------------
    - edge_type : str
    - weight : float
    - last_reinforced_at : datetime
    - observation_count : int
    """
    G = nx.MultiGraph()
    for edge in snapshot:
        G.add_edge(
            edge.user_a,
            edge.user_b,
            key=edge.edge_type.value,
            edge_type=edge.edge_type.value,
            weight=edge.weight,
            last_reinforced_at=edge.last_reinforced_at,
            observation_count=edge.observation_count,
        )
    return G


def build_collapsed_graph(snapshot: GraphSnapshot, min_weight: float = 0.0) -> nx.Graph:
    """Collapse parallel typed edges into a simple graph.

    Only typed edges with ``weight >= min_weight`` participate.  Edge
    attributes on the simple graph:

    - weight      : float - strongest typed weight of the pair
    - edge_types  : list  - sorted type names linking the pair
    """
    S = nx.Graph()
    for edge in snapshot:
        if edge.weight < min_weight:
            continue
        u, v = edge.user_a, edge.user_b
        if S.has_edge(u, v):
            S[u][v]["weight"] = max(S[u][v]["weight"], edge.weight)
            S[u][v]["edge_types"].append(edge.edge_type.value)
        else:
            S.add_edge(u, v, weight=edge.weight, edge_types=[edge.edge_type.value])

    for _, _, data in S.edges(data=True):
        data["edge_types"].sort()
    return S


def get_account_list(G: nx.Graph) -> List[str]:
    """Return a sorted list of all account IDs in the graph."""
    return sorted(G.nodes())


def get_edge_summary(snapshot: GraphSnapshot) -> pd.DataFrame:
    """Return a DataFrame summarising typed edges (for reports)."""
    rows = [
        {
            "user_a": e.user_a,
            "user_b": e.user_b,
            "edge_type": e.edge_type.value,
            "weight": e.weight,
            "last_reinforced_at": e.last_reinforced_at,
            "observation_count": e.observation_count,
        }
        for e in snapshot
    ]
    columns = ["user_a", "user_b", "edge_type", "weight", "last_reinforced_at", "observation_count"]
    return pd.DataFrame(rows, columns=columns)
