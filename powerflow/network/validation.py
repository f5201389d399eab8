"""Topology validation and connectivity.

Only the checks needed to assemble a meaningful admittance matrix:
endpoint resolution, duplicate ids, zero nominal voltages, and island
bookkeeping by breadth-first search.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from powerflow.core.exceptions import TopologyError

if TYPE_CHECKING:
    from powerflow.network.network_model import Branch, Node


def validate_topology(nodes: list[Node], branches: list[Branch]) -> None:
    """Raise TopologyError listing every structural problem found."""
    problems: list[str] = []
    seen: set[int] = set()

    for node in nodes:
        if node.id in seen:
            problems.append(f"duplicate node id {node.id}")
        seen.add(node.id)
        if abs(node.nominal_voltage) == 0:
            problems.append(f"node {node.id} has zero nominal voltage")

    for br in branches:
        label = br.name or f"{br.from_id}-{br.to_id}"
        if br.from_id not in seen:
            problems.append(f"branch {label}: unknown from node {br.from_id}")
        if br.to_id not in seen:
            problems.append(f"branch {label}: unknown to node {br.to_id}")
        if br.from_id == br.to_id:
            problems.append(f"branch {label}: both ends on node {br.from_id}")
        if br.tap_ratio.real < 0:
            problems.append(f"branch {label}: negative tap ratio {br.tap_ratio}")

    if problems:
        raise TopologyError(
            f"Invalid topology ({len(problems)} problems): " + "; ".join(problems),
            problems,
        )


def _adjacency(node_ids: Iterable[int], branches: Iterable[Branch]) -> dict[int, set[int]]:
    adj: dict[int, set[int]] = {nid: set() for nid in node_ids}
    for br in branches:
        adj.setdefault(br.from_id, set()).add(br.to_id)
        adj.setdefault(br.to_id, set()).add(br.from_id)
    return adj


def find_islands(nodes: list[Node], branches: list[Branch]) -> list[set[int]]:
    """Connected components as sets of node ids, largest first."""
    adj = _adjacency((n.id for n in nodes), branches)
    visited: set[int] = set()
    islands: list[set[int]] = []

    for node in nodes:
        if node.id in visited:
            continue
        island = {node.id}
        queue = [node.id]
        visited.add(node.id)
        while queue:
            current = queue.pop(0)
            for neighbor in adj[current]:
                if neighbor not in visited:
                    visited.add(neighbor)
                    island.add(neighbor)
                    queue.append(neighbor)
        islands.append(island)

    islands.sort(key=len, reverse=True)
    return islands


def is_connected(nodes: list[Node], branches: list[Branch]) -> bool:
    return len(find_islands(nodes, branches)) <= 1


def find_orphan_nodes(nodes: list[Node], branches: list[Branch]) -> list[int]:
    """Ids of nodes no branch touches."""
    touched = {br.from_id for br in branches} | {br.to_id for br in branches}
    return [n.id for n in nodes if n.id not in touched]
