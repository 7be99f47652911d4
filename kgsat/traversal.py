"""
Privacy-aware multi-hop traversal.

BFS from seed entities. Each hop fetches the relations touching the frontier,
then the neighbor entities visible at the caller's privacy level. A PUBLIC
walk never steps onto a PRIVATE node or edge, so nothing private can be
reached through one either.
"""

from kgsat import vocab
from kgsat.log import log


def _node(entity: dict) -> dict:
    return {
        "id": entity["id"],
        "name": entity["name"],
        "type": entity["type"],
        "description": entity["description"],
        "privacy_level": entity["privacy_level"],
    }


def _edge(relation: dict) -> dict:
    return {
        "id": relation["id"],
        "source": relation["source_entity_id"],
        "target": relation["target_entity_id"],
        "type": relation["type"],
        "description": relation["description"],
        "privacy_level": relation["privacy_level"],
        "properties": relation["properties"],
    }


async def get_graph_context(store, seed_ids: list[int], depth: int, privacy_level: str) -> dict:
    """
    Induced subgraph around seed_ids, up to depth hops, visible at
    privacy_level. Returns {"nodes": [...], "edges": [...]} sorted by id.

    An edge is kept only when both its endpoints made it into the node set.
    Visited ids are never expanded twice, so cycles terminate.
    """
    vocab.check(privacy_level, vocab.PRIVACY_LEVELS, "privacy level")
    if depth < 0:
        raise ValueError(f"depth must be >= 0, got {depth}")
    if not seed_ids:
        return {"nodes": [], "edges": []}

    nodes: dict[int, dict] = {}
    edges: dict[int, dict] = {}

    for entity in await store.entities_by_ids(seed_ids, privacy_level):
        nodes[entity["id"]] = entity

    # Filtered-out seeds count as visited: they must not come back as neighbors.
    visited = set(seed_ids)
    frontier = sorted(nodes)

    for hop in range(depth):
        if not frontier:
            break

        relations = await store.relations_touching(frontier, privacy_level)

        neighbor_ids = set()
        for rel in relations:
            edges[rel["id"]] = rel
            for endpoint in (rel["source_entity_id"], rel["target_entity_id"]):
                if endpoint not in visited:
                    neighbor_ids.add(endpoint)
        visited |= neighbor_ids

        admitted = await store.entities_by_ids(neighbor_ids, privacy_level) if neighbor_ids else []
        for entity in admitted:
            nodes[entity["id"]] = entity

        frontier = sorted(e["id"] for e in admitted)
        log.debug("traversal hop %d: %d relations, %d new nodes", hop + 1, len(relations), len(frontier))

    kept = [
        rel for rel in edges.values()
        if rel["source_entity_id"] in nodes and rel["target_entity_id"] in nodes
    ]
    return {
        "nodes": [_node(nodes[i]) for i in sorted(nodes)],
        "edges": [_edge(r) for r in sorted(kept, key=lambda r: r["id"])],
    }
