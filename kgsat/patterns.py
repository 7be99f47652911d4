"""
Pattern mining and gap detection.

A pattern is an (entity type, relation type) pair seen often enough, with
that entity type on the source side, to count as a norm. A gap is an entity
of a patterned type that has no such relation in one direction.
"""

from kgsat.config import PATTERN_THRESHOLD


async def find_common_relation_patterns(store, threshold: int = PATTERN_THRESHOLD) -> dict[str, list[str]]:
    """{entity_type: [relation_type, ...]} for groups counted at least threshold times."""
    patterns: dict[str, list[str]] = {}
    for group in await store.relation_pattern_counts():
        if group["count"] >= threshold:
            patterns.setdefault(group["entity_type"], []).append(group["relation_type"])
    return {etype: sorted(rtypes) for etype, rtypes in sorted(patterns.items())}


async def find_entities_with_missing_relations(store, patterns: dict[str, list[str]]) -> dict[int, dict]:
    """
    For every patterned (entity type, relation type), collect the entities of
    that type that are never the source (out) or never the target (in) of the
    relation type.

    Returns {entity_id: {"entity", "in_relation_types", "out_relation_types"}}
    in ascending entity id. Entities with no gap are absent.
    """
    gaps: dict[int, dict] = {}

    def _slot(entity: dict) -> dict:
        return gaps.setdefault(entity["id"], {
            "entity": entity,
            "in_relation_types": set(),
            "out_relation_types": set(),
        })

    for entity_type, relation_types in patterns.items():
        for relation_type in relation_types:
            for entity in await store.entities_missing_relation(entity_type, relation_type, "out"):
                _slot(entity)["out_relation_types"].add(relation_type)
            for entity in await store.entities_missing_relation(entity_type, relation_type, "in"):
                _slot(entity)["in_relation_types"].add(relation_type)

    return {
        eid: {
            "entity": gaps[eid]["entity"],
            "in_relation_types": sorted(gaps[eid]["in_relation_types"]),
            "out_relation_types": sorted(gaps[eid]["out_relation_types"]),
        }
        for eid in sorted(gaps)
    }


def count_gaps(gaps: dict[int, dict]) -> int:
    """Number of (entity, missing relation) pairs."""
    return sum(len(g["in_relation_types"]) + len(g["out_relation_types"]) for g in gaps.values())
