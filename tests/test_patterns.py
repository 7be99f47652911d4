"""
Tests for pattern mining and gap detection.
"""

import asyncio
import os
import tempfile

from kgsat.patterns import count_gaps, find_common_relation_patterns, find_entities_with_missing_relations
from kgsat.store import GraphStore


def _fresh():
    tmp = tempfile.mkdtemp()
    return GraphStore(db_path=os.path.join(tmp, "test.db"))


async def _three_companies(store):
    c1 = await store.create_entity("Test Company 1", "COMPANY")
    c2 = await store.create_entity("Test Company 2", "COMPANY")
    c3 = await store.create_entity("Test Company 3", "COMPANY")
    city1 = await store.create_entity("Test City 1", "LOCATION")
    city3 = await store.create_entity("Test City 3", "LOCATION")
    await store.create_relation(c1["id"], city1["id"], "HAS_HEADQUARTERS")
    await store.create_relation(c3["id"], city3["id"], "HAS_HEADQUARTERS")
    return c1, c2, c3


def test_common_pattern_found():
    async def _test():
        store = _fresh()
        await _three_companies(store)
        assert await find_common_relation_patterns(store, threshold=2) == {"COMPANY": ["HAS_HEADQUARTERS"]}
        assert await find_common_relation_patterns(store, threshold=3) == {}
    asyncio.run(_test())


def test_patterns_are_keyed_by_source_type():
    async def _test():
        store = _fresh()
        alice = await store.create_entity("Alice", "PERSON")
        bob = await store.create_entity("Bob", "PERSON")
        acme = await store.create_entity("Acme", "COMPANY")
        await store.create_relation(alice["id"], acme["id"], "WORKS_AT")
        await store.create_relation(bob["id"], acme["id"], "WORKS_AT")
        patterns = await find_common_relation_patterns(store, threshold=2)
        assert patterns == {"PERSON": ["WORKS_AT"]}
    asyncio.run(_test())


def test_company_without_headquarters_is_a_gap():
    async def _test():
        store = _fresh()
        c1, c2, c3 = await _three_companies(store)
        patterns = await find_common_relation_patterns(store, threshold=2)
        gaps = await find_entities_with_missing_relations(store, patterns)

        assert list(gaps) == [c1["id"], c2["id"], c3["id"]]
        assert gaps[c2["id"]]["out_relation_types"] == ["HAS_HEADQUARTERS"]
        assert gaps[c1["id"]]["out_relation_types"] == []
        assert gaps[c3["id"]]["out_relation_types"] == []
        # No company is ever the target of HAS_HEADQUARTERS.
        for gap in gaps.values():
            assert gap["in_relation_types"] == ["HAS_HEADQUARTERS"]
        assert gaps[c2["id"]]["entity"]["name"] == "Test Company 2"
        assert count_gaps(gaps) == 4
    asyncio.run(_test())


def test_gaps_are_sound():
    """Every reported gap is a patterned type with the relation really absent."""
    async def _test():
        store = _fresh()
        await _three_companies(store)
        patterns = await find_common_relation_patterns(store, threshold=2)
        gaps = await find_entities_with_missing_relations(store, patterns)
        relations = await store.all_relations()

        for eid, gap in gaps.items():
            assert gap["entity"]["type"] in patterns
            for rtype in gap["out_relation_types"]:
                assert rtype in patterns[gap["entity"]["type"]]
                assert not any(r["source_entity_id"] == eid and r["type"] == rtype for r in relations)
            for rtype in gap["in_relation_types"]:
                assert not any(r["target_entity_id"] == eid and r["type"] == rtype for r in relations)
    asyncio.run(_test())


def test_no_patterns_no_gaps():
    async def _test():
        store = _fresh()
        await store.create_entity("Lonely", "COMPANY")
        assert await find_common_relation_patterns(store) == {}
        assert await find_entities_with_missing_relations(store, {}) == {}
    asyncio.run(_test())
