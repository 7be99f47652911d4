"""
Tests for entity merge and the similarity index.
Uses deterministic hashed vectors instead of a sentence-transformer model.
"""

import asyncio
import hashlib
import os
import tempfile

import numpy as np
import pytest

from kgsat.errors import NotFound
from kgsat.merge import SimilarityIndex, merge_duplicates
from kgsat.store import GraphStore


def _fresh():
    tmp = tempfile.mkdtemp()
    return GraphStore(db_path=os.path.join(tmp, "test.db"))


def _word_vector(word):
    seed = int(hashlib.md5(word.encode()).hexdigest()[:8], 16)
    return np.random.default_rng(seed).standard_normal(384)


def word_embed(texts):
    """Bag-of-words vectors: same words (any case) give the same vector."""
    return [sum(_word_vector(w) for w in t.lower().split()) for t in texts]


def test_identical_names_merge_into_lower_id():
    async def _test():
        store = _fresh()
        a = await store.create_entity("Acme Corp", "COMPANY")
        b = await store.create_entity("Acme Corp", "COMPANY")
        berlin = await store.create_entity("Berlin", "LOCATION")
        alice = await store.create_entity("Alice", "PERSON")
        await store.create_relation(a["id"], berlin["id"], "HAS_HEADQUARTERS")
        await store.create_relation(alice["id"], b["id"], "WORKS_AT")

        result = await merge_duplicates(store, threshold=0.85, embed_fn=word_embed)
        assert result["success"] is True
        assert result["merged_count"] == 1
        assert result["merged_pairs"][0]["winner"] == a["id"]
        assert result["merged_pairs"][0]["loser"] == b["id"]
        assert result["skipped_pairs"] == []

        assert await store.get_entity(b["id"]) is None
        ends = {(r["source_entity_id"], r["target_entity_id"]) for r in await store.all_relations()}
        assert ends == {(a["id"], berlin["id"]), (alice["id"], a["id"])}
    asyncio.run(_test())


def test_case_variants_merge():
    async def _test():
        store = _fresh()
        await store.create_entity("Test Company", "COMPANY")
        await store.create_entity("test company", "COMPANY")
        result = await merge_duplicates(store, threshold=0.85, embed_fn=word_embed)
        assert result["merged_count"] == 1
        assert len(await store.all_entities()) == 1
    asyncio.run(_test())


def test_distinct_names_stay_apart():
    async def _test():
        store = _fresh()
        await store.create_entity("Acme", "COMPANY")
        await store.create_entity("Berlin", "LOCATION")
        await store.create_entity("Alice", "PERSON")
        result = await merge_duplicates(store, threshold=0.85, embed_fn=word_embed)
        assert result["merged_count"] == 0
        assert len(await store.all_entities()) == 3
    asyncio.run(_test())


def test_three_copies_collapse_into_one():
    async def _test():
        store = _fresh()
        for _ in range(3):
            await store.create_entity("Acme", "COMPANY")
        result = await merge_duplicates(store, threshold=0.85, embed_fn=word_embed)
        assert result["merged_count"] == 2
        assert [p["winner"] for p in result["merged_pairs"]] == [1, 1]
        assert [e["id"] for e in await store.all_entities()] == [1]
    asyncio.run(_test())


def test_empty_store_is_noop():
    async def _test():
        store = _fresh()
        result = await merge_duplicates(store, embed_fn=word_embed)
        assert result["merged_count"] == 0
        assert result["message"] == "No entities to merge"
    asyncio.run(_test())


def test_stale_pair_is_skipped():
    class VanishingStore:
        """Every merge finds the loser already gone."""

        def __init__(self):
            self.calls = []

        async def all_entities(self):
            return [
                {"id": 1, "name": "Acme"},
                {"id": 2, "name": "Acme"},
            ]

        async def merge_entities(self, winner, loser):
            self.calls.append((winner, loser))
            raise NotFound(f"Entity {loser} not found")

    async def _test():
        store = VanishingStore()
        result = await merge_duplicates(store, threshold=0.85, embed_fn=word_embed)
        assert result["merged_count"] == 0
        assert result["skipped_pairs"][0]["winner"] == 1
        assert result["skipped_pairs"][0]["loser"] == 2
        assert store.calls[0] == (1, 2)
    asyncio.run(_test())


def test_similarity_index_orders_best_first():
    index = SimilarityIndex(embed_fn=word_embed)
    index.index_many([
        {"id": 3, "name": "Acme Corp"},
        {"id": 1, "name": "Acme Corp"},
        {"id": 2, "name": "Acme Corp Berlin"},
        {"id": 4, "name": "Bolt"},
    ])
    hits = index.query("acme corp", 0.5)
    assert [h["id"] for h in hits] == [1, 3, 2]
    assert hits[0]["score"] == pytest.approx(1.0, abs=1e-3)
    assert hits[2]["score"] < hits[0]["score"]


def test_similarity_index_empty():
    index = SimilarityIndex(embed_fn=word_embed)
    assert len(index) == 0
    assert index.query("anything", 0.1) == []
