"""
kgsat Entity Merge
===================
Collapses entities that name the same real-world thing.

Each run builds a fresh SimilarityIndex over every entity name, walks the
entities in ascending id, and folds each unprocessed near-duplicate into the
lower id. The index lives only for the run: nothing leaks between calls.
"""

import asyncio
from typing import Callable, Optional

import numpy as np

from kgsat.config import MERGE_SIMILARITY_THRESHOLD
from kgsat.errors import NotFound
from kgsat.log import log, timed


class SimilarityIndex:
    """
    In-memory cosine index over entity names.

    embed_fn takes a list of strings and returns one vector per string.
    Vectors are normalized on the way in, so any encoder works.
    """

    def __init__(self, embed_fn: Optional[Callable] = None):
        if embed_fn is None:
            from kgsat.embeddings import embed_batch
            embed_fn = embed_batch
        self._embed_fn = embed_fn
        self._ids: list[int] = []
        self._rows: list[np.ndarray] = []
        self._matrix: Optional[np.ndarray] = None
        self._cache: dict[str, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def _embed(self, texts: list[str]) -> list[np.ndarray]:
        missing = [t for t in dict.fromkeys(texts) if t not in self._cache]
        if missing:
            vectors = np.asarray(self._embed_fn(missing), dtype=np.float32)
            for text, vec in zip(missing, vectors):
                norm = np.linalg.norm(vec)
                self._cache[text] = vec / norm if norm > 0 else vec
        return [self._cache[t] for t in texts]

    def index(self, entity: dict):
        self.index_many([entity])

    def index_many(self, entities: list[dict]):
        if not entities:
            return
        vectors = self._embed([e["name"] for e in entities])
        self._ids.extend(e["id"] for e in entities)
        self._rows.extend(vectors)
        self._matrix = None

    def query(self, text: str, threshold: float) -> list[dict]:
        """Entities scoring >= threshold against text. Best first, ties by id."""
        if not self._ids:
            return []
        if self._matrix is None:
            self._matrix = np.vstack(self._rows)
        query_vec = self._embed([text])[0]
        scores = self._matrix @ query_vec

        hits = [
            {"id": eid, "score": round(float(score), 4)}
            for eid, score in zip(self._ids, scores)
            if score >= threshold
        ]
        hits.sort(key=lambda h: (-h["score"], h["id"]))
        return hits


async def merge_duplicates(
    store,
    threshold: Optional[float] = None,
    embed_fn: Optional[Callable] = None,
) -> dict:
    """
    One forward pass over all entities. For each entity still in play, every
    similar entity still in play is merged with it: the lower id wins. An
    entity touched by a merge is out of play for every later turn, so
    merges never chain through a loser.

    Returns {"success", "merged_count", "merged_pairs", "skipped_pairs"}.
    A pair whose rows vanished since the index was built is skipped.
    """
    if threshold is None:
        threshold = MERGE_SIMILARITY_THRESHOLD

    entities = await store.all_entities()
    if not entities:
        return {
            "success": True,
            "merged_count": 0,
            "merged_pairs": [],
            "skipped_pairs": [],
            "message": "No entities to merge",
        }

    index = SimilarityIndex(embed_fn=embed_fn)
    with timed("merge.index") as t:
        await asyncio.to_thread(index.index_many, entities)
    log.debug("Indexed %d entities in %.0fms", len(index), t.elapsed_ms)

    processed: set[int] = set()
    merged_pairs: list[dict] = []
    skipped_pairs: list[dict] = []

    for entity in entities:
        eid = entity["id"]
        if eid in processed:
            continue

        hits = await asyncio.to_thread(index.query, entity["name"], threshold)
        for hit in hits:
            other = hit["id"]
            if other == eid or other in processed:
                continue

            winner, loser = min(eid, other), max(eid, other)
            try:
                await store.merge_entities(winner, loser)
            except NotFound as e:
                log.warning("Skipping stale merge pair %d <- %d: %s", winner, loser, e)
                skipped_pairs.append({"winner": winner, "loser": loser, "reason": str(e)})
                continue

            processed.add(winner)
            processed.add(loser)
            merged_pairs.append({"winner": winner, "loser": loser, "score": hit["score"]})

            if loser == eid:
                break  # absorbed

    if merged_pairs:
        log.info("Merged %d duplicate entities", len(merged_pairs))

    return {
        "success": True,
        "merged_count": len(merged_pairs),
        "merged_pairs": merged_pairs,
        "skipped_pairs": skipped_pairs,
    }
