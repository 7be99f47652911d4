"""
Graph question answering: query -> entity names -> graph context -> answer.
Everything runs at the caller's privacy level, model routing included.
"""

from kgsat.config import TRAVERSAL_DEPTH
from kgsat.llm import NO_ANSWER
from kgsat.log import log
from kgsat.traversal import get_graph_context


async def answer_query(store, extractor, query: str, privacy_level: str, depth: int = TRAVERSAL_DEPTH) -> dict:
    """Returns {"graph": {"nodes", "edges"}, "answer": str}."""
    empty = {"graph": {"nodes": [], "edges": []}, "answer": NO_ANSWER}

    names = await extractor.extract_query_entities(query, privacy_level)
    if not names:
        return empty

    found = await store.find_entities_by_name(
        [{"name": n, "type": None, "description": None} for n in names], privacy_level
    )
    seed_ids = [e["id"] for e in found["resolved"]]
    if not seed_ids:
        log.debug("No entities resolved for query names %s", names)
        return empty

    graph = await get_graph_context(store, seed_ids, depth, privacy_level)
    answer = await extractor.synthesize_answer(query, graph, privacy_level)
    return {"graph": graph, "answer": answer}
