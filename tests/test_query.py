"""
Tests for graph question answering.
"""

import asyncio
import os
import tempfile

from kgsat.llm import NO_ANSWER
from kgsat.query import answer_query
from kgsat.store import GraphStore


def _fresh():
    tmp = tempfile.mkdtemp()
    return GraphStore(db_path=os.path.join(tmp, "test.db"))


class FakeExtractor:
    def __init__(self, names):
        self.names = names
        self.graphs = []

    async def extract_query_entities(self, query, privacy_level):
        return self.names

    async def synthesize_answer(self, query, graph, privacy_level):
        self.graphs.append((graph, privacy_level))
        names = ", ".join(n["name"] for n in graph["nodes"])
        return f"Known: {names}"


async def _graph(store):
    jane = await store.create_entity("Jane Doe", "PERSON")
    acme = await store.create_entity("Acme", "COMPANY")
    secret = await store.create_entity("Secret Project", "DELIVERABLE", privacy_level="PRIVATE")
    await store.create_relation(jane["id"], acme["id"], "WORKS_AT")
    await store.create_relation(secret["id"], acme["id"], "DELIVERABLE_OF", privacy_level="PRIVATE")
    return jane, acme, secret


def test_answer_uses_graph_context():
    async def _test():
        store = _fresh()
        jane, acme, _ = await _graph(store)
        extractor = FakeExtractor(["Jane Doe"])
        result = await answer_query(store, extractor, "Where does Jane work?", "PUBLIC")
        assert [n["id"] for n in result["graph"]["nodes"]] == [jane["id"], acme["id"]]
        assert result["answer"] == "Known: Jane Doe, Acme"
        assert extractor.graphs[0][1] == "PUBLIC"
    asyncio.run(_test())


def test_private_query_sees_private_nodes():
    async def _test():
        store = _fresh()
        _, _, secret = await _graph(store)
        result = await answer_query(store, FakeExtractor(["Acme"]), "What about Acme?", "PRIVATE")
        assert secret["id"] in {n["id"] for n in result["graph"]["nodes"]}

        public = await answer_query(store, FakeExtractor(["Acme"]), "What about Acme?", "PUBLIC")
        assert secret["id"] not in {n["id"] for n in public["graph"]["nodes"]}
    asyncio.run(_test())


def test_no_resolved_entities_gives_no_answer():
    async def _test():
        store = _fresh()
        await _graph(store)
        extractor = FakeExtractor(["Secret Project"])
        result = await answer_query(store, extractor, "What is the secret project?", "PUBLIC")
        assert result == {"graph": {"nodes": [], "edges": []}, "answer": NO_ANSWER}
        assert extractor.graphs == []

        empty = await answer_query(store, FakeExtractor([]), "Hello?", "PUBLIC")
        assert empty["answer"] == NO_ANSWER
    asyncio.run(_test())
