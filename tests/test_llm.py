"""
Tests for the extraction service: routing by privacy, parse fallbacks,
output validation. requests.post is monkeypatched.
"""

import asyncio
import json

import requests

from kgsat import llm as llm_mod
from kgsat.llm import NO_ANSWER, Extractor, validate_extraction


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


def _route(monkeypatch, text):
    """Answer every model call with text. Returns the list of hit URLs."""
    hits = []

    def fake_post(url, params=None, json=None, headers=None, timeout=None):
        hits.append(url)
        if "generateContent" in url:
            return FakeResponse({"candidates": [{"content": {"parts": [{"text": text}]}}]})
        return FakeResponse({"response": text})

    monkeypatch.setattr(llm_mod.requests, "post", fake_post)
    return hits


def _extractor():
    return Extractor(ollama_url="http://ollama.test", gemini_api_key="g-key")


def test_private_goes_to_ollama(monkeypatch):
    hits = _route(monkeypatch, "INVOICE")
    assert asyncio.run(_extractor().classify("Pay 10 EUR", "PRIVATE")) == "INVOICE"
    assert hits == ["http://ollama.test/api/generate"]


def test_public_goes_to_gemini_when_keyed(monkeypatch):
    hits = _route(monkeypatch, '"CONTRACT"')
    assert asyncio.run(_extractor().classify("This agreement", "PUBLIC")) == "CONTRACT"
    assert len(hits) == 1
    assert "generateContent" in hits[0]


def test_public_falls_back_to_ollama_without_key(monkeypatch):
    hits = _route(monkeypatch, "NDA")
    extractor = Extractor(ollama_url="http://ollama.test", gemini_api_key="")
    assert asyncio.run(extractor.classify("Confidential", "PUBLIC")) == "NDA"
    assert hits == ["http://ollama.test/api/generate"]


def test_classify_unknown_or_error_is_generic(monkeypatch):
    _route(monkeypatch, "POEM")
    assert asyncio.run(_extractor().classify("Roses are red", "PRIVATE")) == "GENERIC"

    def broken_post(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(llm_mod.requests, "post", broken_post)
    assert asyncio.run(_extractor().classify("Roses are red", "PRIVATE")) == "GENERIC"


def test_extract_entities_relations_strips_fences(monkeypatch):
    body = {
        "entities": [{"name": "Acme", "type": "company", "description": "Vendor"}],
        "relations": [{"source": "Acme", "target": "Berlin", "type": "HAS_HEADQUARTERS"}],
    }
    _route(monkeypatch, "```json\n" + json.dumps(body) + "\n```")
    out = asyncio.run(_extractor().extract_entities_relations("text", "GENERIC", "PRIVATE"))
    assert out["entities"] == [{"name": "Acme", "type": "COMPANY", "description": "Vendor"}]
    assert out["relations"][0]["type"] == "HAS_HEADQUARTERS"


def test_extract_entities_relations_bad_json(monkeypatch):
    _route(monkeypatch, "not json at all")
    out = asyncio.run(_extractor().extract_entities_relations("text", "GENERIC", "PUBLIC"))
    assert out == {"entities": [], "relations": []}


def test_structured_metadata_only_for_known_types(monkeypatch):
    hits = _route(monkeypatch, '{"invoiceNumber": "INV-7", "totalAmount": 12.5}')
    extractor = _extractor()
    assert asyncio.run(extractor.extract_structured_metadata("x", "GENERIC", "PRIVATE")) is None
    assert hits == []
    meta = asyncio.run(extractor.extract_structured_metadata("x", "INVOICE", "PRIVATE"))
    assert meta == {"invoiceNumber": "INV-7", "totalAmount": 12.5}


def test_query_entities(monkeypatch):
    _route(monkeypatch, '["Acme", " Jane Doe ", 3, ""]')
    names = asyncio.run(_extractor().extract_query_entities("Who works at Acme?", "PUBLIC"))
    assert names == ["Acme", "Jane Doe"]


def test_synthesize_answer_empty_reply(monkeypatch):
    _route(monkeypatch, "   ")
    graph = {"nodes": [{"id": 1, "name": "Acme", "type": "COMPANY"}], "edges": []}
    assert asyncio.run(_extractor().synthesize_answer("q", graph, "PUBLIC")) == NO_ANSWER


def test_validate_extraction_coerces_and_drops():
    out = validate_extraction({
        "entities": [
            {"name": "Acme", "type": "SPACESHIP"},
            {"name": "   ", "type": "PERSON"},
            "garbage",
            {"name": "Jane", "type": "person", "description": None},
        ],
        "relations": [
            {"source": "Jane", "target": "Acme", "type": "LIKES"},
            {"source": "Jane", "type": "WORKS_AT"},
        ],
    })
    assert out["entities"] == [
        {"name": "Acme", "type": "OTHER", "description": ""},
        {"name": "Jane", "type": "PERSON", "description": ""},
    ]
    assert out["relations"] == [
        {"source": "Jane", "target": "Acme", "type": "RELATED_TO", "description": ""},
    ]


def test_validate_extraction_missing_keys():
    assert validate_extraction({}) == {"entities": [], "relations": []}
