"""
kgsat Ingestion
================
Text in, document + entities + relations out.

classify -> create document -> attach structured metadata -> split into
paragraphs -> extract per paragraph -> upsert entities by exact name ->
upsert relations.

Entities are matched by name among the rows visible at the ingestion
privacy level, so PUBLIC text never links to a PRIVATE entity. PRIVATE text
upgrades whatever it touches to PRIVATE.
"""

import re
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from kgsat import vocab
from kgsat.config import CHUNK_MIN_CHARS
from kgsat.log import log

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def split_paragraphs(text: str) -> list[str]:
    """Blank-line separated paragraphs long enough to be worth extracting."""
    return [c for c in _PARAGRAPH_BREAK.split(text) if len(c.strip()) >= CHUNK_MIN_CHARS]


class IngestionPipeline:
    def __init__(self, store, extractor):
        self.store = store
        self.extractor = extractor

    async def ingest(
        self,
        text: str,
        source_type: str,
        privacy_level: str,
        path: Optional[str] = None,
        title: Optional[str] = None,
    ) -> dict:
        vocab.check(source_type, vocab.SOURCE_TYPES, "source type")
        vocab.check(privacy_level, vocab.PRIVACY_LEVELS, "privacy level")

        document_type = await self.extractor.classify(text, privacy_level)
        log.info("Classified %s content as %s", source_type, document_type)

        document = None
        if path is not None:
            document = await self.store.get_document_by_path(path)
        if document is None:
            document = await self.store.create_document(
                path=path or f"generated://{source_type}/{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}",
                title=title or f"Ingested from {source_type}",
                content=text,
                document_type=document_type,
                privacy_level=privacy_level,
                source_type=source_type,
            )
        elif privacy_level == vocab.PRIVATE and document["privacy_level"] == vocab.PUBLIC:
            document = await self.store.update_document(document["id"], privacy_level=vocab.PRIVATE)

        metadata = await self.extractor.extract_structured_metadata(text, document_type, privacy_level)
        if metadata:
            document = await self.store.update_document(
                document["id"],
                metadata=metadata,
                last_indexed_at=datetime.now(timezone.utc).isoformat(),
            )

        name_to_id: dict[str, int] = {}
        relations_stored = 0
        for chunk in split_paragraphs(text):
            extracted = await self.extractor.extract_entities_relations(
                chunk, document_type, privacy_level
            )
            await self._upsert_entities(extracted["entities"], document, name_to_id)
            relations_stored += await self._upsert_relations(
                extracted["relations"], document, name_to_id
            )

        log.info(
            "Ingested document %d: %d entities linked, %d relations stored",
            document["id"], len(name_to_id), relations_stored,
        )
        return document

    async def _upsert_entities(self, entities: list[dict], document: dict, name_to_id: dict):
        privacy_level = document["privacy_level"]
        candidates = []
        seen = set()
        for ent in entities:
            if ent["name"] in name_to_id or ent["name"] in seen:
                continue
            seen.add(ent["name"])
            candidates.append(ent)
        if not candidates:
            return

        found = await self.store.find_entities_by_name(candidates, privacy_level)

        # Several rows can share a name; the lowest id is the canonical one.
        for entity in found["resolved"]:
            if entity["name"] in name_to_id:
                continue
            if privacy_level == vocab.PRIVATE and entity["privacy_level"] == vocab.PUBLIC:
                entity = await self.store.update_entity(entity["id"], privacy_level=vocab.PRIVATE)
            name_to_id[entity["name"]] = entity["id"]

        for ent in found["unresolved"]:
            created = await self.store.create_entity(
                name=ent["name"],
                type=ent["type"],
                description=ent.get("description"),
                source_document_id=document["id"],
                privacy_level=privacy_level,
                source_type=document["source_type"],
            )
            name_to_id[created["name"]] = created["id"]

    async def _upsert_relations(self, relations: list[dict], document: dict, name_to_id: dict) -> int:
        privacy_level = document["privacy_level"]
        stored = 0
        for rel in relations:
            source_id = name_to_id.get(rel["source"])
            target_id = name_to_id.get(rel["target"])
            if source_id is None or target_id is None:
                log.debug("Dropping relation with unknown endpoint: %s -> %s", rel["source"], rel["target"])
                continue

            existing = await self.store.find_relation(source_id, target_id, rel["type"])
            if existing is not None:
                if privacy_level == vocab.PRIVATE and existing["privacy_level"] == vocab.PUBLIC:
                    await self.store.update_relation(existing["id"], privacy_level=vocab.PRIVATE)
                continue

            await self.store.create_relation(
                source_id=source_id,
                target_id=target_id,
                type=rel["type"],
                description=rel.get("description"),
                source_document_id=document["id"],
                privacy_level=privacy_level,
                source_type=document["source_type"],
            )
            stored += 1
        return stored
