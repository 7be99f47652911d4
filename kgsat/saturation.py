"""
kgsat Saturation
=================
Autonomous enrichment until nothing more can be learned.

Each iteration:
    1. mine relation patterns from the current graph
    2. find entities missing an expected relation (stop here if none)
    3. ask external search for each gapped entity, ingest what comes back
    4. merge duplicates introduced by the new documents

Per-entity lookups never raise. Each one yields an outcome dict with a
status of saturated, skipped or failed, and the iteration moves on.
"""

import asyncio
from typing import Callable, Optional

from kgsat import vocab
from kgsat.config import (
    PATTERN_THRESHOLD, SATURATION_EARLY_EXIT, SATURATION_INCLUDE_PRIVATE,
)
from kgsat.errors import SaturationError
from kgsat.log import log, timed
from kgsat.merge import merge_duplicates
from kgsat.patterns import (
    count_gaps, find_common_relation_patterns, find_entities_with_missing_relations,
)

SATURATED = "saturated"
SKIPPED = "skipped"
FAILED = "failed"


# ── Query generation ─────────────────────────────────────────

def result_schema(entity: dict) -> dict:
    """JSON schema the search service must answer with, for one entity."""
    name = entity["name"]

    def relation_item(shape: str) -> dict:
        return {
            "type": "object",
            "description": f"An instance of a relation of the form {shape}.",
            "properties": {
                "relation_type": {"type": "string", "enum": list(vocab.RELATION_TYPES)},
                "other_entity_name": {
                    "type": "string",
                    "description": f"The name of the other entity that is related to {name}",
                },
                "other_entity_type": {"type": "string", "enum": list(vocab.ENTITY_TYPES)},
                "evidence": {
                    "type": "string",
                    "description": "A passage of extracted text or summarized information supporting the relation",
                },
            },
            "required": ["relation_type", "other_entity_name", "other_entity_type", "evidence"],
        }

    return {
        "type": "object",
        "properties": {
            "in_relations": {
                "type": "array",
                "items": relation_item(f'"<other entity> <relation type> {name}"'),
            },
            "out_relations": {
                "type": "array",
                "items": relation_item(f'"{name} <relation type> <other entity>"'),
            },
        },
        "required": ["in_relations", "out_relations"],
    }


def generate_search_query(entity: dict, missing: dict) -> Optional[dict]:
    """
    {"query", "schema"} asking for the entity's missing relations, or None
    when nothing is missing.
    """
    in_types = missing.get("in_relation_types") or []
    out_types = missing.get("out_relation_types") or []
    if not in_types and not out_types:
        return None

    subject = f"{entity['name']} ({vocab.entity_label(entity['type'])})"
    lines = [f"    - ... {vocab.relation_label(t)} {subject}" for t in in_types]
    lines += [f"    - {subject} {vocab.relation_label(t)} ..." for t in out_types]

    query = (
        f"**Your task is to** find the missing relations for {subject}:\n\n"
        + "\n".join(lines)
        + f"\n\nFirst scrape homepages, press releases, and other relevant sources for {subject}. "
        "Then, synthesize the extracted data into a structured format that can be used "
        "to populate the missing relations."
    )
    return {"query": query, "schema": result_schema(entity)}


def format_search_result(entity: dict, result: dict) -> str:
    """Render a search result as document text for the ingestion pipeline."""
    name = entity["name"]
    lines = [f"Found relations for {name} ({vocab.entity_label(entity['type'])}):"]

    if result.get("in_relations"):
        lines.append("\nIn-coming relations:")
        for rel in result["in_relations"]:
            lines.append(
                f"- {rel['other_entity_name']} ({vocab.entity_label(rel['other_entity_type'])}) "
                f"{vocab.relation_label(rel['relation_type'])} {name}"
            )
            lines.append(f"  Evidence: {rel['evidence']}")

    if result.get("out_relations"):
        lines.append("\nOut-going relations:")
        for rel in result["out_relations"]:
            lines.append(
                f"- {name} {vocab.relation_label(rel['relation_type'])} "
                f"{rel['other_entity_name']} ({vocab.entity_label(rel['other_entity_type'])})"
            )
            lines.append(f"  Evidence: {rel['evidence']}")

    return "\n".join(lines)


def _outcome(entity_id: int, status: str, reason: str = "", document_id: Optional[int] = None) -> dict:
    return {"entity_id": entity_id, "status": status, "reason": reason, "document_id": document_id}


# ── The loop ─────────────────────────────────────────────────

class Saturator:
    """
    Owns one saturation run's collaborators: the store, the external search
    adapter and the ingestion pipeline. The similarity index is rebuilt by
    every merge, never kept here.
    """

    def __init__(
        self,
        store,
        search,
        pipeline,
        pattern_threshold: int = PATTERN_THRESHOLD,
        merge_threshold: Optional[float] = None,
        embed_fn: Optional[Callable] = None,
        early_exit: bool = SATURATION_EARLY_EXIT,
        include_private: bool = SATURATION_INCLUDE_PRIVATE,
    ):
        self.store = store
        self.search = search
        self.pipeline = pipeline
        self.pattern_threshold = pattern_threshold
        self.merge_threshold = merge_threshold
        self.embed_fn = embed_fn
        self.early_exit = early_exit
        self.include_private = include_private

    async def saturate_entity(self, entity: dict, missing: dict) -> dict:
        eid = entity["id"]
        if entity["privacy_level"] == vocab.PRIVATE and not self.include_private:
            return _outcome(eid, SKIPPED, "private")

        request = generate_search_query(entity, missing)
        if request is None:
            return _outcome(eid, SKIPPED, "no query")

        try:
            result = await self.search.search(request["query"], request["schema"])
        except Exception as e:  # any adapter error stays with this entity
            log.warning("Search failed for entity %d (%s): %s", eid, entity["name"], e)
            return _outcome(eid, FAILED, f"search: {e}")

        if not result or not (result.get("in_relations") or result.get("out_relations")):
            log.debug("No information found for entity %d (%s)", eid, entity["name"])
            return _outcome(eid, SKIPPED, "no information")

        try:
            document = await self.pipeline.ingest(
                format_search_result(entity, result),
                source_type=vocab.SEARCH,
                privacy_level=entity["privacy_level"],
                title=f"Search results for {entity['name']}",
            )
        except Exception as e:
            log.warning("Ingesting search result failed for entity %d: %s", eid, e)
            return _outcome(eid, FAILED, f"ingest: {e}")

        return _outcome(eid, SATURATED, document_id=document["id"])

    async def saturate(self, max_iterations: int, stop_event: Optional[asyncio.Event] = None) -> dict:
        """
        Run up to max_iterations rounds. Returns {"success",
        "saturated_count", "iterations", "fixpoint", "results"}.

        stop_event is checked between entities, never inside a store call.
        Once it is set the current iteration ends without its merge pass.
        """
        saturated_count = 0
        iterations = 0
        fixpoint = False
        results: list[dict] = []

        for iteration in range(max_iterations):
            if stop_event is not None and stop_event.is_set():
                log.info("Saturation cancelled before iteration %d", iteration)
                break
            iterations = iteration + 1

            try:
                patterns = await find_common_relation_patterns(self.store, self.pattern_threshold)
            except Exception as e:
                raise SaturationError("pattern mining", iteration, e) from e
            try:
                gaps = await find_entities_with_missing_relations(self.store, patterns)
            except Exception as e:
                raise SaturationError("gap detection", iteration, e) from e

            fixpoint = not gaps
            log.info(
                "Saturation iteration %d: %d patterned types, %d gapped entities, %d missing relations",
                iteration, len(patterns), len(gaps), count_gaps(gaps),
            )
            if fixpoint and self.early_exit:
                log.info("Fixpoint reached after %d iterations", iterations)
                break

            with timed(f"saturation.iteration.{iteration}"):
                for gap in gaps.values():
                    if stop_event is not None and stop_event.is_set():
                        break
                    outcome = await self.saturate_entity(gap["entity"], gap)
                    outcome["iteration"] = iteration
                    results.append(outcome)
                    if outcome["status"] == SATURATED:
                        saturated_count += 1

            if stop_event is not None and stop_event.is_set():
                log.info("Saturation cancelled during iteration %d; merge skipped", iteration)
                break

            try:
                await merge_duplicates(self.store, self.merge_threshold, self.embed_fn)
            except Exception as e:
                raise SaturationError("merge", iteration, e) from e

        return {
            "success": True,
            "saturated_count": saturated_count,
            "iterations": iterations,
            "fixpoint": fixpoint,
            "results": results,
        }
