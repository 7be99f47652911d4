"""
kgsat Graph Store
==================
Documents, entities and relations in SQLite. Every public method is one
atomic unit of work: one connection, one commit, then the persisted row or
an exception.

Rows come back as plain dicts. JSON columns (metadata, properties) are
decoded on the way out.

PUBLIC reads only ever see PUBLIC rows. PRIVATE reads see everything.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from kgsat import vocab
from kgsat.config import DB_PATH, ensure_home
from kgsat.errors import ConstraintViolation, NotFound, NotPersisted
from kgsat.log import log

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS documents (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        path TEXT NOT NULL UNIQUE,
        title TEXT,
        content TEXT,
        document_type TEXT NOT NULL DEFAULT 'GENERIC',
        privacy_level TEXT NOT NULL DEFAULT 'PUBLIC',
        source_type TEXT NOT NULL DEFAULT 'USER',
        metadata TEXT DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_indexed_at TEXT
    );

    CREATE TABLE IF NOT EXISTS entities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        description TEXT,
        source_document_id INTEGER,
        privacy_level TEXT NOT NULL DEFAULT 'PUBLIC',
        source_type TEXT NOT NULL DEFAULT 'USER',
        metadata TEXT DEFAULT '{}',
        FOREIGN KEY (source_document_id) REFERENCES documents(id)
    );

    CREATE TABLE IF NOT EXISTS relations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_entity_id INTEGER NOT NULL,
        target_entity_id INTEGER NOT NULL,
        type TEXT NOT NULL,
        description TEXT,
        source_document_id INTEGER,
        privacy_level TEXT NOT NULL DEFAULT 'PUBLIC',
        source_type TEXT NOT NULL DEFAULT 'USER',
        properties TEXT DEFAULT '{}',
        FOREIGN KEY (source_entity_id) REFERENCES entities(id),
        FOREIGN KEY (target_entity_id) REFERENCES entities(id),
        FOREIGN KEY (source_document_id) REFERENCES documents(id)
    );

    CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);
    CREATE INDEX IF NOT EXISTS idx_entities_type ON entities(type);
    CREATE INDEX IF NOT EXISTS idx_relations_source ON relations(source_entity_id);
    CREATE INDEX IF NOT EXISTS idx_relations_target ON relations(target_entity_id);
    CREATE INDEX IF NOT EXISTS idx_relations_type ON relations(type);
"""

_ENTITY_FIELDS = {
    "name", "type", "description", "source_document_id",
    "privacy_level", "source_type", "metadata",
}
_RELATION_FIELDS = {
    "source_entity_id", "target_entity_id", "type", "description",
    "source_document_id", "privacy_level", "source_type", "properties",
}
_DOCUMENT_FIELDS = {
    "title", "content", "document_type", "privacy_level",
    "source_type", "metadata", "last_indexed_at",
}

# Stays under the 999 bound-parameter cap of older SQLite builds.
_IN_BATCH = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _batches(ids: list[int], size: int = _IN_BATCH):
    for i in range(0, len(ids), size):
        yield ids[i:i + size]


def _privacy_filter(privacy_level: str, column: str = "privacy_level") -> str:
    vocab.check(privacy_level, vocab.PRIVACY_LEVELS, "privacy level")
    if privacy_level == vocab.PUBLIC:
        return f" AND {column} = 'PUBLIC'"
    return ""


def _document(row) -> dict:
    return {
        "id": row["id"],
        "path": row["path"],
        "title": row["title"],
        "content": row["content"],
        "document_type": row["document_type"],
        "privacy_level": row["privacy_level"],
        "source_type": row["source_type"],
        "metadata": json.loads(row["metadata"] or "{}"),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "last_indexed_at": row["last_indexed_at"],
    }


def _entity(row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "type": row["type"],
        "description": row["description"],
        "source_document_id": row["source_document_id"],
        "privacy_level": row["privacy_level"],
        "source_type": row["source_type"],
        "metadata": json.loads(row["metadata"] or "{}"),
    }


def _relation(row) -> dict:
    return {
        "id": row["id"],
        "source_entity_id": row["source_entity_id"],
        "target_entity_id": row["target_entity_id"],
        "type": row["type"],
        "description": row["description"],
        "source_document_id": row["source_document_id"],
        "privacy_level": row["privacy_level"],
        "source_type": row["source_type"],
        "properties": json.loads(row["properties"] or "{}"),
    }


def _check_upgrade(current: str, requested: Optional[str], what: str):
    """Privacy only moves toward PRIVATE."""
    if requested is None:
        return
    vocab.check(requested, vocab.PRIVACY_LEVELS, "privacy level")
    if current == vocab.PRIVATE and requested == vocab.PUBLIC:
        raise ValueError(f"Refusing to downgrade {what} from PRIVATE to PUBLIC")


class GraphStore:
    """
    The relational side of the knowledge graph. Single source of truth for
    documents, entities and relations. Writes inside one store are
    serialized; conflicting writers across processes are left to SQLite.
    """

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            ensure_home()
        self.db_path = str(db_path or DB_PATH)
        self._write_lock = asyncio.Lock()
        self._initialized = False

    # ── Connection ────────────────────────────────────────────

    @asynccontextmanager
    async def _connect(self):
        conn = await aiosqlite.connect(self.db_path, timeout=10)
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA busy_timeout=10000")
            await conn.execute("PRAGMA foreign_keys=ON")
            if not self._initialized:
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.executescript(_SCHEMA)
                await conn.commit()
                self._initialized = True
            yield conn
        finally:
            await conn.close()

    async def _fetchone(self, conn, sql: str, params=()):
        async with conn.execute(sql, params) as cur:
            return await cur.fetchone()

    async def _fetchall(self, conn, sql: str, params=()):
        async with conn.execute(sql, params) as cur:
            return await cur.fetchall()

    async def _insert(self, conn, table: str, values: dict):
        columns = ", ".join(values)
        placeholders = ", ".join("?" * len(values))
        cur = await conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
        )
        row_id = cur.lastrowid
        await cur.close()
        row = None
        if row_id:
            row = await self._fetchone(conn, f"SELECT * FROM {table} WHERE id = ?", (row_id,))
        if row is None:
            raise NotPersisted(f"Insert into {table} produced no row")
        return row

    async def _update(self, conn, table: str, row_id: int, values: dict):
        if values:
            assignments = ", ".join(f"{col} = ?" for col in values)
            await conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*values.values(), row_id),
            )
        row = await self._fetchone(conn, f"SELECT * FROM {table} WHERE id = ?", (row_id,))
        if row is None:
            raise NotPersisted(f"Update of {table} {row_id} produced no row")
        return row

    # ── Documents ─────────────────────────────────────────────

    async def create_document(
        self,
        path: str,
        content: Optional[str] = None,
        title: Optional[str] = None,
        document_type: str = "GENERIC",
        privacy_level: str = vocab.PUBLIC,
        source_type: str = vocab.USER,
        metadata: Optional[dict] = None,
    ) -> dict:
        vocab.check(document_type, vocab.DOCUMENT_TYPES, "document type")
        vocab.check(privacy_level, vocab.PRIVACY_LEVELS, "privacy level")
        vocab.check(source_type, vocab.SOURCE_TYPES, "source type")
        now = _now()
        async with self._write_lock:
            async with self._connect() as conn:
                row = await self._insert(conn, "documents", {
                    "path": path,
                    "title": title,
                    "content": content,
                    "document_type": document_type,
                    "privacy_level": privacy_level,
                    "source_type": source_type,
                    "metadata": json.dumps(metadata or {}),
                    "created_at": now,
                    "updated_at": now,
                })
                await conn.commit()
        return _document(row)

    async def update_document(self, document_id: int, **fields) -> dict:
        unknown = set(fields) - _DOCUMENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown document fields: {sorted(unknown)}")
        if "metadata" in fields:
            fields["metadata"] = json.dumps(fields["metadata"] or {})
        if "document_type" in fields:
            vocab.check(fields["document_type"], vocab.DOCUMENT_TYPES, "document type")
        async with self._write_lock:
            async with self._connect() as conn:
                current = await self._fetchone(
                    conn, "SELECT * FROM documents WHERE id = ?", (document_id,)
                )
                if current is None:
                    raise NotFound(f"Document {document_id} not found")
                _check_upgrade(current["privacy_level"], fields.get("privacy_level"),
                               f"document {document_id}")
                fields["updated_at"] = _now()
                row = await self._update(conn, "documents", document_id, fields)
                await conn.commit()
        return _document(row)

    async def get_document(self, document_id: int) -> Optional[dict]:
        async with self._connect() as conn:
            row = await self._fetchone(
                conn, "SELECT * FROM documents WHERE id = ?", (document_id,)
            )
        return _document(row) if row else None

    async def get_document_by_path(self, path: str) -> Optional[dict]:
        async with self._connect() as conn:
            row = await self._fetchone(
                conn, "SELECT * FROM documents WHERE path = ?", (path,)
            )
        return _document(row) if row else None

    # ── Entities ──────────────────────────────────────────────

    async def create_entity(
        self,
        name: str,
        type: str,
        description: Optional[str] = None,
        source_document_id: Optional[int] = None,
        privacy_level: str = vocab.PUBLIC,
        source_type: str = vocab.USER,
        metadata: Optional[dict] = None,
    ) -> dict:
        vocab.check(type, vocab.ENTITY_TYPES, "entity type")
        vocab.check(privacy_level, vocab.PRIVACY_LEVELS, "privacy level")
        vocab.check(source_type, vocab.SOURCE_TYPES, "source type")
        async with self._write_lock:
            async with self._connect() as conn:
                row = await self._insert(conn, "entities", {
                    "name": name,
                    "type": type,
                    "description": description,
                    "source_document_id": source_document_id,
                    "privacy_level": privacy_level,
                    "source_type": source_type,
                    "metadata": json.dumps(metadata or {}),
                })
                await conn.commit()
        return _entity(row)

    async def update_entity(self, entity_id: int, **fields) -> dict:
        unknown = set(fields) - _ENTITY_FIELDS
        if unknown:
            raise ValueError(f"Unknown entity fields: {sorted(unknown)}")
        if "type" in fields:
            vocab.check(fields["type"], vocab.ENTITY_TYPES, "entity type")
        if "source_type" in fields:
            vocab.check(fields["source_type"], vocab.SOURCE_TYPES, "source type")
        if "metadata" in fields:
            fields["metadata"] = json.dumps(fields["metadata"] or {})
        async with self._write_lock:
            async with self._connect() as conn:
                current = await self._fetchone(
                    conn, "SELECT * FROM entities WHERE id = ?", (entity_id,)
                )
                if current is None:
                    raise NotFound(f"Entity {entity_id} not found")
                _check_upgrade(current["privacy_level"], fields.get("privacy_level"),
                               f"entity {entity_id}")
                row = await self._update(conn, "entities", entity_id, fields)
                await conn.commit()
        return _entity(row)

    async def get_entity(self, entity_id: int) -> Optional[dict]:
        async with self._connect() as conn:
            row = await self._fetchone(
                conn, "SELECT * FROM entities WHERE id = ?", (entity_id,)
            )
        return _entity(row) if row else None

    async def find_entities_by_name(self, candidates: list[dict], privacy_level: str) -> dict:
        """
        Exact-name lookup for extracted candidates ({name, type, description}).
        Returns {"resolved": [entity, ...], "unresolved": [candidate, ...]}.
        Unresolved keeps the input order and drops any name that resolved.
        """
        privacy = _privacy_filter(privacy_level)
        names = list(dict.fromkeys(c["name"] for c in candidates))
        if not names:
            return {"resolved": [], "unresolved": []}

        resolved: dict[int, dict] = {}
        async with self._connect() as conn:
            for batch in _batches(names):
                placeholders = ",".join("?" * len(batch))
                rows = await self._fetchall(
                    conn,
                    f"SELECT * FROM entities WHERE name IN ({placeholders}){privacy}",
                    batch,
                )
                for row in rows:
                    resolved[row["id"]] = _entity(row)

        found = {e["name"] for e in resolved.values()}
        return {
            "resolved": [resolved[i] for i in sorted(resolved)],
            "unresolved": [c for c in candidates if c["name"] not in found],
        }

    async def entities_by_ids(self, entity_ids, privacy_level: str) -> list[dict]:
        privacy = _privacy_filter(privacy_level)
        ids = sorted(set(entity_ids))
        entities = []
        async with self._connect() as conn:
            for batch in _batches(ids):
                placeholders = ",".join("?" * len(batch))
                rows = await self._fetchall(
                    conn,
                    f"SELECT * FROM entities WHERE id IN ({placeholders}){privacy} ORDER BY id",
                    batch,
                )
                entities.extend(_entity(r) for r in rows)
        return entities

    # ── Relations ─────────────────────────────────────────────

    async def create_relation(
        self,
        source_id: int,
        target_id: int,
        type: str,
        description: Optional[str] = None,
        source_document_id: Optional[int] = None,
        privacy_level: str = vocab.PUBLIC,
        source_type: str = vocab.USER,
        properties: Optional[dict] = None,
    ) -> dict:
        vocab.check(type, vocab.RELATION_TYPES, "relation type")
        vocab.check(privacy_level, vocab.PRIVACY_LEVELS, "privacy level")
        vocab.check(source_type, vocab.SOURCE_TYPES, "source type")
        async with self._write_lock:
            async with self._connect() as conn:
                await self._require_endpoints(conn, source_id, target_id)
                row = await self._insert(conn, "relations", {
                    "source_entity_id": source_id,
                    "target_entity_id": target_id,
                    "type": type,
                    "description": description,
                    "source_document_id": source_document_id,
                    "privacy_level": privacy_level,
                    "source_type": source_type,
                    "properties": json.dumps(properties or {}),
                })
                await conn.commit()
        return _relation(row)

    async def _require_endpoints(self, conn, *entity_ids: int):
        for eid in entity_ids:
            row = await self._fetchone(conn, "SELECT id FROM entities WHERE id = ?", (eid,))
            if row is None:
                raise ConstraintViolation(f"Relation endpoint {eid} does not exist")

    async def update_relation(self, relation_id: int, **fields) -> dict:
        unknown = set(fields) - _RELATION_FIELDS
        if unknown:
            raise ValueError(f"Unknown relation fields: {sorted(unknown)}")
        if "type" in fields:
            vocab.check(fields["type"], vocab.RELATION_TYPES, "relation type")
        if "source_type" in fields:
            vocab.check(fields["source_type"], vocab.SOURCE_TYPES, "source type")
        if "properties" in fields:
            fields["properties"] = json.dumps(fields["properties"] or {})
        async with self._write_lock:
            async with self._connect() as conn:
                current = await self._fetchone(
                    conn, "SELECT * FROM relations WHERE id = ?", (relation_id,)
                )
                if current is None:
                    raise NotFound(f"Relation {relation_id} not found")
                _check_upgrade(current["privacy_level"], fields.get("privacy_level"),
                               f"relation {relation_id}")
                endpoints = [fields[k] for k in ("source_entity_id", "target_entity_id") if k in fields]
                await self._require_endpoints(conn, *endpoints)
                row = await self._update(conn, "relations", relation_id, fields)
                await conn.commit()
        return _relation(row)

    async def find_relation(self, source_id: int, target_id: int, type: str) -> Optional[dict]:
        async with self._connect() as conn:
            row = await self._fetchone(
                conn,
                "SELECT * FROM relations WHERE source_entity_id = ? "
                "AND target_entity_id = ? AND type = ? ORDER BY id LIMIT 1",
                (source_id, target_id, type),
            )
        return _relation(row) if row else None

    async def relations_touching(self, entity_ids, privacy_level: str) -> list[dict]:
        """All relations with either endpoint in entity_ids, visible at privacy_level."""
        privacy = _privacy_filter(privacy_level)
        ids = sorted(set(entity_ids))
        relations: dict[int, dict] = {}
        async with self._connect() as conn:
            for batch in _batches(ids, _IN_BATCH // 2):  # each id is bound twice
                placeholders = ",".join("?" * len(batch))
                rows = await self._fetchall(
                    conn,
                    f"SELECT * FROM relations WHERE (source_entity_id IN ({placeholders}) "
                    f"OR target_entity_id IN ({placeholders})){privacy}",
                    (*batch, *batch),
                )
                for row in rows:
                    relations[row["id"]] = _relation(row)
        return [relations[i] for i in sorted(relations)]

    # ── Merge ─────────────────────────────────────────────────

    async def merge_entities(self, winner_id: int, loser_id: int) -> None:
        """
        Fold loser_id into winner_id. Every relation touching the loser is
        re-pointed to the winner (self-loops and duplicates included), the
        winner becomes PRIVATE if either side was, and the loser row is
        deleted. One transaction: callers never see a half-merged graph.
        """
        if winner_id == loser_id:
            raise ValueError(f"Cannot merge entity {winner_id} into itself")

        async with self._write_lock:
            async with self._connect() as conn:
                try:
                    winner = await self._fetchone(
                        conn, "SELECT id, privacy_level FROM entities WHERE id = ?", (winner_id,)
                    )
                    loser = await self._fetchone(
                        conn, "SELECT id, privacy_level FROM entities WHERE id = ?", (loser_id,)
                    )
                    if winner is None:
                        raise NotFound(f"Winner entity {winner_id} not found")
                    if loser is None:
                        raise NotFound(f"Loser entity {loser_id} not found")

                    privacy = vocab.stricter(winner["privacy_level"], loser["privacy_level"])
                    if privacy != winner["privacy_level"]:
                        await conn.execute(
                            "UPDATE entities SET privacy_level = ? WHERE id = ?",
                            (privacy, winner_id),
                        )
                    await conn.execute(
                        "UPDATE relations SET source_entity_id = ? WHERE source_entity_id = ?",
                        (winner_id, loser_id),
                    )
                    await conn.execute(
                        "UPDATE relations SET target_entity_id = ? WHERE target_entity_id = ?",
                        (winner_id, loser_id),
                    )
                    await conn.execute("DELETE FROM entities WHERE id = ?", (loser_id,))
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise
        log.debug("Merged entity %d into %d", loser_id, winner_id)

    # ── Patterns & Gaps ───────────────────────────────────────

    async def relation_pattern_counts(self) -> list[dict]:
        """Relation counts grouped by (source entity type, relation type)."""
        async with self._connect() as conn:
            rows = await self._fetchall(
                conn,
                "SELECT e.type AS entity_type, r.type AS relation_type, COUNT(*) AS cnt "
                "FROM relations r JOIN entities e ON r.source_entity_id = e.id "
                "GROUP BY e.type, r.type ORDER BY e.type, r.type",
            )
        return [{
            "entity_type": r["entity_type"],
            "relation_type": r["relation_type"],
            "count": r["cnt"],
        } for r in rows]

    async def entities_missing_relation(
        self, entity_type: str, relation_type: str, direction: str
    ) -> list[dict]:
        """
        Entities of entity_type that never appear as the source ("out") or
        target ("in") of a relation_type relation. Ascending id.
        """
        if direction == "out":
            column = "source_entity_id"
        elif direction == "in":
            column = "target_entity_id"
        else:
            raise ValueError(f"Invalid direction: {direction!r}")
        async with self._connect() as conn:
            rows = await self._fetchall(
                conn,
                f"SELECT * FROM entities e WHERE e.type = ? AND NOT EXISTS ("
                f"SELECT 1 FROM relations r WHERE r.{column} = e.id AND r.type = ?"
                f") ORDER BY e.id",
                (entity_type, relation_type),
            )
        return [_entity(r) for r in rows]

    # ── Bulk reads ────────────────────────────────────────────

    async def all_documents(self) -> list[dict]:
        async with self._connect() as conn:
            rows = await self._fetchall(conn, "SELECT * FROM documents ORDER BY id")
        return [_document(r) for r in rows]

    async def all_entities(self) -> list[dict]:
        async with self._connect() as conn:
            rows = await self._fetchall(conn, "SELECT * FROM entities ORDER BY id")
        return [_entity(r) for r in rows]

    async def all_relations(self) -> list[dict]:
        async with self._connect() as conn:
            rows = await self._fetchall(conn, "SELECT * FROM relations ORDER BY id")
        return [_relation(r) for r in rows]

    async def graph_stats(self) -> dict:
        """Totals plus type and privacy distributions."""
        async with self._connect() as conn:
            totals = {}
            for table in ("documents", "entities", "relations"):
                row = await self._fetchone(conn, f"SELECT COUNT(*) FROM {table}")
                totals[table] = row[0]
            entity_types = await self._fetchall(
                conn,
                "SELECT type, COUNT(*) AS cnt FROM entities GROUP BY type ORDER BY cnt DESC, type",
            )
            relation_types = await self._fetchall(
                conn,
                "SELECT type, COUNT(*) AS cnt FROM relations GROUP BY type ORDER BY cnt DESC, type",
            )
            private = await self._fetchone(
                conn, "SELECT COUNT(*) FROM entities WHERE privacy_level = 'PRIVATE'"
            )
            searched = await self._fetchone(
                conn, "SELECT COUNT(*) FROM documents WHERE source_type = 'SEARCH'"
            )

        return {
            "total_documents": totals["documents"],
            "total_entities": totals["entities"],
            "total_relations": totals["relations"],
            "private_entities": private[0],
            "search_documents": searched[0],
            "entity_type_distribution": {r["type"]: r["cnt"] for r in entity_types},
            "relation_type_distribution": {r["type"]: r["cnt"] for r in relation_types},
        }
