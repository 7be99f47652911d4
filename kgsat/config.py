"""
kgsat Configuration
Every setting in one place. The engine's parameters.
"""

import os
from pathlib import Path

# ── Identity ─────────────────────────────────────────────
PACKAGE_NAME = "kgsat"
PACKAGE_VERSION = "0.3.0"

# ── Paths ────────────────────────────────────────────────
KGSAT_HOME = Path(os.environ.get("KGSAT_HOME", Path.home() / ".kgsat"))
DB_PATH = Path(os.environ.get("KGSAT_DB_PATH", KGSAT_HOME / "graph.db"))

# ── Embedding Model ──────────────────────────────────────
EMBEDDING_MODEL = os.environ.get("KGSAT_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
EMBEDDING_DIMENSION = 384

# ── Graph Maintenance ────────────────────────────────────
MERGE_SIMILARITY_THRESHOLD = float(os.environ.get("KGSAT_MERGE_THRESHOLD", "0.85"))
PATTERN_THRESHOLD = int(os.environ.get("KGSAT_PATTERN_THRESHOLD", "2"))
TRAVERSAL_DEPTH = int(os.environ.get("KGSAT_TRAVERSAL_DEPTH", "2"))

# ── Saturation ───────────────────────────────────────────
SATURATION_MAX_ITERATIONS = int(os.environ.get("KGSAT_SATURATION_MAX_ITERATIONS", "3"))
SATURATION_EARLY_EXIT = os.environ.get("KGSAT_SATURATION_EARLY_EXIT", "1") == "1"
# Private entity names never leave the machine unless this is set.
SATURATION_INCLUDE_PRIVATE = os.environ.get("KGSAT_SATURATION_INCLUDE_PRIVATE", "0") == "1"

# ── Ingestion ────────────────────────────────────────────
CHUNK_MIN_CHARS = 50          # paragraphs shorter than this are not extracted
CLASSIFY_PREVIEW_CHARS = 2000
METADATA_PREVIEW_CHARS = 4000

# ── Local model (PRIVATE data) ───────────────────────────
OLLAMA_URL = os.environ.get("KGSAT_OLLAMA_URL", "http://localhost:11434")
OLLAMA_MODEL = os.environ.get("KGSAT_OLLAMA_MODEL", "gpt-oss:20b")
OLLAMA_API_KEY = os.environ.get("OLLAMA_API_KEY", "")
OLLAMA_TIMEOUT = int(os.environ.get("KGSAT_OLLAMA_TIMEOUT", "120"))

# ── Remote model (PUBLIC data) ───────────────────────────
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
GEMINI_MODEL = os.environ.get("KGSAT_GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_URL = os.environ.get(
    "KGSAT_GEMINI_URL", "https://generativelanguage.googleapis.com/v1beta"
)
GEMINI_TIMEOUT = int(os.environ.get("KGSAT_GEMINI_TIMEOUT", "60"))

# ── External search ──────────────────────────────────────
LINKUP_API_KEY = os.environ.get("LINKUP_API_KEY", "")
LINKUP_URL = os.environ.get("KGSAT_LINKUP_URL", "https://api.linkup.so/v1/search")
LINKUP_DEPTH = os.environ.get("KGSAT_LINKUP_DEPTH", "deep")  # standard | deep
LINKUP_TIMEOUT = int(os.environ.get("KGSAT_LINKUP_TIMEOUT", "180"))


def ensure_home():
    """Create the kgsat home directory if it doesn't exist."""
    KGSAT_HOME.mkdir(parents=True, exist_ok=True)
