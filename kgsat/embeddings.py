"""
kgsat Embedding Engine
Turns entity names into normalized vectors for similarity matching.
The model loads on first use.
"""

import os
import warnings

os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
warnings.filterwarnings("ignore", category=FutureWarning, module="huggingface_hub")

import numpy as np

from kgsat.config import EMBEDDING_MODEL, EMBEDDING_DIMENSION
from kgsat.log import log

_model = None


def get_model():
    global _model
    if _model is None:
        from sentence_transformers import SentenceTransformer
        log.info("Loading embedding model: %s", EMBEDDING_MODEL)
        _model = SentenceTransformer(EMBEDDING_MODEL)
        log.info("Model loaded. Dimension: %d", EMBEDDING_DIMENSION)
    return _model


def embed_batch(texts: list[str]) -> np.ndarray:
    """One normalized float32 row per text."""
    model = get_model()
    return np.array(
        model.encode(texts, normalize_embeddings=True, show_progress_bar=False),
        dtype=np.float32,
    )
