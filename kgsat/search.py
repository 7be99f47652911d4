"""
kgsat External Search
======================
Structured web search through the Linkup API.

search() returns a dict that satisfies the requested JSON schema, or None
when the service found nothing. Anything else (transport error, timeout,
non-JSON body, schema mismatch) is an AdapterFailure.
"""

import asyncio
import json
from typing import Optional

import requests

from kgsat.config import LINKUP_API_KEY, LINKUP_URL, LINKUP_DEPTH, LINKUP_TIMEOUT
from kgsat.errors import AdapterFailure
from kgsat.log import log


def validate_schema(value, schema: dict, path: str = "$"):
    """
    Check value against the JSON-schema subset the saturation loop emits:
    object (properties, required), array (items), string (enum), number,
    integer, boolean. Raises ValueError naming the offending path.
    """
    stype = schema.get("type")
    if stype == "object":
        if not isinstance(value, dict):
            raise ValueError(f"{path}: expected object")
        for key in schema.get("required", []):
            if key not in value:
                raise ValueError(f"{path}: missing required field '{key}'")
        for key, sub in schema.get("properties", {}).items():
            if key in value:
                validate_schema(value[key], sub, f"{path}.{key}")
    elif stype == "array":
        if not isinstance(value, list):
            raise ValueError(f"{path}: expected array")
        items = schema.get("items")
        if items:
            for i, item in enumerate(value):
                validate_schema(item, items, f"{path}[{i}]")
    elif stype == "string":
        if not isinstance(value, str):
            raise ValueError(f"{path}: expected string")
        if "enum" in schema and value not in schema["enum"]:
            raise ValueError(f"{path}: {value!r} not in enum")
    elif stype in ("number", "integer"):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{path}: expected {stype}")
        if stype == "integer" and not isinstance(value, int):
            raise ValueError(f"{path}: expected integer")
    elif stype == "boolean":
        if not isinstance(value, bool):
            raise ValueError(f"{path}: expected boolean")


class LinkupSearch:
    """The external search adapter."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        depth: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.api_key = LINKUP_API_KEY if api_key is None else api_key
        self.url = url or LINKUP_URL
        self.depth = depth or LINKUP_DEPTH
        self.timeout = timeout or LINKUP_TIMEOUT

    def _search(self, query: str, schema: dict) -> Optional[dict]:
        if not self.api_key:
            raise AdapterFailure("LINKUP_API_KEY is not set")
        try:
            resp = requests.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "q": query,
                    "depth": self.depth,
                    "outputType": "structured",
                    "structuredOutputSchema": json.dumps(schema),
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            if not resp.content or not resp.content.strip():
                return None
            result = resp.json()
        except requests.Timeout as e:
            raise AdapterFailure(f"Search timed out after {self.timeout}s") from e
        except (requests.RequestException, ValueError) as e:
            raise AdapterFailure(f"Search failed: {e}") from e

        if not result:
            return None
        try:
            validate_schema(result, schema)
        except ValueError as e:
            raise AdapterFailure(f"Search result broke its schema: {e}") from e
        log.debug("Search returned %d top-level fields", len(result))
        return result

    async def search(self, query: str, schema: dict) -> Optional[dict]:
        return await asyncio.to_thread(self._search, query, schema)
