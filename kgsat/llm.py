"""
kgsat Extraction Service
=========================
Classification, entity/relation extraction, structured metadata, query
entities and answer synthesis, all through a language model.

Routing is by privacy level: PRIVATE text only ever goes to the local Ollama
server. PUBLIC text goes to Gemini when a key is configured, otherwise to
Ollama as well.

Model output is validated before it leaves this module. On any transport or
parse error the caller gets an empty result, never an exception.
"""

import asyncio
import json
from typing import Optional

import requests

from kgsat import vocab
from kgsat.config import (
    OLLAMA_URL, OLLAMA_MODEL, OLLAMA_API_KEY, OLLAMA_TIMEOUT,
    GEMINI_API_KEY, GEMINI_MODEL, GEMINI_URL, GEMINI_TIMEOUT,
    CLASSIFY_PREVIEW_CHARS, METADATA_PREVIEW_CHARS,
)
from kgsat.errors import AdapterFailure
from kgsat.log import log


# ── Prompts ──────────────────────────────────────────────────

_CLASSIFY_PROMPT = """Classify the following document into one of these types:
- GENERIC
- INVOICE
- BANK_STATEMENT
- CONTRACT
- SOW (Statement of Work)
- NDA (Non-Disclosure Agreement)
- OFFER (Job Offer or work offer)
- RECEIPT
- SLACK_MESSAGE (message from employer requesting work)

Return ONLY the type name (e.g. "INVOICE").
If you are unsure or it doesn't fit specific categories, return "GENERIC".

Document Preview:
"{text}"
"""

_EXTRACT_PROMPT = """Analyze the following text from a {document_type} document.
Extract key entities and relations. Use ONLY these entity types: {entity_types}
Use ONLY these relation types: {relation_types}

Document-type specific guidance:
- INVOICE: Extract VENDOR, PAYEE, AMOUNT (total), DATE (due/issue), INVOICE_NUMBER. Use ISSUED_BY, PAYABLE_TO, AMOUNT_OF, DUE_DATE.
- BANK_STATEMENT: Extract each transaction as BANK_TRANSACTION with PAYEE, AMOUNT, DATE. Use PAYABLE_TO, AMOUNT_OF.
- SOW: Extract PARTY, DELIVERABLE, DATE (effective/end), PAYMENT_TERM. Use PARTY_TO, DELIVERABLE_OF, PAYMENT_TERMS_OF, EFFECTIVE_UNTIL.
- CONTRACT/NDA: Extract PARTY, CLAUSE, DATE, INDUSTRY/COMPANY for restrictions. Use RESTRICTS_INDUSTRY, RESTRICTS_COMPANY, CONTAINS, EXPIRES_ON, EFFECTIVE_UNTIL.
- OFFER: Extract COMPANY, PERSON, ROLE_OR_SERVICE, INDUSTRY. Use CONFLICTS_WITH when comparing to contracts.

Return a JSON object with two arrays: "entities" and "relations". Use exact entity names as they appear so relations can link source/target by name.

"entities": [ {{ "name": "Exact Name/Value", "type": "<entity type>", "description": "Brief description" }} ]
"relations": [ {{ "source": "Source entity name", "target": "Target entity name", "type": "<relation type>", "description": "Brief explanation" }} ]

Return ONLY the JSON. No markdown.

Text:
"{text}"
"""

_METADATA_PROMPTS = {
    "INVOICE": 'Extract from this INVOICE document. Return JSON only: { "invoiceNumber": string or null, "vendor": string, "payee": string, "totalAmount": number, "currency": string, "dueDate": "YYYY-MM-DD", "issueDate": "YYYY-MM-DD" }. Use null for missing.',
    "BANK_STATEMENT": 'Extract from this BANK_STATEMENT. Return JSON only: { "accountId": string, "periodStart": "YYYY-MM-DD", "periodEnd": "YYYY-MM-DD", "transactions": [ { "payee": string, "amount": number, "date": "YYYY-MM-DD", "description": string } ] }. Use null for missing.',
    "SOW": 'Extract from this Statement of Work. Return JSON only: { "parties": string[], "effectiveDate": "YYYY-MM-DD", "endDate": "YYYY-MM-DD", "deliverables": string[], "paymentTerms": string, "scopeSummary": string }. Use null for missing.',
    "CONTRACT": 'Extract from this CONTRACT. Return JSON only: { "parties": string[], "effectiveDate": "YYYY-MM-DD", "expirationDate": "YYYY-MM-DD", "restrictsIndustry": string[], "restrictsCompany": string[], "nonCompeteClauseSummary": string }. Use null for missing.',
    "OFFER": 'Extract from this OFFER (job/work offer). Return JSON only: { "offeringParty": string, "roleOrService": string, "industry": string, "company": string, "effectiveDate": "YYYY-MM-DD" }. Use null for missing.',
}

_QUERY_ENTITIES_PROMPT = """Extract the key entities (people, companies, contracts, clauses, etc.) from the following query.
Return ONLY a JSON array of strings, where each string is an extracted entity name.
Do not include any markdown formatting or explanation.

Query: "{query}"
"""

_ANSWER_PROMPT = """Based on the following knowledge graph context, provide a concise, natural language answer to the user's query.
Synthesize the information from the nodes and edges into a coherent response.
Do not return the graph data, only the answer.

User Query: "{query}"

Knowledge Graph Context:
Nodes:
{nodes}

Edges:
{edges}

Answer:"""

NO_ANSWER = "I could not find an answer in the provided context."


def _parse_json(text: str):
    """Model output minus any markdown fence, parsed."""
    cleaned = text.replace("```json", "").replace("```", "").strip()
    return json.loads(cleaned)


class Extractor:
    """
    The extraction service. Sync HTTP under the hood, run off the event
    loop with asyncio.to_thread.
    """

    def __init__(
        self,
        ollama_url: Optional[str] = None,
        ollama_model: Optional[str] = None,
        gemini_api_key: Optional[str] = None,
        gemini_model: Optional[str] = None,
    ):
        self.ollama_url = ollama_url or OLLAMA_URL
        self.ollama_model = ollama_model or OLLAMA_MODEL
        self.gemini_api_key = GEMINI_API_KEY if gemini_api_key is None else gemini_api_key
        self.gemini_model = gemini_model or GEMINI_MODEL

    # ── Transport ─────────────────────────────────────────────

    def _ollama_generate(self, prompt: str, json_mode: bool) -> str:
        payload = {
            "model": self.ollama_model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": 0.1},
        }
        if json_mode:
            payload["format"] = "json"
        headers = {"Authorization": f"Bearer {OLLAMA_API_KEY}"} if OLLAMA_API_KEY else {}
        resp = requests.post(
            f"{self.ollama_url}/api/generate",
            json=payload, headers=headers, timeout=OLLAMA_TIMEOUT,
        )
        resp.raise_for_status()
        return resp.json().get("response", "")

    def _gemini_generate(self, prompt: str, json_mode: bool) -> str:
        config = {"temperature": 0.1}
        if json_mode:
            config["responseMimeType"] = "application/json"
        resp = requests.post(
            f"{GEMINI_URL}/models/{self.gemini_model}:generateContent",
            params={"key": self.gemini_api_key},
            json={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": config,
            },
            timeout=GEMINI_TIMEOUT,
        )
        resp.raise_for_status()
        candidates = resp.json().get("candidates") or []
        if not candidates:
            return ""
        parts = candidates[0].get("content", {}).get("parts", [])
        return "".join(p.get("text", "") for p in parts)

    def _generate(self, prompt: str, privacy_level: str, json_mode: bool) -> str:
        vocab.check(privacy_level, vocab.PRIVACY_LEVELS, "privacy level")
        try:
            if privacy_level == vocab.PRIVATE or not self.gemini_api_key:
                return self._ollama_generate(prompt, json_mode)
            return self._gemini_generate(prompt, json_mode)
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            raise AdapterFailure(f"Model call failed ({privacy_level}): {e}") from e

    async def generate(self, prompt: str, privacy_level: str, json_mode: bool = False) -> str:
        return await asyncio.to_thread(self._generate, prompt, privacy_level, json_mode)

    # ── Operations ────────────────────────────────────────────

    async def classify(self, text: str, privacy_level: str) -> str:
        """One of vocab.DOCUMENT_TYPES. GENERIC when unsure or on error."""
        prompt = _CLASSIFY_PROMPT.format(text=text[:CLASSIFY_PREVIEW_CHARS])
        try:
            result = (await self.generate(prompt, privacy_level)).strip().strip('"').upper()
        except AdapterFailure as e:
            log.warning("Classification failed: %s", e)
            return "GENERIC"
        return result if result in vocab.DOCUMENT_TYPES else "GENERIC"

    async def extract_entities_relations(
        self, text: str, document_type: str, privacy_level: str
    ) -> dict:
        """
        {"entities": [{name, type, description}], "relations": [{source,
        target, type, description}]}. Unknown types are coerced, rows
        without names dropped.
        """
        prompt = _EXTRACT_PROMPT.format(
            document_type=document_type or "GENERIC",
            entity_types=", ".join(vocab.ENTITY_TYPES),
            relation_types=", ".join(vocab.RELATION_TYPES),
            text=text,
        )
        try:
            parsed = _parse_json(await self.generate(prompt, privacy_level, json_mode=True))
        except (AdapterFailure, ValueError) as e:
            log.warning("Entity extraction failed: %s", e)
            return {"entities": [], "relations": []}
        if not isinstance(parsed, dict):
            return {"entities": [], "relations": []}
        return validate_extraction(parsed)

    async def extract_structured_metadata(
        self, text: str, document_type: str, privacy_level: str
    ) -> Optional[dict]:
        """Type-specific JSON metadata, or None for types without a schema."""
        instruction = _METADATA_PROMPTS.get(document_type)
        if instruction is None:
            return None
        prompt = f'{instruction}\n\nDocument:\n"{text[:METADATA_PREVIEW_CHARS]}"'
        try:
            data = _parse_json(await self.generate(prompt, privacy_level, json_mode=True))
        except (AdapterFailure, ValueError) as e:
            log.warning("Metadata extraction failed: %s", e)
            return None
        return data if isinstance(data, dict) else None

    async def extract_query_entities(self, query: str, privacy_level: str) -> list[str]:
        try:
            names = _parse_json(await self.generate(
                _QUERY_ENTITIES_PROMPT.format(query=query), privacy_level
            ))
        except (AdapterFailure, ValueError) as e:
            log.warning("Query entity extraction failed: %s", e)
            return []
        if not isinstance(names, list):
            return []
        return [str(n).strip() for n in names if isinstance(n, str) and n.strip()]

    async def synthesize_answer(self, query: str, graph: dict, privacy_level: str) -> str:
        names = {n["id"]: n["name"] for n in graph["nodes"]}
        nodes = "\n".join(
            f"- {n['name']} (Type: {n['type']}, ID: {n['id']})" for n in graph["nodes"]
        )
        edges = "\n".join(
            f"- {names.get(e['source'])} -> {e['type']} -> {names.get(e['target'])}"
            for e in graph["edges"]
        )
        prompt = _ANSWER_PROMPT.format(query=query, nodes=nodes, edges=edges)
        try:
            answer = (await self.generate(prompt, privacy_level)).strip()
        except AdapterFailure as e:
            log.warning("Answer synthesis failed: %s", e)
            return "I encountered an error while trying to find an answer."
        return answer or NO_ANSWER


def validate_extraction(parsed: dict) -> dict:
    """Keep well-formed rows, coerce out-of-vocabulary types."""
    entities = []
    for e in parsed.get("entities") or []:
        if not isinstance(e, dict) or not str(e.get("name") or "").strip():
            continue
        etype = str(e.get("type") or "").upper()
        if etype not in vocab.ENTITY_TYPES:
            etype = vocab.FALLBACK_ENTITY_TYPE
        entities.append({
            "name": str(e["name"]).strip(),
            "type": etype,
            "description": str(e.get("description") or "").strip(),
        })

    relations = []
    for r in parsed.get("relations") or []:
        if not isinstance(r, dict):
            continue
        src = str(r.get("source") or "").strip()
        tgt = str(r.get("target") or "").strip()
        if not src or not tgt:
            continue
        rtype = str(r.get("type") or "").upper()
        if rtype not in vocab.RELATION_TYPES:
            rtype = vocab.FALLBACK_RELATION_TYPE
        relations.append({
            "source": src,
            "target": tgt,
            "type": rtype,
            "description": str(r.get("description") or "").strip(),
        })

    return {"entities": entities, "relations": relations}
