"""
Closed vocabularies for documents, entities and relations.
"""

PUBLIC = "PUBLIC"
PRIVATE = "PRIVATE"
PRIVACY_LEVELS = (PUBLIC, PRIVATE)

USER = "USER"
SEARCH = "SEARCH"
SOURCE_TYPES = (USER, SEARCH)

DOCUMENT_TYPES = (
    "GENERIC",
    "INVOICE",
    "BANK_STATEMENT",
    "CONTRACT",
    "SOW",
    "NDA",
    "OFFER",
    "RECEIPT",
    "SLACK_MESSAGE",
)

ENTITY_TYPES = (
    "PERSON",
    "COMPANY",
    "PARTY",
    "CONTRACT",
    "SOW",
    "CLAUSE",
    "INVOICE",
    "INVOICE_NUMBER",
    "BANK_TRANSACTION",
    "AMOUNT",
    "DATE",
    "DELIVERABLE",
    "PAYMENT_TERM",
    "OFFER",
    "INDUSTRY",
    "VENDOR",
    "PAYEE",
    "ROLE_OR_SERVICE",
    "SLACK_MESSAGE",
    "LOCATION",
    "OTHER",
)

RELATION_TYPES = (
    # General
    "WORKS_AT",
    "SIGNED",
    "RESTRICTS",
    "CONTAINS",
    "EXPIRES_ON",
    "SUBSIDIARY_OF",
    "HAS_HEADQUARTERS",
    # Invoices and bank transactions
    "ISSUED_BY",
    "PAYABLE_TO",
    "AMOUNT_OF",
    "DUE_DATE",
    "PAID_BY",
    "MATCHES_TRANSACTION",
    # Statements of work
    "PARTY_TO",
    "DELIVERABLE_OF",
    "IN_SCOPE",
    "PAYMENT_TERMS_OF",
    # Non-compete
    "RESTRICTS_INDUSTRY",
    "RESTRICTS_COMPANY",
    "CONFLICTS_WITH",
    "EFFECTIVE_UNTIL",
    "RELATED_TO",
)

FALLBACK_ENTITY_TYPE = "OTHER"
FALLBACK_RELATION_TYPE = "RELATED_TO"

# Labels that don't fall out of the tag name.
_ENTITY_LABELS = {
    "SOW": "Statement of work",
    "ROLE_OR_SERVICE": "Role or service",
}


def entity_label(entity_type: str) -> str:
    """COMPANY -> Company, INVOICE_NUMBER -> Invoice number."""
    if entity_type in _ENTITY_LABELS:
        return _ENTITY_LABELS[entity_type]
    return entity_type.replace("_", " ").capitalize()


def relation_label(relation_type: str) -> str:
    """HAS_HEADQUARTERS -> has headquarters."""
    return relation_type.replace("_", " ").lower()


def check(value: str, allowed: tuple, field: str) -> str:
    if value not in allowed:
        raise ValueError(f"Invalid {field}: {value!r}")
    return value


def stricter(a: str, b: str) -> str:
    """The more restrictive of two privacy levels."""
    return PRIVATE if PRIVATE in (a, b) else PUBLIC
