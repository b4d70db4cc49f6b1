"""Document type classification."""

from __future__ import annotations

import logging
import re

from ..models import DocumentType
from .base import call_capability
from .llm import CompletionProvider, parse_json_response
from .types import ClassificationResult, requires_ocr

logger = logging.getLogger(__name__)

DOCUMENT_TYPE_DESCRIPTIONS = {
    DocumentType.CONTRACT: "Legal agreement, contract, terms of service, lease agreement, or similar binding document",
    DocumentType.INVOICE: "Invoice, bill for services or goods, itemized charges",
    DocumentType.RECEIPT: "Receipt, proof of payment, transaction confirmation",
    DocumentType.CORRESPONDENCE: "Email, letter, message, or other written communication between parties",
    DocumentType.LEGAL_NOTICE: "Demand letter, cease and desist, legal notice, court filing, or formal legal communication",
    DocumentType.BANK_STATEMENT: "Bank statement, financial statement, account summary, or transaction history",
    DocumentType.PHOTO_EVIDENCE: "Photograph of physical evidence, damaged goods, conditions, or visual documentation",
    DocumentType.OTHER: "Document that does not fit into other categories",
}

# Checked in order; first hit wins
FILENAME_HINTS = [
    (DocumentType.CONTRACT, ("contract", "agreement", "terms")),
    (DocumentType.INVOICE, ("invoice", "bill")),
    (DocumentType.RECEIPT, ("receipt",)),
    (DocumentType.BANK_STATEMENT, ("statement", "bank")),
    (DocumentType.CORRESPONDENCE, ("letter", "email", "correspondence")),
    (DocumentType.LEGAL_NOTICE, ("notice", "demand", "legal")),
    (DocumentType.PHOTO_EVIDENCE, ("photo", "image", "evidence", "damage")),
]

FILENAME_CONFIDENCE = 0.7

# Content keywords for classification without a model
CONTENT_KEYWORDS = {
    DocumentType.CONTRACT: ("agreement", "hereinafter", "party", "parties", "terms and conditions", "whereas", "shall"),
    DocumentType.INVOICE: ("invoice", "amount due", "bill to", "due date", "subtotal", "invoice number", "invoice #"),
    DocumentType.RECEIPT: ("receipt", "paid", "payment received", "thank you for your purchase", "transaction"),
    DocumentType.CORRESPONDENCE: ("dear", "sincerely", "regards", "subject:", "from:", "to:"),
    DocumentType.LEGAL_NOTICE: ("notice", "demand", "cease and desist", "court", "plaintiff", "defendant", "legal action"),
    DocumentType.BANK_STATEMENT: ("statement period", "account number", "beginning balance", "ending balance", "deposits", "withdrawals"),
}

CLASSIFY_MAX_CHARS = 8000


def classify_by_filename(filename: str) -> DocumentType | None:
    """Quick pre-classification from filename hints."""
    name = filename.lower()
    for document_type, hints in FILENAME_HINTS:
        if any(hint in name for hint in hints):
            return document_type
    return None


def classify_by_keywords(text: str) -> ClassificationResult:
    """Score document types by keyword hits in the text."""
    lowered = text.lower()
    scores = {}
    for document_type, keywords in CONTENT_KEYWORDS.items():
        hits = sum(1 for kw in keywords if re.search(r"\b" + re.escape(kw), lowered))
        if hits:
            scores[document_type] = hits

    if not scores:
        return ClassificationResult(
            document_type=DocumentType.OTHER,
            confidence=0.3,
            reasoning="No distinguishing keywords found",
            method="keyword",
        )

    # Ties go to the type listed first
    best = max(scores, key=scores.get)
    return ClassificationResult(
        document_type=best,
        confidence=round(min(0.85, 0.4 + 0.15 * scores[best]), 2),
        reasoning=f"Matched {scores[best]} {best.value.lower()} keyword(s)",
        method="keyword",
    )


def build_classification_prompt(text: str) -> str:
    type_list = "\n".join(f"- {t.value}: {desc}" for t, desc in DOCUMENT_TYPE_DESCRIPTIONS.items())
    type_names = ", ".join(t.value for t in DocumentType)
    return f"""Classify the following document into exactly one of these categories:

{type_list}

Document text:
\"\"\"
{text[:CLASSIFY_MAX_CHARS]}
\"\"\"

Respond with a JSON object containing:
- "type": The document type (must be one of: {type_names})
- "confidence": A number between 0 and 1 indicating how confident you are
- "reasoning": A brief explanation (1-2 sentences) of why you chose this classification

Respond with only the JSON object, no other text."""


class DocumentClassifier:
    """Assign a document type with a confidence score.

    A filename hint short-circuits the model. Without a completion provider,
    classification falls back to content keywords.
    """

    def __init__(
        self,
        provider: CompletionProvider | None = None,
        timeout: float | None = 60.0,
        max_retries: int = 0,
        use_filename_hints: bool = True,
    ):
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.use_filename_hints = use_filename_hints

    async def classify(
        self,
        text: str,
        filename: str | None = None,
        mime_type: str | None = None,
    ) -> ClassificationResult:
        if self.use_filename_hints and filename:
            hinted = classify_by_filename(filename)
            if hinted is not None:
                return ClassificationResult(
                    document_type=hinted,
                    confidence=FILENAME_CONFIDENCE,
                    reasoning=f"Filename '{filename}' suggests {hinted.value}",
                    method="filename",
                )

        if self.provider is None:
            result = classify_by_keywords(text)
            if result.document_type == DocumentType.OTHER and mime_type and requires_ocr(mime_type):
                return ClassificationResult(
                    document_type=DocumentType.PHOTO_EVIDENCE,
                    confidence=0.4,
                    reasoning="Image upload without distinguishing text",
                    method="keyword",
                )
            return result

        content = await call_capability(
            self.provider.complete,
            build_classification_prompt(text),
            max_tokens=256,
            stage="classification",
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        return self._parse(content)

    def _parse(self, content: str) -> ClassificationResult:
        data = parse_json_response(content, stage="classification")

        raw_type = str(data.get("type", "")).strip().upper()
        try:
            document_type = DocumentType(raw_type)
        except ValueError:
            logger.warning("Model returned unknown document type %r; using OTHER", raw_type)
            document_type = DocumentType.OTHER

        try:
            confidence = float(data.get("confidence") or 0)
        except (TypeError, ValueError):
            confidence = 0.0

        return ClassificationResult(
            document_type=document_type,
            confidence=min(1.0, max(0.0, confidence)),
            reasoning=data.get("reasoning"),
            method="llm",
        )
