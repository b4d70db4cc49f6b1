"""Document summaries and key points."""

from __future__ import annotations

import re

from ..models import DocumentType
from .base import call_capability
from .llm import CompletionProvider, parse_json_response
from .types import SummarizationResult

SUMMARY_MAX_CHARS = 10000

GENERIC_PROMPT = (
    "Summarize this document, focusing on the most important information "
    "for understanding a legal dispute."
)

SUMMARY_PROMPTS = {
    DocumentType.CONTRACT: """Summarize this contract/agreement. Focus on:
- The parties involved
- Main obligations of each party
- Key terms and conditions
- Any notable clauses (penalties, termination, warranties)""",
    DocumentType.INVOICE: """Summarize this invoice. Focus on:
- Who issued it and to whom
- Total amount due
- What goods/services were provided
- Payment terms and due date""",
    DocumentType.RECEIPT: """Summarize this receipt. Focus on:
- What was purchased
- Total amount paid
- Date of transaction
- Payment method if mentioned""",
    DocumentType.CORRESPONDENCE: """Summarize this correspondence. Focus on:
- Who is communicating with whom
- The main subject/purpose
- Key points or requests made
- Any commitments or deadlines mentioned""",
    DocumentType.LEGAL_NOTICE: """Summarize this legal notice. Focus on:
- Who sent it and to whom
- The nature of the dispute or claim
- Specific demands or allegations
- Any deadlines or consequences mentioned""",
    DocumentType.BANK_STATEMENT: """Summarize this bank statement. Focus on:
- Account holder and period covered
- Beginning and ending balance
- Notable transactions
- Any fees or issues""",
}


def generate_quick_summary(text: str, max_length: int = 200) -> str:
    """Summary without a model: the leading text, cut at a sentence or word."""
    cleaned = re.sub(r"\s+", " ", text).strip()[:max_length * 2]
    if len(cleaned) <= max_length:
        return cleaned

    sentence_end = cleaned.rfind(".", 0, max_length + 1)
    if sentence_end > max_length / 2:
        return cleaned[:sentence_end + 1]

    last_space = cleaned.rfind(" ", 0, max_length + 1)
    if last_space > max_length / 2:
        return cleaned[:last_space] + "..."

    return cleaned[:max_length] + "..."


def extract_key_points(text: str, limit: int = 5) -> list[str]:
    """First few substantial sentences, used as key points without a model."""
    cleaned = re.sub(r"\s+", " ", text).strip()
    sentences = re.split(r"(?<=[.!?])\s+", cleaned)
    points = []
    for sentence in sentences:
        sentence = sentence.strip()
        if len(sentence) >= 20 and sentence not in points:
            points.append(sentence if len(sentence) <= 200 else sentence[:197] + "...")
        if len(points) >= limit:
            break
    return points


def build_summary_prompt(text: str, document_type: DocumentType | None) -> str:
    instructions = SUMMARY_PROMPTS.get(document_type, GENERIC_PROMPT) if document_type else GENERIC_PROMPT
    return f"""{instructions}

Document text:
\"\"\"
{text[:SUMMARY_MAX_CHARS]}
\"\"\"

Provide your response as a JSON object with:
- "summary": A concise 2-3 sentence summary of the document
- "keyPoints": An array of 3-5 bullet points highlighting the most important facts

Respond with only the JSON object, no other text."""


class DocumentSummarizer:
    def __init__(
        self,
        provider: CompletionProvider | None = None,
        timeout: float | None = 60.0,
        max_retries: int = 0,
        quick_summary_length: int = 200,
    ):
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.quick_summary_length = quick_summary_length

    async def summarize(self, text: str, document_type: DocumentType | None = None) -> SummarizationResult:
        if self.provider is None:
            return SummarizationResult(
                summary=generate_quick_summary(text, self.quick_summary_length),
                key_points=extract_key_points(text),
                method="extractive",
            )

        content = await call_capability(
            self.provider.complete,
            build_summary_prompt(text, document_type),
            max_tokens=512,
            stage="summarization",
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        data = parse_json_response(content, stage="summarization")

        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            summary = generate_quick_summary(text, self.quick_summary_length)
        key_points = data.get("keyPoints", data.get("key_points"))
        if not isinstance(key_points, list):
            key_points = []

        return SummarizationResult(
            summary=summary.strip(),
            key_points=[str(p).strip() for p in key_points if str(p).strip()],
            method="llm",
        )
