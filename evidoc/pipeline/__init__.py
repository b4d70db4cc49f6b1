"""Document processing pipeline.

Stages:
1. Extraction - Machine-readable text from PDFs, Word documents and text files
2. OCR - Text from images and scanned PDFs
3. Classification - Document type with a confidence score
4. Entities - Dates, amounts, parties and contact details
5. Summarization - Short summary and key points

The processor sequences the stages for one job; the queue runs jobs on a
bounded worker pool.
"""

from .classify import DocumentClassifier
from .entities import EntityExtractor
from .extract import TextExtractor
from .ocr import OCREngine
from .processor import DocumentProcessor
from .progress import InMemoryProgressCache, ProgressCache
from .queue import EvidenceLocks, JobQueue
from .summarize import DocumentSummarizer

__all__ = [
    "DocumentClassifier",
    "DocumentProcessor",
    "DocumentSummarizer",
    "EntityExtractor",
    "EvidenceLocks",
    "InMemoryProgressCache",
    "JobQueue",
    "OCREngine",
    "ProgressCache",
    "TextExtractor",
]
