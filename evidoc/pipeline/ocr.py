"""OCR engine for scanned documents and images."""

from __future__ import annotations

import io
import logging
from abc import ABC, abstractmethod
from typing import Any

from ..errors import ConfigurationError, MalformedInputError, UnsupportedInputError
from .base import call_capability
from .types import (
    PDF_MIME,
    BoundingBox,
    OCRBlock,
    OCRBlockType,
    OCRResult,
    is_ocr_capable,
    normalize_mime_type,
)

logger = logging.getLogger(__name__)

# Formats Textract accepts directly; others are converted to PNG first
TEXTRACT_NATIVE_FORMATS = frozenset({"image/jpeg", "image/png", "image/tiff", PDF_MIME})


def is_ocr_quality_acceptable(result: OCRResult, threshold: float = 0.7) -> bool:
    """Whether OCR output is confident and long enough to trust.

    ``threshold`` is a 0-1 ratio; result confidence is on a 0-100 scale.
    """
    return result.confidence / 100.0 >= threshold and len(result.text) > 50


class OCRProvider(ABC):
    """Abstract base class for OCR backends.

    Implementations are blocking; the engine runs them in a worker thread.
    """

    name: str = "base"

    @abstractmethod
    def recognize(self, data: bytes, mime_type: str) -> OCRResult:
        """Run OCR over an image or PDF and return text with block confidences."""
        ...


class TesseractOCRProvider(OCRProvider):
    """Local OCR via Tesseract. PDFs are rasterized with pdf2image."""

    name = "tesseract"

    def __init__(self, tesseract_cmd: str | None = None, lang: str = "eng", dpi: int = 300):
        self.tesseract_cmd = tesseract_cmd
        self.lang = lang
        self.dpi = dpi

    def _load_images(self, data: bytes, mime_type: str) -> list[Any]:
        from PIL import Image, ImageSequence, UnidentifiedImageError

        if mime_type == PDF_MIME:
            from pdf2image import convert_from_bytes
            from pdf2image.exceptions import PDFPageCountError, PDFSyntaxError

            try:
                return convert_from_bytes(data, dpi=self.dpi)
            except (PDFPageCountError, PDFSyntaxError) as e:
                raise MalformedInputError(f"Could not rasterize PDF: {e}", stage="ocr", original_error=e) from e

        try:
            image = Image.open(io.BytesIO(data))
            # Multi-frame TIFFs are one page per frame
            return [frame.convert("RGB") for frame in ImageSequence.Iterator(image)]
        except (UnidentifiedImageError, OSError) as e:
            raise MalformedInputError(f"Could not decode image: {e}", stage="ocr", original_error=e) from e

    def recognize(self, data: bytes, mime_type: str) -> OCRResult:
        import pytesseract

        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd

        images = self._load_images(data, normalize_mime_type(mime_type))

        blocks: list[OCRBlock] = []
        page_texts = []
        line_confidences = []

        for page_number, image in enumerate(images, start=1):
            width, height = image.size
            data_dict = pytesseract.image_to_data(image, lang=self.lang, output_type=pytesseract.Output.DICT)
            lines = _group_tesseract_lines(data_dict, width, height, page_number)

            page_text = "\n".join(line.text for line, _ in lines)
            page_texts.append(page_text)
            word_confs = [w.confidence for _, words in lines for w in words]

            # Page block first, then each line followed by its words
            blocks.append(OCRBlock(
                type=OCRBlockType.PAGE,
                text=page_text,
                confidence=sum(word_confs) / len(word_confs) if word_confs else 0.0,
                bounding_box=BoundingBox(width=1.0, height=1.0, left=0.0, top=0.0),
                page_number=page_number,
            ))
            for line, words in lines:
                blocks.append(line)
                blocks.extend(words)
                line_confidences.append(line.confidence)

        confidence = sum(line_confidences) / len(line_confidences) if line_confidences else 0.0

        return OCRResult(
            text="\n\n".join(t for t in page_texts if t),
            confidence=round(confidence, 2),
            blocks=blocks,
            backend=self.name,
            page_count=len(images),
        )


def _group_tesseract_lines(
    data: dict[str, list[Any]],
    width: int,
    height: int,
    page_number: int,
) -> list[tuple[OCRBlock, list[OCRBlock]]]:
    """Group Tesseract word rows into (line block, word blocks) pairs."""
    grouped: dict[tuple[int, int, int], list[int]] = {}
    for i, word in enumerate(data["text"]):
        if not str(word).strip():
            continue
        conf = float(data["conf"][i])
        if conf < 0:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        grouped.setdefault(key, []).append(i)

    lines = []
    for indices in grouped.values():
        words = []
        for i in indices:
            words.append(OCRBlock(
                type=OCRBlockType.WORD,
                text=str(data["text"][i]).strip(),
                confidence=float(data["conf"][i]),
                bounding_box=_ratio_box(data["left"][i], data["top"][i], data["width"][i], data["height"][i], width, height),
                page_number=page_number,
            ))

        left = min(data["left"][i] for i in indices)
        top = min(data["top"][i] for i in indices)
        right = max(data["left"][i] + data["width"][i] for i in indices)
        bottom = max(data["top"][i] + data["height"][i] for i in indices)
        line = OCRBlock(
            type=OCRBlockType.LINE,
            text=" ".join(w.text for w in words),
            confidence=sum(w.confidence for w in words) / len(words),
            bounding_box=_ratio_box(left, top, right - left, bottom - top, width, height),
            page_number=page_number,
        )
        lines.append((line, words))

    return lines


def _ratio_box(left: int, top: int, w: int, h: int, page_width: int, page_height: int) -> BoundingBox:
    page_width = page_width or 1
    page_height = page_height or 1
    return BoundingBox(
        width=w / page_width,
        height=h / page_height,
        left=left / page_width,
        top=top / page_height,
    )


class TextractOCRProvider(OCRProvider):
    """OCR via AWS Textract synchronous document text detection."""

    name = "textract"

    _BLOCK_TYPES = {
        "PAGE": OCRBlockType.PAGE,
        "LINE": OCRBlockType.LINE,
        "WORD": OCRBlockType.WORD,
        "TABLE": OCRBlockType.TABLE,
        "CELL": OCRBlockType.CELL,
        "KEY_VALUE_SET": OCRBlockType.KEY_VALUE,
    }

    def __init__(
        self,
        region: str = "us-east-1",
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        client: Any = None,
    ):
        self.region = region
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            import boto3

            credentials = {}
            if self.aws_access_key_id and self.aws_secret_access_key:
                credentials = {
                    "aws_access_key_id": self.aws_access_key_id,
                    "aws_secret_access_key": self.aws_secret_access_key,
                }
            self._client = boto3.client("textract", region_name=self.region, **credentials)
        return self._client

    def recognize(self, data: bytes, mime_type: str) -> OCRResult:
        mime = normalize_mime_type(mime_type)
        if mime not in TEXTRACT_NATIVE_FORMATS:
            data = _convert_to_png(data)

        response = self._get_client().detect_document_text(Document={"Bytes": data})
        return self.parse_blocks(response.get("Blocks", []))

    @classmethod
    def parse_blocks(cls, raw_blocks: list[dict[str, Any]]) -> OCRResult:
        """Turn Textract blocks into an OCRResult.

        Text comes from LINE blocks; overall confidence is their mean.
        Every block carrying text is kept with its bounding box.
        """
        lines = []
        line_confidences = []
        blocks = []
        pages = set()

        for block in raw_blocks:
            block_type = block.get("BlockType")
            if block_type == "PAGE":
                pages.add(block.get("Page", 1))
            if block_type == "LINE" and block.get("Text"):
                lines.append(block["Text"])
                if block.get("Confidence"):
                    line_confidences.append(float(block["Confidence"]))

            if block.get("Text") and block_type in cls._BLOCK_TYPES:
                box = block.get("Geometry", {}).get("BoundingBox")
                blocks.append(OCRBlock(
                    type=cls._BLOCK_TYPES[block_type],
                    text=block["Text"],
                    confidence=float(block.get("Confidence") or 0.0),
                    bounding_box=BoundingBox(
                        width=box.get("Width", 0.0),
                        height=box.get("Height", 0.0),
                        left=box.get("Left", 0.0),
                        top=box.get("Top", 0.0),
                    ) if box else None,
                    page_number=block.get("Page", 1),
                ))

        confidence = sum(line_confidences) / len(line_confidences) if line_confidences else 0.0

        return OCRResult(
            text="\n".join(lines),
            confidence=round(confidence, 2),
            blocks=blocks,
            backend=cls.name,
            page_count=len(pages) or (1 if raw_blocks else 0),
        )


def _convert_to_png(data: bytes) -> bytes:
    from PIL import Image, UnidentifiedImageError

    try:
        image = Image.open(io.BytesIO(data))
        buf = io.BytesIO()
        image.convert("RGB").save(buf, format="PNG")
    except (UnidentifiedImageError, OSError) as e:
        raise MalformedInputError(f"Could not decode image: {e}", stage="ocr", original_error=e) from e
    return buf.getvalue()


def create_ocr_provider(
    backend: str,
    tesseract_cmd: str | None = None,
    tesseract_lang: str = "eng",
    aws_region: str = "us-east-1",
    aws_access_key_id: str | None = None,
    aws_secret_access_key: str | None = None,
) -> OCRProvider:
    if backend == "tesseract":
        return TesseractOCRProvider(tesseract_cmd=tesseract_cmd, lang=tesseract_lang)
    if backend in ("textract", "aws"):
        return TextractOCRProvider(
            region=aws_region,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )
    raise ConfigurationError(f"Unknown OCR backend: {backend}")


class OCREngine:
    """OCR stage: validates input and calls the configured provider."""

    def __init__(
        self,
        provider: OCRProvider,
        timeout: float | None = 60.0,
        max_retries: int = 0,
        min_confidence: float = 0.0,
        reject_low_confidence: bool = False,
    ):
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.min_confidence = min_confidence
        self.reject_low_confidence = reject_low_confidence

    async def process(self, data: bytes, mime_type: str) -> OCRResult:
        if not is_ocr_capable(mime_type):
            raise UnsupportedInputError(f"OCR does not support {mime_type}", stage="ocr")
        if not data:
            raise MalformedInputError("Empty file", stage="ocr")

        result = await call_capability(
            self.provider.recognize,
            data,
            mime_type,
            stage="ocr",
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        logger.debug(
            "OCR via %s: %d chars, confidence %.1f",
            result.backend, len(result.text), result.confidence,
        )

        if self.reject_low_confidence and result.confidence < self.min_confidence:
            raise MalformedInputError(
                f"OCR confidence {result.confidence:.1f} below minimum {self.min_confidence:.1f}",
                stage="ocr",
            )
        return result
