"""
Upload text extraction.

Turns an uploaded plain-text or image file into text for the engine.
Anything else is an ExtractionError; the engine never inspects bytes itself.
"""
import asyncio
import logging
from dataclasses import dataclass
from functools import cached_property
from io import BytesIO

import pytesseract
from PIL import Image, UnidentifiedImageError

from docsorter.services.errors import ExtractionError

logger = logging.getLogger(__name__)

TEXT_MIME_TYPES = ("text/plain", "text/csv", "text/markdown")
IMAGE_MIME_TYPES = ("image/jpeg", "image/png", "image/tiff", "image/bmp")


@dataclass
class UploadedDocument:
    filename: str
    content_type: str
    content: bytes

    @property
    def is_image(self) -> bool:
        return self.content_type in IMAGE_MIME_TYPES

    @cached_property
    def image(self) -> Image.Image:
        try:
            img = Image.open(BytesIO(self.content))
            img.load()
            return img
        except (UnidentifiedImageError, OSError) as e:
            raise ExtractionError(f"Cannot decode image {self.filename}: {e}") from e

    def __repr__(self) -> str:
        return f"UploadedDocument({self.filename!r}, {self.content_type!r}, {len(self.content)} bytes)"


class UploadTextExtractor:
    """Plain text is decoded, images are OCR'd with tesseract."""

    def __init__(self, tesseract_config: str = "--psm 6"):
        self.tesseract_config = tesseract_config

    async def __call__(self, upload: UploadedDocument) -> str:
        if upload.content_type in TEXT_MIME_TYPES:
            try:
                return upload.content.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ExtractionError(f"{upload.filename} is not valid UTF-8 text") from e

        if upload.is_image:
            try:
                text = await asyncio.to_thread(
                    pytesseract.image_to_string, upload.image, config=self.tesseract_config
                )
            except pytesseract.TesseractError as e:
                raise ExtractionError(f"OCR failed for {upload.filename}: {e}") from e
            logger.info(f"OCR extracted {len(text)} characters from {upload.filename}")
            return text

        raise ExtractionError(f"Unsupported file type: {upload.content_type}")
