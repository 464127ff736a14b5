"""
PDF -> PNG rasterization of a purchase order's first page.

Wraps pdf2image (poppler's pdftoppm under the hood). Only page one is
rendered, at a fixed resolution high enough for the vision model to read
small print reliably.
"""
import logging
from pathlib import Path
from typing import Optional

from pdf2image import convert_from_path
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFSyntaxError,
)

from .errors import RasterizationError

logger = logging.getLogger(__name__)

DEFAULT_DPI = 300


class PdfRasterizer:
    """Renders page 1 of a PDF to a PNG file next to it (or in output_dir)."""

    def __init__(self, dpi: int = DEFAULT_DPI):
        self.dpi = dpi

    def rasterize(self, pdf_path: str | Path, output_dir: Optional[Path] = None) -> Path:
        """
        Convert the first page of *pdf_path* to PNG and return the image path.

        Raises RasterizationError when poppler is missing or the PDF is
        unreadable. The caller owns the returned file and must delete it.
        """
        pdf_path = Path(pdf_path)
        output_dir = Path(output_dir) if output_dir else pdf_path.parent
        output_dir.mkdir(parents=True, exist_ok=True)

        try:
            paths = convert_from_path(
                str(pdf_path),
                dpi=self.dpi,
                first_page=1,
                last_page=1,
                fmt="png",
                output_folder=str(output_dir),
                output_file=pdf_path.stem,
                single_file=True,
                paths_only=True,
            )
        except PDFInfoNotInstalledError as e:
            logger.error("Poppler not available: %s", e)
            raise RasterizationError(
                "Failed to convert PDF to image. Make sure poppler-utils is installed."
            ) from e
        except (PDFPageCountError, PDFSyntaxError, OSError) as e:
            logger.error("Error converting %s to image: %s", pdf_path.name, e)
            raise RasterizationError(f"Failed to convert PDF to image: {e}") from e

        image_path = Path(paths[0]) if paths else output_dir / f"{pdf_path.stem}.png"
        if not image_path.exists():
            raise RasterizationError(
                f"Failed to convert PDF to image: no output produced for {pdf_path.name}"
            )

        logger.info("PDF converted to image: %s (%d dpi)", image_path.name, self.dpi)
        return image_path
