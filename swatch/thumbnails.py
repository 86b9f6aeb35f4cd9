"""Preview rendering: per-format ordered fallback strategies.

PSD:  psd-tools composite → Pillow's own PSD reader → "no_local_preview"
AI:   PyMuPDF (PDF-compatible stream) → Ghostscript → "no_pdf_compat"

Every strategy returns a PIL image; the first one that works is flattened
over white, fit inside max_dim x max_dim and encoded as JPEG.
"""
from __future__ import annotations

import io
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Callable, Optional

from PIL import Image

from swatch.errors import PreviewError

logger = logging.getLogger("swatch.thumbnails")

MAX_DIM = 800
JPEG_QUALITY = 85
RASTER_DPI = 150

NO_LOCAL_PREVIEW = "no_local_preview"
NO_PDF_COMPAT = "no_pdf_compat"

Strategy = Callable[[str], Image.Image]


@dataclass(frozen=True)
class Preview:
    data: bytes
    width: int
    height: int


def flatten_to_jpeg(image: Image.Image, max_dim: int = MAX_DIM,
                    quality: int = JPEG_QUALITY) -> Preview:
    """Flatten alpha over white, shrink to fit (never enlarge), encode JPEG."""
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        image = background
    elif image.mode != "RGB":
        image = image.convert("RGB")
    image.thumbnail((max_dim, max_dim))
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=quality)
    return Preview(data=buf.getvalue(), width=image.width, height=image.height)


def find_ghostscript(configured: Optional[str] = None) -> Optional[str]:
    if configured:
        return configured
    for name in ("gs", "gswin64c", "gswin32c"):
        found = shutil.which(name)
        if found:
            return found
    return None


def rasterize_with_ghostscript(path: str, gs_path: str, timeout: float = 60,
                               dpi: int = RASTER_DPI) -> Image.Image:
    """First page to PNG via Ghostscript, in a temp dir that is always removed."""
    with tempfile.TemporaryDirectory(prefix="swatch-gs-") as tmp:
        out = os.path.join(tmp, "page.png")
        cmd = [
            gs_path, "-dNOPAUSE", "-dBATCH", "-dSAFER", "-dQUIET",
            "-sDEVICE=png16m", f"-r{dpi}", "-dFirstPage=1", "-dLastPage=1",
            f"-sOutputFile={out}", path,
        ]
        try:
            subprocess.run(cmd, check=True, timeout=timeout,
                           stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or b"").decode(errors="replace").strip().splitlines()
            raise RuntimeError(
                f"ghostscript exited {e.returncode}: {detail[-1] if detail else ''}"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeError(f"ghostscript timed out after {timeout}s") from e
        if not os.path.exists(out):
            raise RuntimeError("ghostscript produced no output")
        with Image.open(out) as img:
            img.load()
            return img.copy()


def _psd_composite(path: str) -> Image.Image:
    from psd_tools import PSDImage

    psd = PSDImage.open(path)
    image = psd.composite()
    if image is None:
        raise RuntimeError("psd has no composite image")
    return image


def _pillow_open(path: str) -> Image.Image:
    with Image.open(path) as img:
        img.load()
        return img.copy()


def _pymupdf_first_page(path: str) -> Image.Image:
    import fitz  # PyMuPDF

    doc = fitz.open(path, filetype="pdf")
    try:
        if doc.page_count < 1:
            raise RuntimeError("no pages in PDF-compatible stream")
        pix = doc[0].get_pixmap(dpi=RASTER_DPI, alpha=False)
        return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
    finally:
        doc.close()


class PreviewRenderer:
    def __init__(
        self,
        max_dim: int = MAX_DIM,
        quality: int = JPEG_QUALITY,
        gs_path: Optional[str] = None,
        gs_timeout: float = 60,
    ) -> None:
        self.max_dim = max_dim
        self.quality = quality
        self.gs_path = find_ghostscript(gs_path)
        self.gs_timeout = gs_timeout

    def strategies(self, file_type: str) -> tuple[list[tuple[str, Strategy]], str]:
        """Ordered (name, strategy) list plus the reason reported on exhaustion."""
        if file_type == "psd":
            return [
                ("psd-tools", _psd_composite),
                ("pillow", _pillow_open),
            ], NO_LOCAL_PREVIEW
        if file_type == "ai":
            chain: list[tuple[str, Strategy]] = [("pymupdf", _pymupdf_first_page)]
            if self.gs_path:
                gs_path, timeout = self.gs_path, self.gs_timeout
                chain.append(
                    ("ghostscript", lambda p: rasterize_with_ghostscript(p, gs_path, timeout))
                )
            return chain, NO_PDF_COMPAT
        raise PreviewError(f"unsupported_type:{file_type}")

    def render(self, path: str, file_type: str) -> Preview:
        chain, exhausted_reason = self.strategies(file_type)
        attempts: list[tuple[str, str]] = []
        for name, strategy in chain:
            try:
                image = strategy(path)
                return flatten_to_jpeg(image, self.max_dim, self.quality)
            except Exception as e:
                logger.warning("%s preview failed for %s: %s", name, path, e)
                attempts.append((name, str(e) or type(e).__name__))
        raise PreviewError(exhausted_reason, attempts)
