"""
Preview Output Utilities

Turns a rendered preview fragment into things a user can keep:
- Standalone HTML page (themed CSS keyed to the renderer's class names)
- PDF document (via pandoc)
- Image assets as data URIs, ready for \\includegraphics lookups

Security notes:
- CSS size values are validated to prevent CSS injection
- Uploaded assets are size-limited
- Download filenames are sanitized, Unicode-safe
"""
import base64
import logging
import mimetypes
import os
import re
import shutil
import tempfile
from typing import Optional, Tuple

from latex_renderer import Asset, escape_html

# Check for pypandoc availability
try:
    import pypandoc
    HAS_PYPANDOC = True
except ImportError:
    HAS_PYPANDOC = False
    pypandoc = None

logger = logging.getLogger(__name__)

MAX_ASSET_BYTES = 5 * 1024 * 1024
PDF_ENGINES = ("wkhtmltopdf", "weasyprint")
THEMES = ("light", "dark", "academic")


# ---------- CSS ----------

def validate_css_size(value: str) -> bool:
    """Validate CSS size value to prevent injection."""
    if not value:
        return False
    # Allow percentage, px, em, rem, vh, vw with optional decimal
    pattern = r'^\d+(\.\d+)?(px|%|em|rem|vh|vw)$'
    return bool(re.fullmatch(pattern, value))

def sanitize_css_size(value: str, default: str) -> str:
    """Sanitize CSS size value, return default if invalid."""
    if validate_css_size(value):
        return value
    logger.warning("Invalid CSS size value %r, using default %s", value, default)
    return default

def get_theme_css(theme: str) -> list:
    """Get CSS variables for the preview themes."""
    themes = {
        "light": [
            ":root{--bg:#ffffff;--fg:#1f2937;--muted:#6b7280;--heading:#1e3a8a;--border:#d1d5db;--code:#fef9c3;--code-fg:#b91c1c;--accent:#f3f4f6;--warn:#dc2626}",
        ],
        "dark": [
            ":root{--bg:#111827;--fg:#e5e7eb;--muted:#9ca3af;--heading:#93c5fd;--border:#374151;--code:#1f2937;--code-fg:#fca5a5;--accent:#1f2937;--warn:#f87171}",
            "html{color-scheme:dark}",
        ],
        "academic": [
            ":root{--bg:#fffff8;--fg:#1a1a1a;--muted:#666666;--heading:#1a1a1a;--border:#d4d4d4;--code:#f5f5f5;--code-fg:#1a1a1a;--accent:#fafafa;--warn:#b91c1c;font-family:Georgia,Cambria,'Times New Roman',Times,serif}",
            "body{line-height:1.7}",
        ],
    }
    return themes.get(theme, themes["light"])

def generate_css(theme: str = "light", base_font_size: str = "100%", content_width: str = "800px") -> str:
    """Generate the stylesheet the preview fragment's class names depend on."""
    safe_font_size = sanitize_css_size(base_font_size, "100%")
    safe_content_width = sanitize_css_size(content_width, "800px")

    css = get_theme_css(theme) + [
        f":root{{--base-font-size:{safe_font_size};--content-width:{safe_content_width}}}",
        "*{box-sizing:border-box}",
        "body{margin:0;background:var(--bg);color:var(--fg);line-height:1.6;font-family:'Latin Modern Roman',Georgia,serif;font-size:var(--base-font-size)}",
        "article.latex-preview{max-width:var(--content-width);margin:0 auto;padding:2rem}",
        ".render-error{color:var(--warn);font-weight:700;text-align:center;padding:2rem}",
        ".title-block{text-align:center;margin-bottom:1.5rem}",
        ".doc-title{font-size:2rem;margin:0 0 .25rem 0}",
        ".doc-author{color:var(--muted);margin:.25rem 0}",
        ".doc-date{color:var(--muted);font-size:.9rem;margin:0 0 1.5rem 0}",
        ".section-heading{font-size:1.4rem;color:var(--heading);border-bottom:1px solid var(--border);padding-bottom:.25rem;margin:1.5rem 0 .5rem 0}",
        ".subsection-heading{font-size:1.15rem;margin:1rem 0 .25rem 0}",
        ".math-inline{background:var(--code);color:var(--code-fg);padding:0 .25rem;border-radius:.25rem;font-family:ui-monospace,SFMono-Regular,Consolas,monospace;font-size:.9em}",
        ".math-block{display:block;background:var(--accent);border:1px solid var(--border);padding:.75rem;margin:1rem 0;text-align:center;font-family:ui-monospace,SFMono-Regular,Consolas,monospace;overflow-x:auto;border-radius:.4rem}",
        ".latex-list{margin:.5rem 0;padding-left:2rem}",
        ".latex-list li{margin:.2rem 0}",
        ".latex-figure{margin:1.5rem 0;text-align:center}",
        ".asset-image{max-width:100%;height:auto;display:block;margin:0 auto}",
        ".figure-caption{font-size:.9rem;color:var(--muted);margin-top:.5rem;text-align:center}",
        ".image-not-found{border:2px dashed var(--warn);color:var(--warn);padding:1.5rem;font-weight:700;border-radius:.5rem}",
        ".image-not-found .asset-hint{font-size:.75rem;font-weight:400}",
        ".figure-placeholder{border:2px dashed var(--border);background:var(--accent);padding:1.5rem;border-radius:.5rem}",
        ".figure-placeholder .placeholder-title{font-weight:600;font-size:.9rem;margin:0 0 .5rem 0}",
        ".figure-placeholder .placeholder-detail{font-size:.75rem;color:var(--muted);margin:0}",
        ".latex-table{border-collapse:collapse;margin:1rem auto;min-width:50%}",
        ".latex-table caption{caption-side:bottom;font-size:.9rem;color:var(--muted);padding-top:.5rem}",
        ".latex-table thead th{border-top:2px solid var(--fg);border-bottom:1px solid var(--fg)}",
        ".latex-table tbody tr:last-child td{border-bottom:2px solid var(--fg)}",
        ".latex-table th,.latex-table td{padding:.35rem .75rem;text-align:left}",
        "@media print{body{font-size:11pt}article.latex-preview{max-width:100%;padding:0}.latex-figure,.latex-table,.math-block{page-break-inside:avoid}.section-heading,.subsection-heading{page-break-after:avoid}}",
    ]
    return "".join(css)

def build_preview_document(
    fragment: str,
    title: str = "Document",
    theme: str = "light",
    base_font_size: str = "100%",
    content_width: str = "800px"
) -> str:
    """Wrap a rendered fragment into a standalone HTML page."""
    css = generate_css(theme, base_font_size, content_width)
    initial_theme = "dark" if theme == "dark" else "light"
    return (
        "<!doctype html>\n"
        f"<html lang=\"en\" data-theme=\"{initial_theme}\">\n"
        "<head>\n"
        "<meta charset=\"utf-8\">\n"
        "<meta name=\"viewport\" content=\"width=device-width,initial-scale=1\">\n"
        f"<title>{escape_html(title or 'Document')}</title>\n"
        f"<style>\n{css}\n</style>\n"
        "</head>\n"
        "<body>\n"
        f"<article class=\"latex-preview\">\n{fragment}\n</article>\n"
        "</body>\n"
        "</html>"
    )


# ---------- Assets ----------

def asset_from_upload(name: str, payload: bytes, mime: Optional[str] = None) -> Asset:
    """
    Turn uploaded image bytes into an Asset holding a base64 data URI.

    Args:
        name: The filename documents use in \\includegraphics{...}
        payload: Raw image bytes
        mime: MIME type; guessed from the name when omitted

    Returns:
        Asset(name, "data:<mime>;base64,...")

    Raises:
        ValueError: If the name is empty or the payload is empty or too large
    """
    if not name or not name.strip():
        raise ValueError("Asset name is empty.")
    if not payload:
        raise ValueError(f"Asset '{name}' is empty.")
    if len(payload) > MAX_ASSET_BYTES:
        raise ValueError(
            f"Asset '{name}' is {len(payload)} bytes; the limit is {MAX_ASSET_BYTES} bytes."
        )
    mime = mime or mimetypes.guess_type(name)[0] or "application/octet-stream"
    encoded = base64.b64encode(payload).decode("ascii")
    return Asset(name, f"data:{mime};base64,{encoded}")


# ---------- PDF Conversion ----------

def find_pdf_engine(preferred: Optional[str] = None) -> Optional[str]:
    """Return the first HTML-capable PDF engine found on PATH."""
    candidates = (preferred,) + PDF_ENGINES if preferred else PDF_ENGINES
    for engine in candidates:
        if shutil.which(engine) is not None:
            return engine
    return None

def check_pdf_dependencies(pdf_engine: Optional[str] = None) -> Tuple[bool, str]:
    """
    Check if PDF export dependencies are available.

    Returns:
        Tuple of (is_available, error_message)
    """
    if not HAS_PYPANDOC:
        return False, "pypandoc is not installed. Install with: pip install pypandoc"

    if shutil.which("pandoc") is None:
        return False, (
            "pandoc is not found on the system. Install with:\n"
            "  - macOS: brew install pandoc\n"
            "  - Ubuntu/Debian: apt-get install pandoc\n"
            "  - Windows: choco install pandoc"
        )

    if find_pdf_engine(pdf_engine) is None:
        return False, (
            "No HTML-to-PDF engine found. Install one of: "
            + ", ".join(PDF_ENGINES)
        )

    return True, ""

def convert_html_to_pdf(
    html_document: str,
    output_path: Optional[str] = None,
    pdf_engine: Optional[str] = None
) -> bytes:
    """
    Rasterize a standalone preview page into PDF.

    Args:
        html_document: Output of build_preview_document()
        output_path: Optional path to write the PDF file
        pdf_engine: Preferred pandoc --pdf-engine

    Returns:
        The PDF file content as bytes

    Raises:
        ImportError: If pypandoc, pandoc or a PDF engine is missing
        RuntimeError: If the conversion fails
    """
    available, error = check_pdf_dependencies(pdf_engine)
    if not available:
        raise ImportError(error)
    engine = find_pdf_engine(pdf_engine)

    with tempfile.TemporaryDirectory() as tmpdir:
        temp_output = os.path.join(tmpdir, "output.pdf")
        try:
            pypandoc.convert_text(
                html_document,
                "pdf",
                format="html",
                outputfile=temp_output,
                extra_args=[f"--pdf-engine={engine}", "--metadata", "pagetitle=Preview"]
            )
        except Exception as e:
            logger.warning("PDF export failed with %s: %s", engine, e)
            raise RuntimeError(
                f"Pandoc conversion failed: {e}\n"
                "Check that the preview renders without errors."
            ) from e

        with open(temp_output, "rb") as f:
            pdf_bytes = f.read()

    if output_path:
        with open(output_path, "wb") as f:
            f.write(pdf_bytes)

    return pdf_bytes


def sanitize_filename_for_format(name: str, extension: str) -> str:
    """
    Sanitize filename for a specific format extension.

    Args:
        name: The base filename
        extension: The target extension (e.g., '.pdf', '.html')

    Returns:
        Sanitized filename with the correct extension
    """
    if not name:
        return f"document{extension}"

    # Remove characters not safe for filenames
    name = re.sub(r'[^\w\s._-]', '', name)
    name = re.sub(r'[\s]+', '_', name)
    name = name.strip('._-')

    if not name:
        return f"document{extension}"

    # Remove existing extension if present (case-insensitive)
    for ext in ['.html', '.htm', '.tex', '.latex', '.pdf']:
        if name.lower().endswith(ext):
            name = name[:-len(ext)]
            break

    # Truncate by byte count for Unicode safety (255 - extension length)
    max_base_bytes = 255 - len(extension.encode('utf-8'))
    while len(name.encode('utf-8')) > max_base_bytes:
        name = name[:-1]

    return name + extension
