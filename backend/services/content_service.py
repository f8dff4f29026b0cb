"""
Content service: renders the downloadable artifact for a purchased product.

Treated as a pure function of the product: no DB access, no side effects.
The generator is injected into the download route (deps.get_content_generator)
so deployments can swap in real study material and tests can use fakes.
"""
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from html import escape

from db_models import Product


@dataclass(frozen=True)
class ContentArtifact:
    content: bytes
    content_type: str
    filename: str


def artifact_filename(exam_name: str, extension: str = "pdf") -> str:
    """'Admin (ADM-201)' -> 'admin__adm_201_.pdf'"""
    stem = re.sub(r"[^a-z0-9]", "_", exam_name, flags=re.IGNORECASE).lower()
    return f"{stem}.{extension}"


class ContentGenerator(ABC):
    """Produces the artifact delivered for one product."""

    @abstractmethod
    def generate(self, product: Product) -> ContentArtifact:
        ...


class SamplePdfGenerator(ContentGenerator):
    """
    Single-page study sheet rendered from HTML with WeasyPrint.

    Rendering is synchronous and CPU-bound; callers on the event loop run it
    through services.async_executor.run_blocking.
    """

    stylesheet = """
        @page { size: Letter; margin: 2cm; }
        body { font-family: sans-serif; color: #222; }
        h1 { font-size: 24pt; margin-bottom: 0.2em; }
        .code { font-size: 12pt; color: #555; }
        .meta { margin-top: 1.5em; font-size: 11pt; }
    """

    lines = (
        "Practice Questions and Study Material",
        "Includes questions, answers and explanations.",
    )

    def render_html(self, product: Product) -> str:
        meta = []
        if product.difficulty_level:
            meta.append(f"<li>Difficulty: {escape(product.difficulty_level)}</li>")
        if product.questions_count:
            meta.append(f"<li>Questions: {product.questions_count}</li>")
        body = "".join(f"<p>{escape(line)}</p>" for line in self.lines)
        return (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
            f"<title>{escape(product.exam_name)}</title></head><body>"
            f"<h1>{escape(product.exam_name)}</h1>"
            f"<div class=\"code\">Exam Code: {escape(product.exam_code or 'N/A')}</div>"
            f"{body}"
            f"<ul class=\"meta\">{''.join(meta)}</ul>"
            "</body></html>"
        )

    def generate(self, product: Product) -> ContentArtifact:
        # Lazy import: WeasyPrint loads Pango at import time
        from weasyprint import CSS, HTML

        pdf = HTML(string=self.render_html(product)).write_pdf(
            stylesheets=[CSS(string=self.stylesheet)],
        )
        return ContentArtifact(
            content=pdf,
            content_type="application/pdf",
            filename=artifact_filename(product.exam_name),
        )
