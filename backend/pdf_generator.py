"""
Template -> PDF pipeline: resolve, interpolate, compose, render
"""
import logging
from dataclasses import dataclass
from typing import Optional

from errors import ConfigurationError
from interpolator import interpolate, strip_unfilled_tokens
from layout_positions import provider_parties
from models import DocumentKind, SignatureLayout
from pdf_renderer import inject_fonts, render_contract_pdf
from signature_pages import compose, has_signature_page
from template_resolver import TemplateResolver

logger = logging.getLogger(__name__)

# Layout drawn by the signature page embedded in self-contained templates
EMBEDDED_PAGE_LAYOUT = SignatureLayout.TWO_COLUMN


@dataclass
class ComposedDocument:
    html: str
    signature_layout: SignatureLayout
    template_source: str
    template_layout: Optional[SignatureLayout] = None


@dataclass
class GeneratedDocument:
    pdf_bytes: bytes
    page_count: int
    signature_layout: SignatureLayout
    template_source: str


class ContractPDFGenerator:

    def __init__(self, resolver=None):
        self.resolver = resolver or TemplateResolver()

    def compose_html(self, kind, data, company_template_id=None, jurisdiction=None, signature_layout=None):
        """
        Resolve and fill the template, appending a signature page when it has none

        The effective layout is the template's own, else the caller's, else
        two-column. A template that embeds its own signature page without
        declaring a layout carries the standard two-column page, so it can only
        serve layouts signed by the same provider parties.

        Raises:
            ConfigurationError: the requested layout cannot be signed on the template's embedded page
        """
        kind = DocumentKind.parse(kind)
        template = self.resolver.resolve(
            kind,
            jurisdiction=jurisdiction or data.property_state,
            company_template_id=company_template_id,
        )
        layout = self._effective_layout(template, SignatureLayout.parse(signature_layout))

        html_text = interpolate(template.html, data, clause_start=template.clause_start)
        html_text = compose(html_text, layout, data)
        html_text = inject_fonts(html_text)
        return ComposedDocument(
            html=html_text,
            signature_layout=layout,
            template_source=template.source,
            template_layout=template.signature_layout,
        )

    def _effective_layout(self, template, requested):
        if template.signature_layout:
            return template.signature_layout
        if not has_signature_page(template.html):
            return requested or SignatureLayout.TWO_COLUMN

        if requested and requested is not EMBEDDED_PAGE_LAYOUT:
            if provider_parties(requested) != provider_parties(EMBEDDED_PAGE_LAYOUT):
                raise ConfigurationError(
                    f"The {template.source} template embeds a {EMBEDDED_PAGE_LAYOUT.value} signature page "
                    f"and cannot be signed as {requested.value}",
                    template_source=template.source,
                    signature_layout=requested.value,
                )
            logger.warning(
                f"Layout {requested.value} requested for a {template.source} template with an embedded "
                f"signature page; using {EMBEDDED_PAGE_LAYOUT.value}"
            )
        return EMBEDDED_PAGE_LAYOUT

    def generate(self, kind, data, company_template_id=None, jurisdiction=None, signature_layout=None):
        composed = self.compose_html(kind, data, company_template_id, jurisdiction, signature_layout)
        logger.info(
            f"Generating {DocumentKind.parse(kind).value} PDF from {composed.template_source} "
            f"template with layout {composed.signature_layout.value}"
        )
        return self.render_composed(composed, data)

    def render_composed(self, composed, data):
        result = render_contract_pdf(
            composed.html,
            signature_layout=composed.signature_layout,
            buyer_initials=data.buyer_initials,
        )
        return GeneratedDocument(
            pdf_bytes=result.pdf_bytes,
            page_count=result.page_count,
            signature_layout=composed.signature_layout,
            template_source=composed.template_source,
        )

    def preview_html(self, kind, data, company_template_id=None, jurisdiction=None, signature_layout=None):
        composed = self.compose_html(kind, data, company_template_id, jurisdiction, signature_layout)
        return strip_unfilled_tokens(composed.html)
