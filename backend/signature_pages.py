"""
Signature page composition

Appends the layout's signature-page fragment to templates that do not embed
one. Composition is idempotent: HTML that already carries a signature page is
returned unchanged.
"""
import logging
import os
import re

from errors import ConfigurationError
from interpolator import interpolate
from models import SignatureLayout

logger = logging.getLogger(__name__)

SIGNATURE_PAGES_DIR = os.path.join(os.path.dirname(__file__), 'templates', 'signature-pages')

SIGNATURE_PAGE_PATTERN = re.compile(
    r'class\s*=\s*["\'][^"\']*(?<![\w-])signature-page(?![\w-])[^"\']*["\']'
)

SIGNATURES_NOTICE = (
    '<p class="center-text signatures-notice" style="text-align: center; margin-top: 30pt; '
    'font-weight: bold;"><strong>[SIGNATURES ON THE FOLLOWING PAGE]</strong></p>'
)

STYLE_MARKER = '/* signature-page styles */'

SIGNATURE_PAGE_STYLES = STYLE_MARKER + """
.signature-page { page-break-before: always; }
.signature-header { text-align: center; font-style: italic; margin-bottom: 30pt; line-height: 1.4; }
.signature-table { width: 100%; border-collapse: collapse; }
.signature-table td { vertical-align: bottom; padding: 4pt 6pt; }
.signature-label { font-size: 9pt; font-weight: bold; }
.signature-line { border-bottom: 1px solid #000; min-height: 20pt; }
"""


def has_signature_page(html_text):
    return bool(SIGNATURE_PAGE_PATTERN.search(html_text or ''))


def load_fragment(layout, fragments_dir=SIGNATURE_PAGES_DIR):
    layout = SignatureLayout.parse(layout, default=SignatureLayout.TWO_COLUMN)
    path = os.path.join(fragments_dir, f'{layout.value}.html')
    try:
        with open(path, 'r', encoding='utf-8') as fragment_file:
            return fragment_file.read()
    except OSError as e:
        raise ConfigurationError(f"Signature page fragment not found: {layout.value}") from e


def inject_styles(html_text):
    if STYLE_MARKER in html_text:
        return html_text
    if '</style>' in html_text:
        return html_text.replace('</style>', f'{SIGNATURE_PAGE_STYLES}</style>', 1)
    if '</head>' in html_text:
        return html_text.replace('</head>', f'<style>{SIGNATURE_PAGE_STYLES}</style></head>', 1)
    return f'<style>{SIGNATURE_PAGE_STYLES}</style>' + html_text


def compose(html_text, layout, data, fragments_dir=SIGNATURE_PAGES_DIR):
    """
    Append a signature page unless the document already has one

    Args:
        html_text: interpolated contract HTML
        layout: SignatureLayout; None means the template is self-contained
        data: ContractData used to fill the fragment's tokens
        fragments_dir: directory holding <layout>.html fragments

    Returns:
        str: HTML with exactly one signature page

    Raises:
        ConfigurationError: the fragment file for the layout is missing
    """
    if has_signature_page(html_text):
        return html_text

    layout = SignatureLayout.parse(layout, default=SignatureLayout.TWO_COLUMN)
    fragment = interpolate(load_fragment(layout, fragments_dir), data)
    if not has_signature_page(fragment):
        raise ConfigurationError(f"Signature page fragment '{layout.value}' has no signature-page element")

    html_text = inject_styles(html_text)
    addition = SIGNATURES_NOTICE + fragment
    if '</body>' in html_text:
        html_text = html_text.replace('</body>', f'{addition}</body>', 1)
    else:
        html_text = html_text + addition

    logger.info(f"Added signature page with layout: {layout.value}")
    return html_text
