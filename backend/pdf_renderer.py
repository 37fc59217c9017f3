"""
Contract HTML -> paginated PDF

ReportLab renders the composed contract onto US Letter with a running footer
(seller initials box, page counter, buyer/assignee initials box). The footer
band of the final page is then blanked with a PyPDF2 overlay since the
signature page carries no initials.

Signature pages whose tables name a signer block (data-block="seller") are
drawn at the block positions in layout_positions rather than flowed, so the
provider fields computed from that catalog sit on the drawn rows.
"""
import base64
import binascii
import io
import logging
import re
from collections import namedtuple
from dataclasses import dataclass
from html.parser import HTMLParser
from xml.sax.saxutils import escape

import reportlab.rl_config
from PIL import Image as PILImage
from PyPDF2 import PdfReader, PdfWriter
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY, TA_LEFT, TA_RIGHT
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas
from reportlab.platypus import (
    Flowable, HRFlowable, PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
)
from reportlab.platypus import Image as RLImage

from errors import LayoutError, UpstreamError
from interpolator import format_long_date
from layout_positions import (
    BUYER_INITIALS_RECT, LINE_SPACING, SELLER_INITIALS_RECT, block_geometry, layout_spec, second_party
)
from models import Party, SignatureLayout

reportlab.rl_config.warnOnMissingFontGlyphs = 0

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = letter
TOP_MARGIN = 0.5 * inch
SIDE_MARGIN = 0.5 * inch
BOTTOM_MARGIN = 1 * inch
FOOTER_BAND = 72
FOOTER_RULE_Y = 48
FOOTER_TEXT_Y = 25
AVAILABLE_WIDTH = PAGE_WIDTH - 2 * SIDE_MARGIN
PX_TO_PT = 0.75

# Standard-14 Times faces; their AFM metrics keep pagination identical everywhere
FontSet = namedtuple('FontSet', ['regular', 'bold', 'italic', 'bold_italic'])
BUILTIN_FONTS = FontSet('Times-Roman', 'Times-Bold', 'Times-Italic', 'Times-BoldItalic')

RIGHT_SLOT_LABELS = {
    SignatureLayout.THREE_PARTY: 'Assignee Initials:',
    SignatureLayout.TWO_SELLER: 'Seller 2 Initials:',
}
PREFILLED_RIGHT_SLOT = (SignatureLayout.TWO_COLUMN, SignatureLayout.SELLER_ONLY)


@dataclass
class RenderResult:
    pdf_bytes: bytes
    page_count: int


FONT_FACE_CSS = """<style>
@font-face { font-family: 'Times New Roman'; src: local('Tinos'), local('Tinos-Regular'); font-weight: normal; font-style: normal; }
@font-face { font-family: 'Times New Roman'; src: local('Tinos-Bold'); font-weight: bold; font-style: normal; }
@font-face { font-family: 'Times New Roman'; src: local('Tinos-Italic'); font-weight: normal; font-style: italic; }
@font-face { font-family: 'Times New Roman'; src: local('Tinos-BoldItalic'); font-weight: bold; font-style: italic; }
@font-face { font-family: 'Times'; src: local('Tinos'), local('Tinos-Regular'); }
body { font-family: 'Tinos', 'Times New Roman', Times, serif; }
</style>"""


def inject_fonts(html_text):
    """Map Times New Roman onto Tinos for HTML previews."""
    if FONT_FACE_CSS in html_text:
        return html_text
    if '</head>' in html_text:
        return html_text.replace('</head>', f'{FONT_FACE_CSS}</head>', 1)
    if '<body' in html_text:
        return html_text.replace('<body', f'{FONT_FACE_CSS}<body', 1)
    return FONT_FACE_CSS + html_text


def build_styles(fonts):
    styles = getSampleStyleSheet()

    styles.add(ParagraphStyle(
        name='ContractHeading1',
        parent=styles['Heading1'],
        fontSize=16,
        leading=20,
        alignment=TA_CENTER,
        spaceBefore=0,
        spaceAfter=6,
        fontName=fonts.bold
    ))

    styles.add(ParagraphStyle(
        name='ContractHeading2',
        parent=styles['Heading2'],
        fontSize=11,
        leading=14,
        spaceBefore=10,
        spaceAfter=4,
        fontName=fonts.bold
    ))

    styles.add(ParagraphStyle(
        name='ContractHeading3',
        parent=styles['Heading3'],
        fontSize=11,
        leading=14,
        spaceBefore=6,
        spaceAfter=4,
        fontName=fonts.bold
    ))

    styles.add(ParagraphStyle(
        name='ContractBody',
        parent=styles['BodyText'],
        fontSize=11,
        leading=14,
        alignment=TA_JUSTIFY,
        spaceBefore=2,
        spaceAfter=6,
        fontName=fonts.regular
    ))

    styles.add(ParagraphStyle(
        name='ContractBullet',
        parent=styles['BodyText'],
        fontSize=11,
        leading=14,
        leftIndent=24,
        spaceBefore=2,
        spaceAfter=4,
        fontName=fonts.regular
    ))

    styles.add(ParagraphStyle(
        name='SignatureHeader',
        parent=styles['BodyText'],
        fontSize=11,
        leading=15,
        alignment=TA_CENTER,
        spaceAfter=30,
        fontName=fonts.italic
    ))

    styles.add(ParagraphStyle(
        name='TableCell',
        parent=styles['BodyText'],
        fontSize=10,
        leading=12,
        spaceBefore=0,
        spaceAfter=0,
        fontName=fonts.regular
    ))

    styles.add(ParagraphStyle(
        name='SignatureLabel',
        parent=styles['BodyText'],
        fontSize=9,
        leading=11,
        spaceBefore=0,
        spaceAfter=0,
        fontName=fonts.bold
    ))

    return styles


def footer_right_slot(layout):
    """Label for the right-hand footer box and whether it carries the pre-filled buyer initials."""
    layout = SignatureLayout.parse(layout, default=SignatureLayout.TWO_COLUMN)
    return RIGHT_SLOT_LABELS.get(layout, 'Buyer Initials:'), layout in PREFILLED_RIGHT_SLOT


def percent_rect_to_points(rect):
    """Top-left percentage rectangle -> (x, y, width, height) in bottom-left PDF points."""
    width = rect.width / 100 * PAGE_WIDTH
    height = rect.height / 100 * PAGE_HEIGHT
    x = rect.x / 100 * PAGE_WIDTH
    y = PAGE_HEIGHT - rect.y / 100 * PAGE_HEIGHT - height
    return x, y, width, height


def decode_image(image_b64):
    """
    Decode a base64 image (raw or data URI) and check it with PIL

    Returns:
        bytes or None when the value is empty or not a valid image
    """
    image_b64 = (image_b64 or '').strip()
    if not image_b64:
        return None
    if image_b64.startswith('data:'):
        if ',' not in image_b64:
            logger.warning("Image data URI has no payload")
            return None
        image_b64 = image_b64.split(',', 1)[1]
    try:
        image_data = base64.b64decode(image_b64)
        img = PILImage.open(io.BytesIO(image_data))
        img.verify()
    except (binascii.Error, ValueError, OSError) as e:
        logger.warning(f"Invalid embedded image: {e}")
        return None
    return image_data


class ContractCanvas(canvas.Canvas):
    def __init__(self, *args, **kwargs):
        self.signature_layout = kwargs.pop('signature_layout', None)
        self.buyer_initials = kwargs.pop('buyer_initials', None)
        self.fonts = kwargs.pop('fonts', BUILTIN_FONTS)

        canvas.Canvas.__init__(self, *args, **kwargs)
        self._saved_page_states = []

    def showPage(self):
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self):
        total_pages = len(self._saved_page_states)
        for page_index, state in enumerate(self._saved_page_states):
            self.__dict__.update(state)
            # The signature page carries no initials; blank_final_footer owns its band
            if page_index + 1 < total_pages:
                self.draw_footer(page_index + 1, total_pages)
            canvas.Canvas.showPage(self)
        canvas.Canvas.save(self)

    def draw_footer(self, page_number, total_pages):
        self.saveState()

        self.setStrokeColor(colors.HexColor('#CCCCCC'))
        self.setLineWidth(1)
        self.line(SIDE_MARGIN, FOOTER_RULE_Y, PAGE_WIDTH - SIDE_MARGIN, FOOTER_RULE_Y)

        self.setFillColor(colors.black)
        self.setFont(self.fonts.regular, 9)
        self.draw_initials_box('Seller Initials:', SELLER_INITIALS_RECT)
        self.drawCentredString(PAGE_WIDTH / 2, FOOTER_TEXT_Y, f"Page {page_number} of {total_pages}")

        label, prefilled = footer_right_slot(self.signature_layout)
        self.draw_initials_box(label, BUYER_INITIALS_RECT, self.buyer_initials if prefilled else None)

        self.restoreState()

    def draw_initials_box(self, label, rect, image_data=None):
        x, y, width, height = percent_rect_to_points(rect)
        self.setStrokeColor(colors.black)
        self.setLineWidth(0.75)
        self.rect(x, y, width, height, stroke=1, fill=0)
        self.drawRightString(x - 4, FOOTER_TEXT_Y, label)

        if image_data:
            self.drawImage(
                ImageReader(io.BytesIO(image_data)),
                x + 2,
                y + 2,
                width=width - 4,
                height=height - 4,
                preserveAspectRatio=True,
                anchor='c',
                mask='auto'
            )


@dataclass
class BlockContent:
    label: str = ''
    date: str = None
    image: bytes = None
    lines: list = None


class SignaturePage(Flowable):
    """
    Signer blocks drawn at their catalog positions on the final page

    Heading paragraphs stack down from the top margin; every block row
    (label, date, signature line, name lines) is drawn at the percentage
    offsets from block_geometry. The flowable claims the rest of the frame
    so nothing flows underneath it.
    """
    def __init__(self, spec, header, blocks, fonts=BUILTIN_FONTS):
        Flowable.__init__(self)
        self.spec = spec
        self.header = header
        self.blocks = blocks
        self.fonts = fonts

    def wrap(self, availWidth, availHeight):
        self.width = availWidth
        self.height = availHeight
        return availWidth, availHeight

    def drawOn(self, canvas, x, y, _sW=0):
        canvas.saveState()
        self.draw_header(canvas)
        for block, content in self.blocks:
            self.draw_block(canvas, block, content)
        canvas.restoreState()

    def draw_header(self, canvas):
        top = PAGE_HEIGHT - TOP_MARGIN
        limit = _page_y(min(block.top for block, _ in self.blocks))
        for index, flowable in enumerate(self.header):
            if index:
                top -= flowable.getSpaceBefore()
            _, height = flowable.wrap(AVAILABLE_WIDTH, top - limit)
            if top - height < limit:
                logger.warning(
                    f"Signature page heading does not fit above the signer blocks; "
                    f"dropped {len(self.header) - index} element(s)"
                )
                return
            flowable.drawOn(canvas, SIDE_MARGIN, top - height)
            top -= height + flowable.getSpaceAfter()

    def draw_block(self, canvas, block, content):
        geometry = block_geometry(block, self.spec.date_placement)
        left = _page_x(block.x)
        right = _page_x(block.x + block.width)
        width = right - left

        canvas.setFillColor(colors.black)
        canvas.setStrokeColor(colors.black)
        canvas.setLineWidth(0.75)

        if content.label:
            canvas.setFont(self.fonts.bold, 9)
            canvas.drawString(left, _page_y(geometry.label_baseline), _fit(content.label, self.fonts.bold, 9, width))

        signature = geometry.signature
        canvas.line(left, _page_y(signature.bottom), right, _page_y(signature.bottom))
        if content.image:
            x, y, image_width, image_height = percent_rect_to_points(signature)
            canvas.drawImage(
                ImageReader(io.BytesIO(content.image)),
                x,
                y + 2,
                width=image_width,
                height=image_height - 4,
                preserveAspectRatio=True,
                anchor='sw',
                mask='auto'
            )

        canvas.setFont(self.fonts.regular, 10)
        date_text = content.date
        if date_text is None and block.party is not None:
            date_text = 'Date:'
        if date_text:
            canvas.drawString(left, _page_y(geometry.date_baseline), _fit(date_text, self.fonts.regular, 10, width))
        if block.party is not None:
            date = geometry.date
            canvas.line(_page_x(date.x), _page_y(date.bottom), right, _page_y(date.bottom))

        baseline = geometry.lines_baseline
        bottom = self.spec.block_bottom(block)
        lines = content.lines or []
        for index, line in enumerate(lines):
            if baseline > bottom - 0.5:
                logger.warning(f"Signature block '{block.key}' truncated: {len(lines) - index} line(s) do not fit")
                break
            canvas.drawString(left, _page_y(baseline), _fit(line, self.fonts.regular, 10, width))
            baseline += LINE_SPACING


ALIGN_TAGS = ('p', 'div', 'h1', 'h2', 'h3', 'h4', 'li', 'td', 'th', 'blockquote')
FLUSH_TAGS = ('p', 'div', 'h1', 'h2', 'h3', 'h4', 'li', 'ul', 'ol', 'table', 'tr', 'blockquote', 'hr')
SKIP_TAGS = ('head', 'style', 'script', 'title')
HEADING_STYLES = {'h1': 'ContractHeading1', 'h2': 'ContractHeading2', 'h3': 'ContractHeading3', 'h4': 'ContractHeading3'}
INLINE_TAGS = {'strong': 'b', 'b': 'b', 'em': 'i', 'i': 'i', 'u': 'u'}

WHITESPACE = re.compile(r'[ \t\r\n\f]+')
MARKUP = re.compile(r'<[^>]+>')
CSS_HEIGHT = re.compile(r'height\s*:\s*(\d+(?:\.\d+)?)px')
PAGE_BREAK_STYLE = re.compile(r'(?:page-)?break-before\s*:\s*(?:always|page)')


class ContractHTMLParser(HTMLParser):
    """Convert contract HTML to ReportLab flowables"""
    def __init__(self, styles, signature_layout=None):
        super().__init__(convert_charrefs=True)
        self.story = []
        self.styles = styles
        self.layout_spec = layout_spec(signature_layout)
        self.current_text = []
        self.current_style = 'ContractBody'
        self.align_stack = []
        self.inline_stack = []
        self.skip_depth = 0

        self.list_type_stack = []
        self.list_counters = []

        self.table_depth = 0
        self.table_classes = set()
        self.table_rows = []
        self.table_row = []
        self.table_cell = None
        self.table_block = None

        self.div_depth = 0
        self.signature_page = None

        self._derived_styles = {}

    def handle_starttag(self, tag, attrs):
        attrs = dict(attrs)
        if tag in SKIP_TAGS:
            self.skip_depth += 1
            return
        if self.skip_depth:
            return

        classes = set((attrs.get('class') or '').split())
        style = (attrs.get('style') or '').lower()

        # Nested tables are flattened into the enclosing cell
        if self.table_depth > 1 and tag in ('tr', 'td', 'th'):
            return

        if tag in FLUSH_TAGS and not (self.table_cell is not None and tag == 'table'):
            self._flush_text()

        if tag == 'div':
            self.div_depth += 1

        if tag in ('div', 'p') and ('signature-page' in classes or 'page-break' in classes
                                    or PAGE_BREAK_STYLE.search(style)):
            self._page_break()

        if tag == 'div' and 'signature-page' in classes and self.signature_page is None and not self.table_depth:
            self.signature_page = {'depth': self.div_depth, 'start': len(self.story), 'blocks': []}

        if tag in ALIGN_TAGS:
            self.align_stack.append(_alignment(classes, style, attrs.get('align')))

        if tag in HEADING_STYLES:
            self.current_style = HEADING_STYLES[tag]
        elif tag == 'p' and 'signature-header' in classes:
            self.current_style = 'SignatureHeader'
        elif tag == 'ul' or tag == 'ol':
            self.list_type_stack.append(tag)
            self.list_counters.append(0)
        elif tag == 'li':
            if self.list_type_stack and self.list_type_stack[-1] == 'ol':
                self.list_counters[-1] += 1
                self.current_text.append(f'{self.list_counters[-1]}. ')
            else:
                self.current_text.append('• ')
            self.current_style = 'ContractBullet'
        elif tag == 'hr':
            self._target().append(HRFlowable(width="100%", thickness=0.75, color=colors.black, spaceBefore=6, spaceAfter=6))
        elif tag == 'table':
            self.table_depth += 1
            if self.table_depth == 1:
                self.table_classes = classes
                self.table_rows = []
                self.table_block = attrs.get('data-block')
        elif tag == 'tr' and self.table_depth:
            self.table_row = []
        elif tag in ('td', 'th') and self.table_depth:
            self.table_cell = {
                'flowables': [],
                'classes': classes | ({'signature-label'} if tag == 'th' else set()),
                'colspan': _int(attrs.get('colspan'), 1),
            }
            self.current_text = []
        elif tag in INLINE_TAGS:
            self.inline_stack.append(INLINE_TAGS[tag])
            self.current_text.append(f'<{INLINE_TAGS[tag]}>')
        elif tag == 'br':
            self.current_text.append('<br/>')
        elif tag == 'input':
            if (attrs.get('type') or '').lower() == 'checkbox':
                self.current_text.append('[X] ' if 'checked' in attrs else '[\xa0\xa0] ')
        elif tag == 'img':
            self._add_image(attrs)

    def handle_endtag(self, tag):
        if tag in SKIP_TAGS:
            self.skip_depth = max(0, self.skip_depth - 1)
            return
        if self.skip_depth:
            return
        if self.table_depth > 1 and tag in ('tr', 'td', 'th'):
            return

        if tag in HEADING_STYLES or tag in ('p', 'li', 'div', 'blockquote'):
            self._flush_text()
            self.current_style = 'ContractBody'

        if tag in ALIGN_TAGS and self.align_stack:
            self.align_stack.pop()

        if tag == 'div' and self.div_depth:
            if self.signature_page is not None and self.signature_page['depth'] == self.div_depth:
                self._finish_signature_page()
            self.div_depth -= 1

        if tag == 'ul' or tag == 'ol':
            if self.list_type_stack:
                self.list_type_stack.pop()
                self.list_counters.pop()
        elif tag in ('td', 'th') and self.table_cell is not None:
            self._flush_text()
            cell = self.table_cell
            self.table_cell = None
            self.table_row.append(cell)
            for _ in range(cell['colspan'] - 1):
                self.table_row.append(None)
        elif tag == 'tr' and self.table_depth:
            if self.table_row:
                self.table_rows.append(self.table_row)
            self.table_row = []
        elif tag == 'table' and self.table_depth:
            self.table_depth -= 1
            if self.table_depth == 0:
                self._process_table()
        elif tag in INLINE_TAGS:
            closing = INLINE_TAGS[tag]
            if closing in self.inline_stack:
                index = len(self.inline_stack) - 1 - self.inline_stack[::-1].index(closing)
                del self.inline_stack[index]
                self.current_text.append(f'</{closing}>')

    def handle_data(self, data):
        if self.skip_depth:
            return
        if self.table_depth and self.table_cell is None:
            return
        text = WHITESPACE.sub(' ', data)
        if not text.strip(' ') and not self.current_text:
            return
        self.current_text.append(escape(text))

    def _target(self):
        if self.table_cell is not None:
            return self.table_cell['flowables']
        return self.story

    def _page_break(self):
        if self.table_depth:
            return
        if self.story and not isinstance(self.story[-1], PageBreak):
            self.story.append(PageBreak())

    def _style(self):
        if self.table_cell is not None:
            name = 'SignatureLabel' if 'signature-label' in self.table_cell['classes'] else 'TableCell'
        else:
            name = self.current_style
        style = self.styles[name]

        align = next((a for a in reversed(self.align_stack) if a is not None), None)
        if align is None or align == style.alignment:
            return style
        key = (name, align)
        if key not in self._derived_styles:
            self._derived_styles[key] = ParagraphStyle(f'{name}-{align}', parent=style, alignment=align)
        return self._derived_styles[key]

    def _flush_text(self):
        text = ''.join(self.current_text)
        for tag in reversed(self.inline_stack):
            text += f'</{tag}>'
        self.current_text = [f'<{tag}>' for tag in self.inline_stack]

        if not MARKUP.sub('', text).strip():
            return

        style = self._style()
        try:
            self._target().append(Paragraph(text.strip(), style))
        except ValueError as e:
            logger.warning(f"Paragraph markup rejected, rendering as plain text: {e}")
            self._target().append(Paragraph(MARKUP.sub('', text).strip(), style))

    def _add_image(self, attrs):
        src = attrs.get('src') or ''
        if not src.startswith('data:image'):
            logger.warning(f"Skipping non-embedded image: {src[:40]}")
            return

        image_data = decode_image(src)
        if not image_data:
            if attrs.get('alt'):
                self.current_text.append(escape(f"[Image: {attrs['alt']}]"))
            return

        with PILImage.open(io.BytesIO(image_data)) as img:
            natural_width, natural_height = img.size

        height_px = None
        match = CSS_HEIGHT.search((attrs.get('style') or '').lower())
        if match:
            height_px = float(match.group(1))
        elif attrs.get('height'):
            height_px = _float(attrs.get('height'))
        height = (height_px or natural_height) * PX_TO_PT
        width = height * natural_width / max(natural_height, 1)
        if width > AVAILABLE_WIDTH:
            height = height * AVAILABLE_WIDTH / width
            width = AVAILABLE_WIDTH

        self._flush_text()
        image = RLImage(io.BytesIO(image_data), width=width, height=height)
        image.hAlign = 'LEFT'
        image.image_data = image_data
        self._target().append(image)

    def _process_table(self):
        rows = [row for row in self.table_rows if row]
        self.table_rows = []
        if not rows:
            return

        if self.signature_page is not None and self.table_block:
            self._collect_block(self.table_block, rows)
            return

        num_cols = max(len(row) for row in rows)
        is_signature_table = 'signature-table' in self.table_classes
        commands = [
            ('VALIGN', (0, 0), (-1, -1), 'BOTTOM' if is_signature_table else 'TOP'),
            ('LEFTPADDING', (0, 0), (-1, -1), 4),
            ('RIGHTPADDING', (0, 0), (-1, -1), 4),
            ('TOPPADDING', (0, 0), (-1, -1), 3),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 3),
        ]
        if not is_signature_table:
            commands.append(('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#CCCCCC')))

        data = []
        for row_index, row in enumerate(rows):
            cells = []
            for col_index in range(num_cols):
                cell = row[col_index] if col_index < len(row) else None
                if cell is None:
                    cells.append('')
                    continue
                flowables = cell['flowables']
                if not flowables and 'signature-box' in cell['classes']:
                    flowables = [Spacer(1, 28)]
                cells.append(flowables or '')
                if 'signature-line' in cell['classes']:
                    commands.append(('LINEBELOW', (col_index, row_index), (col_index, row_index), 0.75, colors.black))
                if cell['colspan'] > 1:
                    last = min(col_index + cell['colspan'] - 1, num_cols - 1)
                    commands.append(('SPAN', (col_index, row_index), (last, row_index)))
            data.append(cells)

        col_widths = [AVAILABLE_WIDTH / num_cols] * num_cols
        table = Table(data, colWidths=col_widths, hAlign='LEFT')
        table.setStyle(TableStyle(commands))
        self.story.append(table)
        self.story.append(Spacer(1, 8))

    def _collect_block(self, key, rows):
        block = self.layout_spec.block(key)
        if block is None:
            raise LayoutError(
                f"Signature block '{key}' is not part of the {self.layout_spec.name} layout",
                block=key,
            )

        content = BlockContent(lines=[])
        for row in rows:
            for cell in row:
                if cell is None:
                    continue
                text = _plain_text(cell['flowables'])
                if 'signature-label' in cell['classes']:
                    content.label = text
                elif 'signature-date' in cell['classes']:
                    content.date = text
                elif 'signature-box' in cell['classes']:
                    content.image = next(
                        (f.image_data for f in cell['flowables'] if getattr(f, 'image_data', None)), None
                    )
                elif text:
                    content.lines.append(text)
        self.signature_page['blocks'].append((block, content))

    def _finish_signature_page(self):
        page = self.signature_page
        self.signature_page = None
        if not page['blocks']:
            logger.warning("Signature page has no signer blocks; rendering it as flowing content")
            return

        drawn = {block.key for block, _ in page['blocks']}
        missing = [block.key for block in self.layout_spec.blocks if block.key not in drawn]
        if missing:
            logger.warning(f"Signature page for {self.layout_spec.name} has no block for: {', '.join(missing)}")

        header = self.story[page['start']:]
        del self.story[page['start']:]
        self.story.append(SignaturePage(self.layout_spec, header, page['blocks']))

    def get_story(self):
        self._flush_text()
        if self.signature_page is not None:
            self._finish_signature_page()
        return self.story


def render_contract_pdf(html_text, signature_layout=None, buyer_initials=None):
    """
    Render composed contract HTML to a PDF

    Args:
        html_text: fully interpolated and composed HTML
        signature_layout: SignatureLayout driving the footer slot and signer block positions
        buyer_initials: base64 image pre-filled into the right-hand footer box

    Returns:
        RenderResult

    Raises:
        LayoutError: a signature-page table names a block the layout does not have
        UpstreamError: ReportLab could not lay out the document
    """
    fonts = BUILTIN_FONTS
    styles = build_styles(fonts)
    initials_image = decode_image(buyer_initials)

    parser = ContractHTMLParser(styles, signature_layout=signature_layout)
    parser.feed(html_text)
    parser.close()
    story = parser.get_story()
    if not story:
        story.append(Spacer(1, 1))

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        rightMargin=SIDE_MARGIN,
        leftMargin=SIDE_MARGIN,
        topMargin=TOP_MARGIN,
        bottomMargin=BOTTOM_MARGIN,
        invariant=1
    )

    try:
        doc.build(
            story,
            canvasmaker=lambda *args, **kwargs: ContractCanvas(
                *args,
                **kwargs,
                signature_layout=signature_layout,
                buyer_initials=initials_image,
                fonts=fonts
            )
        )
    except Exception as e:
        raise UpstreamError(f"PDF rendering failed: {e}") from e

    pdf_bytes = blank_final_footer(buffer.getvalue(), fonts)
    page_count = get_page_count(pdf_bytes)
    logger.info(f"Rendered contract PDF: pages={page_count} size_bytes={len(pdf_bytes)}")
    return RenderResult(pdf_bytes=pdf_bytes, page_count=page_count)


def get_page_count(pdf_bytes):
    return len(PdfReader(io.BytesIO(pdf_bytes)).pages)


def _overlay_last_page(pdf_bytes, draw):
    reader = PdfReader(io.BytesIO(pdf_bytes))
    total_pages = len(reader.pages)
    if not total_pages:
        return pdf_bytes

    last_page = reader.pages[-1]
    width = float(last_page.mediabox.width)
    height = float(last_page.mediabox.height)

    overlay_buffer = io.BytesIO()
    overlay = canvas.Canvas(overlay_buffer, pagesize=(width, height), invariant=1)
    draw(overlay, width, height, total_pages)
    overlay.showPage()
    overlay.save()
    overlay_buffer.seek(0)

    last_page.merge_page(PdfReader(overlay_buffer).pages[0])

    writer = PdfWriter()
    for page in reader.pages:
        writer.add_page(page)
    output = io.BytesIO()
    writer.write(output)
    return output.getvalue()


def blank_final_footer(pdf_bytes, fonts=BUILTIN_FONTS):
    """Cover the bottom inch of the last page and redraw only its page counter."""
    def draw(overlay, width, height, total_pages):
        overlay.setFillColor(colors.white)
        overlay.rect(0, 0, width, FOOTER_BAND, stroke=0, fill=1)
        overlay.setFillColor(colors.black)
        overlay.setFont(fonts.regular, 9)
        overlay.drawCentredString(width / 2, FOOTER_TEXT_Y, f"Page {total_pages} of {total_pages}")

    return _overlay_last_page(pdf_bytes, draw)


def stamp_signing_dates(pdf_bytes, signature_layout, seller_signed_at=None, buyer_signed_at=None):
    """
    Write long-form signing dates onto the date rows of the final page

    Args:
        pdf_bytes: signed PDF downloaded from the provider
        signature_layout: SignatureLayout of the contract
        seller_signed_at: ISO timestamp of the seller's completion, optional
        buyer_signed_at: ISO timestamp of the buyer/second seller's completion, optional

    Returns:
        bytes: the stamped PDF, or the input unchanged when there is nothing to stamp
    """
    layout = SignatureLayout.parse(signature_layout, default=SignatureLayout.TWO_COLUMN)
    dates = dict(layout_spec(layout).dates)
    stamps = []
    if seller_signed_at and Party.SELLER in dates:
        stamps.append((dates[Party.SELLER], format_long_date(seller_signed_at)))
    if buyer_signed_at and second_party(layout) in dates:
        stamps.append((dates[second_party(layout)], format_long_date(buyer_signed_at)))
    if not stamps:
        return pdf_bytes

    def draw(overlay, width, height, total_pages):
        overlay.setFillColor(colors.black)
        overlay.setFont('Times-Roman', 10)
        for rect, text in stamps:
            overlay.drawString((rect.x + 0.5) / 100 * width, height - (rect.bottom - 0.5) / 100 * height, text)

    logger.info(f"Stamping signing dates: layout={layout.value} count={len(stamps)}")
    return _overlay_last_page(pdf_bytes, draw)


def _alignment(classes, style, align_attr):
    if 'center-text' in classes or 'text-center' in classes or 'signature-header' in classes:
        return TA_CENTER
    match = re.search(r'text-align\s*:\s*(left|center|right|justify)', style)
    value = match.group(1) if match else (align_attr or '').lower()
    return {'left': TA_LEFT, 'center': TA_CENTER, 'right': TA_RIGHT, 'justify': TA_JUSTIFY}.get(value)


def _int(value, default):
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return default


def _float(value):
    try:
        return float(str(value).replace('px', ''))
    except ValueError:
        return None


def _page_x(x_pct):
    return x_pct / 100 * PAGE_WIDTH


def _page_y(y_pct):
    """Top-left percentage -> bottom-left points"""
    return PAGE_HEIGHT - y_pct / 100 * PAGE_HEIGHT


def _fit(text, font_name, font_size, width):
    if stringWidth(text, font_name, font_size) <= width:
        return text
    while text and stringWidth(text + '...', font_name, font_size) > width:
        text = text[:-1]
    return text.rstrip() + '...'


def _plain_text(flowables):
    return ' '.join(f.getPlainText().strip() for f in flowables if isinstance(f, Paragraph)).strip()
