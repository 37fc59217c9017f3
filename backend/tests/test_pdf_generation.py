"""
Integration tests for the template-to-PDF pipeline
Tests the complete workflow from contract data to rendered PDF
"""
import unittest
import sys
import os
import io
from PyPDF2 import PdfReader

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from contract_data import ContractData
from errors import ConfigurationError
from layout_positions import Rect
from models import DocumentKind, SignatureLayout
from pdf_generator import ContractPDFGenerator
from pdf_renderer import (
    FONT_FACE_CSS, decode_image, footer_right_slot, get_page_count, inject_fonts,
    percent_rect_to_points, render_contract_pdf, stamp_signing_dates
)
from store import InMemoryTemplateStore
from template_resolver import TemplateResolver
from tests.fixtures import LONG_TEMPLATE, SIMPLE_TEMPLATE, TEMPLATE_ID, make_contract, make_pdf, make_png_b64
from tests.pdf_compare import page_texts


class TestPDFGeneration(unittest.TestCase):
    """Test complete PDF generation pipeline"""

    def setUp(self):
        self.templates = InMemoryTemplateStore()
        self.templates.add_company_template(TEMPLATE_ID, SIMPLE_TEMPLATE)
        self.templates.add_company_template('tpl-long', LONG_TEMPLATE)
        self.generator = ContractPDFGenerator(TemplateResolver(self.templates))

    def _data(self, layout='two-column', **custom):
        return ContractData.from_contract(make_contract(layout, **custom))

    def _verify_pdf_valid(self, pdf_bytes):
        """Verify PDF is valid and readable"""
        try:
            reader = PdfReader(io.BytesIO(pdf_bytes))
            self.assertGreater(len(reader.pages), 0, "PDF should have at least one page")
            return reader
        except Exception as e:
            self.fail(f"Generated PDF is not valid: {e}")

    def test_simple_template_gets_signature_page(self):
        document = self.generator.generate('purchase', self._data(), company_template_id=TEMPLATE_ID)
        reader = self._verify_pdf_valid(document.pdf_bytes)
        self.assertEqual(document.page_count, 2)
        self.assertEqual(len(reader.pages), 2)
        self.assertEqual(document.template_source, 'company')
        self.assertIs(document.signature_layout, SignatureLayout.TWO_COLUMN)

        texts = page_texts(document.pdf_bytes)
        self.assertIn('[SIGNATURES ON THE FOLLOWING PAGE]', texts[0])
        self.assertIn('123 Main St, Tampa, FL 33602', texts[0])
        self.assertIn('Page 1 of 2', texts[0])
        self.assertIn('Seller Initials:', texts[0])
        self.assertIn('Buyer Initials:', texts[0])
        self.assertIn('Page 2 of 2', texts[1])

    def test_long_template_paginates(self):
        document = self.generator.generate('purchase', self._data(), company_template_id='tpl-long')
        self.assertGreater(document.page_count, 2)
        texts = page_texts(document.pdf_bytes)
        total = document.page_count
        self.assertIn(f'Page 1 of {total}', texts[0])
        self.assertIn(f'Page {total} of {total}', texts[-1])

    def test_footer_label_follows_layout(self):
        three_party = self.generator.generate(
            'assignment', self._data('three-party'), company_template_id=TEMPLATE_ID, signature_layout='three-party'
        )
        self.assertIn('Assignee Initials:', page_texts(three_party.pdf_bytes)[0])

        two_seller = self.generator.generate(
            'purchase', self._data('two-seller'), company_template_id=TEMPLATE_ID, signature_layout='two-seller'
        )
        self.assertIn('Seller 2 Initials:', page_texts(two_seller.pdf_bytes)[0])

    def test_builtin_templates_render(self):
        for kind in DocumentKind:
            document = self.generator.generate(kind, self._data())
            self._verify_pdf_valid(document.pdf_bytes)
            self.assertGreaterEqual(document.page_count, 2)
            self.assertEqual(document.template_source, 'file')
            text = ''.join(page_texts(document.pdf_bytes))
            self.assertIn('Pat Seller', text)

    def test_buyer_initials_image_rendered(self):
        data = self._data(buyer_initials=make_png_b64())
        document = self.generator.generate('purchase', data, company_template_id=TEMPLATE_ID)
        self.assertEqual(document.page_count, 2)

    def test_pdf_uses_builtin_type1_faces(self):
        document = self.generator.generate('purchase', self._data(), company_template_id='tpl-long')
        reader = PdfReader(io.BytesIO(document.pdf_bytes))
        fonts = {}
        for page in reader.pages:
            for font in page['/Resources'].get_object()['/Font'].get_object().values():
                font = font.get_object()
                fonts[font['/BaseFont']] = font
        self.assertIn('/Times-Roman', fonts)
        self.assertIn('/Times-Bold', fonts)
        for name, font in fonts.items():
            self.assertEqual(font['/Subtype'], '/Type1', name)
            self.assertNotIn('/FontDescriptor', font, name)

    def test_invalid_initials_image_ignored(self):
        data = self._data(buyer_initials='not-base64-at-all')
        document = self.generator.generate('purchase', data, company_template_id=TEMPLATE_ID)
        self.assertEqual(document.page_count, 2)

    def test_template_layout_takes_precedence(self):
        self.templates.add_company_template('tpl-seller', SIMPLE_TEMPLATE, signature_layout='seller-only')
        composed = self.generator.compose_html(
            'purchase', self._data(), company_template_id='tpl-seller', signature_layout='three-party'
        )
        self.assertIs(composed.signature_layout, SignatureLayout.SELLER_ONLY)
        self.assertIs(composed.template_layout, SignatureLayout.SELLER_ONLY)

    def test_embedded_signature_page_is_two_column(self):
        for kind in DocumentKind:
            composed = self.generator.compose_html(kind, self._data('three-party'))
            self.assertIs(composed.signature_layout, SignatureLayout.TWO_COLUMN)

        with self.assertLogs('pdf_generator', level='WARNING') as logs:
            composed = self.generator.compose_html('purchase', self._data(), signature_layout='seller-only')
        self.assertIs(composed.signature_layout, SignatureLayout.TWO_COLUMN)
        self.assertIn('embedded signature page', logs.output[0])

    def test_embedded_signature_page_refuses_other_signers(self):
        for layout in ('buyer-only', 'three-party', 'two-seller'):
            with self.subTest(layout=layout):
                with self.assertRaises(ConfigurationError) as ctx:
                    self.generator.generate('assignment', self._data(layout), signature_layout=layout)
                self.assertEqual(ctx.exception.details['template_source'], 'file')
                self.assertEqual(ctx.exception.details['signature_layout'], layout)

        page = '<div class="signature-page"><p>SIGNATURES</p></div>'
        self.templates.add_company_template('tpl-embedded', SIMPLE_TEMPLATE.replace('</body>', page + '</body>'))
        with self.assertRaises(ConfigurationError):
            self.generator.compose_html(
                'purchase', self._data(), company_template_id='tpl-embedded', signature_layout='three-party'
            )

        self.templates.add_company_template(
            'tpl-declared', SIMPLE_TEMPLATE.replace('</body>', page + '</body>'), signature_layout='three-party'
        )
        composed = self.generator.compose_html(
            'purchase', self._data(), company_template_id='tpl-declared', signature_layout='three-party'
        )
        self.assertIs(composed.signature_layout, SignatureLayout.THREE_PARTY)

    def test_preview_html_has_no_tokens(self):
        self.templates.add_company_template('tpl-extra', SIMPLE_TEMPLATE.replace('</body>', '{{mystery}}</body>'))
        html = self.generator.preview_html('purchase', self._data(), company_template_id='tpl-extra')
        self.assertNotIn('{{', html)
        self.assertIn(FONT_FACE_CSS, html)
        self.assertIn('signature-page', html)

    def test_render_empty_document(self):
        result = render_contract_pdf('<html><body></body></html>')
        self.assertEqual(result.page_count, 1)


class TestRendererHelpers(unittest.TestCase):

    def test_footer_right_slot(self):
        self.assertEqual(footer_right_slot(SignatureLayout.TWO_COLUMN), ('Buyer Initials:', True))
        self.assertEqual(footer_right_slot(SignatureLayout.SELLER_ONLY), ('Buyer Initials:', True))
        self.assertEqual(footer_right_slot(SignatureLayout.BUYER_ONLY), ('Buyer Initials:', False))
        self.assertEqual(footer_right_slot(SignatureLayout.THREE_PARTY), ('Assignee Initials:', False))
        self.assertEqual(footer_right_slot(SignatureLayout.TWO_SELLER), ('Seller 2 Initials:', False))
        self.assertEqual(footer_right_slot(None), ('Buyer Initials:', True))

    def test_percent_rect_to_points(self):
        self.assertEqual(percent_rect_to_points(Rect(0, 0, 100, 100)), (0, 0, 612, 792))
        x, y, width, height = percent_rect_to_points(Rect(50, 90, 10, 10))
        self.assertAlmostEqual(x, 306)
        self.assertAlmostEqual(y, 0)
        self.assertAlmostEqual(width, 61.2)

    def test_decode_image(self):
        png = make_png_b64()
        self.assertTrue(decode_image(png).startswith(b'\x89PNG'))
        self.assertTrue(decode_image('data:image/png;base64,' + png).startswith(b'\x89PNG'))
        self.assertIsNone(decode_image('data:image/png;base64'))
        self.assertIsNone(decode_image('bm90IGFuIGltYWdl'))
        self.assertIsNone(decode_image(None))

    def test_inject_fonts_idempotent(self):
        html = '<html><head></head><body></body></html>'
        once = inject_fonts(html)
        self.assertEqual(inject_fonts(once), once)
        self.assertLess(once.index(FONT_FACE_CSS), once.index('</head>'))

    def test_stamp_signing_dates(self):
        pdf_bytes = make_pdf(2, 'SIGNED')
        stamped = stamp_signing_dates(pdf_bytes, SignatureLayout.TWO_COLUMN, seller_signed_at='2026-03-05T15:00:00Z')
        self.assertEqual(get_page_count(stamped), 2)
        texts = page_texts(stamped)
        self.assertIn('March 5, 2026', texts[1])
        self.assertNotIn('March 5, 2026', texts[0])

    def test_stamp_both_parties(self):
        stamped = stamp_signing_dates(
            make_pdf(1), SignatureLayout.THREE_PARTY,
            seller_signed_at='2026-03-05', buyer_signed_at='2026-03-09'
        )
        text = page_texts(stamped)[0]
        self.assertIn('March 5, 2026', text)
        self.assertIn('March 9, 2026', text)

    def test_nothing_to_stamp(self):
        pdf_bytes = make_pdf(1)
        self.assertIs(stamp_signing_dates(pdf_bytes, SignatureLayout.TWO_COLUMN), pdf_bytes)
        # two-column has no buyer date row
        self.assertIs(stamp_signing_dates(pdf_bytes, SignatureLayout.TWO_COLUMN, buyer_signed_at='2026-03-05'), pdf_bytes)


if __name__ == '__main__':
    unittest.main()
