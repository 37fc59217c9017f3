"""
Regression tests: rendering the same contract twice must give the same PDF
Field positions are computed from the page count, so pagination has to be stable
"""
import unittest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from contract_data import ContractData
from models import SignatureLayout
from pdf_generator import ContractPDFGenerator
from store import InMemoryTemplateStore
from template_resolver import TemplateResolver
from tests.fixtures import LONG_TEMPLATE, SIMPLE_TEMPLATE, TEMPLATE_ID, make_contract, make_pdf
from tests.pdf_compare import PDFComparator


class TestPDFRegression(unittest.TestCase):
    """Compare repeated renders of the same contract"""

    @classmethod
    def setUpClass(cls):
        templates = InMemoryTemplateStore()
        templates.add_company_template(TEMPLATE_ID, SIMPLE_TEMPLATE)
        templates.add_company_template('tpl-long', LONG_TEMPLATE)
        cls.generator = ContractPDFGenerator(TemplateResolver(templates))
        cls.comparator = PDFComparator()

    def _render_twice(self, layout, template_id):
        data = ContractData.from_contract(make_contract(layout.value, contract_date='2026-01-15'))
        first = self.generator.generate('purchase', data, company_template_id=template_id, signature_layout=layout)
        second = self.generator.generate('purchase', data, company_template_id=template_id, signature_layout=layout)
        return first, second

    def test_render_is_deterministic(self):
        for layout in SignatureLayout:
            for template_id in (TEMPLATE_ID, 'tpl-long'):
                with self.subTest(layout=layout.value, template=template_id):
                    first, second = self._render_twice(layout, template_id)
                    self.assertEqual(first.page_count, second.page_count)
                    result = self.comparator.compare(first.pdf_bytes, second.pdf_bytes)
                    self.assertTrue(result['identical'], result['differences'])
                    self.assertEqual(
                        self.comparator.get_pdf_fingerprint(first.pdf_bytes),
                        self.comparator.get_pdf_fingerprint(second.pdf_bytes)
                    )

    def test_comparator_reports_differences(self):
        result = self.comparator.compare(make_pdf(2, 'ONE'), make_pdf(3, 'TWO'))
        self.assertFalse(result['identical'])
        types = {d['type'] for d in result['differences']}
        self.assertEqual(types, {'page_count', 'text_content'})

    def test_comparator_handles_unreadable_input(self):
        result = self.comparator.compare(b'not a pdf', make_pdf(1))
        self.assertFalse(result['identical'])
        self.assertIn('error', result)


if __name__ == '__main__':
    unittest.main()
