"""
PDF comparison utilities for contract rendering tests
Helps identify structural and text changes between generated PDFs
"""
import io
import hashlib
from PyPDF2 import PdfReader


def _reader(pdf):
    if isinstance(pdf, (bytes, bytearray)):
        return PdfReader(io.BytesIO(pdf))
    pdf.seek(0)
    return PdfReader(pdf)


def page_texts(pdf):
    """Extracted text of every page"""
    return [page.extract_text() or '' for page in _reader(pdf).pages]


class PDFComparator:
    """Compare two PDFs page by page"""

    def __init__(self):
        self.differences = []

    def compare(self, pdf1, pdf2):
        """
        Compare two PDFs (bytes or buffers) and return differences

        Returns:
            dict: Comparison results with details about differences
        """
        self.differences = []

        try:
            texts1 = page_texts(pdf1)
            texts2 = page_texts(pdf2)
        except Exception as e:
            return {
                'identical': False,
                'error': f"Failed to read PDFs: {e}",
                'differences': []
            }

        if len(texts1) != len(texts2):
            self.differences.append({
                'type': 'page_count',
                'pdf1': len(texts1),
                'pdf2': len(texts2)
            })

        for i, (text1, text2) in enumerate(zip(texts1, texts2)):
            if text1 != text2:
                self.differences.append({
                    'type': 'text_content',
                    'page': i + 1,
                    'preview1': text1[:100],
                    'preview2': text2[:100]
                })

        return {
            'identical': len(self.differences) == 0,
            'differences': self.differences,
        }

    def get_pdf_fingerprint(self, pdf):
        """
        Hash of the PDF's text content

        Returns:
            str: sha256 hex digest
        """
        return hashlib.sha256(''.join(page_texts(pdf)).encode()).hexdigest()
