"""
Test fixtures - contracts, templates and in-test collaborators
"""
import base64
import io

from PIL import Image as PILImage
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from collaborators import Notifier
from models import Contract
from store import InMemoryContractStore

CONTRACT_ID = '3f1c2a4e-9b7d-4c61-8a25-5e0f6d7b8c91'
COMPANY_ID = 'company-1'
TEMPLATE_ID = 'tpl-simple'

SELLER_EMAIL = 'seller@example.com'
ASSIGNEE_EMAIL = 'assignee@example.com'
SECOND_SELLER_EMAIL = 'seller2@example.com'

# Short company template without an embedded signature page
SIMPLE_TEMPLATE = """<html>
<head><style>body { font-family: 'Times New Roman', serif; }</style></head>
<body>
<h1>Purchase Agreement</h1>
<p>Property: {{full_property_address}}</p>
<p>Seller: {{seller_name}}</p>
<p>Buyer: {{company_name}}</p>
<p><strong>8.3</strong> Closing shall occur on {{close_of_escrow}}.</p>
{{#if ai_clauses}}<div class="ai-clauses">{{ai_clauses}}</div>{{/if}}
</body>
</html>"""

# Long enough to run over several pages
LONG_TEMPLATE = "<html><body><h1>Purchase Agreement</h1>" + "".join(
    f"<p><strong>{n}.1</strong> The parties agree to the terms of section {n}. " + "Lorem ipsum dolor sit amet. " * 40 + "</p>"
    for n in range(1, 13)
) + "</body></html>"

BASE_CUSTOM_FIELDS = {
    'property_address': '123 Main St',
    'property_city': 'Tampa',
    'property_state': 'FL',
    'property_zip': '33602',
    'company_name': 'Acme Home Buyers LLC',
    'company_signer_name': 'Jordan Lee',
    'earnest_money': 5000,
    'close_of_escrow': '2026-03-05',
    'inspection_period': '10',
    'escrow_fees_split': 'split',
    'title_policy_paid_by': 'seller',
    'hoa_fees_split': 'buyer',
}


def make_contract(layout=None, status='draft', contract_id=CONTRACT_ID, **custom):
    custom_fields = dict(BASE_CUSTOM_FIELDS)
    custom_fields['company_template_id'] = TEMPLATE_ID
    if layout:
        custom_fields['signature_layout'] = layout
    if layout == 'two-seller':
        custom_fields.setdefault('second_seller_name', 'Sam Seller')
        custom_fields.setdefault('second_seller_email', SECOND_SELLER_EMAIL)
    custom_fields.update(custom)
    return Contract(
        id=contract_id,
        company_id=COMPANY_ID,
        status=status,
        seller_name='Pat Seller',
        seller_email=SELLER_EMAIL,
        buyer_name='Alex Assignee',
        buyer_email=ASSIGNEE_EMAIL,
        price=250000,
        custom_fields=custom_fields,
    )


def make_png_b64(width=40, height=20):
    buffer = io.BytesIO()
    PILImage.new('RGB', (width, height), (20, 20, 120)).save(buffer, format='PNG')
    return base64.b64encode(buffer.getvalue()).decode('ascii')


def make_pdf(pages=3, text='SIGNED SELLER COPY'):
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=letter, invariant=1)
    for page in range(1, pages + 1):
        pdf.drawString(72, 720, f'{text} page {page}')
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


class FakeSigningProvider:
    """Records documents instead of calling a signing service"""

    def __init__(self, signed_pdf=None, download_error=None, create_error=None):
        self.signed_pdf = signed_pdf
        self.download_error = download_error
        self.create_error = create_error
        self.created = []
        self.downloads = []
        self.resent = []

    def create_document_with_signatures(self, pdf_bytes, title, external_reference, recipients, fields,
                                        send_immediately=True, redirect_url=None, subject=None, message=None):
        if self.create_error is not None:
            raise self.create_error
        document_id = f'doc-{len(self.created) + 1}'
        self.created.append({
            'document_id': document_id,
            'pdf_bytes': pdf_bytes,
            'title': title,
            'external_reference': external_reference,
            'recipients': recipients,
            'fields': fields,
            'redirect_url': redirect_url,
        })
        return {
            'document_id': document_id,
            'recipients': [
                {
                    'id': index,
                    'email': r['email'],
                    'name': r['name'],
                    'signing_url': f'https://sign.example.com/{document_id}/{index}',
                }
                for index, r in enumerate(recipients, start=1)
            ],
        }

    def download_signed_document_buffer(self, document_id):
        self.downloads.append(document_id)
        if self.download_error is not None:
            raise self.download_error
        return self.signed_pdf

    def resend_to_recipients(self, document_id, recipient_ids=None):
        self.resent.append(document_id)
        return recipient_ids or [1]


class RecordingNotifier(Notifier):

    def __init__(self):
        self.sent = []
        self.seller_signed_contracts = []
        self.completed_contracts = []

    def contract_sent(self, contract, stage, recipients):
        self.sent.append((contract.id, stage, recipients))

    def seller_signed(self, contract):
        self.seller_signed_contracts.append(contract.id)

    def contract_completed(self, contract):
        self.completed_contracts.append(contract.id)


class FailingUpdateStore(InMemoryContractStore):
    """Contract store whose writes fail"""

    def update(self, contract_id, **changes):
        raise RuntimeError('database unavailable')


def webhook_body(event, document_id, external_id, recipients=None, shape='payload'):
    """Provider event in one of the envelope shapes the reconciler accepts"""
    document = {
        'id': document_id,
        'externalId': external_id,
        'status': 'COMPLETED' if 'COMPLETED' in event.upper() else 'PENDING',
        'recipients': recipients or [],
    }
    if shape == 'payload':
        return {'event': event, 'payload': document}
    if shape == 'data':
        return {'event': event, 'data': document}
    return {'type': event, 'document': document}
