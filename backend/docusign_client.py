"""
DocuSign API Client for contract signing
Places percentage-based contract fields as absolute tabs and tracks envelopes
"""

import base64
import os
import logging
from docusign_esign import (
    ApiClient, EnvelopesApi, EnvelopeDefinition, Document, Signer,
    SignHere, InitialHere, DateSigned, Tabs, Recipients, CustomFields, TextCustomField
)
from docusign_esign.client.api_exception import ApiException

from errors import ConfigurationError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

# US Letter in points; DocuSign tab positions are 72 dpi pixels
PAGE_WIDTH = 612
PAGE_HEIGHT = 792
EXTERNAL_REFERENCE_FIELD = 'externalReference'


class DocuSignClient:
    """Client for DocuSign eSignature API integration"""

    def __init__(self):
        """Initialize DocuSign API client with JWT authentication"""
        self.integration_key = os.getenv('DOCUSIGN_INTEGRATION_KEY')
        self.user_id = os.getenv('DOCUSIGN_USER_ID')
        self.account_id = os.getenv('DOCUSIGN_ACCOUNT_ID')
        self.base_path = os.getenv('DOCUSIGN_BASE_PATH', 'https://demo.docusign.net/restapi')
        self.oauth_host = os.getenv('DOCUSIGN_OAUTH_HOST', 'account-d.docusign.com')
        self.private_key_path = os.getenv('DOCUSIGN_PRIVATE_KEY_PATH')

        self.api_client = None
        self.envelopes_api = None

        if not all([self.integration_key, self.user_id, self.account_id]):
            logger.warning("DocuSign not fully configured. Some environment variables are missing.")

    def _get_api_client(self):
        """Get or create authenticated API client"""
        if self.api_client is None:
            if not self.private_key_path or not os.path.exists(self.private_key_path):
                logger.error(f"Private key not found at {self.private_key_path}")
                raise ConfigurationError("DocuSign private key not configured")

            api_client = ApiClient()
            api_client.set_base_path(self.base_path)
            api_client.set_oauth_host_name(self.oauth_host)

            with open(self.private_key_path, 'r') as key_file:
                private_key = key_file.read()

            try:
                token_response = api_client.request_jwt_user_token(
                    client_id=self.integration_key,
                    user_id=self.user_id,
                    oauth_host_name=self.oauth_host,
                    private_key_bytes=private_key,
                    expires_in=3600,
                    scopes=["signature", "impersonation"]
                )
            except ApiException as e:
                logger.error(f"DocuSign authentication failed: {e}")
                raise UpstreamError(f"DocuSign authentication failed: {e.body}") from e

            api_client.set_default_header("Authorization", f"Bearer {token_response.access_token}")
            logger.info("DocuSign JWT authentication successful")
            self.api_client = api_client

        return self.api_client

    def _get_envelopes_api(self):
        """Get EnvelopesApi instance"""
        if self.envelopes_api is None:
            api_client = self._get_api_client()
            self.envelopes_api = EnvelopesApi(api_client)
        return self.envelopes_api

    def create_tabs_for_recipient(self, fields):
        """
        Create DocuSign tabs from percentage field rectangles

        Args:
            fields: list of {'page', 'x', 'y', 'width', 'height', 'field_type'} for one recipient

        Returns:
            Tabs object with absolutely positioned fields
        """
        sign_here_tabs = []
        initial_here_tabs = []
        date_signed_tabs = []

        for index, field in enumerate(fields):
            position = {
                'document_id': '1',
                'page_number': str(field['page']),
                'x_position': str(round(field['x'] / 100 * PAGE_WIDTH)),
                'y_position': str(round(field['y'] / 100 * PAGE_HEIGHT)),
                'tab_label': f"{field.get('field_type', 'signature')}_{field['page']}_{index}",
            }
            field_type = field.get('field_type', 'signature')
            if field_type == 'initials':
                initial_here_tabs.append(InitialHere(**position))
            elif field_type == 'date':
                date_signed_tabs.append(DateSigned(**position))
            else:
                sign_here_tabs.append(SignHere(**position))

        return Tabs(
            sign_here_tabs=sign_here_tabs,
            initial_here_tabs=initial_here_tabs,
            date_signed_tabs=date_signed_tabs
        )

    def create_document_with_signatures(self, pdf_bytes, title, external_reference, recipients, fields,
                                        send_immediately=True, redirect_url=None, subject=None, message=None):
        """
        Create and send a DocuSign envelope for the contract

        Args:
            pdf_bytes: rendered PDF
            title: display name for the document
            external_reference: stored as an envelope text custom field
            recipients: list of {'name', 'email', 'signing_order'}
            fields: list of {'page', 'x', 'y', 'width', 'height', 'recipient_email', 'field_type'}
            send_immediately: 'sent' envelope, otherwise left as a draft
            redirect_url: unused; DocuSign remote signing returns to DocuSign

        Returns:
            dict with document_id (the envelope id) and recipients
        """
        if not fields:
            raise ValidationError("No signature fields to add - cannot send document without signature fields")

        document = Document(
            document_base64=base64.b64encode(pdf_bytes).decode('ascii'),
            name=title,
            file_extension='pdf',
            document_id='1'
        )

        signers = []
        for index, recipient in enumerate(recipients, start=1):
            email = recipient['email'].strip().lower()
            recipient_fields = [f for f in fields if f['recipient_email'].strip().lower() == email]
            signers.append(Signer(
                email=email,
                name=recipient['name'],
                recipient_id=str(index),
                routing_order=str(recipient.get('signing_order') or index),
                tabs=self.create_tabs_for_recipient(recipient_fields)
            ))

        envelope_definition = EnvelopeDefinition(
            email_subject=subject or f"Please sign: {title}",
            email_blurb=message or "Please review and sign the attached document.",
            documents=[document],
            recipients=Recipients(signers=signers),
            custom_fields=CustomFields(text_custom_fields=[
                TextCustomField(name=EXTERNAL_REFERENCE_FIELD, value=external_reference, show='false')
            ]),
            status='sent' if send_immediately else 'created'
        )

        try:
            envelope_summary = self._get_envelopes_api().create_envelope(
                self.account_id,
                envelope_definition=envelope_definition
            )
        except ApiException as e:
            logger.error(f"DocuSign API error: {e}")
            raise UpstreamError(f"Failed to create DocuSign envelope: {e.body}") from e

        logger.info(f"DocuSign envelope created: {envelope_summary.envelope_id}")

        return {
            'document_id': envelope_summary.envelope_id,
            'recipients': [
                {
                    'id': signer.recipient_id,
                    'email': signer.email,
                    'name': signer.name,
                    'signing_url': None,
                }
                for signer in signers
            ],
        }

    def get_document_status(self, envelope_id):
        """
        Get current status of an envelope

        Returns:
            dict with envelope status and signer information
        """
        try:
            envelopes_api = self._get_envelopes_api()
            envelope = envelopes_api.get_envelope(self.account_id, envelope_id)
            recipients = envelopes_api.list_recipients(self.account_id, envelope_id)
        except ApiException as e:
            logger.error(f"Error getting envelope status: {e}")
            raise UpstreamError(f"Failed to get envelope status: {e.body}") from e

        return {
            'id': envelope_id,
            'status': envelope.status,
            'completed_date_time': envelope.completed_date_time,
            'recipients': [
                {
                    'id': signer.recipient_id,
                    'name': signer.name,
                    'email': signer.email,
                    'signingStatus': 'SIGNED' if signer.status == 'completed' else 'NOT_SIGNED',
                    'signedAt': signer.signed_date_time,
                }
                for signer in (recipients.signers or [])
            ],
        }

    def resend_to_recipients(self, envelope_id, recipient_ids=None):
        try:
            self._get_envelopes_api().update(self.account_id, envelope_id, resend_envelope='true')
        except ApiException as e:
            logger.error(f"Error resending envelope: {e}")
            raise UpstreamError(f"Failed to resend envelope: {e.body}") from e
        logger.info(f"DocuSign envelope {envelope_id} re-sent")
        return recipient_ids or []

    def download_signed_document_buffer(self, envelope_id):
        """
        Download the combined signed PDF of an envelope

        Returns:
            bytes
        """
        try:
            result = self._get_envelopes_api().get_document(
                self.account_id,
                'combined',
                envelope_id
            )
        except ApiException as e:
            logger.error(f"Error downloading envelope: {e}")
            raise UpstreamError(f"Failed to download envelope: {e.body}") from e

        # The SDK writes the document to a temp file and returns its path
        if isinstance(result, (bytes, bytearray)):
            return bytes(result)
        with open(result, 'rb') as pdf_file:
            return pdf_file.read()
