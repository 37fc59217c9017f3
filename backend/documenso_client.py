"""
Documenso API client
Creates signing documents from rendered PDFs, places fields and downloads signed copies
"""

import json
import logging
import os
import re
import unicodedata

import requests

from errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

NON_PRINTABLE = re.compile(r'[^\x20-\x7E]')

FIELD_TYPES = {
    'signature': 'SIGNATURE',
    'initials': 'INITIALS',
    'date': 'DATE',
}


def sanitize_name(value):
    """Trim, NFKC-normalize and drop characters outside printable ASCII."""
    return NON_PRINTABLE.sub('', unicodedata.normalize('NFKC', (value or '').strip()))


def sanitize_email(value):
    return sanitize_name(value).lower()


class DocumensoClient:
    """Client for the Documenso signing API"""

    def __init__(self, base_url=None, api_key=None, session=None, timeout=30):
        self.base_url = (base_url or os.getenv('DOCUMENSO_API_URL', 'http://localhost:3001')).rstrip('/')
        self.api_key = api_key if api_key is not None else os.getenv('DOCUMENSO_API_KEY', '')
        self.session = session or requests.Session()
        self.timeout = timeout

        if not self.api_key:
            logger.warning("Documenso not configured. DOCUMENSO_API_KEY is missing.")

    def _request(self, method, endpoint, payload=None, api_version='v1'):
        url = f"{self.base_url}/api/{api_version}{endpoint}"
        logger.info(f"Documenso request: {method} {url}")
        try:
            response = self.session.request(
                method,
                url,
                headers={'Authorization': self.api_key, 'Content-Type': 'application/json'},
                data=json.dumps(payload) if payload is not None else None,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Documenso request failed: {e}")
            raise UpstreamError(f"Documenso request failed: {e}") from e

        if not response.ok:
            logger.error(f"Documenso error: {response.status_code} - {response.text}")
            raise UpstreamError(f"Documenso API error: {response.status_code} - {response.text}")
        return response.json()

    def create_document(self, pdf_bytes, title, external_id=None, signing_order='PARALLEL',
                        subject=None, message=None):
        """
        Upload a PDF as a new draft document (v2 multipart endpoint)

        Returns:
            dict: Documenso document, including its 'id'
        """
        url = f"{self.base_url}/api/v2/document/create"
        payload = {
            'title': title,
            'externalId': external_id,
            'meta': {
                'signingOrder': signing_order,
                'subject': subject,
                'message': message,
                # Completion emails are sent by this service
                'sendCompletionEmail': False,
            },
        }
        filename = re.sub(r'[^a-zA-Z0-9]', '_', title) + '.pdf'

        try:
            response = self.session.post(
                url,
                headers={'Authorization': self.api_key},
                data={'payload': json.dumps(payload)},
                files={'file': (filename, pdf_bytes, 'application/pdf')},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Documenso document creation failed: {e}")
            raise UpstreamError(f"Failed to create document: {e}") from e

        if not response.ok:
            logger.error(f"Documenso document creation failed: {response.status_code} - {response.text}")
            raise UpstreamError(f"Failed to create document: {response.status_code} - {response.text}")

        document = response.json()
        logger.info(f"Documenso document created: {document.get('id')}")
        return document

    def add_recipient(self, document_id, name, email, role='SIGNER', signing_order=None, redirect_url=None):
        clean_email = sanitize_email(email)
        if len(clean_email) != len(email or ''):
            logger.warning(
                f"Recipient email had {len(email or '') - len(clean_email)} characters removed during sanitizing"
            )
        payload = {
            'email': clean_email,
            'name': sanitize_name(name),
            'role': role,
            'signingOrder': signing_order,
        }
        if redirect_url:
            payload['signingComplete'] = {'redirectUrl': redirect_url}
        return self._request('POST', f'/documents/{document_id}/recipients', payload)

    def add_field(self, document_id, recipient_id, field):
        """Place one field; coordinates are percentages of the page, pages are 1-indexed."""
        payload = {
            'recipientId': recipient_id,
            'type': FIELD_TYPES.get(field.get('field_type'), 'SIGNATURE'),
            'pageNumber': field['page'],
            'pageX': field['x'],
            'pageY': field['y'],
            'pageWidth': field['width'],
            'pageHeight': field['height'],
        }
        return self._request('POST', f'/documents/{document_id}/fields', payload)

    def send_document(self, document_id, send_email=False):
        return self._request('POST', f'/documents/{document_id}/send', {'sendEmail': send_email})

    def get_document_status(self, document_id):
        return self._request('GET', f'/documents/{document_id}')

    def resend_to_recipients(self, document_id, recipient_ids=None):
        """
        Re-send signing requests; by default to every recipient that has not signed

        Returns:
            list of recipient ids the request was re-sent to
        """
        if recipient_ids is None:
            status = self.get_document_status(document_id)
            recipient_ids = [
                r['id'] for r in status.get('recipients', [])
                if r.get('signingStatus') != 'SIGNED'
            ]
        if not recipient_ids:
            return []
        self._request('POST', f'/documents/{document_id}/resend', {'recipients': recipient_ids})
        logger.info(f"Documenso resend for document {document_id}: recipients={recipient_ids}")
        return recipient_ids

    def download_signed_document_buffer(self, document_id):
        """
        Download the signed PDF, trying the v1 download URL, the v2 download
        endpoint and the direct path in turn

        Raises:
            UpstreamError: every method failed
        """
        headers = {'Authorization': self.api_key}

        try:
            download = self._request('GET', f'/documents/{document_id}/download')
            download_url = download.get('downloadUrl', '')
            if not download_url.startswith('http'):
                download_url = f"{self.base_url}/{download_url.lstrip('/')}"
            response = self.session.get(download_url, headers=headers, timeout=self.timeout)
            if response.ok:
                logger.info(f"Downloaded {len(response.content)} bytes via download URL")
                return response.content
            logger.info(f"Download URL method failed: {response.status_code}")
        except (requests.RequestException, UpstreamError, ValueError) as e:
            logger.info(f"Download URL method error: {e}")

        try:
            url = f"{self.base_url}/api/v2/document/{document_id}/download"
            response = self.session.get(url, headers=headers, timeout=self.timeout)
            if response.ok:
                if 'application/pdf' in response.headers.get('content-type', ''):
                    logger.info(f"Downloaded {len(response.content)} bytes via v2 API")
                    return response.content
                data = response.json()
                pdf_url = data.get('downloadUrl') or data.get('url')
                if pdf_url:
                    pdf_response = self.session.get(pdf_url, headers=headers, timeout=self.timeout)
                    if pdf_response.ok:
                        logger.info(f"Downloaded {len(pdf_response.content)} bytes via v2 URL")
                        return pdf_response.content
            logger.info(f"v2 API method failed: {response.status_code}")
        except (requests.RequestException, ValueError) as e:
            logger.info(f"v2 API method error: {e}")

        try:
            response = self.session.get(f"{self.base_url}/d/{document_id}", headers=headers, timeout=self.timeout)
            if response.ok:
                logger.info(f"Downloaded {len(response.content)} bytes via direct path")
                return response.content
            logger.info(f"Direct path method failed: {response.status_code}")
        except requests.RequestException as e:
            logger.info(f"Direct path method error: {e}")

        raise UpstreamError(f"Failed to download signed PDF for document {document_id} - all methods failed")

    def create_document_with_signatures(self, pdf_bytes, title, external_reference, recipients, fields,
                                        send_immediately=True, redirect_url=None, subject=None, message=None):
        """
        Create a document, add recipients and fields, then send it

        Args:
            pdf_bytes: rendered PDF
            title: document title shown to signers
            external_reference: reference string identifying contract, kind and stage
            recipients: list of {'name', 'email', 'role', 'signing_order'}
            fields: list of {'page', 'x', 'y', 'width', 'height', 'recipient_email', 'field_type'}
            send_immediately: send once fields are placed
            redirect_url: where signers land after signing (optional)

        Returns:
            dict with document_id and recipients [{id, email, name, signing_url}]

        Raises:
            UpstreamError: a provider call failed; once the document exists its id is in the error details.
                A failed status lookup after sending only leaves the signing links empty.
        """
        if not fields:
            raise ValidationError("No signature fields to add - cannot send document without signature fields")

        sequential = any((r.get('signing_order') or 1) > 1 for r in recipients)
        document = self.create_document(
            pdf_bytes,
            title,
            external_id=external_reference,
            signing_order='SEQUENTIAL' if sequential else 'PARALLEL',
            subject=subject,
            message=message,
        )
        document_id = document['id']

        try:
            added_recipients = self._prepare_document(document_id, recipients, fields, redirect_url)
            if send_immediately:
                self.send_document(document_id, send_email=False)
                logger.info(f"Documenso document {document_id} sent for signing")
        except UpstreamError as e:
            if 'document_id' in e.details:
                raise
            raise UpstreamError(
                f"Documenso document {document_id} was created but not sent: {e.message}",
                document_id=str(document_id),
                **e.details,
            ) from e

        try:
            status_recipients = self.get_document_status(document_id).get('recipients', [])
        except UpstreamError as e:
            logger.warning(f"Documenso document {document_id} sent but its status lookup failed, no signing links: {e}")
            status_recipients = added_recipients

        return {
            'document_id': str(document_id),
            'recipients': [
                {
                    'id': r.get('id'),
                    'email': r.get('email'),
                    'name': r.get('name'),
                    'signing_url': f"{self.base_url}/sign/{r.get('token')}" if r.get('token') else None,
                }
                for r in status_recipients
            ],
        }

    def _prepare_document(self, document_id, recipients, fields, redirect_url):
        added_recipients = []
        recipient_ids = {}
        for recipient in recipients:
            added = self.add_recipient(
                document_id,
                recipient['name'],
                recipient['email'],
                role=recipient.get('role', 'SIGNER'),
                signing_order=recipient.get('signing_order'),
                redirect_url=redirect_url,
            )
            added_recipients.append(added)
            recipient_ids[added['email'].lower()] = added['id']

        fields_added = 0
        fields_failed = 0
        for field in fields:
            recipient_id = recipient_ids.get(sanitize_email(field['recipient_email']))
            if recipient_id is None:
                logger.warning(f"Skipped field: no recipient for {field['recipient_email']}")
                continue
            try:
                self.add_field(document_id, recipient_id, field)
                fields_added += 1
            except UpstreamError as e:
                logger.error(f"Failed to add {field.get('field_type')} field on page {field['page']}: {e}")
                fields_failed += 1

        logger.info(f"Documenso fields: {fields_added} added, {fields_failed} failed of {len(fields)}")
        if fields_added == 0:
            raise UpstreamError("Failed to add any signature fields to the document", document_id=str(document_id))
        return added_recipients
