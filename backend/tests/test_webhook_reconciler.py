"""
Tests for signing-provider webhook reconciliation
"""
import unittest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import ConfigurationError, ValidationError, WebhookAuthError
from models import ContractStatus
from store import InMemoryContractStore
from webhook_reconciler import EventType, WebhookReconciler, normalize_event, party_for_email
from tests.fixtures import (
    ASSIGNEE_EMAIL, CONTRACT_ID, SELLER_EMAIL, RecordingNotifier, make_contract, webhook_body
)

SINGLE_REF = f'contract::{CONTRACT_ID}::purchase::single'
SELLER_REF = f'contract::{CONTRACT_ID}::assignment::seller'
BUYER_REF = f'contract::{CONTRACT_ID}::assignment::buyer'
LEGACY_REF = f'contract-{CONTRACT_ID}-assignment-1712345678901'


class TestNormalizeEvent(unittest.TestCase):

    def test_three_envelope_shapes(self):
        for shape in ('payload', 'data', 'document'):
            event = normalize_event(webhook_body('DOCUMENT_OPENED', 42, SINGLE_REF,
                                                 [{'email': SELLER_EMAIL}], shape=shape))
            with self.subTest(shape=shape):
                self.assertIs(event.event_type, EventType.OPENED)
                self.assertEqual(event.document_id, '42')
                self.assertEqual(event.external_reference, SINGLE_REF)
                self.assertEqual(event.recipient_email, SELLER_EMAIL)

    def test_event_name_aliases(self):
        self.assertIs(normalize_event({'event': 'document.completed', 'payload': {}}).event_type,
                      EventType.COMPLETED)
        self.assertIs(normalize_event({'event': 'envelope-declined', 'data': {}}).event_type,
                      EventType.REJECTED)
        self.assertIsNone(normalize_event({'event': 'DOCUMENT_CREATED', 'payload': {}}).event_type)

    def test_docusign_connect_payload(self):
        body = {
            'event': 'envelope-completed',
            'data': {
                'envelopeId': 'env-1',
                'envelopeSummary': {
                    'customFields': {'textCustomFields': [{'name': 'externalReference', 'value': SELLER_REF}]},
                    'recipients': {'signers': [{'email': SELLER_EMAIL, 'status': 'completed'}]},
                },
            },
        }
        event = normalize_event(body)
        self.assertEqual(event.document_id, 'env-1')
        self.assertEqual(event.external_reference, SELLER_REF)
        self.assertEqual(event.recipients[0]['signingStatus'], 'SIGNED')

    def test_signed_event_picks_latest_signer(self):
        event = normalize_event(webhook_body('DOCUMENT_SIGNED', 1, SINGLE_REF, [
            {'email': 'first@example.com', 'signingStatus': 'NOT_SIGNED'},
            {'email': 'early@example.com', 'signingStatus': 'SIGNED', 'signedAt': '2026-03-01T10:00:00Z'},
            {'email': 'late@example.com', 'signingStatus': 'SIGNED', 'signedAt': '2026-03-02T10:00:00Z'},
        ]))
        self.assertEqual(event.recipient_email, 'late@example.com')

    def test_non_object_body(self):
        with self.assertRaises(ValidationError):
            normalize_event(['not', 'an', 'object'])


class TestWebhookReconciler(unittest.TestCase):

    def setUp(self):
        self.store = InMemoryContractStore()
        self.notifier = RecordingNotifier()
        self.reconciler = WebhookReconciler(self.store, self.notifier, secret='s3cret')

    def _status(self):
        return self.store.get(CONTRACT_ID).status

    def _process(self, event, reference, document_id='doc-1', recipients=None):
        return self.reconciler.process(webhook_body(event, document_id, reference, recipients))

    def test_authentication(self):
        self.reconciler.authenticate('s3cret')
        with self.assertLogs('webhook_reconciler', level='WARNING') as logs:
            with self.assertRaises(WebhookAuthError):
                self.reconciler.authenticate('wrong', remote_addr='10.0.0.9')
        self.assertTrue(any('Security event' in line for line in logs.output))
        with self.assertRaises(WebhookAuthError):
            self.reconciler.authenticate(None)

    def test_unconfigured_secret(self):
        reconciler = WebhookReconciler(self.store, self.notifier, secret=None)
        with self.assertRaises(ConfigurationError):
            reconciler.authenticate('anything')

    def test_opened_moves_sent_to_viewed(self):
        self.store.add(make_contract('two-column', status='sent'))
        result = self._process('DOCUMENT_OPENED', SINGLE_REF, recipients=[{'email': SELLER_EMAIL}])
        self.assertEqual(result['status'], 'viewed')
        contract = self.store.get(CONTRACT_ID)
        self.assertIs(contract.status, ContractStatus.VIEWED)
        self.assertIsNotNone(contract.viewed_at)
        entry = self.store.history(CONTRACT_ID)[-1]
        self.assertEqual(entry.metadata['action'], 'recipient_viewed')
        self.assertEqual(entry.metadata['party'], 'seller')

    def test_opened_after_completed_is_audit_only(self):
        self.store.add(make_contract('two-column', status='sent'))
        self._process('DOCUMENT_COMPLETED', SINGLE_REF)
        history_before = len(self.store.history(CONTRACT_ID))

        result = self._process('DOCUMENT_OPENED', SINGLE_REF)

        self.assertIsNone(result['status'])
        self.assertIs(self._status(), ContractStatus.COMPLETED)
        history = self.store.history(CONTRACT_ID)
        self.assertEqual(len(history), history_before + 1)
        self.assertEqual(history[-1].status, 'completed')
        self.assertFalse(history[-1].metadata['status_changed'])

    def test_completed_replay_is_idempotent(self):
        self.store.add(make_contract('two-column', status='sent'))
        self._process('DOCUMENT_COMPLETED', SINGLE_REF)
        completed_at = self.store.get(CONTRACT_ID).completed_at
        result = self._process('DOCUMENT_COMPLETED', SINGLE_REF)
        self.assertIsNone(result['status'])
        self.assertEqual(self.store.get(CONTRACT_ID).completed_at, completed_at)
        self.assertEqual(self.notifier.completed_contracts, [CONTRACT_ID])
        self.assertEqual(len(self.store.history(CONTRACT_ID)), 2)

    def test_signed_is_audit_only(self):
        self.store.add(make_contract('three-party', status='sent'))
        result = self._process('DOCUMENT_SIGNED', SELLER_REF, recipients=[
            {'email': SELLER_EMAIL, 'signingStatus': 'SIGNED', 'signedAt': '2026-03-01T10:00:00Z'}
        ])
        self.assertIsNone(result['status'])
        self.assertIs(self._status(), ContractStatus.SENT)
        entry = self.store.history(CONTRACT_ID)[-1]
        self.assertEqual(entry.metadata['action'], 'recipient_signed')
        self.assertEqual(entry.metadata['party'], 'seller')
        self.assertEqual(entry.metadata['stage'], 'seller')

    def test_seller_stage_completion(self):
        self.store.add(make_contract('three-party', status='viewed'))
        result = self._process('DOCUMENT_COMPLETED', SELLER_REF)
        self.assertEqual(result['status'], 'seller_signed')
        contract = self.store.get(CONTRACT_ID)
        self.assertIn('seller_signed_at', contract.custom_fields)
        self.assertIsNone(contract.completed_at)
        self.assertEqual(self.notifier.seller_signed_contracts, [CONTRACT_ID])

    def test_buyer_stage_completion(self):
        self.store.add(make_contract('three-party', status='buyer_pending'))
        result = self._process('DOCUMENT_COMPLETED', BUYER_REF, recipients=[{'email': ASSIGNEE_EMAIL}])
        self.assertEqual(result['status'], 'completed')
        self.assertIsNotNone(self.store.get(CONTRACT_ID).completed_at)
        self.assertEqual(self.store.history(CONTRACT_ID)[-1].metadata['party'], 'buyer')

    def test_late_seller_completion_does_not_regress(self):
        self.store.add(make_contract('three-party', status='buyer_pending'))
        result = self._process('DOCUMENT_COMPLETED', SELLER_REF)
        self.assertIsNone(result['status'])
        self.assertIs(self._status(), ContractStatus.BUYER_PENDING)

    def test_legacy_reference_uses_document_id(self):
        self.store.add(make_contract('three-party', status='buyer_pending', signing_documents={
            'seller': {'document_id': 'doc-1'},
            'buyer': {'document_id': 'doc-2'},
        }))
        result = self._process('DOCUMENT_COMPLETED', LEGACY_REF, document_id='doc-2')
        self.assertEqual(result['stage'], 'buyer')
        self.assertIs(self._status(), ContractStatus.COMPLETED)

    def test_legacy_reference_uses_status(self):
        self.store.add(make_contract('three-party', status='sent'))
        result = self._process('DOCUMENT_COMPLETED', LEGACY_REF, document_id='unknown')
        self.assertEqual(result['stage'], 'seller')
        self.assertIs(self._status(), ContractStatus.SELLER_SIGNED)

    def test_rejected_cancels(self):
        for status in ('sent', 'viewed', 'seller_signed', 'buyer_pending'):
            with self.subTest(status=status):
                self.store.add(make_contract('three-party', status=status))
                result = self._process('DOCUMENT_REJECTED', SELLER_REF)
                self.assertEqual(result['status'], 'cancelled')
                self.assertIs(self._status(), ContractStatus.CANCELLED)

    def test_rejected_after_completed_is_noop(self):
        self.store.add(make_contract('two-column', status='completed'))
        result = self._process('DOCUMENT_REJECTED', SINGLE_REF)
        self.assertIsNone(result['status'])
        self.assertIs(self._status(), ContractStatus.COMPLETED)
        self.assertEqual(self.store.history(CONTRACT_ID)[-1].metadata['action'], 'document_rejected')

    def test_foreign_reference_acknowledged(self):
        self.store.add(make_contract('two-column', status='sent'))
        result = self._process('DOCUMENT_COMPLETED', 'invoice-77')
        self.assertEqual(result, {'received': True, 'status': None})
        self.assertEqual(self.store.history(CONTRACT_ID), [])

    def test_unknown_contract_acknowledged(self):
        result = self._process('DOCUMENT_COMPLETED', SINGLE_REF)
        self.assertEqual(result, {'received': True, 'status': None})

    def test_unhandled_event_acknowledged(self):
        self.store.add(make_contract('two-column', status='sent'))
        result = self.reconciler.process({'event': 'DOCUMENT_CREATED', 'payload': {'externalId': SINGLE_REF}})
        self.assertEqual(result, {'received': True, 'status': None})
        self.assertIs(self._status(), ContractStatus.SENT)

    def test_party_for_email(self):
        contract = make_contract('two-seller')
        self.assertEqual(party_for_email(contract, 'SELLER@example.com'), 'seller')
        self.assertEqual(party_for_email(contract, 'seller2@example.com'), 'seller2')
        self.assertEqual(party_for_email(contract, ASSIGNEE_EMAIL), 'buyer')
        self.assertEqual(party_for_email(contract, 'stranger@example.com'), '')
        self.assertEqual(party_for_email(contract, None), '')


if __name__ == '__main__':
    unittest.main()
