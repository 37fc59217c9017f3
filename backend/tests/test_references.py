"""
Unit tests for external reference parsing and stage resolution
"""
import unittest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import ContractStatus, DocumentKind, Stage
from references import build_external_reference, parse_external_reference, resolve_stage
from tests.fixtures import CONTRACT_ID, make_contract


class TestExternalReference(unittest.TestCase):

    def test_build_always_carries_stage(self):
        self.assertEqual(
            build_external_reference(CONTRACT_ID, 'purchase', 'seller'),
            f'contract::{CONTRACT_ID}::purchase::seller'
        )
        self.assertEqual(
            build_external_reference(CONTRACT_ID, DocumentKind.ASSIGNMENT, None),
            f'contract::{CONTRACT_ID}::assignment::single'
        )

    def test_parse_current_format(self):
        reference = parse_external_reference(f'contract::{CONTRACT_ID}::assignment::buyer')
        self.assertEqual(reference.contract_id, CONTRACT_ID)
        self.assertIs(reference.kind, DocumentKind.ASSIGNMENT)
        self.assertIs(reference.stage, Stage.BUYER)
        self.assertFalse(reference.legacy)
        self.assertEqual(str(reference), f'contract::{CONTRACT_ID}::assignment::buyer')

    def test_parse_without_stage(self):
        reference = parse_external_reference(f'contract::{CONTRACT_ID}::purchase')
        self.assertEqual(reference.contract_id, CONTRACT_ID)
        self.assertIsNone(reference.stage)

    def test_parse_legacy_format(self):
        for value in (f'contract-{CONTRACT_ID}-purchase', f'contract-{CONTRACT_ID}-assignment-1712345678901'):
            reference = parse_external_reference(value)
            self.assertIsNotNone(reference, value)
            self.assertEqual(reference.contract_id, CONTRACT_ID)
            self.assertTrue(reference.legacy)
            self.assertIsNone(reference.stage)
        self.assertIs(parse_external_reference(f'contract-{CONTRACT_ID}-assignment-1712345678901').kind,
                      DocumentKind.ASSIGNMENT)

    def test_parse_rejects_foreign_references(self):
        for value in (None, '', 'invoice-123', 'contract::', f'contract::{CONTRACT_ID}::lease::seller',
                      f'contract::{CONTRACT_ID}::purchase::seller::extra', 'contract-not-a-uuid-purchase'):
            self.assertIsNone(parse_external_reference(value), value)


class TestResolveStage(unittest.TestCase):

    def test_explicit_stage_wins(self):
        contract = make_contract('three-party', status='buyer_pending')
        reference = parse_external_reference(f'contract::{CONTRACT_ID}::assignment::seller')
        self.assertIs(resolve_stage(contract, reference, 'doc-9'), Stage.SELLER)

    def test_single_stage_layout(self):
        contract = make_contract('two-column', status='sent')
        reference = parse_external_reference(f'contract-{CONTRACT_ID}-purchase')
        self.assertIs(resolve_stage(contract, reference), Stage.SINGLE)

    def test_document_id_match(self):
        contract = make_contract('three-party', status='buyer_pending', signing_documents={
            'seller': {'document_id': 101},
            'buyer': {'document_id': 202},
        })
        reference = parse_external_reference(f'contract::{CONTRACT_ID}::assignment')
        self.assertIs(resolve_stage(contract, reference, 101), Stage.SELLER)
        self.assertIs(resolve_stage(contract, reference, '202'), Stage.BUYER)

    def test_status_inference(self):
        reference = parse_external_reference(f'contract-{CONTRACT_ID}-assignment')
        sent = make_contract('two-seller', status='viewed', signing_documents={'seller': {'document_id': 'a'}})
        self.assertIs(resolve_stage(sent, reference, 'unknown'), Stage.SELLER)
        pending = make_contract('two-seller', status=ContractStatus.BUYER_PENDING)
        self.assertIs(resolve_stage(pending, reference), Stage.BUYER)

    def test_unresolvable_defaults_to_seller(self):
        contract = make_contract('three-party', status='seller_signed')
        self.assertIs(resolve_stage(contract, None), Stage.SELLER)


if __name__ == '__main__':
    unittest.main()
