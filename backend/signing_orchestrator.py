"""
Signing workflow: render, place fields, create the provider document, record the send

Single-stage layouts produce one provider document. Two-stage layouts
(three-party, two-seller) produce a seller-stage document first and, once the
seller has signed, a buyer-stage document built from the signed seller PDF.
"""
import logging
from dataclasses import dataclass, field
from typing import List

from collaborators import BLOCKING_SUBSCRIPTION_STATUSES, LoggingNotifier, StaticBilling
from contract_data import ContractData
from errors import (
    ContractNotFoundError, InvalidTransitionError, LayoutError, PaymentRequiredError,
    QuotaExceededError, UpstreamError, ValidationError
)
from layout_positions import positions_for_parties, provider_parties, second_party
from models import ContractStatus, DocumentKind, Party, SignatureLayout, Stage, utcnow_iso
from pdf_renderer import get_page_count, stamp_signing_dates
from references import build_external_reference

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    contract_id: str
    stage: Stage
    status: ContractStatus
    document_id: str
    signature_layout: SignatureLayout
    page_count: int
    recipients: List[dict] = field(default_factory=list)
    used_signed_pdf: bool = False
    persisted: bool = True

    def to_dict(self):
        return {
            'contract_id': self.contract_id,
            'stage': self.stage.value,
            'status': self.status.value,
            'document_id': self.document_id,
            'signature_layout': self.signature_layout.value,
            'page_count': self.page_count,
            'recipients': self.recipients,
            'used_signed_pdf': self.used_signed_pdf,
            'persisted': self.persisted,
        }


class SigningOrchestrator:

    def __init__(self, store, generator, provider, billing=None, notifier=None, redirect_url=None):
        self.store = store
        self.generator = generator
        self.provider = provider
        self.billing = billing or StaticBilling()
        self.notifier = notifier or LoggingNotifier()
        self.redirect_url = redirect_url

    def _load(self, contract_id):
        contract = self.store.get(contract_id)
        if contract is None:
            raise ContractNotFoundError("Contract not found", contract_id=contract_id)
        return contract

    def send(self, contract_id, stage=None, kind=None, overrides=None, actor=None):
        """
        Send a contract (or one stage of it) for signing

        Args:
            contract_id: contract to send
            stage: 'seller'/'seller1' or 'buyer'/'seller2' for two-stage layouts; omitted otherwise
            kind: 'purchase' or 'assignment'; defaults to the kind of an earlier stage, else purchase
            overrides: send-time signer values (sellerName, assigneeEmail, ...)
            actor: user id recorded in the history entry

        Returns:
            SendResult

        Raises:
            ContractNotFoundError, ValidationError (and subclasses), ConfigurationError, UpstreamError
        """
        with self.store.lock(contract_id):
            return self._send(contract_id, stage, kind, overrides, actor)

    def _send(self, contract_id, stage, kind, overrides, actor):
        contract = self._load(contract_id)

        subscription = self.billing.subscription_status(contract.company_id)
        if subscription in BLOCKING_SUBSCRIPTION_STATUSES:
            raise PaymentRequiredError(
                "Your payment is past due. Please update your payment method to continue sending contracts.",
                paymentRequired=True,
            )

        try:
            data = ContractData.from_contract(contract, overrides)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if not (data.seller_name or '').strip() or not (data.seller_email or '').strip():
            raise ValidationError("Seller name and email are required")

        kind = DocumentKind.parse(kind or contract.custom_fields.get('document_kind'))
        composed = self.generator.compose_html(
            kind,
            data,
            company_template_id=contract.custom_fields.get('company_template_id'),
            signature_layout=contract.custom_fields.get('signature_layout'),
        )
        layout = composed.signature_layout
        stage = self._resolve_send_stage(layout, stage)
        first_send = stage is not Stage.BUYER

        self._check_transition(contract, layout, stage)
        parties = self._stage_parties(layout, stage)
        recipients = self._recipients(data, layout, parties)

        quota = None
        if first_send:
            quota = self.billing.check_contract_quota(contract.company_id)
            if not quota.allowed and not quota.is_overage:
                raise QuotaExceededError(
                    quota.reason or "Contract limit reached. Please upgrade your plan.",
                    requiresUpgrade=True,
                )

        pdf_bytes, page_count, used_signed_pdf = self._document_bytes(contract, composed, data, stage)

        field_positions = positions_for_parties(layout, page_count, parties)
        if not field_positions:
            raise LayoutError(f"No signature fields for {stage.value} stage of layout {layout.value}")
        emails = {r['party'].value: r['email'] for r in recipients}
        fields = []
        for position in field_positions:
            entry = position.to_dict()
            entry['recipient_email'] = emails[entry.pop('party')]
            entry['field_type'] = entry.pop('field_kind')
            fields.append(entry)

        reference = build_external_reference(contract.id, kind, stage)
        title = f"{kind.title} - {data.property_address}" if data.property_address else kind.title
        logger.info(
            f"Sending contract {contract.id}: kind={kind.value} stage={stage.value} layout={layout.value} "
            f"pages={page_count} fields={len(fields)} reference={reference}"
        )

        try:
            created = self.provider.create_document_with_signatures(
                pdf_bytes,
                title=title,
                external_reference=reference,
                recipients=[
                    {'name': r['name'], 'email': r['email'], 'role': 'SIGNER', 'signing_order': r['signing_order']}
                    for r in recipients
                ],
                fields=fields,
                send_immediately=True,
                redirect_url=self.redirect_url,
            )
        except UpstreamError as e:
            if e.details.get('document_id'):
                logger.error(
                    f"Send of contract {contract.id} ({stage.value} stage) failed after provider document "
                    f"{e.details['document_id']} was created; it needs manual cleanup: {e}"
                )
            raise

        document_id = str(created['document_id'])
        signed_recipients = [
            {'email': r.get('email'), 'name': r.get('name'), 'signing_url': r.get('signing_url')}
            for r in created.get('recipients', [])
        ]
        logger.info(f"Contract {contract.id} {stage.value} stage sent: document_id={document_id}")

        new_status = ContractStatus.BUYER_PENDING if stage is Stage.BUYER else ContractStatus.SENT
        persisted = self._record_send(
            contract, kind, layout, stage, new_status, document_id, reference,
            signed_recipients, used_signed_pdf, actor,
        )

        if first_send and persisted:
            self._record_usage(contract, quota)

        try:
            self.notifier.contract_sent(contract, stage, signed_recipients)
        except Exception as e:
            logger.error(f"Contract sent notification failed for {contract.id}: {e}")

        return SendResult(
            contract_id=contract.id,
            stage=stage,
            status=new_status,
            document_id=document_id,
            signature_layout=layout,
            page_count=page_count,
            recipients=signed_recipients,
            used_signed_pdf=used_signed_pdf,
            persisted=persisted,
        )

    def _resolve_send_stage(self, layout, stage):
        stage = Stage.parse(stage)
        if layout.is_two_stage:
            if stage is Stage.SINGLE:
                raise ValidationError(f"Layout {layout.value} is signed in two stages; send stage 'seller' or 'buyer'")
            return stage or Stage.SELLER
        if stage is Stage.BUYER:
            raise ValidationError(f"Layout {layout.value} is signed in a single stage")
        return Stage.SINGLE

    def _check_transition(self, contract, layout, stage):
        status = contract.status
        if stage is not Stage.BUYER:
            if not status.is_sendable:
                raise InvalidTransitionError(
                    f"Contract cannot be sent from status '{status.value}'",
                    status=status.value,
                )
            return

        if status is ContractStatus.SELLER_SIGNED:
            pass
        elif status in (ContractStatus.SENT, ContractStatus.VIEWED):
            logger.warning(
                f"Buyer stage of contract {contract.id} sent while status is '{status.value}'; "
                f"seller completion not yet reconciled"
            )
        else:
            raise InvalidTransitionError(
                f"Buyer stage cannot be sent from status '{status.value}'",
                status=status.value,
            )
        if not contract.stage_document_id(Stage.SELLER):
            raise InvalidTransitionError("Seller stage has not been sent yet")
        if contract.stage_document_id(Stage.BUYER):
            raise InvalidTransitionError("Buyer stage has already been sent")

    def _stage_parties(self, layout, stage):
        if stage is Stage.SELLER:
            return [Party.SELLER]
        if stage is Stage.BUYER:
            return [second_party(layout)]
        return provider_parties(layout)

    def _recipients(self, data, layout, parties):
        identities = {
            Party.SELLER: (data.seller_name, data.seller_email),
            Party.BUYER: (data.recipient_buyer_name or 'Buyer', data.recipient_buyer_email),
            Party.SECOND_SELLER: (data.second_seller_name or 'Seller', data.second_seller_email),
        }
        recipients = []
        for order, party in enumerate(parties, start=1):
            name, email = identities[party]
            if not (email or '').strip():
                raise ValidationError(f"Email is required for the {party.value} signer of layout {layout.value}")
            recipients.append({
                'party': party,
                'name': (name or '').strip(),
                'email': email.strip(),
                'signing_order': order,
            })
        return recipients

    def _document_bytes(self, contract, composed, data, stage):
        """PDF for the provider: the signed seller copy for the buyer stage, else a fresh render."""
        if stage is Stage.BUYER:
            seller_document_id = contract.stage_document_id(Stage.SELLER)
            try:
                pdf_bytes = self.provider.download_signed_document_buffer(seller_document_id)
                page_count = get_page_count(pdf_bytes)
                logger.info(
                    f"Using signed seller PDF for buyer stage of contract {contract.id}: "
                    f"document={seller_document_id} pages={page_count}"
                )
                return pdf_bytes, page_count, True
            except Exception as e:
                logger.warning(
                    f"Could not download signed seller PDF {seller_document_id} for contract {contract.id}, "
                    f"falling back to a fresh render: {e}"
                )

        generated = self.generator.render_composed(composed, data)
        return generated.pdf_bytes, generated.page_count, False

    def _record_send(self, contract, kind, layout, stage, new_status, document_id, reference,
                     recipients, used_signed_pdf, actor):
        now = utcnow_iso()
        signing_documents = dict(contract.custom_fields.get('signing_documents') or {})
        signing_documents[stage.value] = {
            'document_id': document_id,
            'external_reference': reference,
            'recipients': recipients,
            'sent_at': now,
            'used_signed_pdf': used_signed_pdf,
        }
        changes = {
            'status': new_status,
            'provider_document_id': document_id,
            'custom_fields': {
                'signing_documents': signing_documents,
                'signature_layout': layout.value,
                'document_kind': kind.value,
            },
        }
        if stage is not Stage.BUYER:
            changes['sent_at'] = now

        try:
            self.store.update(contract.id, **changes)
            self.store.append_history(
                contract.id,
                new_status,
                metadata={
                    'action': 'sent_for_signing',
                    'stage': stage.value,
                    'document_id': document_id,
                    'external_reference': reference,
                    'recipients': [r['email'] for r in recipients],
                    'signing_urls': [{'email': r['email'], 'url': r['signing_url']} for r in recipients],
                    'signature_layout': layout.value,
                },
                changed_by=actor,
            )
        except Exception as e:
            logger.error(
                f"Failed to record send of contract {contract.id}; provider document {document_id} "
                f"was created: {e}"
            )
            return False
        return True

    def _record_usage(self, contract, quota):
        try:
            self.billing.increment_contracts_used(contract.company_id)
            if quota is not None and quota.is_overage:
                self.billing.charge_overage(contract.company_id, contract.id)
                logger.info(f"Overage charged for contract {contract.id}")
        except Exception as e:
            logger.error(f"Failed to record contract usage for {contract.id}: {e}")

    def resend(self, contract_id, actor=None):
        """Ask the provider to re-send signing requests for the active document."""
        contract = self._load(contract_id)
        if contract.status.is_sendable or not contract.provider_document_id:
            raise InvalidTransitionError("Contract has not been sent yet", status=contract.status.value)
        if contract.status.is_terminal:
            raise InvalidTransitionError(
                f"Contract is already {contract.status.value}", status=contract.status.value
            )

        document_id = self.active_document_id(contract)
        recipient_ids = self.provider.resend_to_recipients(document_id)
        self.store.append_history(
            contract.id,
            contract.status,
            metadata={'action': 'resent', 'document_id': document_id, 'recipients': recipient_ids},
            changed_by=actor,
        )
        logger.info(f"Contract {contract.id} re-sent: document_id={document_id}")
        return {'contract_id': contract.id, 'document_id': document_id, 'recipients': recipient_ids}

    def active_document_id(self, contract):
        for stage in (Stage.BUYER, Stage.SELLER, Stage.SINGLE):
            document_id = contract.stage_document_id(stage)
            if document_id:
                return document_id
        return contract.provider_document_id

    def signing_status(self, contract_id):
        contract = self._load(contract_id)
        custom = contract.custom_fields
        return {
            'id': contract.id,
            'status': contract.status.value,
            'property_address': custom.get('property_address', ''),
            'seller_name': contract.seller_name,
            'buyer_name': contract.buyer_name or custom.get('assignee_name', ''),
            'sent_at': contract.sent_at,
            'completed_at': contract.completed_at,
        }

    def signed_pdf(self, contract_id):
        """
        Download the latest signed PDF with signing dates stamped on the final page

        Raises:
            InvalidTransitionError: nothing has been sent
            UpstreamError: the provider download failed
        """
        contract = self._load(contract_id)
        document_id = self.active_document_id(contract)
        if not document_id:
            raise InvalidTransitionError("Contract has not been sent yet", status=contract.status.value)

        pdf_bytes = self.provider.download_signed_document_buffer(document_id)
        if not pdf_bytes:
            raise UpstreamError(f"Empty signed document {document_id}")

        layout = contract.signature_layout or SignatureLayout.TWO_COLUMN
        seller_signed_at = contract.custom_fields.get('seller_signed_at')
        buyer_signed_at = None
        if layout.is_two_stage or layout is SignatureLayout.BUYER_ONLY:
            buyer_signed_at = contract.completed_at
        else:
            seller_signed_at = seller_signed_at or contract.completed_at
        return stamp_signing_dates(pdf_bytes, layout, seller_signed_at, buyer_signed_at)
