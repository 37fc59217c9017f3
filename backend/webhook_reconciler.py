"""
Signing-provider webhook handling

Authenticates events with a shared secret, normalizes the provider's envelope
shapes, finds the contract and stage an event belongs to and applies the
status transition. Status only ever moves forward; every event that reaches
a contract is written to its history whether or not the status changed.
"""
import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from errors import ConfigurationError, ValidationError, WebhookAuthError
from models import ContractStatus, Party, Stage, utcnow_iso
from references import parse_external_reference, resolve_stage

logger = logging.getLogger(__name__)

DEFAULT_SECRET_HEADER = 'X-Documenso-Secret'
DOCUSIGN_REFERENCE_FIELD = 'externalReference'


class EventType(str, Enum):
    OPENED = 'opened'
    SIGNED = 'signed'
    COMPLETED = 'completed'
    REJECTED = 'rejected'


EVENT_ALIASES = {
    'DOCUMENT_OPENED': EventType.OPENED,
    'document.opened': EventType.OPENED,
    'envelope-delivered': EventType.OPENED,
    'recipient-delivered': EventType.OPENED,
    'DOCUMENT_SIGNED': EventType.SIGNED,
    'document.signed': EventType.SIGNED,
    'recipient-completed': EventType.SIGNED,
    'DOCUMENT_COMPLETED': EventType.COMPLETED,
    'document.completed': EventType.COMPLETED,
    'envelope-completed': EventType.COMPLETED,
    'DOCUMENT_REJECTED': EventType.REJECTED,
    'document.rejected': EventType.REJECTED,
    'envelope-declined': EventType.REJECTED,
    'recipient-declined': EventType.REJECTED,
}


@dataclass
class WebhookEvent:
    name: str
    event_type: Optional[EventType]
    document_id: Optional[str] = None
    external_reference: Optional[str] = None
    recipients: list = field(default_factory=list)
    payload: dict = field(default_factory=dict)

    @property
    def recipient_email(self):
        """The recipient the event is about: the latest signer for signed events, else the first."""
        if not self.recipients:
            return None
        if self.event_type is EventType.SIGNED:
            signed = [r for r in self.recipients if r.get('signingStatus') == 'SIGNED']
            if signed:
                signed.sort(key=lambda r: r.get('signedAt') or '')
                return signed[-1].get('email')
        return self.recipients[0].get('email')


def normalize_event(body):
    """
    Reduce {event, payload}, {event, data} and {type, document} envelopes to one shape

    Raises:
        ValidationError: body is not a JSON object
    """
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")

    name = str(body.get('event') or body.get('type') or '')
    payload = body.get('payload') or body.get('data') or body.get('document') or {}
    if not isinstance(payload, dict):
        payload = {}

    document_id = payload.get('id') or payload.get('documentId') or payload.get('envelopeId')
    reference = payload.get('externalId') or payload.get('external_id') or _docusign_reference(payload)

    return WebhookEvent(
        name=name,
        event_type=EVENT_ALIASES.get(name) or EVENT_ALIASES.get(name.lower()),
        document_id=str(document_id) if document_id is not None else None,
        external_reference=reference,
        recipients=_recipients(payload),
        payload=payload,
    )


def _docusign_reference(payload):
    summary = payload.get('envelopeSummary') or payload
    custom_fields = summary.get('customFields') or {}
    for text_field in custom_fields.get('textCustomFields') or []:
        if text_field.get('name') == DOCUSIGN_REFERENCE_FIELD:
            return text_field.get('value')
    return None


def _recipients(payload):
    recipients = payload.get('recipients')
    if isinstance(recipients, list):
        return [r for r in recipients if isinstance(r, dict)]

    # DocuSign Connect: {'recipients': {'signers': [...]}} inside the envelope summary
    summary = payload.get('envelopeSummary') or payload
    signers = (summary.get('recipients') or {}).get('signers') or []
    return [
        {
            'email': signer.get('email'),
            'name': signer.get('name'),
            'signingStatus': 'SIGNED' if signer.get('status') == 'completed' else 'NOT_SIGNED',
            'signedAt': signer.get('signedDateTime'),
        }
        for signer in signers
    ]


class WebhookReconciler:

    def __init__(self, store, notifier, secret=None, header=DEFAULT_SECRET_HEADER):
        self.store = store
        self.notifier = notifier
        self.secret = secret
        self.header = header

    def authenticate(self, provided_secret, remote_addr=None):
        if not self.secret:
            logger.error("Signing webhook secret is not configured")
            raise ConfigurationError("Webhook not configured")
        if not provided_secret or not hmac.compare_digest(
            str(provided_secret).encode('utf-8'), self.secret.encode('utf-8')
        ):
            logger.warning(f"Security event: invalid signing webhook secret from {remote_addr or 'unknown'}")
            raise WebhookAuthError("Invalid signature")

    def process(self, body):
        """
        Apply one provider event

        Returns:
            dict: {'received': True, 'status': new status or None, ...}
        """
        event = normalize_event(body)
        if event.event_type is None:
            logger.info(f"Unhandled signing webhook event: {event.name or '<none>'}")
            return {'received': True, 'status': None}

        reference = parse_external_reference(event.external_reference)
        if reference is None:
            logger.info(f"Webhook not for a contract, ignoring (externalId={event.external_reference!r})")
            return {'received': True, 'status': None}

        with self.store.lock(reference.contract_id):
            contract = self.store.get(reference.contract_id)
            if contract is None:
                logger.warning(f"Webhook for unknown contract {reference.contract_id}, ignoring")
                return {'received': True, 'status': None}

            previous = contract.status
            stage = resolve_stage(contract, reference, event.document_id)
            recipient_email = event.recipient_email
            party = party_for_email(contract, recipient_email)
            target, changes, action = self._transition(contract, event, stage)

            applied = False
            if target is not None:
                if contract.status.can_advance_to(target):
                    try:
                        self.store.update(contract.id, status=target, **changes)
                        applied = True
                        logger.info(
                            f"Contract {contract.id} status {previous.value} -> {target.value} "
                            f"({event.name}, stage={stage.value})"
                        )
                    except Exception as e:
                        logger.error(f"Failed to update contract {contract.id} to {target.value}: {e}")
                else:
                    logger.info(
                        f"Contract {contract.id} stays {previous.value}: {event.name} "
                        f"(stage={stage.value}) would not advance it"
                    )

            self.store.append_history(
                contract.id,
                target if applied else previous,
                metadata={
                    'action': action,
                    'event': event.name,
                    'stage': stage.value,
                    'party': party,
                    'recipient_email': recipient_email,
                    'document_id': event.document_id,
                    'contract_type': reference.kind.value,
                    'external_reference': event.external_reference,
                    'status_changed': applied,
                    'provider_payload': event.payload,
                },
            )

        if applied:
            self._notify(contract.id, target)

        return {
            'received': True,
            'contract_id': contract.id,
            'stage': stage.value,
            'previous_status': previous.value,
            'status': target.value if applied else None,
        }

    def _transition(self, contract, event, stage):
        """Return (target status or None, column changes, history action)."""
        now = utcnow_iso()
        if event.event_type is EventType.OPENED:
            if contract.status is ContractStatus.SENT:
                return ContractStatus.VIEWED, {'viewed_at': now}, 'recipient_viewed'
            return None, {}, 'recipient_viewed'

        if event.event_type is EventType.SIGNED:
            return None, {}, 'recipient_signed'

        if event.event_type is EventType.COMPLETED:
            layout = contract.signature_layout
            if layout is not None and layout.is_two_stage and stage is Stage.SELLER:
                return (
                    ContractStatus.SELLER_SIGNED,
                    {'custom_fields': {'seller_signed_at': now}},
                    'seller_signed',
                )
            return ContractStatus.COMPLETED, {'completed_at': now}, 'document_completed'

        return ContractStatus.CANCELLED, {}, 'document_rejected'

    def _notify(self, contract_id, status):
        if status not in (ContractStatus.SELLER_SIGNED, ContractStatus.COMPLETED):
            return
        try:
            contract = self.store.get(contract_id)
            if status is ContractStatus.SELLER_SIGNED:
                self.notifier.seller_signed(contract)
            else:
                self.notifier.contract_completed(contract)
        except Exception as e:
            logger.error(f"Notification for contract {contract_id} ({status.value}) failed: {e}")


def party_for_email(contract, email):
    """Which party a recipient email belongs to, or '' when it matches none."""
    if not email:
        return ''
    email = email.strip().lower()
    custom = contract.custom_fields
    candidates = (
        (Party.SELLER, contract.seller_email),
        (Party.SECOND_SELLER, custom.get('second_seller_email')),
        (Party.BUYER, contract.buyer_email),
        (Party.BUYER, custom.get('assignee_email')),
    )
    for party, candidate in candidates:
        if candidate and candidate.strip().lower() == email:
            return party.value
    return ''
