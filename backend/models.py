"""
Core enumerations and records for contract signing
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DocumentKind(str, Enum):
    PURCHASE = 'purchase'
    ASSIGNMENT = 'assignment'

    @property
    def template_name(self):
        return 'purchase-agreement' if self is DocumentKind.PURCHASE else 'assignment-contract'

    @property
    def title(self):
        return 'Purchase Agreement' if self is DocumentKind.PURCHASE else 'Assignment Contract'

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        normalized = (value or 'purchase').strip().lower()
        aliases = {
            'purchase-agreement': cls.PURCHASE,
            'assignment-contract': cls.ASSIGNMENT,
        }
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class SignatureLayout(str, Enum):
    TWO_COLUMN = 'two-column'
    SELLER_ONLY = 'seller-only'
    BUYER_ONLY = 'buyer-only'
    THREE_PARTY = 'three-party'
    TWO_SELLER = 'two-seller'

    @property
    def is_two_stage(self):
        return self in (SignatureLayout.THREE_PARTY, SignatureLayout.TWO_SELLER)

    @classmethod
    def parse(cls, value, default=None):
        """Parse a stored layout id, falling back to two-column for unknown values."""
        if isinstance(value, cls):
            return value
        if not value:
            return default
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning(f"Unknown signature layout '{value}', falling back to two-column")
            return cls.TWO_COLUMN


class Party(str, Enum):
    SELLER = 'seller'
    BUYER = 'buyer'
    SECOND_SELLER = 'seller2'


class FieldKind(str, Enum):
    SIGNATURE = 'signature'
    INITIALS = 'initials'
    DATE = 'date'


class Stage(str, Enum):
    SINGLE = 'single'
    SELLER = 'seller'
    BUYER = 'buyer'

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls) or value is None:
            return value
        normalized = str(value).strip().lower()
        aliases = {'seller1': cls.SELLER, 'seller2': cls.BUYER, 'assignee': cls.BUYER}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class ContractStatus(str, Enum):
    DRAFT = 'draft'
    READY = 'ready'
    SENT = 'sent'
    VIEWED = 'viewed'
    SELLER_SIGNED = 'seller_signed'
    BUYER_PENDING = 'buyer_pending'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    @property
    def rank(self):
        return _STATUS_RANK[self]

    @property
    def is_terminal(self):
        return self in (ContractStatus.COMPLETED, ContractStatus.CANCELLED)

    @property
    def is_sendable(self):
        return self in (ContractStatus.DRAFT, ContractStatus.READY)

    def can_advance_to(self, target):
        """Monotonic advancement: terminal states never move, others only move forward."""
        if self.is_terminal:
            return False
        if target is ContractStatus.CANCELLED:
            return True
        return target.rank > self.rank


_STATUS_RANK = {
    ContractStatus.DRAFT: 0,
    ContractStatus.READY: 0,
    ContractStatus.SENT: 1,
    ContractStatus.VIEWED: 2,
    ContractStatus.SELLER_SIGNED: 3,
    ContractStatus.BUYER_PENDING: 4,
    ContractStatus.COMPLETED: 5,
    ContractStatus.CANCELLED: 6,
}


def utcnow_iso():
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Contract:
    id: str
    company_id: Optional[str] = None
    status: ContractStatus = ContractStatus.DRAFT
    seller_name: str = ''
    seller_email: str = ''
    buyer_name: str = ''
    buyer_email: str = ''
    price: Optional[float] = None
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    provider_document_id: Optional[str] = None
    sent_at: Optional[str] = None
    viewed_at: Optional[str] = None
    completed_at: Optional[str] = None

    def __post_init__(self):
        self.status = ContractStatus(self.status)

    @property
    def signature_layout(self):
        return SignatureLayout.parse(self.custom_fields.get('signature_layout'))

    def stage_document(self, stage):
        """Recorded provider document entry for a stage, or None."""
        documents = self.custom_fields.get('signing_documents') or {}
        return documents.get(Stage(stage).value)

    def stage_document_id(self, stage):
        entry = self.stage_document(stage)
        return str(entry['document_id']) if entry and entry.get('document_id') is not None else None

    def to_dict(self):
        return {
            'id': self.id,
            'company_id': self.company_id,
            'status': self.status.value,
            'seller_name': self.seller_name,
            'seller_email': self.seller_email,
            'buyer_name': self.buyer_name,
            'buyer_email': self.buyer_email,
            'price': self.price,
            'custom_fields': self.custom_fields,
            'provider_document_id': self.provider_document_id,
            'sent_at': self.sent_at,
            'viewed_at': self.viewed_at,
            'completed_at': self.completed_at,
        }


@dataclass
class HistoryEntry:
    contract_id: str
    status: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    changed_by: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)
