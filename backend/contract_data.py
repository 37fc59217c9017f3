"""
Contract merge data and the template field-token catalog
"""
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import List, Optional, Union


class FieldToken(str, Enum):
    """Every {{token}} a template author may use. Renaming one is a breaking change."""
    # Property
    PROPERTY_ADDRESS = 'property_address'
    PROPERTY_CITY = 'property_city'
    PROPERTY_STATE = 'property_state'
    PROPERTY_ZIP = 'property_zip'
    FULL_PROPERTY_ADDRESS = 'full_property_address'
    APN = 'apn'
    # Seller
    SELLER_NAME = 'seller_name'
    SELLER_EMAIL = 'seller_email'
    SELLER_PHONE = 'seller_phone'
    SELLER_ADDRESS = 'seller_address'
    SECOND_SELLER_NAME = 'second_seller_name'
    SECOND_SELLER_EMAIL = 'second_seller_email'
    SECOND_SELLER_PHONE = 'second_seller_phone'
    # Company (the buyer on a purchase agreement)
    COMPANY_NAME = 'company_name'
    COMPANY_EMAIL = 'company_email'
    COMPANY_PHONE = 'company_phone'
    COMPANY_ADDRESS = 'company_address'
    COMPANY_CITY = 'company_city'
    COMPANY_STATE = 'company_state'
    COMPANY_ZIP = 'company_zip'
    COMPANY_FULL_ADDRESS = 'company_full_address'
    COMPANY_SIGNER_NAME = 'company_signer_name'
    # End buyer / assignee
    BUYER_NAME = 'buyer_name'
    BUYER_EMAIL = 'buyer_email'
    BUYER_PHONE = 'buyer_phone'
    ASSIGNEE_NAME = 'assignee_name'
    ASSIGNEE_EMAIL = 'assignee_email'
    ASSIGNEE_PHONE = 'assignee_phone'
    ASSIGNEE_ADDRESS = 'assignee_address'
    # Prices
    PURCHASE_PRICE = 'purchase_price'
    EARNEST_MONEY = 'earnest_money'
    ASSIGNMENT_FEE = 'assignment_fee'
    # Escrow
    ESCROW_AGENT_NAME = 'escrow_agent_name'
    ESCROW_AGENT_ADDRESS = 'escrow_agent_address'
    ESCROW_OFFICER = 'escrow_officer'
    ESCROW_AGENT_EMAIL = 'escrow_agent_email'
    # Terms
    CLOSE_OF_ESCROW = 'close_of_escrow'
    INSPECTION_PERIOD = 'inspection_period'
    PERSONAL_PROPERTY = 'personal_property'
    ADDITIONAL_TERMS = 'additional_terms'
    # Closing-cost checkboxes
    ESCROW_FEES_SPLIT_CHECK = 'escrow_fees_split_check'
    ESCROW_FEES_BUYER_CHECK = 'escrow_fees_buyer_check'
    TITLE_POLICY_SELLER_CHECK = 'title_policy_seller_check'
    TITLE_POLICY_BUYER_CHECK = 'title_policy_buyer_check'
    HOA_FEES_SPLIT_CHECK = 'hoa_fees_split_check'
    HOA_FEES_BUYER_CHECK = 'hoa_fees_buyer_check'
    # Generated content
    AI_CLAUSES = 'ai_clauses'
    CONTRACT_DATE = 'contract_date'
    BUYER_SIGNATURE_IMG = 'buyer_signature_img'
    BUYER_INITIALS_IMG = 'buyer_initials_img'


AI_CLAUSES_BLOCK_OPEN = '{{#if ai_clauses}}'
AI_CLAUSES_BLOCK_CLOSE = '{{/if}}'

ESCROW_FEES_CHOICES = ('split', 'buyer')
TITLE_POLICY_CHOICES = ('seller', 'buyer')
HOA_FEES_CHOICES = ('split', 'buyer')


@dataclass
class AIClause:
    id: str
    title: str
    body: str
    edited_body: Optional[str] = None

    @property
    def text(self):
        return self.edited_body or self.body

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=str(data.get('id', '')),
            title=data.get('title', ''),
            body=data.get('body', data.get('content', '')),
            edited_body=data.get('edited_body', data.get('editedContent')),
        )


@dataclass
class ContractData:
    property_address: str = ''
    property_city: str = ''
    property_state: str = ''
    property_zip: str = ''
    apn: Optional[str] = None

    seller_name: str = ''
    seller_email: str = ''
    seller_phone: Optional[str] = None
    seller_address: Optional[str] = None
    second_seller_name: Optional[str] = None
    second_seller_email: Optional[str] = None
    second_seller_phone: Optional[str] = None

    company_name: str = ''
    company_email: Optional[str] = None
    company_phone: Optional[str] = None
    company_address: Optional[str] = None
    company_city: Optional[str] = None
    company_state: Optional[str] = None
    company_zip: Optional[str] = None
    company_signer_name: Optional[str] = None

    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None
    assignee_name: Optional[str] = None
    assignee_email: Optional[str] = None
    assignee_phone: Optional[str] = None
    assignee_address: Optional[str] = None

    purchase_price: Optional[float] = None
    earnest_money: Optional[float] = None
    assignment_fee: Optional[float] = None

    escrow_agent_name: Optional[str] = None
    escrow_agent_address: Optional[str] = None
    escrow_officer: Optional[str] = None
    escrow_agent_email: Optional[str] = None

    close_of_escrow: Optional[str] = None
    inspection_period: Optional[str] = None
    personal_property: Optional[str] = None
    additional_terms: Optional[str] = None

    escrow_fees_split: Optional[str] = None
    title_policy_paid_by: Optional[str] = None
    hoa_fees_split: Optional[str] = None

    buyer_signature: Optional[str] = None
    buyer_initials: Optional[str] = None

    ai_clauses: Union[List[AIClause], str, None] = field(default_factory=list)
    contract_date: Optional[str] = None

    def __post_init__(self):
        _check_choice('escrow_fees_split', self.escrow_fees_split, ESCROW_FEES_CHOICES)
        _check_choice('title_policy_paid_by', self.title_policy_paid_by, TITLE_POLICY_CHOICES)
        _check_choice('hoa_fees_split', self.hoa_fees_split, HOA_FEES_CHOICES)
        if isinstance(self.ai_clauses, list):
            self.ai_clauses = [
                c if isinstance(c, AIClause) else AIClause.from_dict(c)
                for c in self.ai_clauses
            ]

    @property
    def has_ai_clauses(self):
        if isinstance(self.ai_clauses, str):
            return bool(self.ai_clauses.strip())
        return bool(self.ai_clauses)

    @property
    def recipient_buyer_name(self):
        return self.assignee_name or self.buyer_name or ''

    @property
    def recipient_buyer_email(self):
        return self.assignee_email or self.buyer_email or ''

    @classmethod
    def field_names(cls):
        return {f.name for f in fields(cls)}

    @classmethod
    def from_contract(cls, contract, overrides=None):
        """
        Build merge data from a stored contract and optional send-time overrides

        Args:
            contract: models.Contract with its custom_fields bag
            overrides: dict of camelCase or snake_case values supplied with a send request

        Returns:
            ContractData
        """
        custom = dict(contract.custom_fields or {})
        overrides = _normalize_overrides(overrides or {})
        known = cls.field_names()

        values = {key: value for key, value in custom.items() if key in known}
        values['seller_name'] = contract.seller_name or custom.get('seller_name', '')
        values['seller_email'] = contract.seller_email or custom.get('seller_email', '')
        if contract.buyer_name:
            values.setdefault('buyer_name', contract.buyer_name)
            values.setdefault('assignee_name', contract.buyer_name)
        if contract.buyer_email:
            values.setdefault('buyer_email', contract.buyer_email)
            values.setdefault('assignee_email', contract.buyer_email)
        if contract.price is not None:
            values.setdefault('purchase_price', contract.price)

        for key, value in overrides.items():
            if key in known and value not in (None, ''):
                values[key] = value

        return cls(**values)


def _check_choice(name, value, choices):
    if value is not None and value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)} (got {value!r})")


_CAMEL_OVERRIDES = {
    'sellerName': 'seller_name',
    'sellerEmail': 'seller_email',
    'sellerPhone': 'seller_phone',
    'assigneeName': 'assignee_name',
    'assigneeEmail': 'assignee_email',
    'assigneePhone': 'assignee_phone',
    'secondSellerName': 'second_seller_name',
    'secondSellerEmail': 'second_seller_email',
    'secondSellerPhone': 'second_seller_phone',
}


def _normalize_overrides(overrides):
    normalized = {}
    for key, value in overrides.items():
        if isinstance(value, str):
            value = value.strip()
        normalized[_CAMEL_OVERRIDES.get(key, key)] = value
    return normalized
