"""
Field interpolation for contract HTML templates

Replaces {{token}} placeholders from the FieldToken catalog, evaluates the
{{#if ai_clauses}}...{{/if}} block and expands numbered AI clauses.
"""
import html
import re
from datetime import date, datetime

from contract_data import AI_CLAUSES_BLOCK_CLOSE, AI_CLAUSES_BLOCK_OPEN, FieldToken

DEFAULT_CLAUSE_START = (12, 6)

TOKEN_PATTERN = re.compile(r'\{\{([A-Za-z0-9_]+)\}\}')
ANY_TOKEN_PATTERN = re.compile(r'\{\{[^{}]*\}\}')
SECTION_NUMBER_PATTERN = re.compile(r'(\d{1,2})\.(\d{1,2})')
AI_BLOCK_PATTERN = re.compile(
    re.escape(AI_CLAUSES_BLOCK_OPEN) + r'[\s\S]*?' + re.escape(AI_CLAUSES_BLOCK_CLOSE)
)
AI_CLAUSES_PLACEHOLDER = '{{' + FieldToken.AI_CLAUSES.value + '}}'

CATALOG = frozenset(token.value for token in FieldToken)


def format_number(value):
    """Thousands separators, no currency symbol. Zero and unset render empty."""
    if value in (None, ''):
        return ''
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value)
    if not number:
        return ''
    if number.is_integer():
        return f'{int(number):,}'
    return f'{number:,.2f}'.rstrip('0').rstrip('.')


def format_long_date(value):
    """'2026-03-05' -> 'March 5, 2026'. Unparseable strings are returned unchanged."""
    if not value:
        return ''
    if isinstance(value, (date, datetime)):
        parsed = value
    else:
        text = str(value).strip()
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return text
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"


def to_data_uri(image_b64):
    """Accept raw base64 or a data URI and return a data URI."""
    image_b64 = (image_b64 or '').strip()
    if not image_b64:
        return ''
    if image_b64.startswith('data:'):
        return image_b64
    return f'data:image/png;base64,{image_b64}'


def image_tag(image_b64, height_px):
    uri = to_data_uri(image_b64)
    if not uri:
        return ''
    return f'<img src="{uri}" style="height: {height_px}px; width: auto;" />'


def detect_clause_start(template, default=DEFAULT_CLAUSE_START):
    """
    Find the clause number the first AI clause should take

    The last major.minor section number before the {{ai_clauses}} placeholder
    is located in the original template text; clauses continue from the next
    minor number. Without a placeholder or a preceding section number the
    default is used.
    """
    index = template.find(AI_CLAUSES_PLACEHOLDER)
    if index == -1:
        return default
    matches = list(SECTION_NUMBER_PATTERN.finditer(template[:index]))
    if not matches:
        return default
    last = matches[-1]
    return int(last.group(1)), int(last.group(2)) + 1


def format_ai_clauses(clauses, start=DEFAULT_CLAUSE_START):
    """
    Number the contract's AI clauses into paragraphs

    Clause bodies come from the clause editor as HTML fragments and are
    inserted as-is; titles are plain text and escaped.
    """
    if not clauses:
        return ''
    if isinstance(clauses, str):
        return clauses

    major, minor = start
    rendered = []
    for offset, clause in enumerate(clauses):
        number = f'{major}.{minor + offset}'
        rendered.append(
            f'<p><strong>{number}</strong> <em>{_escape(clause.title)}:</em> {clause.text}</p>'
        )
    return ''.join(rendered)


def build_replacements(template, data, clause_start=None):
    """Map every catalog token to its formatted value for this contract."""
    full_property_address = ', '.join(part for part in [
        data.property_address,
        data.property_city,
        f'{data.property_state or ""} {data.property_zip or ""}'.strip(),
    ] if part)
    company_full_address = ''
    if data.company_address:
        company_full_address = ', '.join(part for part in [
            data.company_address,
            data.company_city,
            f'{data.company_state or ""} {data.company_zip or ""}'.strip(),
        ] if part)

    start = detect_clause_start(template, default=clause_start or DEFAULT_CLAUSE_START)

    text_values = {
        FieldToken.PROPERTY_ADDRESS: data.property_address,
        FieldToken.PROPERTY_CITY: data.property_city,
        FieldToken.PROPERTY_STATE: data.property_state,
        FieldToken.PROPERTY_ZIP: data.property_zip,
        FieldToken.FULL_PROPERTY_ADDRESS: full_property_address,
        FieldToken.APN: data.apn,
        FieldToken.SELLER_NAME: data.seller_name,
        FieldToken.SELLER_EMAIL: data.seller_email,
        FieldToken.SELLER_PHONE: data.seller_phone,
        FieldToken.SELLER_ADDRESS: data.seller_address,
        FieldToken.SECOND_SELLER_NAME: data.second_seller_name,
        FieldToken.SECOND_SELLER_EMAIL: data.second_seller_email,
        FieldToken.SECOND_SELLER_PHONE: data.second_seller_phone,
        FieldToken.COMPANY_NAME: data.company_name,
        FieldToken.COMPANY_EMAIL: data.company_email,
        FieldToken.COMPANY_PHONE: data.company_phone,
        FieldToken.COMPANY_ADDRESS: data.company_address,
        FieldToken.COMPANY_CITY: data.company_city,
        FieldToken.COMPANY_STATE: data.company_state,
        FieldToken.COMPANY_ZIP: data.company_zip,
        FieldToken.COMPANY_FULL_ADDRESS: company_full_address,
        FieldToken.COMPANY_SIGNER_NAME: data.company_signer_name or data.company_name,
        FieldToken.BUYER_NAME: data.buyer_name,
        FieldToken.BUYER_EMAIL: data.buyer_email,
        FieldToken.BUYER_PHONE: data.buyer_phone,
        FieldToken.ASSIGNEE_NAME: data.assignee_name,
        FieldToken.ASSIGNEE_EMAIL: data.assignee_email,
        FieldToken.ASSIGNEE_PHONE: data.assignee_phone,
        FieldToken.ASSIGNEE_ADDRESS: data.assignee_address,
        FieldToken.ESCROW_AGENT_NAME: data.escrow_agent_name,
        FieldToken.ESCROW_AGENT_ADDRESS: data.escrow_agent_address,
        FieldToken.ESCROW_OFFICER: data.escrow_officer,
        FieldToken.ESCROW_AGENT_EMAIL: data.escrow_agent_email,
        # Number of days, not a date
        FieldToken.INSPECTION_PERIOD: data.inspection_period,
        FieldToken.PERSONAL_PROPERTY: data.personal_property,
        FieldToken.ADDITIONAL_TERMS: data.additional_terms,
    }
    replacements = {token.value: _escape(value) for token, value in text_values.items()}

    replacements.update({
        FieldToken.PURCHASE_PRICE.value: format_number(data.purchase_price),
        FieldToken.EARNEST_MONEY.value: format_number(data.earnest_money),
        FieldToken.ASSIGNMENT_FEE.value: format_number(data.assignment_fee),
        FieldToken.CLOSE_OF_ESCROW.value: _escape(format_long_date(data.close_of_escrow)),
        FieldToken.CONTRACT_DATE.value: _escape(format_long_date(data.contract_date or date.today())),

        FieldToken.ESCROW_FEES_SPLIT_CHECK.value: _checked(data.escrow_fees_split == 'split'),
        FieldToken.ESCROW_FEES_BUYER_CHECK.value: _checked(data.escrow_fees_split == 'buyer'),
        FieldToken.TITLE_POLICY_SELLER_CHECK.value: _checked(data.title_policy_paid_by == 'seller'),
        FieldToken.TITLE_POLICY_BUYER_CHECK.value: _checked(data.title_policy_paid_by == 'buyer'),
        FieldToken.HOA_FEES_SPLIT_CHECK.value: _checked(data.hoa_fees_split == 'split'),
        FieldToken.HOA_FEES_BUYER_CHECK.value: _checked(data.hoa_fees_split == 'buyer'),

        FieldToken.AI_CLAUSES.value: format_ai_clauses(data.ai_clauses, start),
        FieldToken.BUYER_SIGNATURE_IMG.value: image_tag(data.buyer_signature, 40),
        FieldToken.BUYER_INITIALS_IMG.value: image_tag(data.buyer_initials, 26),
    })
    return replacements


def interpolate(template, data, clause_start=None):
    """
    Merge contract data into a template

    Catalog tokens are always replaced (unset values become ''); tokens outside
    the catalog are left in place.

    Args:
        template: HTML template text
        data: ContractData
        clause_start: (major, minor) used when no section number precedes {{ai_clauses}}

    Returns:
        str: interpolated HTML
    """
    replacements = build_replacements(template, data, clause_start)

    if data.has_ai_clauses:
        result = template.replace(AI_CLAUSES_BLOCK_OPEN, '').replace(AI_CLAUSES_BLOCK_CLOSE, '')
    else:
        result = AI_BLOCK_PATTERN.sub('', template)

    def substitute(match):
        name = match.group(1)
        if name in replacements:
            return replacements[name]
        return match.group(0)

    return TOKEN_PATTERN.sub(substitute, result)


def strip_unfilled_tokens(html_text):
    """Preview cleanup: drop every remaining {{...}} token, known or not."""
    return ANY_TOKEN_PATTERN.sub('', html_text)


def interpolate_for_preview(template, data, clause_start=None):
    return strip_unfilled_tokens(interpolate(template, data, clause_start))


def _checked(flag):
    return 'checked' if flag else ''


def _escape(value):
    if value is None:
        return ''
    return html.escape(str(value), quote=True)
