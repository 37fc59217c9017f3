"""
Template resolution: company override -> jurisdiction override -> general -> built-in file
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from errors import ConfigurationError
from models import DocumentKind, SignatureLayout

logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), 'templates')
GENERAL_JURISDICTION = 'GENERAL'

STATE_CODES = {
    'alabama': 'AL', 'alaska': 'AK', 'arizona': 'AZ', 'arkansas': 'AR',
    'california': 'CA', 'colorado': 'CO', 'connecticut': 'CT', 'delaware': 'DE',
    'florida': 'FL', 'georgia': 'GA', 'hawaii': 'HI', 'idaho': 'ID',
    'illinois': 'IL', 'indiana': 'IN', 'iowa': 'IA', 'kansas': 'KS',
    'kentucky': 'KY', 'louisiana': 'LA', 'maine': 'ME', 'maryland': 'MD',
    'massachusetts': 'MA', 'michigan': 'MI', 'minnesota': 'MN', 'mississippi': 'MS',
    'missouri': 'MO', 'montana': 'MT', 'nebraska': 'NE', 'nevada': 'NV',
    'new hampshire': 'NH', 'new jersey': 'NJ', 'new mexico': 'NM', 'new york': 'NY',
    'north carolina': 'NC', 'north dakota': 'ND', 'ohio': 'OH', 'oklahoma': 'OK',
    'oregon': 'OR', 'pennsylvania': 'PA', 'rhode island': 'RI', 'south carolina': 'SC',
    'south dakota': 'SD', 'tennessee': 'TN', 'texas': 'TX', 'utah': 'UT',
    'vermont': 'VT', 'virginia': 'VA', 'washington': 'WA', 'west virginia': 'WV',
    'wisconsin': 'WI', 'wyoming': 'WY', 'district of columbia': 'DC',
}


@dataclass
class ResolvedTemplate:
    html: str
    signature_layout: Optional[SignatureLayout] = None
    source: str = 'file'
    clause_start: Optional[Tuple[int, int]] = None


def normalize_jurisdiction(name):
    """'Florida' -> 'FL', 'fl' -> 'FL', None -> None."""
    if not name or not str(name).strip():
        return None
    text = str(name).strip()
    return STATE_CODES.get(text.lower(), text.upper())


def parse_clause_start(value):
    if not value:
        return None
    if isinstance(value, (tuple, list)):
        return int(value[0]), int(value[1])
    major, _, minor = str(value).partition('.')
    return int(major), int(minor)


class TemplateResolver:

    def __init__(self, store=None, templates_dir=TEMPLATES_DIR):
        self.store = store
        self.templates_dir = templates_dir

    def resolve(self, kind, jurisdiction=None, company_template_id=None):
        """
        Find the template HTML for a document

        Args:
            kind: DocumentKind (or 'purchase' / 'assignment')
            jurisdiction: state name or code, optional
            company_template_id: id of a company-owned template, optional

        Returns:
            ResolvedTemplate

        Raises:
            ConfigurationError: the built-in template file is missing
        """
        kind = DocumentKind.parse(kind)

        if company_template_id and self.store is not None:
            try:
                template = self.store.get_company_template(company_template_id)
            except Exception as e:
                logger.error(f"Error loading company template {company_template_id}: {e}")
                template = None
            if template and (template.get('html') or '').strip():
                layout = SignatureLayout.parse(template.get('signature_layout'))
                logger.info(
                    f"Using company template '{template.get('name')}' with signature layout "
                    f"{layout.value if layout else 'none'}"
                )
                return ResolvedTemplate(
                    html=template['html'],
                    signature_layout=layout,
                    source='company',
                    clause_start=parse_clause_start(template.get('clause_start')),
                )

        code = normalize_jurisdiction(jurisdiction)
        if code and self.store is not None:
            try:
                resolved = self._resolve_jurisdiction(code, kind)
            except Exception as e:
                logger.error(f"Error loading jurisdiction template for {code}: {e}")
                resolved = None
            if resolved:
                return resolved

        return self._load_file(kind)

    def _resolve_jurisdiction(self, code, kind):
        if code != GENERAL_JURISDICTION:
            template = self.store.get_jurisdiction_template(code, kind.value)
            if template and template.get('is_customized') and (template.get('html') or '').strip():
                logger.info(f"Using customized {code} template for {kind.value}")
                return ResolvedTemplate(html=template['html'], source=f'jurisdiction:{code}')

        general = self.store.get_jurisdiction_template(GENERAL_JURISDICTION, kind.value)
        if general and (general.get('html') or '').strip():
            return ResolvedTemplate(html=general['html'], source='jurisdiction:GENERAL')
        return None

    def _load_file(self, kind):
        path = os.path.join(self.templates_dir, f'{kind.template_name}.html')
        try:
            with open(path, 'r', encoding='utf-8') as template_file:
                return ResolvedTemplate(html=template_file.read(), source='file')
        except OSError as e:
            raise ConfigurationError(f"Template not found: {kind.template_name}") from e
