"""
External reference strings attached to provider documents

Current format:  contract::<contract id>::<kind>::<stage>
Older formats:   contract::<contract id>::<kind>
                 contract-<uuid>-<kind>[-<timestamp>]

References without a stage are resolved through resolve_stage().
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

from models import ContractStatus, DocumentKind, Stage

logger = logging.getLogger(__name__)

PREFIX = 'contract'
DELIMITER = '::'

LEGACY_PATTERN = re.compile(
    r'^contract-([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})'
    r'-([a-z][a-z-]*?)(?:-(\d+))?$'
)


@dataclass(frozen=True)
class ExternalReference:
    contract_id: str
    kind: DocumentKind
    stage: Optional[Stage] = None
    legacy: bool = False

    def __str__(self):
        return build_external_reference(self.contract_id, self.kind, self.stage or Stage.SINGLE)


def build_external_reference(contract_id, kind, stage):
    """Every new provider document carries its stage explicitly."""
    kind = DocumentKind.parse(kind)
    stage = Stage.parse(stage) or Stage.SINGLE
    return DELIMITER.join([PREFIX, str(contract_id), kind.value, stage.value])


def parse_external_reference(value):
    """
    Parse a reference back into (contract id, kind, stage)

    Returns:
        ExternalReference, or None when the string is not one of ours
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()

    if value.startswith(PREFIX + DELIMITER):
        parts = value.split(DELIMITER)
        if len(parts) not in (3, 4) or not parts[1]:
            return None
        try:
            kind = DocumentKind.parse(parts[2])
            stage = Stage.parse(parts[3]) if len(parts) == 4 else None
        except ValueError:
            return None
        return ExternalReference(contract_id=parts[1], kind=kind, stage=stage)

    match = LEGACY_PATTERN.match(value)
    if match:
        try:
            kind = DocumentKind.parse(match.group(2))
        except ValueError:
            return None
        return ExternalReference(contract_id=match.group(1), kind=kind, legacy=True)

    return None


def resolve_stage(contract, reference, document_id=None):
    """
    Decide which signing stage an event belongs to

    Order: explicit stage in the reference, the provider document id matched
    against the ids recorded per stage, then the contract's status.

    Returns:
        Stage
    """
    if reference is not None and reference.stage is not None:
        return reference.stage

    layout = contract.signature_layout
    if layout is None or not layout.is_two_stage:
        return Stage.SINGLE

    if document_id is not None:
        document_id = str(document_id)
        for stage in (Stage.SELLER, Stage.BUYER):
            if contract.stage_document_id(stage) == document_id:
                return stage

    status = contract.status
    if status in (ContractStatus.SENT, ContractStatus.VIEWED) and not contract.stage_document_id(Stage.BUYER):
        return Stage.SELLER
    if status is ContractStatus.BUYER_PENDING:
        return Stage.BUYER

    logger.warning(
        f"Could not infer signing stage for contract {contract.id} "
        f"(status={status.value}, document={document_id}); assuming seller"
    )
    return Stage.SELLER
