"""
Storage collaborators: contracts, contract history and templates

The relational database lives outside this service; these in-memory stores
implement the same read/write contract and back the default app wiring and
the test suite.
"""
import copy
import logging
import threading
from contextlib import contextmanager

from models import Contract, ContractStatus, HistoryEntry

logger = logging.getLogger(__name__)


class ContractStore:
    """Interface for contract rows and the append-only contract history table."""

    def get(self, contract_id):
        raise NotImplementedError

    def update(self, contract_id, **changes):
        raise NotImplementedError

    def append_history(self, contract_id, status, metadata=None, changed_by=None):
        raise NotImplementedError

    def history(self, contract_id):
        raise NotImplementedError

    @contextmanager
    def lock(self, contract_id):
        yield


class InMemoryContractStore(ContractStore):

    def __init__(self, contracts=None):
        self._contracts = {}
        self._history = {}
        self._guard = threading.Lock()
        self._locks = {}
        for contract in contracts or []:
            self.add(contract)

    def add(self, contract):
        with self._guard:
            self._contracts[contract.id] = copy.deepcopy(contract)
        return contract

    def get(self, contract_id):
        with self._guard:
            contract = self._contracts.get(contract_id)
            return copy.deepcopy(contract) if contract else None

    def update(self, contract_id, **changes):
        """
        Apply column changes; a custom_fields value is merged into the existing bag

        Returns:
            Contract: the updated row
        """
        with self._guard:
            contract = self._contracts.get(contract_id)
            if contract is None:
                raise KeyError(contract_id)
            for key, value in changes.items():
                if key == 'custom_fields':
                    merged = dict(contract.custom_fields)
                    merged.update(value)
                    contract.custom_fields = merged
                elif key == 'status':
                    contract.status = ContractStatus(value)
                elif hasattr(contract, key):
                    setattr(contract, key, value)
                else:
                    raise AttributeError(f"Contract has no column '{key}'")
            return copy.deepcopy(contract)

    def append_history(self, contract_id, status, metadata=None, changed_by=None):
        entry = HistoryEntry(
            contract_id=contract_id,
            status=ContractStatus(status).value,
            metadata=copy.deepcopy(metadata or {}),
            changed_by=changed_by,
        )
        with self._guard:
            self._history.setdefault(contract_id, []).append(entry)
        return entry

    def history(self, contract_id):
        with self._guard:
            return list(self._history.get(contract_id, []))

    @contextmanager
    def lock(self, contract_id):
        """Per-contract mutex around read-modify-write sequences."""
        with self._guard:
            contract_lock = self._locks.setdefault(contract_id, threading.RLock())
        with contract_lock:
            yield


class TemplateStore:
    """Interface for operator-authored templates."""

    def get_company_template(self, template_id):
        """Return {'name', 'html', 'signature_layout', 'clause_start'} or None."""
        raise NotImplementedError

    def get_jurisdiction_template(self, code, kind):
        """Return {'html', 'is_customized'} for a jurisdiction code (or 'GENERAL') or None."""
        raise NotImplementedError


class InMemoryTemplateStore(TemplateStore):

    def __init__(self):
        self.company_templates = {}
        self.jurisdiction_templates = {}

    def add_company_template(self, template_id, html, signature_layout=None, name=None, clause_start=None):
        self.company_templates[template_id] = {
            'name': name or template_id,
            'html': html,
            'signature_layout': signature_layout,
            'clause_start': clause_start,
        }

    def add_jurisdiction_template(self, code, kind, html, is_customized=True):
        self.jurisdiction_templates[(code, kind)] = {
            'html': html,
            'is_customized': is_customized,
        }

    def get_company_template(self, template_id):
        return self.company_templates.get(template_id)

    def get_jurisdiction_template(self, code, kind):
        return self.jurisdiction_templates.get((code, kind))
