"""
Billing and notification collaborators

Plan limits, Stripe invoicing and email delivery live outside this service.
The interfaces below are what the signing workflow calls; the defaults allow
every send and write notifications to the log.
"""
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

BLOCKING_SUBSCRIPTION_STATUSES = ('past_due',)


@dataclass
class QuotaCheck:
    allowed: bool
    is_overage: bool = False
    reason: Optional[str] = None


class BillingGate:

    def subscription_status(self, company_id):
        raise NotImplementedError

    def check_contract_quota(self, company_id):
        """Return a QuotaCheck for one more contract this billing period."""
        raise NotImplementedError

    def increment_contracts_used(self, company_id):
        raise NotImplementedError

    def charge_overage(self, company_id, contract_id):
        raise NotImplementedError


class StaticBilling(BillingGate):
    """Fixed answers; counts usage in memory."""

    def __init__(self, status='active', quota=None, allow_overage=False):
        self.status = status
        self.quota = quota
        self.allow_overage = allow_overage
        self.contracts_used = {}
        self.overage_charges = []

    def subscription_status(self, company_id):
        return self.status

    def check_contract_quota(self, company_id):
        if self.quota is None or self.contracts_used.get(company_id, 0) < self.quota:
            return QuotaCheck(allowed=True)
        if self.allow_overage:
            return QuotaCheck(allowed=True, is_overage=True)
        return QuotaCheck(allowed=False, reason=f"Contract limit of {self.quota} reached. Please upgrade your plan.")

    def increment_contracts_used(self, company_id):
        self.contracts_used[company_id] = self.contracts_used.get(company_id, 0) + 1

    def charge_overage(self, company_id, contract_id):
        self.overage_charges.append((company_id, contract_id))


class Notifier:

    def contract_sent(self, contract, stage, recipients):
        raise NotImplementedError

    def seller_signed(self, contract):
        """The seller finished; the second stage is waiting to be sent."""
        raise NotImplementedError

    def contract_completed(self, contract):
        raise NotImplementedError


class LoggingNotifier(Notifier):

    def contract_sent(self, contract, stage, recipients):
        emails = ', '.join(r.get('email', '') for r in recipients)
        logger.info(f"Notification: contract {contract.id} sent ({stage.value}) to {emails}")

    def seller_signed(self, contract):
        logger.info(f"Notification: seller signed contract {contract.id}, awaiting buyer")

    def contract_completed(self, contract):
        logger.info(f"Notification: contract {contract.id} completed")
