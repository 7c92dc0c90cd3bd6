from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ax2_studio.core.auth import AccountContext
from ax2_studio.core.config import Settings, settings as default_settings
from ax2_studio.core.errors import FreeTrialUnavailableError
from ax2_studio.ledger.credits import CreditLedger

logger = logging.getLogger(__name__)

FREE_TRIAL_FLAG = "free_trial"


@dataclass
class Eligibility:
    eligible: bool
    reason: Optional[str] = None


class FreeTrialGate:
    """One-time free-trial grant per account, capped by duration and language count."""

    def __init__(self, ledger: CreditLedger, settings: Settings = default_settings) -> None:
        self.ledger = ledger
        self.settings = settings

    def is_used(self, account: AccountContext) -> bool:
        flag = self.ledger.store.account(account.account_id).get("flags", FREE_TRIAL_FLAG)
        return bool(flag and flag.get("used"))

    def used_at(self, account: AccountContext) -> Optional[datetime]:
        flag = self.ledger.store.account(account.account_id).get("flags", FREE_TRIAL_FLAG)
        if not flag or not flag.get("used_at"):
            return None
        return datetime.fromisoformat(flag["used_at"])

    def check_eligibility(self, account: AccountContext, duration_seconds: float, language_count: int) -> Eligibility:
        if self.is_used(account):
            return Eligibility(False, "The free trial has already been used. It is offered once per account.")
        if duration_seconds > self.settings.free_trial_max_duration:
            minutes = self.settings.free_trial_max_duration // 60
            return Eligibility(False, f"The free trial covers videos up to {minutes} minutes.")
        if language_count > self.settings.free_trial_max_languages:
            return Eligibility(
                False,
                f"The free trial covers up to {self.settings.free_trial_max_languages} translation language(s).",
            )
        return Eligibility(True)

    def grant_free_credits(self, account: AccountContext) -> int:
        """Credit the trial grant to the active pool and burn the trial flag.

        The used-check and the grant run in one account transaction, so two
        sessions racing for the trial produce exactly one grant.
        """
        tx = self.ledger.store.account(account.account_id)
        amount = self.settings.free_trial_credits
        with tx.transaction():
            flag = tx.get("flags", FREE_TRIAL_FLAG)
            if flag and flag.get("used"):
                raise FreeTrialUnavailableError("free trial already used")
            balance = self.ledger._grant(tx, account.pool, amount, "One-time free trial credits")
            tx.put("flags", FREE_TRIAL_FLAG, {"used": True, "used_at": self.ledger.clock().isoformat()})
        logger.info("Free trial grant of %s credits to %s", amount, account.account_id)
        self.ledger._publish(account.account_id, account.pool, balance)
        return balance
