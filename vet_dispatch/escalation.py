"""
escalation.py
=============
What happens when a case expires without anybody accepting it.

Kept as explicit, configurable policy:
 - "none"             log it, nothing else
 - "notify_operator"  e-mail OPERATOR_EMAIL so a human can follow up
No automatic widening of the search area is attempted.
"""

import logging

from .config import ESCALATION_POLICY

logger = logging.getLogger(__name__)

POLICIES = ("none", "notify_operator")


class EscalationPolicy:

    def __init__(self, policy: str = ESCALATION_POLICY, fanout=None):
        if policy not in POLICIES:
            raise ValueError(f"Unknown ESCALATION_POLICY {policy!r}, expected one of {POLICIES}")
        if policy == "notify_operator" and fanout is None:
            raise ValueError("notify_operator escalation needs a NotificationFanout")
        self.policy = policy
        self.fanout = fanout

    def on_expired(self, case, reason: str) -> None:
        """Called once per case, right after its OPEN -> EXPIRED transition committed."""
        logger.warning(f"⌛ Case {case.id} expired unassigned ({reason}), escalation={self.policy}")
        if self.policy == "notify_operator":
            self.fanout.notify_operator(case, reason)
