"""Whether a new certificate order should be placed.

Remaining validity always comes from the certificate's own notAfter, never
from file timestamps.
"""

import dataclasses
import datetime


ABSENT = 'absent'
UNPARSEABLE = 'unparseable'
EXPIRING = 'expiring'
VALID = 'valid'


@dataclasses.dataclass(frozen=True)
class RenewalDecision:
    renew: bool
    reason: str
    remaining: datetime.timedelta = None

    def __bool__(self):
        return self.renew

    def describe(self):
        if self.reason == ABSENT:
            return "No existing certificate."
        elif self.reason == UNPARSEABLE:
            return "Existing certificate can't be read, renewing."
        days = self.remaining.total_seconds() / 86400
        if self.reason == EXPIRING:
            return "Certificate expires in %.1f days, renewing." % days
        return "Certificate is valid for %.1f more days." % days


def needs_renewal(bundle, now, threshold_days):
    if bundle is None:
        return RenewalDecision(True, ABSENT)
    if bundle.not_after is None:
        return RenewalDecision(True, UNPARSEABLE)
    remaining = bundle.not_after - now
    if remaining <= datetime.timedelta(days=threshold_days):
        return RenewalDecision(True, EXPIRING, remaining)
    return RenewalDecision(False, VALID, remaining)
