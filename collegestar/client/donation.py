"""
"Buy us a coffee" donation flow.

The payment itself happens in the user's UPI app, outside the application.
This module builds the payment request, hands it to a presenter (a deep link
on phones, a scannable code on larger screens), records the user's
"I've paid" claim and watches for confirmation with ``PaymentVerifier``.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from ..backend.config import Settings
from ..backend.utils import time_now
from .errors import AuthenticationMissing, ClientError, NetworkOrServerError
from .identity import IdentityStore
from .poller import DONOR_FLAG_KEY, PaymentVerifier, VerificationStatus, is_truthy_flag
from .scheduler import Scheduler, TimerHandle
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

PRESET_AMOUNTS = (20, 50, 70, 100, 200, 500)
DEFAULT_AMOUNT = 100
RETRY_GRACE_MS = 5_000
DISMISSED_KEY = "donatePromptDismissed"

class FormFactor(str, enum.Enum):
    HANDHELD = "handheld"
    DESKTOP = "desktop"

@dataclass
class PaymentRequest:
    amount: int
    url: str
    form_factor: FormFactor

    @property
    def as_deep_link(self) -> bool:
        return self.form_factor is FormFactor.HANDHELD

def payment_url(amount: int, payee: str, payee_name: str, note: str, currency: str = "INR") -> str:
    """Build a ``upi://pay`` link understood by UPI payment apps."""
    params = {"pa": payee, "pn": payee_name, "am": str(amount), "cu": currency, "tn": note}
    return f"upi://pay?{urlencode(params)}"

def _log_notice(title: str, description: str) -> None:
    logger.info("%s: %s", title, description)

def _log_presenter(request: PaymentRequest) -> None:
    logger.info("Present payment (%s): %s", request.form_factor.value, request.url)

class DonationFlow:

    def __init__(self, identity: IdentityStore, flags: KeyValueStore, scheduler: Scheduler,
                 payee: str, payee_name: str, note: str,
                 form_factor: FormFactor = FormFactor.DESKTOP,
                 verifier: Optional[PaymentVerifier] = None,
                 present: Callable[[PaymentRequest], Any] = _log_presenter,
                 notify: Callable[[str, str], Any] = _log_notice,
                 on_verified: Optional[Callable[[], Any]] = None,
                 retry_grace_ms: int = RETRY_GRACE_MS, max_retries: int = 1):
        self.identity = identity
        self.flags = flags
        self.scheduler = scheduler
        self.payee = payee
        self.payee_name = payee_name
        self.note = note
        self.form_factor = form_factor
        self.verifier = verifier or PaymentVerifier(identity, flags, scheduler)
        self.present = present
        self.notify = notify
        self.on_verified = on_verified
        self.retry_grace_ms = retry_grace_ms
        self.max_retries = max_retries
        self.amount = DEFAULT_AMOUNT
        self.retries = 0
        self._retry_timer: Optional[TimerHandle] = None
        self._self_reported = False
        self._unsubscribe = self.verifier.subscribe(self._on_status)

    @classmethod
    def from_settings(cls, settings: Settings, identity: IdentityStore, flags: KeyValueStore,
                      scheduler: Scheduler, **kwargs) -> "DonationFlow":
        """Build a flow paying the UPI payee configured in ``settings``."""
        return cls(identity, flags, scheduler, payee=settings.upi_payee,
                   payee_name=settings.upi_payee_name, note=settings.upi_note, **kwargs)

    def select_amount(self, amount: int) -> None:
        if amount not in PRESET_AMOUNTS:
            raise ValueError(f"Amount must be one of {', '.join(map(str, PRESET_AMOUNTS))}")
        self.amount = amount

    def payment_request(self) -> PaymentRequest:
        url = payment_url(self.amount, self.payee, self.payee_name, self.note)
        return PaymentRequest(self.amount, url, self.form_factor)

    async def is_donor(self) -> bool:
        if self.flags.flag(DONOR_FLAG_KEY):
            return True
        user = self.identity.get_current_user()
        if not user:
            return False
        try:
            profile = await self.identity.fetch_profile(user["id"])
        except NetworkOrServerError as e:
            logger.warning("Could not load donor status: %s", e)
            return False
        return is_truthy_flag(profile.get("donorVerified"))

    async def should_prompt(self) -> bool:
        """Whether to open the donation prompt for the signed-in user."""
        if not self.identity.get_current_user() or self.flags.flag(DISMISSED_KEY):
            return False
        return not await self.is_donor()

    def proceed_to_pay(self) -> PaymentRequest:
        """Present the payment and start watching for its confirmation."""
        self.retries = 0
        return self._attempt()

    def _attempt(self) -> PaymentRequest:
        request = self.payment_request()
        self.present(request)
        self.verifier.start()
        return request

    async def mark_as_paid(self) -> None:
        """
        Record the user's claim that the payment went through.

        Settles a pending verification right away and closes the flow.
        Raises the store's error after notifying the user when the profile
        cannot be updated; the local flag is then left untouched.
        """
        user = self.identity.get_current_user()
        try:
            if user:
                await self.identity.update_profile(user["id"], {
                    "donorVerified": True,
                    "donorAmount": self.amount,
                    "donorAt": time_now(),
                })
        except ClientError as e:
            self.notify("Could not update status", str(e) or "Please try again.")
            raise
        self.flags.set_flag(DONOR_FLAG_KEY)
        self.notify("Thank you!", "Your support means a lot. Perks unlocked.")
        self._self_reported = True
        try:
            if not self.verifier.confirm():
                self._unlock()
        finally:
            self._self_reported = False

    def dismiss(self) -> None:
        self.flags.set_flag(DISMISSED_KEY)
        self.close()

    def close(self) -> None:
        """Tear down: stop verification and any pending retry."""
        self.verifier.stop()
        self.scheduler.cancel(self._retry_timer)
        self._retry_timer = None

    def detach(self) -> None:
        self.close()
        self._unsubscribe()

    def _on_status(self, status: VerificationStatus) -> None:
        if status is VerificationStatus.VERIFIED:
            if not self._self_reported:
                self.notify("You're a Star Supporter", "Perks unlocked: a blue tick and boosted visibility.")
            self._unlock()
        elif status is VerificationStatus.TIMEOUT:
            if self.retries >= self.max_retries:
                self.notify("Payment not confirmed yet",
                            "If you have paid, tap \"I've completed payment\".")
                return
            self.notify("Payment not confirmed yet", "We'll reopen the payment in a few seconds.")
            self._retry_timer = self.scheduler.schedule_once(self.retry_grace_ms, self._retry)
        elif status is VerificationStatus.ERROR:
            self.notify("Sign in required", str(AuthenticationMissing()))

    def _unlock(self) -> None:
        self.close()
        if self.on_verified is not None:
            self.on_verified()

    def _retry(self) -> None:
        self._retry_timer = None
        self.retries += 1
        logger.info("Retrying payment (attempt %s)", self.retries + 1)
        self._attempt()
