"""
Payment verification poller.

After the user starts an off-band payment, ``PaymentVerifier`` keeps checking
whether the payment has been acknowledged (the local donor flag or the
``donorVerified`` field of the user's profile) until it is, or until the
verification window closes.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .errors import AuthenticationMissing, NetworkOrServerError, VerificationTimeout
from .identity import IdentityStore
from .scheduler import Scheduler, TimerHandle
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

DONOR_FLAG_KEY = "donorVerified"
DEFAULT_TIMEOUT_MS = 20_000
DEFAULT_INTERVAL_MS = 2_000

class VerificationStatus(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    VERIFIED = "verified"
    TIMEOUT = "timeout"
    ERROR = "error"

TERMINAL_STATUSES = (VerificationStatus.VERIFIED, VerificationStatus.TIMEOUT, VerificationStatus.ERROR)

@dataclass
class VerificationSession:
    status: VerificationStatus = VerificationStatus.IDLE
    started_at: Optional[float] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    interval_ms: int = DEFAULT_INTERVAL_MS
    error_message: str = ""

def is_truthy_flag(value: Any) -> bool:
    """Interpret a boolean-ish donor flag (``True``, ``1``, ``"true"``)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return False

Listener = Callable[[VerificationStatus], Any]

class PaymentVerifier:

    def __init__(self, identity: IdentityStore, flags: KeyValueStore, scheduler: Scheduler,
                 timeout_ms: int = DEFAULT_TIMEOUT_MS, interval_ms: int = DEFAULT_INTERVAL_MS,
                 flag_key: str = DONOR_FLAG_KEY):
        self.identity = identity
        self.flags = flags
        self.scheduler = scheduler
        self.flag_key = flag_key
        self.session = VerificationSession(timeout_ms=timeout_ms, interval_ms=interval_ms)
        self._interval: Optional[TimerHandle] = None
        self._timeout: Optional[TimerHandle] = None
        self._listeners: List[Listener] = []
        self._settled: Optional[asyncio.Event] = None

    @property
    def status(self) -> VerificationStatus:
        return self.session.status

    @property
    def error_message(self) -> str:
        return self.session.error_message

    @property
    def active(self) -> bool:
        """Whether any timer of this verifier is still scheduled."""
        return self._interval is not None or self._timeout is not None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a status listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def start(self) -> VerificationStatus:
        """
        Begin a new verification session.

        Ends any previous session's timers first, so a verifier never holds
        more than one repeating and one timeout timer. Returns the status the
        session is in once ``start`` returns.
        """
        self.stop()
        self.session.error_message = ""
        self.session.started_at = self.scheduler.now()

        user = self.identity.get_current_user()
        if not user:
            self.session.error_message = "not authenticated"
            self._set_status(VerificationStatus.ERROR)
            return self.status

        self._set_status(VerificationStatus.PENDING)
        if self.flags.flag(self.flag_key):
            self._set_status(VerificationStatus.VERIFIED)
            return self.status

        user_id = user["id"]
        self._interval = self.scheduler.schedule_repeating(
            self.session.interval_ms, lambda: self._poll(user_id)
        )
        self._timeout = self.scheduler.schedule_once(self.session.timeout_ms, self._expire)
        logger.debug("Verification started for %s (interval=%sms, timeout=%sms)",
                     user_id, self.session.interval_ms, self.session.timeout_ms)
        return self.status

    def stop(self) -> None:
        """Cancel both timers. Safe to call any number of times."""
        self.scheduler.cancel(self._interval)
        self.scheduler.cancel(self._timeout)
        self._interval = None
        self._timeout = None

    async def _poll(self, user_id: str) -> None:
        if self.status is not VerificationStatus.PENDING:
            return
        donor = self.flags.flag(self.flag_key)
        if not donor:
            try:
                profile = await self.identity.fetch_profile(user_id)
            except (NetworkOrServerError, AuthenticationMissing) as e:
                logger.info("Payment check failed, will retry: %s", e)
                return
            donor = is_truthy_flag(profile.get("donorVerified"))
        # The session may have ended while the request was in flight.
        if donor and self.status is VerificationStatus.PENDING:
            self.stop()
            self._set_status(VerificationStatus.VERIFIED)

    def confirm(self) -> bool:
        """
        Settle a pending session as verified without waiting for the next
        check. Returns whether the session was pending.
        """
        if self.status is not VerificationStatus.PENDING:
            return False
        self.stop()
        self._set_status(VerificationStatus.VERIFIED)
        return True

    def _expire(self) -> None:
        if self.status is not VerificationStatus.PENDING:
            return
        self.stop()
        self._set_status(VerificationStatus.TIMEOUT)

    def _set_status(self, status: VerificationStatus) -> None:
        if status is self.session.status:
            return
        self.session.status = status
        logger.info("Payment verification: %s", status.value)
        if status in TERMINAL_STATUSES and self._settled is not None:
            self._settled.set()
        for listener in list(self._listeners):
            listener(status)

    async def wait(self) -> VerificationStatus:
        """Wait until the current session leaves ``pending``."""
        if self.status is not VerificationStatus.PENDING:
            return self.status
        self._settled = asyncio.Event()
        while self.status is VerificationStatus.PENDING:
            if not self.active:
                # Stopped without reaching a result.
                break
            try:
                await asyncio.wait_for(self._settled.wait(), timeout=self.session.interval_ms / 1000)
            except asyncio.TimeoutError:
                continue
        self._settled = None
        return self.status

    def raise_for_status(self) -> None:
        if self.status is VerificationStatus.ERROR:
            raise AuthenticationMissing(self.error_message or "not authenticated")
        if self.status is VerificationStatus.TIMEOUT:
            raise VerificationTimeout(
                f"Payment not confirmed within {self.session.timeout_ms / 1000:g} seconds"
            )
