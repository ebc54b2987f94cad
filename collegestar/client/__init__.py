from .donation import DonationFlow, FormFactor, PaymentRequest, payment_url
from .errors import AuthenticationMissing, NetworkOrServerError, VerificationTimeout
from .identity import ApiClient, IdentityStore, ServiceIdentityStore
from .poller import PaymentVerifier, VerificationStatus
from .scheduler import AsyncioScheduler, Scheduler, VirtualScheduler
from .search import NoteBrowser, filter_notes
from .storage import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore

__all__ = [
    "ApiClient",
    "AsyncioScheduler",
    "AuthenticationMissing",
    "DonationFlow",
    "FormFactor",
    "IdentityStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "NetworkOrServerError",
    "NoteBrowser",
    "PaymentRequest",
    "PaymentVerifier",
    "Scheduler",
    "ServiceIdentityStore",
    "VerificationStatus",
    "VerificationTimeout",
    "VirtualScheduler",
    "filter_notes",
    "payment_url",
]
