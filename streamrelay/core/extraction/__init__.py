from .allowlist import BUILTIN_ALLOWED_DOMAINS, DomainAllowlist
from .engine import (
    BrowserExtractionEngine,
    ExtractionResult,
    ExtractionRun,
    ExtractionState,
)
from .scoring import MASTER_SCORE_THRESHOLD, CandidateSet, score_url
from .session import (
    BrowserFrame,
    BrowserSession,
    NetworkEvent,
    SelectorUnsupported,
    SessionFactory,
)

__all__ = [
    "BUILTIN_ALLOWED_DOMAINS",
    "DomainAllowlist",
    "BrowserExtractionEngine",
    "ExtractionResult",
    "ExtractionRun",
    "ExtractionState",
    "MASTER_SCORE_THRESHOLD",
    "CandidateSet",
    "score_url",
    "BrowserFrame",
    "BrowserSession",
    "NetworkEvent",
    "SelectorUnsupported",
    "SessionFactory",
]
