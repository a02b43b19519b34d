"""
LedgerMind — Payment-intent mirror and funded payments for AI agents.

Payer sets bounds on-chain → Agent pays within them → Indexed ledger and audit trail.
"""

__version__ = "0.1.0"

from .errors import (
    AuthorizationError,
    ChainError,
    ContractRejectedError,
    InsufficientAgentFundsError,
    InsufficientAllowanceError,
    LedgerMindError,
    LimitExceededError,
    TransientChainError,
)
from .config import LedgerConfig
from .chain import ChainReader, Web3ChainReader
from .wallet import ChainWallet
from .local_chain import LocalChain
from .store import LedgerStore
from .indexer import CycleResult, EventIndexer
from .projector import IntentState, IntentView, project
from .queries import IntentQueries
from .blobstore import IpfsBlobStore, LocalBlobStore, ReceiptTranscript
from .orchestrator import FundedPaymentOrchestrator, PaymentOutcome, PaymentRequest, PaymentState
from .payer import PayerActionResult, PayerActions
from .audit import AuditTrail, EventType

__all__ = [
    "LedgerMindError", "ChainError", "TransientChainError", "ContractRejectedError",
    "AuthorizationError", "LimitExceededError", "InsufficientAllowanceError",
    "InsufficientAgentFundsError", "LedgerConfig",
    "ChainReader", "Web3ChainReader", "ChainWallet", "LocalChain",
    "LedgerStore", "EventIndexer", "CycleResult",
    "IntentState", "IntentView", "project", "IntentQueries",
    "IpfsBlobStore", "LocalBlobStore", "ReceiptTranscript",
    "FundedPaymentOrchestrator", "PaymentOutcome", "PaymentRequest", "PaymentState",
    "PayerActions", "PayerActionResult",
    "AuditTrail", "EventType",
]
