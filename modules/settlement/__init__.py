from .attestation import HermesAttestationFetcher
from .backend import BackendClient
from .classifier import FailureClassifier
from .errors import (
    BackendError,
    DecodeError,
    IncompleteSignature,
    NoAttestationData,
    PhaseBuildError,
    SettlementAborted,
    SettlementError,
    SubmissionError,
    TimedOut,
    WalletUnsupported,
)
from .flows import BetPlacementFlow, MarketCreationFlow
from .instructions import decode_instruction, decode_transaction_b64, patch_instruction, resolve_placeholder_override
from .orchestrator import SettlementRun
from .phases import PostPhaseBuilder, build_consume_phase
from .progress import ProgressReporter
from .signer import KeypairWallet, LedgerClient, TransactionSubmitter, Wallet
from .steps import StepRunner
from .types import (
    AttestationBundle,
    InstructionSpec,
    PatchOverride,
    PipelineResult,
    ProgressEvent,
    ResolveBundle,
    RunState,
    StepId,
    TransactionPhase,
)

__all__ = [
    "AttestationBundle",
    "BackendClient",
    "BackendError",
    "BetPlacementFlow",
    "DecodeError",
    "FailureClassifier",
    "HermesAttestationFetcher",
    "IncompleteSignature",
    "InstructionSpec",
    "KeypairWallet",
    "LedgerClient",
    "MarketCreationFlow",
    "NoAttestationData",
    "PatchOverride",
    "PhaseBuildError",
    "PipelineResult",
    "PostPhaseBuilder",
    "ProgressEvent",
    "ProgressReporter",
    "ResolveBundle",
    "RunState",
    "SettlementAborted",
    "SettlementError",
    "SettlementRun",
    "StepId",
    "StepRunner",
    "SubmissionError",
    "TimedOut",
    "TransactionPhase",
    "TransactionSubmitter",
    "Wallet",
    "WalletUnsupported",
    "build_consume_phase",
    "decode_instruction",
    "decode_transaction_b64",
    "patch_instruction",
    "resolve_placeholder_override",
]
