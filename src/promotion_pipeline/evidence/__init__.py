"""Evidence gathering: trusted sources, claim corroboration, and ledger proofs."""

from promotion_pipeline.evidence.fact_check import (
    OpenAIFactChecker,
    TermOverlapFactChecker,
    build_fact_checker,
)
from promotion_pipeline.evidence.ledger import HttpLedgerProofSource
from promotion_pipeline.evidence.proofs import BlockchainProofVerifier
from promotion_pipeline.evidence.registry import DEFAULT_SOURCE_TYPE_WEIGHTS, TrustedSourceRegistry
from promotion_pipeline.evidence.validation import SourceValidationEngine

__all__ = [
    "BlockchainProofVerifier",
    "DEFAULT_SOURCE_TYPE_WEIGHTS",
    "HttpLedgerProofSource",
    "OpenAIFactChecker",
    "SourceValidationEngine",
    "TermOverlapFactChecker",
    "TrustedSourceRegistry",
    "build_fact_checker",
]
