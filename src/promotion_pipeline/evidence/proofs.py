"""Verification of claimed strategies against ledger receipts."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from promotion_pipeline.boundaries import LedgerProofSource
from promotion_pipeline.errors import TransientLedgerError
from promotion_pipeline.models import BlockchainProof, ProofReceipt

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientLedgerError,
    TimeoutError,
    ConnectionError,
)


class BlockchainProofVerifier:
    """Query ledger receipts for a strategy with retry and exponential backoff.

    Never raises: persistent failure yields a zero-valued proof carrying the
    error text.
    """

    def __init__(
        self,
        ledger: LedgerProofSource | None,
        *,
        max_retries: int = 3,
        backoff_s: float = 0.5,
        legendary_profit_usd: float = 100.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self.legendary_profit_usd = legendary_profit_usd
        self._sleep = sleep

    def verify(self, strategy_description: str, *, task_id: str | None = None) -> BlockchainProof:
        if self.ledger is None:
            logger.warning(
                "proof_verification event=unavailable task_id=%s strategy=%s",
                task_id,
                strategy_description,
            )
            return BlockchainProof(strategy_id=strategy_description, error="ledger_unavailable")

        attempts = 0
        final_error = "unknown error"
        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                receipts = self.ledger.query_proofs(strategy_description)
            except TRANSIENT_ERRORS as exc:
                final_error = str(exc) or type(exc).__name__
                logger.warning(
                    "proof_verification event=retry task_id=%s attempt=%d/%d reason=%s",
                    task_id,
                    attempts,
                    self.max_retries + 1,
                    final_error,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    self._sleep(self.backoff_s * (2**attempt))
                continue
            except Exception as exc:  # noqa: BLE001
                final_error = str(exc) or type(exc).__name__
                logger.warning(
                    "proof_verification event=failed task_id=%s attempt=%d reason=%s",
                    task_id,
                    attempts,
                    final_error,
                )
                break
            return self._score(strategy_description, receipts, task_id=task_id)

        logger.warning(
            "proof_verification event=gave_up task_id=%s strategy=%s attempts=%d reason=%s",
            task_id,
            strategy_description,
            attempts,
            final_error,
        )
        return BlockchainProof(strategy_id=strategy_description, error=final_error)

    def _score(
        self,
        strategy_description: str,
        receipts: list[ProofReceipt],
        *,
        task_id: str | None,
    ) -> BlockchainProof:
        unique: dict[str, ProofReceipt] = {}
        for receipt in receipts:
            unique.setdefault(receipt.tx_hash, receipt)
        receipts = list(unique.values())
        total_profit_usd = sum(receipt.profit_amount for receipt in receipts)
        proof = BlockchainProof(
            strategy_id=strategy_description,
            proofs=receipts,
            eligible_for_legendary=total_profit_usd > self.legendary_profit_usd,
        )
        logger.info(
            "proof_verification event=scored task_id=%s proofs=%d profitable=%d "
            "total_profit_usd=%.2f score=%.2f",
            task_id,
            proof.proof_count,
            proof.profitable_proof_count,
            proof.total_profit_usd,
            proof.proof_score,
        )
        return proof
