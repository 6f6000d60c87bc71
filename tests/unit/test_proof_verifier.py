from __future__ import annotations

import pytest

from promotion_pipeline.errors import TransientLedgerError
from promotion_pipeline.evidence.proofs import BlockchainProofVerifier
from promotion_pipeline.models import ProofReceipt
from tests.fakes import FakeLedger, receipts


def test_scores_receipts_for_strategy() -> None:
    ledger = FakeLedger({"eth-usdc arb": receipts(100.0, 50.0, 30.0, 0.0)})
    proof = BlockchainProofVerifier(ledger).verify("eth-usdc arb", task_id="t1")

    assert proof.strategy_id == "eth-usdc arb"
    assert proof.proof_count == 4
    assert proof.profitable_proof_count == 3
    assert proof.total_profit_usd == pytest.approx(180.0)
    assert proof.proof_score == pytest.approx(5.6)
    assert proof.eligible_for_legendary is True
    assert proof.error is None


def test_profit_at_threshold_is_not_legendary() -> None:
    ledger = FakeLedger({"s": receipts(60.0, 40.0)})
    proof = BlockchainProofVerifier(ledger).verify("s")
    assert proof.total_profit_usd == pytest.approx(100.0)
    assert proof.eligible_for_legendary is False
    assert proof.eligible_for_valuable is True


def test_duplicate_tx_hashes_counted_once() -> None:
    duplicate = ProofReceipt(tx_hash="0xabc", profit_amount=80.0)
    other = ProofReceipt(tx_hash="0xdef", profit_amount=5.0)
    ledger = FakeLedger({"s": [duplicate, duplicate, other]})

    proof = BlockchainProofVerifier(ledger).verify("s")

    assert proof.proof_count == 2
    assert proof.total_profit_usd == pytest.approx(85.0)


def test_retries_transient_errors_with_exponential_backoff() -> None:
    sleeps: list[float] = []
    ledger = FakeLedger(
        {"s": receipts(10.0)},
        failures=[TransientLedgerError("503"), ConnectionError("reset")],
    )
    verifier = BlockchainProofVerifier(ledger, max_retries=3, backoff_s=0.5, sleep=sleeps.append)

    proof = verifier.verify("s")

    assert proof.proof_count == 1
    assert len(ledger.calls) == 3
    assert sleeps == [0.5, 1.0]


def test_persistent_failure_returns_zero_proof() -> None:
    sleeps: list[float] = []
    ledger = FakeLedger(failures=[TimeoutError("slow")] * 10)
    verifier = BlockchainProofVerifier(ledger, max_retries=3, backoff_s=0.5, sleep=sleeps.append)

    proof = verifier.verify("s", task_id="t1")

    assert len(ledger.calls) == 4
    assert sleeps == [0.5, 1.0, 2.0]
    assert proof.proof_count == 0
    assert proof.proof_score == 0.0
    assert proof.eligible_for_legendary is False
    assert proof.error == "slow"


def test_non_transient_failure_is_not_retried() -> None:
    ledger = FakeLedger(failures=[ValueError("Malformed ledger receipt")])
    proof = BlockchainProofVerifier(ledger, sleep=lambda _: None).verify("s")

    assert len(ledger.calls) == 1
    assert proof.proof_score == 0.0
    assert proof.error == "Malformed ledger receipt"


def test_missing_ledger_scores_zero() -> None:
    proof = BlockchainProofVerifier(None).verify("s")
    assert proof.error == "ledger_unavailable"
    assert proof.proof_count == 0


def test_empty_receipts_are_not_an_error() -> None:
    proof = BlockchainProofVerifier(FakeLedger()).verify("unknown strategy")
    assert proof.proof_count == 0
    assert proof.error is None
