"""HTTP client for a ledger-proof indexing service."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any
from urllib import error, parse, request

from pydantic import ValidationError

from promotion_pipeline.errors import TransientLedgerError
from promotion_pipeline.models import ProofReceipt


class HttpLedgerProofSource:
    """Fetch receipts via ``GET {base_url}/proofs?strategy=...``.

    Connection failures and 5xx responses raise ``TransientLedgerError`` so the
    verifier retries them; malformed payloads raise ``ValueError``.
    """

    def __init__(self, base_url: str, *, timeout_s: float = 5.0) -> None:
        if not base_url:
            raise ValueError("ledger base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def query_proofs(self, strategy_description: str) -> list[ProofReceipt]:
        payload = self._request_json("/proofs", params={"strategy": strategy_description})
        rows = payload.get("proofs", [])
        if not isinstance(rows, list):
            raise ValueError("Ledger response field 'proofs' must be a list")

        receipts: list[ProofReceipt] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                fields: dict[str, Any] = {
                    "tx_hash": str(row.get("tx_hash") or row.get("txHash") or ""),
                    "profit_amount": float(row.get("profit_amount", row.get("profitAmount", 0.0))),
                }
                verified_at = _parse_datetime(row.get("verified_at") or row.get("verifiedAt"))
                if verified_at is not None:
                    fields["verified_at"] = verified_at
                receipts.append(ProofReceipt.model_validate(fields))
            except (ValidationError, TypeError, ValueError) as exc:
                raise ValueError(f"Malformed ledger receipt: {row!r}") from exc
        return receipts

    def _request_json(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}?{parse.urlencode(params)}"
        req = request.Request(url=url, method="GET", headers={"Accept": "application/json"})
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            if exc.code >= 500 or exc.code == 429:
                raise TransientLedgerError(
                    f"ledger request failed with status {exc.code}: {detail[:300]}"
                ) from exc
            raise ValueError(
                f"ledger request rejected with status {exc.code}: {detail[:300]}"
            ) from exc
        except error.URLError as exc:
            raise TransientLedgerError(f"ledger request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise TransientLedgerError("ledger request timed out") from exc

        if not body:
            return {}
        parsed = json.loads(body)
        if isinstance(parsed, dict):
            return parsed
        if isinstance(parsed, list):
            return {"proofs": parsed}
        raise ValueError(f"ledger returned unsupported JSON shape: {type(parsed)!r}")


def _parse_datetime(raw: Any) -> datetime | None:
    if isinstance(raw, str) and raw:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw / 1000.0 if raw > 1e11 else raw, tz=UTC)
    return None
