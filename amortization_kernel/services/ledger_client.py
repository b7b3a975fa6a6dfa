"""
LedgerPostingClient -- balanced recognition journals on the external ledger.

Contract:
    - build_journal_lines(schedule, entry) turns one recognition entry into
      two signed lines (debit positive, credit negative) that sum to zero.
    - post_journal(...) submits one Manual Journal and returns the ledger's
      journal id.
    - post_entry(schedule, entry) is the idempotent wrapper used by the
      batch: an entry that is already posted returns its stored id without
      any remote call, and every request carries an Idempotency-Key derived
      from the entry id.

Line layout:
    PREPAID   Dr expense_acct_code   / Cr deferral_acct_code
    UNEARNED  Dr deferral_acct_code  / Cr revenue_acct_code

Failure modes:
    - InvalidScheduleError: required account code missing, or the entry does
      not belong to the schedule.
    - UnbalancedJournalError: lines do not sum to zero (nothing is sent).
    - RemoteRejectionError: ledger answered 400 / other 4xx, or a success
      body that carries ValidationErrors or no journal id.  Not retryable;
      carries the full response payload.
    - TransientNetworkError: timeout, transport error, 429 (with
      retry_after), 5xx, or 401 (cached access token is dropped first).
    - CredentialError: 403 from the ledger (tenant is disconnected), or
      anything the vault raises while producing a token.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

import httpx

from amortization_kernel.db.types import ZERO
from amortization_kernel.domain.dtos import (
    JournalEntryRecord,
    JournalLine,
    PostingOutcome,
    ScheduleRecord,
    ScheduleType,
)
from amortization_kernel.exceptions import (
    CredentialError,
    InvalidScheduleError,
    RemoteRejectionError,
    TransientNetworkError,
    UnbalancedJournalError,
)
from amortization_kernel.logging_config import get_logger
from amortization_kernel.services.credential_vault import CredentialVault
from amortization_kernel.services.retry import parse_retry_after

logger = get_logger("services.ledger_client")

_NARRATION_LABELS = {
    ScheduleType.PREPAID: ("Prepaid Expense", "Expense"),
    ScheduleType.UNEARNED: ("Unearned Revenue", "Revenue"),
}


def idempotency_key_for(entry: JournalEntryRecord) -> str:
    return f"journal-entry-{entry.id}"


def build_journal_lines(
    schedule: ScheduleRecord,
    entry: JournalEntryRecord,
) -> tuple[JournalLine, ...]:
    if entry.schedule_id != schedule.id:
        raise InvalidScheduleError(
            str(schedule.id), f"entry {entry.id} belongs to schedule {entry.schedule_id}",
        )
    if not schedule.deferral_acct_code:
        raise InvalidScheduleError(str(schedule.id), "deferral account code is required")

    amount = entry.amount
    if schedule.schedule_type == ScheduleType.PREPAID:
        if not schedule.expense_acct_code:
            raise InvalidScheduleError(str(schedule.id), "PREPAID schedule needs an expense account code")
        return (
            JournalLine(schedule.expense_acct_code, "Prepaid expense recognition", amount),
            JournalLine(schedule.deferral_acct_code, "Prepaid expense deferral reduction", -amount),
        )
    if schedule.schedule_type == ScheduleType.UNEARNED:
        if not schedule.revenue_acct_code:
            raise InvalidScheduleError(str(schedule.id), "UNEARNED schedule needs a revenue account code")
        return (
            JournalLine(schedule.deferral_acct_code, "Unearned revenue deferral reduction", amount),
            JournalLine(schedule.revenue_acct_code, "Unearned revenue recognition", -amount),
        )
    raise InvalidScheduleError(str(schedule.id), f"unknown schedule type {schedule.schedule_type!r}")


def build_narration(schedule: ScheduleRecord, entry: JournalEntryRecord) -> str:
    kind, side = _NARRATION_LABELS[ScheduleType(schedule.schedule_type)]
    return f"{kind} Recognition - {side} (Period: {entry.period_date.isoformat()})"


def _validation_messages(payload: Any) -> list[str]:
    """Collect every ValidationErrors[].Message in a ledger response body."""
    messages: list[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            for item in node.get("ValidationErrors") or ():
                if isinstance(item, dict) and item.get("Message"):
                    messages.append(str(item["Message"]))
            for key, value in node.items():
                if key != "ValidationErrors":
                    walk(value)
        elif isinstance(node, list):
            for value in node:
                walk(value)

    walk(payload)
    return messages


class LedgerPostingClient:
    """Posts Manual Journals for one run, sharing an httpx.Client."""

    def __init__(
        self,
        http_client: httpx.Client,
        vault: CredentialVault,
        api_base_url: str,
    ):
        self._http = http_client
        self._vault = vault
        self._journals_url = api_base_url.rstrip("/") + "/ManualJournals"

    build_journal_lines = staticmethod(build_journal_lines)
    build_narration = staticmethod(build_narration)

    def post_entry(
        self,
        schedule: ScheduleRecord,
        entry: JournalEntryRecord,
    ) -> PostingOutcome:
        if entry.posted:
            logger.info(
                "journal_post_skipped_already_posted",
                extra={"entry_id": str(entry.id), "external_journal_id": entry.external_journal_id},
            )
            return PostingOutcome(entry.id, entry.external_journal_id or "", remote_call_made=False)

        lines = build_journal_lines(schedule, entry)
        journal_id = self.post_journal(
            schedule.tenant_id,
            build_narration(schedule, entry),
            entry.period_date,
            lines,
            idempotency_key=idempotency_key_for(entry),
        )
        return PostingOutcome(entry.id, journal_id, remote_call_made=True)

    def post_journal(
        self,
        tenant_id: str,
        narration: str,
        journal_date: date,
        lines: tuple[JournalLine, ...] | list[JournalLine],
        idempotency_key: str | None = None,
    ) -> str:
        total = sum((line.amount for line in lines), ZERO)
        if total != 0 or len(lines) < 2:
            raise UnbalancedJournalError(Decimal(total))

        access_token = self._vault.get_valid_access_token(tenant_id)

        body = {
            "ManualJournals": [
                {
                    "Narration": narration,
                    "Date": journal_date.isoformat(),
                    "Status": "POSTED",
                    "JournalLines": [
                        {
                            "AccountCode": line.account_code,
                            "Description": line.description,
                            # JSON number on the wire; Decimal everywhere else
                            "LineAmount": float(line.amount),
                            "TaxType": "NONE",
                        }
                        for line in lines
                    ],
                }
            ]
        }
        headers = {
            "Authorization": f"Bearer {access_token}",
            "xero-tenant-id": tenant_id,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = self._http.post(self._journals_url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientNetworkError("ledger request timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"ledger transport error: {type(exc).__name__}") from exc

        return self._handle_response(tenant_id, response)

    def _handle_response(self, tenant_id: str, response: httpx.Response) -> str:
        status = response.status_code
        payload = _json_or_text(response)

        if status == 401:
            self._vault.invalidate(tenant_id)
            raise TransientNetworkError("ledger rejected access token (HTTP 401)", status_code=401)
        if status == 403:
            self._vault.disconnect(tenant_id, "ledger_forbidden")
            raise CredentialError(tenant_id, "ledger_forbidden")
        if status == 429 or status >= 500:
            raise TransientNetworkError(
                f"ledger returned HTTP {status}",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 400:
            self._log_rejection(tenant_id, status, payload)
            raise RemoteRejectionError(tenant_id, status, payload, _validation_messages(payload))

        messages = _validation_messages(payload)
        if messages:
            self._log_rejection(tenant_id, status, payload)
            raise RemoteRejectionError(tenant_id, status, payload, messages)

        journal_id = None
        if isinstance(payload, dict):
            journals = payload.get("ManualJournals") or []
            if journals and isinstance(journals[0], dict):
                journal_id = journals[0].get("ManualJournalID")
        if not journal_id:
            self._log_rejection(tenant_id, status, payload)
            raise RemoteRejectionError(
                tenant_id, status, payload, ["response did not include a ManualJournalID"],
            )
        return str(journal_id)

    @staticmethod
    def _log_rejection(tenant_id: str, status: int, payload: Any) -> None:
        logger.error(
            "ledger_rejected_journal",
            extra={"tenant_id": tenant_id, "status_code": status, "response_payload": payload},
        )


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
