from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from threading import Lock

from .dispatch_log import DispatchResult, DispatchResultLog
from .ledger import TriggerLedger
from .transport import MessageTransport, OutboundMessage, TransportError, mask_contact_target

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrackedTrigger:
    """Ledger key guarding a job; jobs without one are never deduplicated."""

    subject_id: str
    trigger_type: str
    trigger_date: date


@dataclass(frozen=True)
class DispatchJob:
    subject_id: str | None
    subject_name: str
    organization_id: str | None
    address: str | None
    trigger_type: str
    message: OutboundMessage
    tracked: TrackedTrigger | None = None
    # Set when the recipient could not be resolved before dispatch (unknown client id).
    unresolved_reason: str | None = None


@dataclass
class DispatchBatch:
    results: list[DispatchResult] = field(default_factory=list)
    skipped_count: int = 0
    ledger_warnings: int = 0
    log_warnings: int = 0

    @property
    def sent_count(self) -> int:
        return sum(1 for value in self.results if value.outcome == "sent")

    @property
    def failed_count(self) -> int:
        return sum(1 for value in self.results if value.outcome == "failed")


class DispatchWorker:
    """Sends jobs one at a time with a fixed pause between transport calls.

    A failure for one recipient is recorded and the batch moves on; ``dispatch``
    itself never raises for per-recipient problems. Batches from concurrent
    callers are serialized so only one transport call is in flight per worker.
    """

    def __init__(
        self,
        *,
        transport: MessageTransport,
        ledger: TriggerLedger,
        result_log: DispatchResultLog,
        delay_seconds: float = 0.3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._transport = transport
        self._ledger = ledger
        self._result_log = result_log
        self._delay_seconds = max(delay_seconds, 0.0)
        self._sleep = sleep
        self._send_lock = Lock()

    def dispatch(
        self,
        jobs: Iterable[DispatchJob],
        *,
        run_id: str | None = None,
        campaign_id: str | None = None,
    ) -> DispatchBatch:
        with self._send_lock:
            return self._dispatch_serialized(list(jobs), run_id, campaign_id)

    def _dispatch_serialized(
        self,
        jobs: list[DispatchJob],
        run_id: str | None,
        campaign_id: str | None,
    ) -> DispatchBatch:
        batch = DispatchBatch()
        transport_calls = 0
        for job in jobs:
            if job.tracked is not None:
                try:
                    fired = self._already_fired(job.tracked)
                except Exception as exc:
                    logger.warning(
                        "ledger read failed: subject=%s trigger=%s date=%s",
                        job.tracked.subject_id,
                        job.tracked.trigger_type,
                        job.tracked.trigger_date,
                        exc_info=True,
                    )
                    self._record(
                        batch,
                        self._failed(job, "ledger_unavailable", f"Trigger ledger read failed: {exc}", run_id, campaign_id),
                    )
                    continue
                if fired:
                    batch.skipped_count += 1
                    continue

            if job.unresolved_reason is not None:
                self._record(
                    batch,
                    self._failed(job, "recipient_unresolved", job.unresolved_reason, run_id, campaign_id),
                )
                continue

            if not job.address:
                self._record(
                    batch,
                    self._failed(
                        job,
                        "no_contact_address",
                        "Client has no phone or WhatsApp number",
                        run_id,
                        campaign_id,
                    ),
                )
                continue

            if transport_calls > 0 and self._delay_seconds > 0:
                self._sleep(self._delay_seconds)
            transport_calls += 1

            try:
                receipt = self._transport.send(job.address, job.message)
            except TransportError as exc:
                logger.warning(
                    "dispatch failed for %s (%s): %s",
                    mask_contact_target(job.address),
                    job.trigger_type,
                    exc.error_code,
                )
                self._record(batch, self._failed(job, exc.error_code, exc.message, run_id, campaign_id))
                continue
            except Exception as exc:
                logger.exception("unexpected transport error for %s", mask_contact_target(job.address))
                self._record(batch, self._failed(job, "unexpected_error", str(exc), run_id, campaign_id))
                continue

            self._record(
                batch,
                DispatchResult(
                    result_id=_new_result_id(),
                    subject_id=job.subject_id,
                    subject_name=job.subject_name,
                    organization_id=job.organization_id,
                    address=job.address,
                    trigger_type=job.trigger_type,  # type: ignore[arg-type]
                    outcome="sent",
                    created_at=receipt.accepted_at,
                    message_body=job.message.body,
                    template_name=job.message.template_name,
                    provider_message_id=receipt.provider_message_id,
                    run_id=run_id,
                    campaign_id=campaign_id,
                ),
            )
            if job.tracked is not None:
                self._mark_fired(batch, job.tracked)
        return batch

    def _already_fired(self, tracked: TrackedTrigger) -> bool:
        return self._ledger.has_fired(tracked.subject_id, tracked.trigger_type, tracked.trigger_date)

    def _mark_fired(self, batch: DispatchBatch, tracked: TrackedTrigger) -> None:
        try:
            self._ledger.mark_fired(tracked.subject_id, tracked.trigger_type, tracked.trigger_date)
        except Exception:
            # The message already went out; a same-day re-run may send it again.
            batch.ledger_warnings += 1
            logger.warning(
                "ledger write failed after send: subject=%s trigger=%s date=%s",
                tracked.subject_id,
                tracked.trigger_type,
                tracked.trigger_date,
                exc_info=True,
            )

    def _record(self, batch: DispatchBatch, result: DispatchResult) -> None:
        batch.results.append(result)
        try:
            self._result_log.append(result)
        except Exception:
            batch.log_warnings += 1
            logger.warning("dispatch result log write failed: result=%s", result.result_id, exc_info=True)

    def _failed(
        self,
        job: DispatchJob,
        error_code: str,
        error_message: str,
        run_id: str | None,
        campaign_id: str | None,
    ) -> DispatchResult:
        return DispatchResult(
            result_id=_new_result_id(),
            subject_id=job.subject_id,
            subject_name=job.subject_name,
            organization_id=job.organization_id,
            address=job.address,
            trigger_type=job.trigger_type,  # type: ignore[arg-type]
            outcome="failed",
            created_at=_now_utc(),
            message_body=job.message.body,
            template_name=job.message.template_name,
            error_code=error_code,
            error_message=error_message,
            run_id=run_id,
            campaign_id=campaign_id,
        )


def _new_result_id() -> str:
    return f"res_{secrets.token_hex(8)}"
