"""
Dispatch orchestrator.

One invocation of DispatchService.run() is one short-lived, stateless
dispatch run, typically triggered by an external scheduler every minute.
Runs may overlap; correctness relies only on the atomic claims of the
backlog and the unique key of the reminder ledger.

A run:
1. Validates configuration and imports the VAPID key (fatal on failure,
   before any I/O)
2. Loads subscriptions and fetches upcoming calendar events
3. Calendar path: for every lead time in use, matches due events, reserves
   each (event, lead time) pair in the ledger and fans the reminder out to
   every subscription with that lead time
4. Backlog path: claims due scheduled reminders, drops duplicates, renders
   and delivers the survivors, and records the outcome per row
   (both paths renew their claim right before delivering and skip work
   another run has taken over)
5. Prunes expired endpoints in one batch and purges the ledger

send_notification() broadcasts an ad-hoc notification to every subscription
without touching the backlog or the ledger.

Deliveries run in parallel threads; all database work stays on the calling
thread, and no transaction is open while requests are in flight.
"""

import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from sqlalchemy.orm import Session

from reminder_engine.config.settings import AppSettings, get_settings
from reminder_engine.services.calendar_service import CalendarEvent, build_event_source
from reminder_engine.services.event_matcher import (
    NOTIFICATION_ICON,
    build_event_reminder_payload,
    match_due_events,
)
from reminder_engine.services.exceptions import CalendarSourceError, ConfigurationError, ValidationError
from reminder_engine.services.notified_reminder_service import NotifiedReminderService
from reminder_engine.services.push_delivery_service import (
    DeliveryOutcome,
    DeliveryResult,
    PushDeliveryService,
    PushTarget,
)
from reminder_engine.services.push_subscription_service import PushSubscriptionService
from reminder_engine.services.reminder_claim_service import ReminderClaimService
from reminder_engine.services.reminder_service import build_client_reminder_payload
from reminder_engine.utils.crypto import import_vapid_keys
from reminder_engine.utils.logging_config import get_logger
from reminder_engine.utils.time_utils import utcnow
from reminder_engine.utils.vapid import VapidSigner


logger = get_logger("services")
audit_logger = get_logger("audit")


def build_notification_payload(
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Push payload for an ad-hoc notification."""
    return {
        "title": title,
        "body": body,
        "icon": NOTIFICATION_ICON,
        "badge": NOTIFICATION_ICON,
        "data": data or {},
    }


@dataclass
class DispatchSummary:
    """
    Result of one dispatch run.

    Attributes:
        run_id: Identifier of the run (also the claim marker)
        sent: Reminders delivered to at least one subscription
        failed: Reminders no subscription accepted
        duplicates_skipped: Backlog rows closed as duplicates
        subscriptions_removed: Expired subscriptions pruned
        already_notified: Calendar reminders skipped because the ledger
                          already holds them
        errors: Human-readable per-delivery errors
    """

    run_id: str
    sent: int = 0
    failed: int = 0
    duplicates_skipped: int = 0
    subscriptions_removed: int = 0
    already_notified: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "sent": self.sent,
            "failed": self.failed,
            "duplicatesSkipped": self.duplicates_skipped,
            "subscriptionsRemoved": self.subscriptions_removed,
            "alreadyNotified": self.already_notified,
            "errors": list(self.errors),
        }


class DispatchService:
    """
    Runs one dispatch pass over calendar events and the reminder backlog.

    Usage:
        >>> with session_scope() as db:
        ...     summary = DispatchService(db).run()
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[AppSettings] = None,
        event_source=None,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            db: SQLAlchemy database session (used on the calling thread only)
            settings: Application settings (defaults to get_settings())
            event_source: Calendar source; built from settings when omitted
            http_client: httpx client for push requests (tests inject a MockTransport)
        """
        self.db = db
        self.settings = settings or get_settings()
        self.event_source = event_source
        self.http_client = http_client

        self.subscriptions = PushSubscriptionService(db)
        self.claims = ReminderClaimService(db, claim_timeout_seconds=self.settings.claim_timeout_seconds)
        self.ledger = NotifiedReminderService(
            db,
            claim_timeout_seconds=self.settings.claim_timeout_seconds,
            retention_hours=self.settings.ledger_retention_hours,
        )

    # =========================================================================
    # Setup
    # =========================================================================

    def build_signer(self) -> VapidSigner:
        """
        Validate the dispatch settings and import the VAPID key pair.

        Raises:
            ConfigurationError: If a VAPID setting is missing or invalid, or
                                DISPLAY_TIMEZONE is not a known timezone
            KeyImportError: If the key material cannot be imported
        """
        missing = self.settings.missing_vapid_settings()
        if missing:
            raise ConfigurationError(
                f"VAPID is not configured; missing: {', '.join(missing)}",
                missing=missing,
            )
        try:
            ZoneInfo(self.settings.display_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(
                f"DISPLAY_TIMEZONE is not a known timezone: {self.settings.display_timezone!r}",
                missing=["DISPLAY_TIMEZONE"],
            )
        key_pair = import_vapid_keys(self.settings.vapid_public_key, self.settings.vapid_private_key)
        return VapidSigner(
            key_pair,
            self.settings.vapid_subject,
            expiration_hours=self.settings.vapid_expiration_hours,
        )

    def _build_transport(self, signer: VapidSigner) -> PushDeliveryService:
        return PushDeliveryService(
            signer,
            ttl_seconds=self.settings.push_ttl_seconds,
            urgency=self.settings.push_urgency,
            timeout_seconds=self.settings.push_timeout_seconds,
            client=self.http_client,
        )

    # =========================================================================
    # Run
    # =========================================================================

    def run(self, now: Optional[datetime] = None) -> DispatchSummary:
        """
        Execute one dispatch run.

        Args:
            now: Reference time (naive UTC); defaults to the current time

        Returns:
            DispatchSummary

        Raises:
            ConfigurationError: If VAPID settings are missing or the display
                                timezone is unknown (before any I/O)
            KeyImportError: If the VAPID keys are malformed (before any I/O)
        """
        signer = self.build_signer()

        now = now or utcnow()
        summary = DispatchSummary(run_id=uuid.uuid4().hex)
        logger.info("Dispatch run started", extra={"run_id": summary.run_id, "now": now.isoformat()})

        event_source = self.event_source
        owns_source = event_source is None
        if owns_source:
            event_source = build_event_source(self.settings)

        transport = self._build_transport(signer)

        expired: Set[str] = set()
        delivered: Set[str] = set()
        try:
            targets = [PushTarget.from_subscription(s) for s in self.subscriptions.list_subscriptions()]

            if not targets:
                logger.info("No push subscriptions", extra={"run_id": summary.run_id})
            elif event_source is None:
                logger.info("No calendar source configured; skipping calendar reminders")
            else:
                self._dispatch_calendar(summary, transport, event_source, targets, now, expired, delivered)

            self._dispatch_backlog(summary, transport, targets, now, expired, delivered)

            summary.subscriptions_removed = self.subscriptions.remove_expired(expired)
            self.subscriptions.mark_used(delivered - expired, now=now)
            self.ledger.purge_expired(now=now)
        finally:
            transport.close()
            if owns_source and event_source is not None:
                event_source.close()

        logger.info("Dispatch run completed", extra=summary.to_dict())
        return summary

    # =========================================================================
    # Calendar path
    # =========================================================================

    def _dispatch_calendar(
        self,
        summary: DispatchSummary,
        transport: PushDeliveryService,
        event_source,
        targets: List[PushTarget],
        now: datetime,
        expired: Set[str],
        delivered: Set[str],
    ) -> None:
        by_lead_time: Dict[int, List[PushTarget]] = defaultdict(list)
        for target in targets:
            by_lead_time[target.lead_time_minutes].append(target)

        lookahead = max(
            timedelta(hours=self.settings.lookahead_hours),
            timedelta(minutes=max(by_lead_time)),
        )
        try:
            events: List[CalendarEvent] = event_source.fetch_events(now, now + lookahead)
        except CalendarSourceError as e:
            logger.error(f"Calendar fetch failed: {e}", extra={"run_id": summary.run_id})
            summary.errors.append(f"calendar: {e}")
            return

        for lead_time, group in sorted(by_lead_time.items()):
            for event in match_due_events(now, lead_time, events):
                if self.ledger.is_notified(event.id, lead_time):
                    summary.already_notified += 1
                    continue
                if not self.ledger.try_claim(event.id, lead_time, summary.run_id, now=now):
                    logger.debug(
                        "Reminder reserved by another run",
                        extra={"event_id": event.id, "lead_time_minutes": lead_time},
                    )
                    summary.already_notified += 1
                    continue

                if not self.ledger.renew(event.id, lead_time, summary.run_id):
                    continue

                live = [t for t in group if t.endpoint not in expired]
                payload = build_event_reminder_payload(event, now, self.settings.display_timezone)
                results = self._fan_out(transport, live, payload, now)
                accepted = self._record_results(
                    summary, results, expired, delivered,
                    kind="calendar", event_id=event.id, lead_time_minutes=lead_time,
                )

                if accepted:
                    self.ledger.mark_notified(event.id, lead_time, summary.run_id, now=now)
                    summary.sent += 1
                else:
                    self.ledger.release(event.id, lead_time, summary.run_id)
                    summary.failed += 1

    # =========================================================================
    # Backlog path
    # =========================================================================

    def _dispatch_backlog(
        self,
        summary: DispatchSummary,
        transport: PushDeliveryService,
        targets: List[PushTarget],
        now: datetime,
        expired: Set[str],
        delivered: Set[str],
    ) -> None:
        claimed = self.claims.claim_due(summary.run_id, now=now)
        if not claimed:
            return

        rows, duplicates = self.claims.deduplicate(summary.run_id, claimed, now=now)
        summary.duplicates_skipped += len(duplicates)

        for row in rows:
            why = self.claims.malformed_reason(row)
            if why:
                self.claims.mark_malformed(row, summary.run_id, why, now=now)
                summary.errors.append(f"reminder {row.id}: malformed ({why})")
                continue

            live = [t for t in targets if t.endpoint not in expired]
            if not live:
                self.claims.mark_failed(row, summary.run_id, "No push subscriptions", now=now)
                summary.failed += 1
                continue

            payload = build_client_reminder_payload(
                row,
                self.settings.client_reminder_template,
                self.settings.display_timezone,
            )
            event_id = row.event_id
            if not self.claims.renew_claim(row, summary.run_id):
                continue
            results = self._fan_out(transport, live, payload, now)
            accepted = self._record_results(
                summary, results, expired, delivered,
                kind="backlog", event_id=event_id, reminder_id=row.id,
            )

            if accepted:
                self.claims.mark_sent(row, summary.run_id, now=now)
                summary.sent += 1
            else:
                error = "; ".join(self._describe(r) for r in results if not r.delivered)
                self.claims.mark_failed(row, summary.run_id, error, now=now)
                summary.failed += 1

    # =========================================================================
    # Ad-hoc notifications
    # =========================================================================

    def send_notification(
        self,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> DispatchSummary:
        """
        Broadcast one notification to every subscription.

        Counts are per subscription: ``sent`` is the number of endpoints that
        accepted the push and ``failed`` the number that did not, expired
        endpoints included. Expired endpoints are removed afterwards. The
        ledger and the backlog are not touched.

        Raises:
            ValidationError: If title or body is blank
            ConfigurationError: If the push configuration is missing or invalid
                                (before any I/O)
            KeyImportError: If the VAPID keys are malformed (before any I/O)
        """
        for name, value in (("title", title), ("body", body)):
            if not (value or "").strip():
                raise ValidationError(f"{name} is required", field=name)

        signer = self.build_signer()

        now = now or utcnow()
        summary = DispatchSummary(run_id=uuid.uuid4().hex)
        payload = build_notification_payload(title, body, data)

        expired: Set[str] = set()
        delivered: Set[str] = set()
        with self._build_transport(signer) as transport:
            targets = [PushTarget.from_subscription(s) for s in self.subscriptions.list_subscriptions()]
            results = self._fan_out(transport, targets, payload, now)
            self._record_results(summary, results, expired, delivered, kind="broadcast")

        summary.sent = len(delivered)
        summary.failed = len(results) - len(delivered)
        summary.subscriptions_removed = self.subscriptions.remove_expired(expired)
        self.subscriptions.mark_used(delivered - expired, now=now)

        logger.info(
            "Notification broadcast",
            extra={"run_id": summary.run_id, "subscriptions": len(targets), "title": title[:60]},
        )
        return summary

    # =========================================================================
    # Delivery
    # =========================================================================

    def _fan_out(
        self,
        transport: PushDeliveryService,
        targets: List[PushTarget],
        payload: Dict[str, Any],
        now: datetime,
    ) -> List[DeliveryResult]:
        """Send ``payload`` to every target in parallel."""
        if not targets:
            return []

        # Close the read transaction before network I/O
        self.db.commit()

        results: List[DeliveryResult] = []
        workers = min(self.settings.push_max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="push") as executor:
            futures = {executor.submit(transport.send, target, payload, now): target for target in targets}
            for future in as_completed(futures):
                target = futures[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception(
                        "Unexpected push delivery error",
                        extra={"endpoint": target.endpoint_short},
                    )
                    results.append(DeliveryResult(
                        endpoint=target.endpoint,
                        outcome=DeliveryOutcome.DELIVERY_FAILED,
                        error=f"{type(e).__name__}: {e}",
                    ))
        return results

    @staticmethod
    def _describe(result: DeliveryResult) -> str:
        detail = result.error or result.outcome.value
        if result.status_code is not None:
            detail = f"HTTP {result.status_code} {result.body}".strip()
        return f"{result.endpoint[:60]}: {detail}"

    def _record_results(
        self,
        summary: DispatchSummary,
        results: List[DeliveryResult],
        expired: Set[str],
        delivered: Set[str],
        kind: str,
        **context,
    ) -> bool:
        """Audit every result; return True if any endpoint accepted the push."""
        accepted = False
        for result in results:
            audit_logger.info(
                "push_delivery",
                extra={
                    "run_id": summary.run_id,
                    "kind": kind,
                    "endpoint": result.endpoint[:60],
                    "outcome": result.outcome.value,
                    "status_code": result.status_code,
                    **context,
                },
            )
            if result.delivered:
                accepted = True
                delivered.add(result.endpoint)
            elif result.expired:
                expired.add(result.endpoint)
            else:
                summary.errors.append(self._describe(result))
        return accepted
