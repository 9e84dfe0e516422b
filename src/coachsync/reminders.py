"""Appointment reminder scheduling and delivery."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Set, Tuple
from uuid import UUID

import pytz

from .config import Settings
from .database import DatabaseManager, ScheduledReminderDB, utc_now
from .models import (
    AppointmentDetails, ReminderPayload, ReminderSweepResult, ReminderType,
    ScheduledReminder, SessionDetails
)
from .notifications import (
    APPOINTMENT_REMINDER, URGENT_SESSION_REMINDER, EmailSender, MessageSender
)
from .timezones import format_display_date, format_display_time

logger = logging.getLogger(__name__)

# Sessions closer than this get reminders sent right away
IMMEDIATE_WINDOW = timedelta(hours=1)


def hours_text(hours: int) -> str:
    return "1 hour" if hours == 1 else f"{hours} hours"


def minutes_until(starts_at: datetime, now: datetime) -> int:
    return max(1, round((starts_at - now).total_seconds() / 60))


class ReminderScheduler:
    """Plans reminder rows for sessions and dispatches them when due."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        email_sender: EmailSender,
        message_sender: MessageSender
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.email_sender = email_sender
        self.message_sender = message_sender
        self.logger = logger.getChild('reminders')

    def _lead_times(self) -> List[Tuple[ReminderType, int]]:
        lead_times = []
        if self.settings.email_reminders_enabled:
            lead_times.extend((ReminderType.EMAIL, h) for h in self.settings.email_reminder_hours)
        if self.settings.message_reminders_enabled:
            lead_times.extend((ReminderType.MESSAGE, h) for h in self.settings.message_reminder_hours)
        return lead_times

    def _existing_reminders(self, session, session_id: UUID) -> Set[Tuple[str, int]]:
        rows = (
            session.query(ScheduledReminderDB.reminder_type, ScheduledReminderDB.hours_before)
            .filter(
                ScheduledReminderDB.session_id == session_id,
                ScheduledReminderDB.cancelled.is_(False)
            )
            .all()
        )
        return {(reminder_type, hours_before) for reminder_type, hours_before in rows}

    def _has_sent_reminders(self, session, session_id: UUID) -> bool:
        return (
            session.query(ScheduledReminderDB.id)
            .filter(
                ScheduledReminderDB.session_id == session_id,
                ScheduledReminderDB.sent.is_(True)
            )
            .first()
            is not None
        )

    async def schedule_session_reminders(self, session_id: UUID, now: Optional[datetime] = None) -> int:
        """Plan reminders for a session, or send them now if it starts within the hour.

        Safe to call repeatedly: lead times that already have a pending or
        sent reminder are not scheduled again.

        Args:
            session_id: Session to remind about
            now: Current time

        Returns:
            Number of reminder rows created
        """
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            details = self.db_manager.get_session_details(session, session_id)
            if details is None:
                self.logger.warning(f"Session {session_id} not found, no reminders scheduled")
                return 0
            if not details.is_active:
                self.logger.info(f"Session {session_id} is {details.status.value}, no reminders scheduled")
                return 0

            until_start = details.starts_at - now
            if until_start <= timedelta(0):
                return 0

            if until_start <= IMMEDIATE_WINDOW:
                if self._has_sent_reminders(session, session_id):
                    return 0
                immediate = True
            else:
                immediate = False
                existing = self._existing_reminders(session, session_id)
                payload = details.reminder_payload()
                created = 0
                for reminder_type, hours in self._lead_times():
                    scheduled_for = details.starts_at - timedelta(hours=hours)
                    if scheduled_for <= now:
                        continue
                    if (reminder_type.value, hours) in existing:
                        continue
                    session.add(self._new_row(payload, reminder_type, scheduled_for, hours))
                    created += 1
                session.commit()

        if immediate:
            self.logger.info(f"Session {session_id} starts within the hour, sending reminders now")
            return await self._send_immediate(details, now)

        self.logger.info(f"Scheduled {created} reminder(s) for session {session_id}")
        return created

    def _new_row(
        self,
        payload: ReminderPayload,
        reminder_type: ReminderType,
        scheduled_for: datetime,
        hours_before: int
    ) -> ScheduledReminderDB:
        return ScheduledReminderDB(
            session_id=payload.session_id,
            reminder_type=reminder_type.value,
            recipient_id=payload.client_id,
            recipient_email=payload.client_email if reminder_type == ReminderType.EMAIL else None,
            sender_id=payload.coach_id,
            scheduled_for=scheduled_for,
            hours_before=hours_before,
            data=payload.model_dump(mode='json'),
            sent=False,
            cancelled=False,
            failed=False,
            created_at=utc_now(),
        )

    async def _send_immediate(self, details: SessionDetails, now: datetime) -> int:
        """Send urgent reminders on every enabled channel and record the outcome."""
        payload = details.reminder_payload()
        channels = []
        if self.settings.email_reminders_enabled:
            channels.append(ReminderType.EMAIL)
        if self.settings.message_reminders_enabled:
            channels.append(ReminderType.MESSAGE)

        rows = []
        for reminder_type in channels:
            row = self._new_row(payload, reminder_type, now, 0)
            try:
                await self._dispatch(reminder_type, payload, 0, now)
                row.sent = True
                row.sent_at = now
            except Exception as e:
                self.logger.error(f"Immediate {reminder_type.value} reminder for session {details.id} failed: {e}")
                row.failed = True
                row.failure_reason = str(e)
            rows.append(row)

        with self.db_manager.get_session() as session:
            session.add_all(rows)
            session.commit()
        return len(rows)

    async def _dispatch(self, reminder_type: ReminderType, payload: ReminderPayload, hours_before: int, now: datetime) -> None:
        if reminder_type == ReminderType.EMAIL:
            await self._send_email(payload, hours_before, now)
        else:
            await self._send_message(payload, hours_before, now)

    def _appointment_details(self, payload: ReminderPayload) -> AppointmentDetails:
        tz = self.settings.display_timezone
        return AppointmentDetails(
            date=format_display_date(payload.starts_at, tz),
            time=format_display_time(payload.starts_at, tz),
            duration=f"{payload.duration_minutes} minutes",
            type="Video Session",
        )

    async def _send_email(self, payload: ReminderPayload, hours_before: int, now: datetime) -> None:
        if hours_before:
            time_until = f"in {hours_text(hours_before)}"
        else:
            time_until = f"in {minutes_until(payload.starts_at, now)} minutes"
        await self.email_sender.send_session_reminder(
            client_email=payload.client_email,
            coach_email=payload.coach_email,
            client_name=payload.client_name,
            coach_name=payload.coach_name,
            appointment_details=self._appointment_details(payload),
            time_until_session=time_until,
        )

    async def _send_message(self, payload: ReminderPayload, hours_before: int, now: datetime) -> None:
        if hours_before:
            details = self._appointment_details(payload)
            body = (
                f"Hi {payload.client_name}! This is a friendly reminder that we have a coaching session "
                f"scheduled in {hours_text(hours_before)} on {details.date} at {details.time}. "
                "Looking forward to our session together! "
                "If you need to reschedule, please let me know as soon as possible."
            )
            message_type = APPOINTMENT_REMINDER
        else:
            body = (
                f"⏰ URGENT: Hi {payload.client_name}! Your coaching session starts in "
                f"{minutes_until(payload.starts_at, now)} minutes! Please join the session now. "
                f"Looking forward to meeting with you! - {payload.coach_name}"
            )
            message_type = URGENT_SESSION_REMINDER
        await self.message_sender.send_reminder(
            sender_id=payload.coach_id,
            recipient_id=payload.client_id,
            session_id=payload.session_id,
            body=body,
            message_type=message_type,
        )

    async def check_upcoming_sessions(self, now: Optional[datetime] = None) -> int:
        """Send immediate reminders for sessions starting within the hour that got none.

        Returns:
            Number of sessions reminded
        """
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            upcoming = self.db_manager.get_sessions_starting_between(session, now, now + IMMEDIATE_WINDOW)
            pending = [s for s in upcoming if not self._has_sent_reminders(session, s.id)]

        for details in pending:
            try:
                await self._send_immediate(details, now)
            except Exception as e:
                self.logger.error(f"Error sending immediate reminders for session {details.id}: {e}")

        if pending:
            self.logger.info(f"Sent immediate reminders for {len(pending)} upcoming session(s)")
        return len(pending)

    async def process_due_reminders(self, now: Optional[datetime] = None) -> ReminderSweepResult:
        """Dispatch every reminder whose time has come.

        Each reminder is marked sent or failed on its own; one failure never
        stops the batch.
        """
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            rows = (
                session.query(ScheduledReminderDB)
                .filter(
                    ScheduledReminderDB.scheduled_for <= now,
                    ScheduledReminderDB.sent.is_(False),
                    ScheduledReminderDB.cancelled.is_(False),
                    ScheduledReminderDB.failed.is_(False)
                )
                .order_by(ScheduledReminderDB.scheduled_for.asc())
                .all()
            )
            due = [ScheduledReminder.model_validate(row) for row in rows]

        result = ReminderSweepResult()
        for reminder in due:
            result.processed += 1
            try:
                await self._dispatch(reminder.reminder_type, reminder.payload, reminder.hours_before, now)
            except Exception as e:
                self.logger.error(f"Reminder {reminder.id} failed: {e}")
                self._mark(reminder.id, failed=True, failure_reason=str(e))
                result.failed += 1
                continue
            self._mark(reminder.id, sent=True, sent_at=now)
            result.sent += 1

        if due:
            self.logger.info(f"Processed {result.processed} due reminder(s): {result.sent} sent, {result.failed} failed")
        return result

    def _mark(self, reminder_id: UUID, **fields) -> None:
        with self.db_manager.get_session() as session:
            row = session.get(ScheduledReminderDB, reminder_id)
            if row is None:
                return
            for name, value in fields.items():
                setattr(row, name, value)
            session.commit()

    def cancel_session_reminders(self, session_id: UUID, now: Optional[datetime] = None) -> int:
        """Cancel every reminder of a session that has not gone out yet.

        Returns:
            Number of reminders cancelled
        """
        now = now or datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            cancelled = (
                session.query(ScheduledReminderDB)
                .filter(
                    ScheduledReminderDB.session_id == session_id,
                    ScheduledReminderDB.sent.is_(False),
                    ScheduledReminderDB.cancelled.is_(False)
                )
                .update(
                    {ScheduledReminderDB.cancelled: True, ScheduledReminderDB.cancelled_at: now},
                    synchronize_session=False
                )
            )
            session.commit()
        self.logger.info(f"Cancelled {cancelled} reminder(s) for session {session_id}")
        return cancelled

    def cleanup_old_reminders(self, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Delete reminder rows older than the retention period."""
        days = days or self.settings.reminder_retention_days
        cutoff = (now or datetime.now(pytz.UTC)) - timedelta(days=days)
        with self.db_manager.get_session() as session:
            deleted = (
                session.query(ScheduledReminderDB)
                .filter(ScheduledReminderDB.created_at < cutoff)
                .delete(synchronize_session=False)
            )
            session.commit()
        if deleted:
            self.logger.info(f"Deleted {deleted} reminder(s) older than {days} days")
        return deleted

    def get_session_reminders(self, session_id: UUID) -> List[ScheduledReminder]:
        with self.db_manager.get_session() as session:
            rows = (
                session.query(ScheduledReminderDB)
                .filter(ScheduledReminderDB.session_id == session_id)
                .order_by(ScheduledReminderDB.scheduled_for.asc())
                .all()
            )
            return [ScheduledReminder.model_validate(row) for row in rows]
