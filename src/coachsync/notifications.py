"""Reminder delivery: SMTP email and in-app system messages."""

import asyncio
import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, and_

from .config import Settings
from .database import DatabaseManager, MessageDB, utc_now
from .models import AppointmentDetails

logger = logging.getLogger(__name__)

APPOINTMENT_REMINDER = 'appointment_reminder'
URGENT_SESSION_REMINDER = 'urgent_session_reminder'


class NotificationError(Exception):
    """A reminder could not be delivered."""
    pass


class EmailSender:
    """Sends reminder emails through the configured SMTP server."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.logger = logger.getChild('email')

    @property
    def from_address(self) -> str:
        return f"{self.settings.email_from_name} <{self.settings.email_from}>"

    def _send(self, to: str, subject: str, text: str, html: str) -> None:
        host = self.settings.smtp_host
        if not host:
            raise NotificationError("Email delivery is not configured (SMTP_HOST unset)")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        port = self.settings.smtp_port
        timeout = self.settings.request_timeout_seconds
        if port == 465:
            server = smtplib.SMTP_SSL(host, port, context=ssl.create_default_context(), timeout=timeout)
        else:
            server = smtplib.SMTP(host, port, timeout=timeout)
            if self.settings.smtp_use_tls:
                server.starttls(context=ssl.create_default_context())
        try:
            if self.settings.smtp_username:
                server.login(self.settings.smtp_username, self.settings.smtp_password or '')
            server.sendmail(self.settings.email_from, [to], msg.as_string())
        finally:
            server.quit()

    async def send_email(self, to: str, subject: str, text: str, html: str) -> None:
        """Send one email without blocking the event loop.

        Raises:
            NotificationError: If the message cannot be delivered
        """
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: self._send(to, subject, text, html))
        except NotificationError:
            raise
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP send to {to} failed: {e}") from e
        self.logger.info(f"Email sent to {to}: {subject}")

    async def send_session_reminder(
        self,
        client_email: Optional[str],
        coach_email: Optional[str],
        client_name: str,
        coach_name: str,
        appointment_details: AppointmentDetails,
        time_until_session: str
    ) -> None:
        """Send the session reminder to both participants.

        Raises:
            NotificationError: If neither participant has an address or a send fails
        """
        if not client_email and not coach_email:
            raise NotificationError("No recipient email address for session reminder")

        login_url = f"{self.settings.frontend_url}/login"
        if client_email:
            await self.send_email(
                client_email,
                f"Session Reminder: Your appointment with {coach_name} is approaching",
                *self._render(client_name, coach_name, appointment_details, time_until_session, login_url)
            )
        if coach_email:
            await self.send_email(
                coach_email,
                f"Session Reminder: Your appointment with {client_name} is approaching",
                *self._render(coach_name, client_name, appointment_details, time_until_session, login_url)
            )

    def _render(
        self,
        recipient_name: str,
        other_name: str,
        details: AppointmentDetails,
        time_until_session: str,
        login_url: str
    ):
        text = (
            f"Hi {recipient_name},\n\n"
            f"This is a reminder that your coaching session with {other_name} starts {time_until_session}.\n\n"
            f"Date: {details.date}\n"
            f"Time: {details.time}\n"
            f"Duration: {details.duration}\n"
            f"Type: {details.type}\n\n"
            f"Log in to join your session: {login_url}\n"
        )
        safe = {
            name: html.escape(value, quote=True)
            for name, value in (
                ('recipient', recipient_name),
                ('other', other_name),
                ('when', time_until_session),
                ('date', details.date),
                ('time', details.time),
                ('duration', details.duration),
                ('type', details.type),
                ('login_url', login_url),
            )
        }
        body_html = (
            "<html><body>"
            f"<h2>Session Reminder</h2>"
            f"<p>Hi {safe['recipient']},</p>"
            f"<p>This is a reminder that your coaching session with <strong>{safe['other']}</strong> "
            f"starts <strong>{safe['when']}</strong>.</p>"
            "<ul>"
            f"<li><strong>Date:</strong> {safe['date']}</li>"
            f"<li><strong>Time:</strong> {safe['time']}</li>"
            f"<li><strong>Duration:</strong> {safe['duration']}</li>"
            f"<li><strong>Type:</strong> {safe['type']}</li>"
            "</ul>"
            f'<p><a href="{safe["login_url"]}">Log in to join your session</a></p>'
            "</body></html>"
        )
        return text, body_html


class MessageSender:
    """Writes reminders into the coach/client message thread."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.logger = logger.getChild('messages')

    async def send_reminder(
        self,
        sender_id: UUID,
        recipient_id: UUID,
        session_id: UUID,
        body: str,
        message_type: str = APPOINTMENT_REMINDER
    ) -> UUID:
        """Insert a system reminder message from coach to client.

        Returns:
            ID of the stored message
        """
        with self.db_manager.get_session() as session:
            existing = (
                session.query(MessageDB.id)
                .filter(or_(
                    and_(MessageDB.sender_id == sender_id, MessageDB.recipient_id == recipient_id),
                    and_(MessageDB.sender_id == recipient_id, MessageDB.recipient_id == sender_id)
                ))
                .first()
            )
            if existing is None:
                self.logger.info(f"Reminder starts a new conversation between {sender_id} and {recipient_id}")

            message = MessageDB(
                sender_id=sender_id,
                recipient_id=recipient_id,
                session_id=session_id,
                body=body,
                is_system_message=True,
                system_message_type=message_type,
                created_at=utc_now(),
            )
            session.add(message)
            session.commit()
            self.logger.info(f"Reminder message {message.id} sent to {recipient_id}")
            return message.id
