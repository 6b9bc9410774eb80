"""
Notification Dispatcher
=======================

Best-effort email notifications for TaskFlow users.

Features:
- SMTP email delivery with STARTTLS
- Welcome, password reset, task reminder and overdue digest templates
- In-memory reminder timers (task due time minus a lead, within a horizon)
- Periodic overdue scan grouped by owner

Sends never fail a request. Everything except the password reset email runs
on an executor and only logs its failures. Reminders live in process memory
and are lost on restart.

Author: jetgause
Created: 2025-12-10
"""

import html
import logging
import smtplib
import threading
from collections import defaultdict
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select

from taskflow_core.database import DatabaseManager, Task, User, utcnow
from taskflow_core.kv_store import InMemoryKeyValueStore, KeyValueStore
from taskflow_core.logging_monitoring import EventCategory, audit_logger

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """SMTP delivery failed or no transport is configured."""


@dataclass
class EmailConfig:
    """SMTP settings."""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    email_from: str = ""
    client_url: str = "http://localhost:3000"
    sender_name: str = "Task Manager"

    @property
    def enabled(self) -> bool:
        return bool(self.smtp_username and self.smtp_password)


# ============================================================================
# EMAIL SERVICE
# ============================================================================

class EmailService:
    """Builds the notification emails and delivers them over SMTP."""

    def __init__(self, config: EmailConfig):
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def send_email(self, to: str, subject: str, html_body: str, text_body: str):
        """
        Send one email.

        Raises:
            EmailDeliveryError: when the transport is not configured or SMTP fails
        """
        if not self.enabled:
            raise EmailDeliveryError("Email transport not configured")

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f'"{self.config.sender_name}" <{self.config.email_from or self.config.smtp_username}>'
        msg['To'] = to
        msg.attach(MIMEText(text_body, 'plain'))
        msg.attach(MIMEText(html_body, 'html'))

        try:
            self._deliver(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email sending failed: {e}")
            raise EmailDeliveryError(str(e)) from e

        logger.info(f"Email '{subject}' sent to {to}")

    def _deliver(self, msg: MIMEMultipart):
        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=30) as server:
            server.starttls()
            server.login(self.config.smtp_username, self.config.smtp_password)
            server.send_message(msg)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def send_welcome_email(self, user: User):
        name = html.escape(user.name)
        html_body = f"""
        <html>
            <body style="font-family: Arial, sans-serif;">
                <h2>Welcome to Task Manager!</h2>
                <p>Hello {name},</p>
                <p>Thank you for joining Task Manager. We're excited to help you stay organized and productive!</p>
            </body>
        </html>
        """
        text_body = (
            f"Welcome to Task Manager! Hello {user.name}, Thank you for joining Task Manager. "
            "We're excited to help you stay organized and productive!"
        )
        self.send_email(user.email, "Welcome to Task Manager!", html_body, text_body)

    def send_password_reset_email(self, user: User, reset_token: str):
        reset_url = f"{self.config.client_url}/reset-password?token={reset_token}"
        html_body = f"""
        <html>
            <body style="font-family: Arial, sans-serif;">
                <h2>Password Reset Request</h2>
                <p>Hello {html.escape(user.name)},</p>
                <p>We received a request to reset your password.</p>
                <p><a href="{html.escape(reset_url)}">Reset your password</a></p>
                <p>This link expires in 1 hour. If you did not request a reset, ignore this email.</p>
            </body>
        </html>
        """
        text_body = (
            f"Password Reset Request. Hello {user.name}, We received a request to reset your "
            f"password. Click this link to reset: {reset_url} This link expires in 1 hour."
        )
        self.send_email(user.email, "Password Reset Request", html_body, text_body)

    def send_task_reminder_email(self, user: User, task: Task):
        due = task.due_date.strftime("%Y-%m-%d %H:%M UTC") if task.due_date else "soon"
        html_body = f"""
        <html>
            <body style="font-family: Arial, sans-serif;">
                <h2>Task Reminder</h2>
                <p>Hello {html.escape(user.name)},</p>
                <p>Your task <strong>{html.escape(task.title)}</strong> is due on {due}.</p>
                <p>Priority: {task.priority}</p>
            </body>
        </html>
        """
        text_body = f"Task Reminder: {task.title}. Hello {user.name}, This is a reminder about your task due on {due}."
        self.send_email(user.email, f"Task Reminder: {task.title}", html_body, text_body)

    def send_task_overdue_email(self, user: User, tasks: List[Task]):
        count = len(tasks)
        rows = "".join(
            f"<li><strong>{html.escape(task.title)}</strong> "
            f"(due {task.due_date.strftime('%Y-%m-%d')}, {task.priority})</li>"
            for task in tasks
        )
        html_body = f"""
        <html>
            <body style="font-family: Arial, sans-serif;">
                <h2>Overdue Tasks Alert</h2>
                <p>Hello {html.escape(user.name)},</p>
                <p>You have {count} overdue task{'s' if count > 1 else ''}:</p>
                <ul>{rows}</ul>
            </body>
        </html>
        """
        text_body = (
            f"Overdue Tasks Alert. Hello {user.name}, You have {count} overdue tasks. "
            "Please review and update them."
        )
        subject = f"You have {count} overdue task{'s' if count > 1 else ''}"
        self.send_email(user.email, subject, html_body, text_body)


# ============================================================================
# DISPATCHER
# ============================================================================

def _audit_failure(label: str, user_id: Optional[str] = None, resource_id: Optional[str] = None, **details):
    audit_logger.log_event(
        EventCategory.NOTIFICATION, label.replace(" ", "_"), "failure",
        user_id=user_id, resource_type="task" if resource_id else None, resource_id=resource_id,
        **details
    )


class NotificationDispatcher:
    """
    Schedules and sends notifications off the request path.

    Nothing runs until ``start()``; ``stop()`` cancels the overdue scan and
    every pending reminder.
    """

    def __init__(
        self,
        db: DatabaseManager,
        email_service: EmailService,
        executor: Optional[Executor] = None,
        lead: timedelta = timedelta(hours=24),
        horizon: timedelta = timedelta(days=7),
        scan_interval: timedelta = timedelta(hours=24),
        enabled: bool = True,
        reminders: Optional[KeyValueStore] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.email_service = email_service
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify")
        self.lead = lead
        self.horizon = horizon
        self.scan_interval = scan_interval
        self.enabled = enabled
        self.reminders = reminders if reminders is not None else InMemoryKeyValueStore()
        self._timer_factory = timer_factory
        self._clock = clock
        self._scan_timer = None
        self._running = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Run the overdue scan now and then every ``scan_interval``."""
        if not self.enabled:
            logger.info("Notifications disabled; overdue checker not started")
            return
        with self._lock:
            if self._running:
                return
            self._running = True
        self.executor.submit(self._guarded, "overdue scan", self.check_overdue_tasks)
        self._schedule_scan()
        logger.info(f"Overdue task checker started (runs every {self.scan_interval})")

    def stop(self):
        with self._lock:
            self._running = False
            if self._scan_timer is not None:
                self._scan_timer.cancel()
                self._scan_timer = None
        for task_id in list(self.reminders.keys()):
            self.cancel_reminder(task_id)
        if self._owns_executor:
            self.executor.shutdown(wait=False)
        logger.info("Notification dispatcher stopped")

    def _schedule_scan(self):
        with self._lock:
            if not self._running:
                return
            timer = self._timer_factory(self.scan_interval.total_seconds(), self._run_scan)
            timer.daemon = True
            self._scan_timer = timer
        timer.start()

    def _run_scan(self):
        self._guarded("overdue scan", self.check_overdue_tasks)
        self._schedule_scan()

    def _guarded(self, label: str, func: Callable, *args):
        try:
            return func(*args)
        except Exception as e:
            logger.error(f"Notification '{label}' failed: {e}", exc_info=True)
            _audit_failure(label, error=str(e))
            return None

    def _submit(self, label: str, func: Callable, *args) -> Optional[Future]:
        if not self.enabled:
            return None
        try:
            return self.executor.submit(self._guarded, label, func, *args)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning(f"Notification '{label}' dropped: {e}")
            return None

    # ------------------------------------------------------------------
    # Account emails
    # ------------------------------------------------------------------

    def send_welcome(self, user: User) -> Optional[Future]:
        """Fire-and-forget welcome email."""
        return self._submit("welcome email", self.email_service.send_welcome_email, user)

    def send_password_reset(self, user: User, token: str) -> bool:
        """
        Send the reset email on the caller's thread.

        Returns False when email is not configured. Delivery errors propagate
        so the caller can discard the stored token.
        """
        if not self.email_service.enabled:
            logger.warning("Password reset requested but email is not configured")
            return False
        self.email_service.send_password_reset_email(user, token)
        return True

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def schedule_reminder(self, task: Task) -> bool:
        """
        Schedule a reminder at ``due_date - lead``.

        Only scheduled when that moment is in the future and no further away
        than the horizon. Any existing reminder for the task is replaced.
        """
        with self._lock:
            self._cancel_locked(task.id)
            if not self.enabled or task.due_date is None or task.is_completed or task.is_deleted:
                return False

            delay = (task.due_date - self.lead - self._clock()).total_seconds()
            if delay <= 0 or delay > self.horizon.total_seconds():
                return False

            timer = self._timer_factory(delay, self._fire_reminder, args=(task.id, task.owner_id))
            timer.daemon = True
            self.reminders.set(task.id, (timer, task.owner_id))
            timer.start()
        logger.debug(f"Reminder for task {task.id} scheduled in {delay:.0f}s")
        return True

    def cancel_reminder(self, task_id: str) -> bool:
        with self._lock:
            return self._cancel_locked(task_id)

    def _cancel_locked(self, task_id: str) -> bool:
        entry = self.reminders.get(task_id)
        if entry is None:
            return False
        self.reminders.delete(task_id)
        entry[0].cancel()
        return True

    def _fire_reminder(self, task_id: str, owner_id: str):
        with self._lock:
            self.reminders.delete(task_id)
        self._submit("task reminder", self.send_task_reminder, task_id, owner_id)

    def active_reminder_count(self, owner_id: Optional[str] = None) -> int:
        with self._lock:
            entries = [self.reminders.get(task_id) for task_id in list(self.reminders.keys())]
        return sum(
            1 for entry in entries
            if entry is not None and (owner_id is None or entry[1] == owner_id)
        )

    def send_task_reminder(self, task_id: str, owner_id: str) -> bool:
        """Email the owner about a task that is still open. Returns True if sent."""
        try:
            with self.db.get_session() as session:
                task = session.get(Task, task_id)
                if task is None or task.is_deleted or task.owner_id != owner_id or task.is_completed:
                    logger.debug(f"Skipping reminder for task {task_id}")
                    return False
                user = session.get(User, owner_id)
                if user is None:
                    return False
                self.email_service.send_task_reminder_email(user, task)
            return True
        except Exception as e:
            logger.error(f"Failed to send task reminder for {task_id}: {e}")
            _audit_failure("task reminder", user_id=owner_id, resource_id=task_id, error=str(e))
            return False

    # ------------------------------------------------------------------
    # Overdue scan
    # ------------------------------------------------------------------

    def check_overdue_tasks(self) -> int:
        """Send one overdue digest per owner. Returns the number of owners notified."""
        now = self._clock()
        notified = 0
        with self.db.get_session() as session:
            overdue = session.execute(
                select(Task)
                .where(
                    Task.due_date < now,
                    Task.is_completed.is_(False),
                    Task.is_deleted.is_(False),
                )
                .order_by(Task.owner_id, Task.due_date)
            ).scalars().all()

            by_owner: Dict[str, List[Task]] = defaultdict(list)
            for task in overdue:
                by_owner[task.owner_id].append(task)

            for owner_id, tasks in by_owner.items():
                user = session.get(User, owner_id)
                if user is None:
                    continue
                try:
                    self.email_service.send_task_overdue_email(user, tasks)
                    notified += 1
                except Exception as e:
                    logger.error(f"Failed to send overdue digest to {owner_id}: {e}")
                    _audit_failure("overdue digest", user_id=owner_id, error=str(e))

        logger.info(f"Overdue scan: {len(overdue)} task(s), {notified} owner(s) notified")
        return notified

    def get_notification_stats(self, owner_id: str) -> Dict[str, int]:
        now = self._clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow = today + timedelta(days=1)
        next_week = today + timedelta(days=7)

        try:
            with self.db.get_session() as session:
                def count(*conditions) -> int:
                    return session.execute(
                        select(func.count()).select_from(Task).where(
                            Task.owner_id == owner_id,
                            Task.is_deleted.is_(False),
                            Task.is_completed.is_(False),
                            *conditions,
                        )
                    ).scalar_one()

                return {
                    "overdue": count(Task.due_date < today),
                    "dueToday": count(Task.due_date >= today, Task.due_date < tomorrow),
                    "dueThisWeek": count(Task.due_date >= tomorrow, Task.due_date < next_week),
                    "scheduledReminders": count(Task.due_date > now),
                    "activeReminderJobs": self.active_reminder_count(owner_id),
                }
        except Exception as e:
            logger.error(f"Failed to get notification stats: {e}")
            return {
                "overdue": 0,
                "dueToday": 0,
                "dueThisWeek": 0,
                "scheduledReminders": 0,
                "activeReminderJobs": 0,
            }
