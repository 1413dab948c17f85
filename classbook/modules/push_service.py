"""
Push Service Module - Classbook

Fire-and-forget delivery of push notifications. Messages are queued and
delivered by a background daemon thread through a pluggable sender, so the
caller never waits on delivery and never sees a delivery failure.

Features:
- Background queue processing
- Pluggable push senders (logging sender by default)
- HTML email delivery rendered with Jinja2 and sent over SMTP
- Graceful shutdown and queue draining
"""

import logging
import smtplib
import ssl
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from queue import Queue
from typing import Any, Callable, Dict, Optional

from jinja2 import Template


@dataclass
class PushMessage:
    """A push notification waiting for delivery."""
    user_id: str
    title: str
    message: str
    url: str
    email: Optional[str] = None
    created_at: str = ''


class LoggingPushSender:
    """Default sender: records the push in the application log."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def __call__(self, push: PushMessage) -> None:
        self.logger.info(f"Push to {push.user_id}: {push.title} ({push.url})")


EMAIL_TEMPLATE = """
<html>
<body style="font-family: Arial, sans-serif;">
    <h2 style="color: #4f46e5;">{{ push.title }}</h2>

    <p>{{ push.message }}</p>
    {% if push.url %}
    <p><a href="{{ base_url }}{{ push.url }}">Open in {{ system_name }}</a></p>
    {% endif %}

    <hr>
    <p style="color: #6c757d; font-size: 12px;">
        Sent by {{ system_name }} on {{ push.created_at }}
    </p>
</body>
</html>
"""


class EmailSender:
    """Sends a notification by email using the configured SMTP server."""

    def __init__(self, email_config: Dict[str, Any], system_name: str = 'Classbook', base_url: str = ''):
        self.logger = logging.getLogger(__name__)
        self.email_config = email_config
        self.system_name = system_name
        self.base_url = base_url
        self.template = Template(EMAIL_TEMPLATE)

    def is_configured(self) -> bool:
        """Check if email configuration is complete."""
        return all([
            self.email_config.get('username'),
            self.email_config.get('password'),
            self.email_config.get('smtp_server')
        ])

    def render(self, push: PushMessage) -> str:
        return self.template.render(
            push=asdict(push),
            system_name=self.system_name,
            base_url=self.base_url
        )

    def send(self, push: PushMessage) -> bool:
        """
        Send one notification email.

        Returns:
            bool: True if the message was handed to the SMTP server
        """
        if not push.email:
            return False
        if not self.is_configured():
            self.logger.warning("Email not configured, skipping email notification")
            return False

        try:
            msg = MIMEMultipart()
            msg['From'] = self.email_config.get('sender') or self.email_config['username']
            msg['To'] = push.email
            msg['Subject'] = f"{self.system_name} - {push.title}"
            msg.attach(MIMEText(self.render(push), 'html'))

            with smtplib.SMTP(self.email_config['smtp_server'], self.email_config.get('smtp_port', 587)) as server:
                if self.email_config.get('use_tls', True):
                    server.starttls(context=ssl.create_default_context())
                server.login(self.email_config['username'], self.email_config['password'])
                server.send_message(msg)

            self.logger.info(f"Email notification sent to {push.email}")
            return True

        except Exception as e:
            self.logger.error(f"Failed to send email notification: {str(e)}")
            return False


class PushDispatcher:
    """
    Queue of outgoing push notifications processed on a daemon thread.

    send_push() returns immediately. Sender exceptions are logged and the
    message is dropped.
    """

    def __init__(self, sender: Optional[Callable[[PushMessage], None]] = None,
                 email_sender: Optional[EmailSender] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.logger = logging.getLogger(__name__)
        self.sender = sender or LoggingPushSender()
        self.email_sender = email_sender
        self.clock = clock or datetime.now
        self.queue: Queue = Queue()

        self.worker = threading.Thread(target=self._process_queue, daemon=True)
        self.worker.start()

    def send_push(self, user_id: str, title: str, message: str, url: str,
                  email: Optional[str] = None) -> None:
        """Queue a push notification for background delivery."""
        self.queue.put(PushMessage(
            user_id=user_id,
            title=title,
            message=message,
            url=url,
            email=email,
            created_at=self.clock().isoformat()
        ))

    def _process_queue(self) -> None:
        while True:
            push = self.queue.get()
            try:
                if push is None:
                    break
                self._deliver(push)
            finally:
                self.queue.task_done()

    def _deliver(self, push: PushMessage) -> None:
        try:
            self.sender(push)
        except Exception as e:
            self.logger.error(f"Push delivery to {push.user_id} failed: {str(e)}")

        if push.email and self.email_sender is not None:
            self.email_sender.send(push)

    def flush(self) -> None:
        """Block until every queued message has been processed."""
        self.queue.join()

    def shutdown(self, timeout: float = 5) -> None:
        """Stop the worker after the queued messages are delivered."""
        self.queue.put(None)
        if self.worker.is_alive():
            self.worker.join(timeout=timeout)
        self.logger.info("Push dispatcher shut down")
