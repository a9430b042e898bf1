"""
Email notification transport for Distribution List Sync.

This module sends run reports over SMTP, optionally with the run's log file and
reduced roster attached.
"""

import os
import smtplib
import logging
from email.mime.application import MIMEApplication
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional

logger = logging.getLogger(__name__)


class NotificationFailed(Exception):
    """Exception raised when notification sending fails."""
    pass


def send_email(
    subject: str,
    body: str,
    config: Dict[str, Any],
    attachments: Optional[List[str]] = None
) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary
        attachments: Paths of files to attach; missing files are skipped

    Returns:
        True if the email was sent, False if email notifications are disabled

    Raises:
        NotificationFailed: If the notification is misconfigured or the SMTP exchange fails
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)
    timeout = config.get('timeout', 30)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        raise NotificationFailed("SMTP server not configured")

    if not email_to:
        raise NotificationFailed("No email recipients configured")

    # Ensure email_to is a list
    if isinstance(email_to, str):
        email_to = [email_to]

    msg = _create_message(subject, body, email_from, email_to, attachments or [])

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port, timeout=timeout)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port, timeout=timeout)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

    except (smtplib.SMTPException, OSError) as e:
        raise NotificationFailed(f"Failed to send email notification: {e}")

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def _create_message(subject: str, body: str, email_from: str, email_to: List[str],
                    attachments: List[str]) -> MIMEMultipart:
    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    for path in attachments:
        if not path or not os.path.isfile(path):
            logger.debug(f"Skipping missing attachment: {path}")
            continue
        try:
            with open(path, 'rb') as f:
                part = MIMEApplication(f.read(), Name=os.path.basename(path))
        except OSError as e:
            logger.warning(f"Could not attach {path}: {e}")
            continue
        part['Content-Disposition'] = f'attachment; filename="{os.path.basename(path)}"'
        msg.attach(part)

    return msg


def send_test_email(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    test_subject = f"{config.get('subject', 'Distribution List Sync')}: Configuration Test"
    test_body = """This is a test email from Distribution List Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(config.get('email_to', []) if isinstance(config.get('email_to'), list)
                  else [config.get('email_to') or ''])
    )

    try:
        result = send_email(test_subject, test_body, config)
        if result:
            logger.info("Test notification sent successfully")
        else:
            logger.error("Test notification not sent: email notifications are disabled")
        return result
    except NotificationFailed as e:
        logger.error(f"Test notification failed: {e}")
        return False
