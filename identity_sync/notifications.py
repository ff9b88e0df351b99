"""
Email notification utilities for Directory Identity Sync.

This module sends email notifications for aborted runs, directory connection
failures and, optionally, a summary of every completed run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

FOOTER = "This is an automated message from Directory Identity Sync."


def format_runtime(runtime_seconds: float) -> str:
    """Format a duration as '12.34 seconds' or '3m 4.5s'."""
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for an aborted synchronization run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Directory Identity Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        FOOTER
    ])

    return send_email(f"Directory Identity Sync Alert: {title}", '\n'.join(body_lines), config)


def send_ldap_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    retry_count: int = 0
) -> bool:
    """
    Send notification for directory connection failures.

    Args:
        error_message: LDAP error description
        config: Notification configuration
        retry_count: Number of retries attempted

    Returns:
        True if notification sent successfully
    """
    additional_info = {
        'Component': 'LDAP Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Sync run aborted - no users synchronized'
    }

    return send_failure_notification(
        "LDAP Connection Failed",
        error_message,
        config,
        additional_info
    )


def send_success_summary(outcome: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a completed run.

    Args:
        outcome: Run counters as returned by RunOutcome.as_dict()
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Directory Identity Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        f"  Total runtime: {format_runtime(outcome.get('runtime_seconds', 0))}",
        f"  Users added: {outcome.get('users_added', 0)}",
        f"  Users updated: {outcome.get('users_updated', 0)}",
        f"  Users failed: {outcome.get('users_failed', 0)}",
        f"  LDAP searches: {outcome.get('directory_seconds', 0):.2f}s",
        f"  Identity store actions: {outcome.get('store_seconds', 0):.2f}s",
        "",
        FOOTER
    ]

    return send_email("Directory Identity Sync: Run Completed", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    test_body = """This is a test email from Directory Identity Sync.

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
        ', '.join(recipients)
    )

    result = send_email("Directory Identity Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
