"""
Email notification utilities for Query Group Sync.

This module sends email notifications for setup failures, runs that finished
with failed groups and, optionally, a summary of successful runs.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 10


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

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    server = None
    try:
        logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)

        server.sendmail(email_from, email_to, msg.as_string())

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    finally:
        if server is not None:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError) as e:
                logger.debug(f"Error closing SMTP session: {e}")


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a run that could not start or crashed.

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
        "Query Group Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from Query Group Sync.",
    ])

    return send_email(f"Query Group Sync Alert: {title}", '\n'.join(body_lines), config)


def send_group_errors_notification(failed_groups: List[Dict[str, Any]], config: Dict[str, Any]) -> bool:
    """
    Send notification listing the groups a run could not reconcile.

    Args:
        failed_groups: Per-group result dictionaries with 'group', 'stage' and 'error'
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not failed_groups or not config.get('email_on_failure', True):
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    body_lines = [
        "Query Group Sync Group Error Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failed groups: {len(failed_groups)}",
        "",
        "Error Details:",
    ]
    for i, failure in enumerate(failed_groups[:MAX_LISTED_ERRORS], 1):
        body_lines.append(f"  {i}. {failure.get('group')} ({failure.get('stage')}): {failure.get('error')}")
    if len(failed_groups) > MAX_LISTED_ERRORS:
        body_lines.append(f"  ... and {len(failed_groups) - MAX_LISTED_ERRORS} more groups")

    body_lines.extend([
        "",
        "Other groups were reconciled normally.",
        "",
        "This is an automated message from Query Group Sync.",
    ])

    subject = f"Query Group Sync Alert: {len(failed_groups)} group(s) failed"
    return send_email(subject, '\n'.join(body_lines), config)


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a completed run.

    Args:
        sync_stats: Dictionary containing sync statistics
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    mode = ' (dry run)' if sync_stats.get('dry_run') else ''
    body_lines = [
        "Query Group Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        f"Sync completed successfully{mode}.",
        "",
        "Overall Statistics:",
        f"  Total runtime: {format_runtime(sync_stats.get('runtime_seconds', 0))}",
        f"  Groups processed: {sync_stats.get('groups_processed', 0)}",
        f"  Groups failed: {sync_stats.get('groups_failed', 0)}",
        f"  Users added: {sync_stats.get('total_users_added', 0)}",
        f"  Users removed: {sync_stats.get('total_users_removed', 0)}",
        f"  Failed changes: {sync_stats.get('total_failed_changes', 0)}",
        "",
    ]

    group_details = sync_stats.get('group_details', {})
    if group_details:
        body_lines.append("Group Details:")
        for group_name, details in group_details.items():
            body_lines.append(
                f"  {group_name}: +{details.get('added', 0)} -{details.get('removed', 0)} "
                f"in {details.get('elapsed_seconds', 0):.2f}s"
            )
        body_lines.append("")

    body_lines.append("This is an automated message from Query Group Sync.")

    return send_email("Query Group Sync: Successful Completion", '\n'.join(body_lines), config)
