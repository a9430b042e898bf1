"""
Run reporter.

Builds the end-of-run summary from the RunContext and mails it, with the log file and
reduced roster attached when they exist.
"""

import logging
from typing import Any, Dict, List

from dl_sync.models import RunContext, STATUS_FAILURE, MODE_ROLLBACK
from dl_sync.notifications import send_email

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


def build_report(context: RunContext) -> str:
    """
    Render the run summary as plain text.

    The output depends only on the context, so the same context always renders the
    same report.
    """
    failed = context.status == STATUS_FAILURE
    title = "Distribution List Sync Failure Report" if failed else "Distribution List Sync Report"
    mode = context.mode
    if context.mode == MODE_ROLLBACK and context.rollback_date:
        mode = f"{context.mode} to {context.rollback_date}"
    if context.dry_run:
        mode += " (dry run)"

    lines = [
        title,
        f"Timestamp: {context.started_at.strftime(TIMESTAMP_FORMAT)}",
        f"Mode: {mode}",
        f"Status: {context.status or 'unknown'}",
        "",
        "Input:",
        f"  File: {context.input_file or 'n/a'}",
        f"  Modified: {context.input_mtime.strftime(TIMESTAMP_FORMAT) if context.input_mtime else 'n/a'}",
        f"  Entries: {context.entry_count}",
        "",
        "Group:",
        f"  Name: {context.group_name or 'n/a'}",
        f"  Email: {context.group_mail or 'n/a'}",
        f"  DN: {context.group_dn or 'n/a'}",
    ]
    if context.group_created:
        lines.append("  Created during this run")
    lines.append("")

    lines.append("Attribute Changes:")
    if context.attribute_changes:
        for name in sorted(context.attribute_changes):
            before, after = context.attribute_changes[name]
            lines.append(f"  {name}: {_format_values(before)} -> {_format_values(after)}")
    else:
        lines.append("  None")
    lines.append("")

    lines.extend([
        "Membership:",
        f"  Members added: {len(context.added)}",
        f"  Members removed: {len(context.removed)}",
        f"  Final group size: {context.final_group_size if context.final_group_size is not None else 'n/a'}",
        ""
    ])
    lines.extend(_section("Added", sorted(context.added)))
    lines.extend(_section("Removed", sorted(context.removed)))
    lines.extend(_section(f"Failed Lookups ({len(context.failed_lookups)})", context.failed_lookups, always=True))

    if context.failed_mutations:
        lines.append(f"Failed Membership Changes ({len(context.failed_mutations)}):")
        for action, member, error in context.failed_mutations:
            lines.append(f"  {action} {member}: {error}")
        lines.append("")

    if context.error:
        lines.extend([
            "Error:",
            f"  {context.error}",
            "",
            "Please check the application logs for more detailed information.",
            ""
        ])

    lines.append("This is an automated message from Distribution List Sync.")
    return '\n'.join(lines)


def _section(title: str, items: List[str], always: bool = False) -> List[str]:
    if not items and not always:
        return []
    lines = [f"{title}:"]
    if items:
        lines.extend(f"  {item}" for item in items)
    else:
        lines.append("  None")
    lines.append("")
    return lines


def _format_values(values: List[str]) -> str:
    if not values:
        return '(not set)'
    return ', '.join(values)


class RunReporter:
    """Sends run reports through the configured notification channel."""

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: The ``notifications`` configuration section
        """
        self.config = config or {}

    def should_send(self, context: RunContext) -> bool:
        if not self.config.get('enable_email', False):
            return False
        if context.status == STATUS_FAILURE:
            return self.config.get('email_on_failure', True)
        return self.config.get('email_on_success', True)

    def subject(self, context: RunContext) -> str:
        base = self.config.get('subject', 'Distribution List Sync')
        if context.status == STATUS_FAILURE:
            return f"{base}: FAILED"
        if context.has_failures or context.failed_lookups:
            return f"{base}: completed with warnings"
        return f"{base}: completed"

    def dispatch(self, context: RunContext) -> bool:
        """
        Send the report for ``context``.

        Returns:
            True if a message was sent

        Raises:
            NotificationFailed: If sending fails
        """
        if not self.should_send(context):
            logger.debug("Report notification not enabled for this outcome")
            return False

        attachments = [path for path in (context.log_file, context.reduced_file) if path]
        return send_email(self.subject(context), build_report(context), self.config, attachments)
