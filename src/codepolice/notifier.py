from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
import html
import logging
import os
import smtplib

from codepolice.config import EmailConfig
from codepolice.errors import (
    CodePoliceError,
    ConflictError,
    FatalExternalError,
    TransientExternalError,
)
from codepolice.fix_planner import natural_issue_key
from codepolice.models import (
    AnalysisReport,
    FixPlan,
    Job,
    NotificationOutcome,
    NotificationResult,
    PullRequestRef,
)
from codepolice.observability import log_event, log_warning
from codepolice.retry import RetryExecutor
from codepolice.state import StateStore


LOGGER = logging.getLogger("codepolice.notifier")


@dataclass(frozen=True)
class EmailContent:
    to: str
    subject: str
    html: str
    text: str


class EmailSender(ABC):
    @abstractmethod
    def send(self, message: EmailContent) -> None:
        """Deliver one message or raise a classified external error."""


class SmtpEmailSender(EmailSender):
    def __init__(self, config: EmailConfig, *, timeout_seconds: float) -> None:
        if not config.smtp_host or not config.sender:
            raise ValueError("SMTP delivery needs email.smtp_host and email.sender")
        self._config = config
        self._timeout_seconds = timeout_seconds

    def send(self, message: EmailContent) -> None:
        mail = EmailMessage()
        mail["From"] = self._config.sender
        mail["To"] = message.to
        mail["Subject"] = message.subject
        mail.set_content(message.text)
        mail.add_alternative(message.html, subtype="html")
        try:
            with smtplib.SMTP(
                self._config.smtp_host or "",
                self._config.smtp_port,
                timeout=self._timeout_seconds,
            ) as client:
                if self._config.use_starttls:
                    client.starttls()
                if self._config.username:
                    client.login(self._config.username, self._password())
                client.send_message(mail)
        except smtplib.SMTPRecipientsRefused as exc:
            raise FatalExternalError(f"SMTP refused recipients: {exc.recipients}") from exc
        except smtplib.SMTPResponseException as exc:
            if 400 <= exc.smtp_code < 500:
                raise TransientExternalError(
                    f"SMTP {exc.smtp_code}: {exc.smtp_error!r}", status_code=exc.smtp_code
                ) from exc
            raise FatalExternalError(
                f"SMTP {exc.smtp_code}: {exc.smtp_error!r}", status_code=exc.smtp_code
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientExternalError(f"SMTP delivery failed: {exc}") from exc

    def _password(self) -> str:
        if not self._config.password_env:
            return ""
        value = os.environ.get(self._config.password_env)
        if value is None:
            raise FatalExternalError(f"Environment variable {self._config.password_env} is not set")
        return value


class LogEmailSender(EmailSender):
    """Used when email is disabled: the message is written to the event log instead."""

    def send(self, message: EmailContent) -> None:
        log_event(
            LOGGER,
            "notification_logged",
            to=message.to,
            subject=message.subject,
            body_chars=len(message.text),
        )


def resolve_outcome(
    report: AnalysisReport | None,
    *,
    conflict: ConflictError | None = None,
    failed: bool = False,
) -> NotificationOutcome:
    if failed:
        return "job-failed"
    if conflict is not None:
        return "publish-conflict"
    if report is None or not report.issues:
        return "zero-issues"
    return "issues-found"


def render_notification(
    *,
    job: Job,
    to: str,
    repo_full_name: str,
    outcome: NotificationOutcome,
    report: AnalysisReport | None,
    plan: FixPlan | None = None,
    pr: PullRequestRef | None = None,
    conflict: ConflictError | None = None,
) -> EmailContent:
    short_sha = job.head_sha[:12]
    if outcome == "zero-issues":
        subject = f"[Code Police] {repo_full_name}@{job.branch}: no issues found"
        lines = [f"Analysis of {short_sha} on {job.branch} found no issues."]
    elif outcome == "publish-conflict":
        subject = f"[Code Police] {repo_full_name}@{job.branch}: fixes need a manual merge"
        lines = [
            f"Fixes for {short_sha} could not be published because {job.branch} moved on.",
        ]
        if conflict is not None:
            lines.extend(
                [
                    f"Conflicting file: {conflict.file_path or '(branch history rewritten)'}",
                    f"Base head: {conflict.base_sha}",
                    f"Analyzed head: {conflict.head_sha}",
                    f"Detail: {conflict.detail}",
                ]
            )
    elif outcome == "job-failed":
        subject = f"[Code Police] {repo_full_name}@{job.branch}: review failed"
        lines = [
            f"Review of {short_sha} on {job.branch} failed after {job.retry_count} attempts.",
            f"Error: {job.error_message or 'unknown'}",
        ]
    else:
        count = len(report.issues) if report is not None else 0
        noun = "issue" if count == 1 else "issues"
        subject = f"[Code Police] {repo_full_name}@{job.branch}: {count} {noun} found"
        lines = [f"Analysis of {short_sha} on {job.branch} found {count} {noun}."]
        if pr is not None:
            lines.append(f"Pull request with fixes: {pr.html_url}")

    if report is not None:
        lines.extend(["", report.summary])
        if report.issues:
            applied = set(plan.applied_issue_ids) if plan is not None else set()
            lines.append("")
            for issue in sorted(report.issues, key=lambda item: natural_issue_key(item.id)):
                marker = "fixed" if issue.id in applied else ("fixable" if issue.fixable else "manual")
                lines.append(
                    f"- {issue.id} [{issue.severity}/{issue.type}] {issue.file}:{issue.line} "
                    f"({marker}) {' '.join(issue.description.split())}"
                )
    text = "\n".join(lines)
    return EmailContent(
        to=to,
        subject=subject,
        html=f"<pre>{html.escape(text)}</pre>",
        text=text,
    )


class NotificationDispatcher:
    """Sends at most one email per job; delivery failure never fails the job."""

    def __init__(
        self,
        *,
        sender: EmailSender,
        state: StateStore,
        retry: RetryExecutor,
    ) -> None:
        self._sender = sender
        self._state = state
        self._retry = retry

    def notify(
        self,
        job: Job,
        *,
        to: str,
        repo_full_name: str,
        report: AnalysisReport | None,
        outcome: NotificationOutcome,
        plan: FixPlan | None = None,
        pr: PullRequestRef | None = None,
        conflict: ConflictError | None = None,
    ) -> NotificationResult:
        key = f"notify:{job.id}"
        existing = self._state.get_effect(job.id, key)
        if existing is not None:
            log_event(LOGGER, "notification_reused", outcome=existing.result_ref)
            return NotificationResult(
                job_id=job.id,
                outcome=_stored_outcome(existing.result_ref, fallback=outcome),
                delivered=True,
                reused=True,
            )

        if outcome == "issues-found" and (report is None or not report.issues):
            outcome = "zero-issues"
        message = render_notification(
            job=job,
            to=to,
            repo_full_name=repo_full_name,
            outcome=outcome,
            report=report,
            plan=plan,
            pr=pr,
            conflict=conflict,
        )
        try:
            self._retry.call("email.send", lambda: self._sender.send(message))
        except CodePoliceError as exc:
            log_warning(
                LOGGER,
                "notification_failed",
                outcome=outcome,
                error_type=type(exc).__name__,
            )
            return NotificationResult(
                job_id=job.id, outcome=outcome, delivered=False, error=str(exc)
            )

        record, inserted = self._state.record_effect(job.id, key, outcome)
        if inserted:
            log_event(LOGGER, "notification_sent", outcome=outcome, to=to)
        return NotificationResult(
            job_id=job.id,
            outcome=_stored_outcome(record.result_ref, fallback=outcome),
            delivered=True,
            reused=not inserted,
        )


def _stored_outcome(raw: str | None, *, fallback: NotificationOutcome) -> NotificationOutcome:
    if raw == "issues-found":
        return "issues-found"
    if raw == "zero-issues":
        return "zero-issues"
    if raw == "publish-conflict":
        return "publish-conflict"
    if raw == "job-failed":
        return "job-failed"
    return fallback
