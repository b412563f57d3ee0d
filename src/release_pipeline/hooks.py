"""Event hooks fired by the pipeline, and the two notifier observers.

The orchestrator knows nothing about notifications. It fires two events:

- job terminal: once per job, after build and publish have finished
  (or failed, or been cancelled), with the JobResult and the trigger
- run terminal: once per run, after every job is terminal, with the RunSummary

JobFailureNotifier subscribes to the first and only speaks up for jobs that
did not succeed. RunSummaryNotifier subscribes to the second and always
reports. Both treat delivery as best-effort: a NotifyError is logged and
dropped, never retried, and never changes a recorded outcome.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from release_pipeline.config import NotificationSettings
from release_pipeline.errors import NotifyError
from release_pipeline.logging_config import get_logger
from release_pipeline.schemas import (
    JobResult,
    JobStatus,
    Notification,
    ReleaseTrigger,
    RunSummary,
)
from release_pipeline.services.slack import NotifierProtocol

logger = get_logger(__name__)

JobHook = Callable[[JobResult, ReleaseTrigger], Awaitable[None]]
RunHook = Callable[[RunSummary], Awaitable[None]]


@dataclass
class PipelineHooks:
    """Observers registered against job-terminal and run-terminal events.

    A hook that raises is logged and skipped; the remaining hooks still run
    and the pipeline never sees the error. Cancellation passes through.
    """

    on_job_terminal: list[JobHook] = field(default_factory=list)
    on_run_terminal: list[RunHook] = field(default_factory=list)

    def add_job_hook(self, hook: JobHook) -> None:
        self.on_job_terminal.append(hook)

    def add_run_hook(self, hook: RunHook) -> None:
        self.on_run_terminal.append(hook)

    async def job_terminal(self, result: JobResult, trigger: ReleaseTrigger) -> None:
        for hook in self.on_job_terminal:
            try:
                await hook(result, trigger)
            except Exception as exc:
                logger.error(
                    "hook_failed",
                    event_name="job_terminal",
                    hook=_hook_name(hook),
                    job=result.job_id,
                    error=str(exc),
                    exc_info=True,
                )

    async def run_terminal(self, summary: RunSummary) -> None:
        for hook in self.on_run_terminal:
            try:
                await hook(summary)
            except Exception as exc:
                logger.error(
                    "hook_failed",
                    event_name="run_terminal",
                    hook=_hook_name(hook),
                    tag=summary.trigger.tag,
                    error=str(exc),
                    exc_info=True,
                )


def _hook_name(hook: object) -> str:
    return getattr(hook, "__qualname__", type(hook).__qualname__)


def _render_title(template: str, trigger: ReleaseTrigger, **extra: str) -> str:
    return template.format(ref=trigger.ref, tag=trigger.tag, **extra)


class JobFailureNotifier:
    """Job-terminal hook: notify the channel about a job that did not succeed."""

    def __init__(self, notifier: NotifierProtocol, settings: NotificationSettings) -> None:
        self._notifier = notifier
        self._settings = settings

    async def __call__(self, result: JobResult, trigger: ReleaseTrigger) -> None:
        if result.outcome == JobStatus.SUCCESS:
            return

        entry = result.entry
        fields = {"Job": result.job_id, "Asset": entry.asset_name, "Tag": trigger.tag}
        if result.error:
            fields["Error"] = result.error

        notification = Notification(
            status=result.outcome,
            username=self._settings.username,
            title=_render_title(
                self._settings.title,
                trigger,
                os=entry.operating_system,
                target=entry.target_triple,
                asset=entry.asset_name,
            ),
            mention=self._settings.mention,
            mention_if=self._settings.mention_if,
            icon_emoji=self._settings.icon_emoji,
            fields=fields,
        )
        await _deliver(self._notifier, notification, job=result.job_id)


class RunSummaryNotifier:
    """Run-terminal hook: report the overall outcome of the run."""

    def __init__(self, notifier: NotifierProtocol, settings: NotificationSettings) -> None:
        self._notifier = notifier
        self._settings = settings

    async def __call__(self, summary: RunSummary) -> None:
        fields = {
            "Tag": summary.trigger.tag,
            "Jobs": f"{len(summary.succeeded)}/{len(summary.results)} succeeded",
        }
        if summary.failed:
            fields["Not succeeded"] = ", ".join(r.job_id for r in summary.failed)

        notification = Notification(
            status=summary.status,
            username=self._settings.username,
            # Per-job placeholders render empty in a run-level title
            title=_render_title(
                self._settings.title, summary.trigger, os="", target="", asset=""
            ),
            mention=self._settings.mention,
            mention_if=self._settings.mention_if,
            icon_emoji=self._settings.icon_emoji,
            fields=fields,
        )
        await _deliver(self._notifier, notification, job="run")


async def _deliver(notifier: NotifierProtocol, notification: Notification, job: str) -> None:
    try:
        await notifier.send(notification)
    except NotifyError as exc:
        logger.warning(
            "notification_failed",
            job=job,
            status=notification.status.value,
            error=str(exc),
        )
