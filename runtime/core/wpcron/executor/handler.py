"""Task handler invocation for a single validated site.

The handler is an opaque external program. The runner only observes its exit
status and elapsed time; output is discarded. Each handler runs in its own
session so a timeout or cancellation can signal the whole process group
(``sudo`` plus the PHP child it spawns).
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Callable

from wpcron.config.settings import HandlerConfig
from wpcron.registry.records import JobOutcome, JobStatus, Method, SiteRecord

logger = logging.getLogger(__name__)

CommandBuilder = Callable[[SiteRecord], list[str]]


class SudoCommandBuilder:
    """Builds the privilege-dropping command line for each invocation method."""

    def __init__(self, config: HandlerConfig, *, direct_entry: str = "wp-cron.php"):
        self._config = config
        self._direct_entry = direct_entry

    def __call__(self, record: SiteRecord) -> list[str]:
        cfg = self._config
        if record.method is Method.WP_CLI:
            return [
                cfg.sudo_bin, "-u", record.owner, "-H", "--preserve-env=PATH",
                cfg.php_bin, cfg.wp_cli_bin, f"--path={record.path}",
                "cron", "event", "run", "--all", "--skip-plugins", "--skip-themes",
            ]
        if record.method is Method.PHP_DIRECT:
            return [
                cfg.sudo_bin, "-u", record.owner, "-H",
                cfg.php_bin, os.path.join(record.path, self._direct_entry),
            ]
        raise ValueError(f"Unhandled method: {record.method!r}")


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        # Already reaped between the wait and the signal.
        pass


class TaskHandler:
    def __init__(
        self,
        command_builder: CommandBuilder,
        *,
        timeout_seconds: float = 300,
        kill_grace_seconds: float = 5,
    ):
        self._build = command_builder
        self._timeout = timeout_seconds
        self._grace = kill_grace_seconds

    async def run(self, record: SiteRecord, cancel: asyncio.Event) -> JobOutcome:
        argv = self._build(record)
        start = time.monotonic()

        def _outcome(status: JobStatus, detail: str, exit_code: int | None = None) -> JobOutcome:
            return JobOutcome.for_record(
                record,
                status,
                duration_seconds=round(time.monotonic() - start, 3),
                detail=detail,
                exit_code=exit_code,
            )

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            return _outcome(JobStatus.FAILURE, f"failed to start handler: {e}")

        logger.debug("job_started", extra={"event": "job_started", "path": record.path, "owner": record.owner})

        exited = asyncio.ensure_future(proc.wait())
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({exited, cancelled}, timeout=self._timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._terminate(proc, exited)
            raise
        finally:
            cancelled.cancel()

        if exited.done():
            rc = exited.result()
            if rc == 0:
                return _outcome(JobStatus.SUCCESS, "", exit_code=rc)
            return _outcome(JobStatus.FAILURE, f"{record.method.value} exited with status {rc}", exit_code=rc)

        detail = "cancelled" if cancel.is_set() else f"timeout after {self._timeout:g}s"
        await self._terminate(proc, exited)
        return _outcome(JobStatus.FAILURE, detail, exit_code=proc.returncode)

    async def _terminate(self, proc: asyncio.subprocess.Process, exited: asyncio.Future) -> None:
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(exited), timeout=self._grace)
        except asyncio.TimeoutError:
            _signal_group(proc, signal.SIGKILL)
            await exited
