"""Entry point for one cron run across every registered site.

Invoked by a system timer every few minutes. Exit codes:
- 0: run completed, even if some sites failed or were blocked
- 1: a precondition failed (config, registry trust, identity); nothing ran
- 130: interrupted by SIGTERM/SIGINT; in-flight handlers were terminated
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.config
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

import yaml

from wpcron.config.logging import ConsoleFormatter
from wpcron.config.settings import RunnerConfig, default_config_paths, load_runner_config
from wpcron.errors import ConfigError, IdentityError, RunnerConfigError
from wpcron.evaluator.aggregator import OutcomeAggregator, RunSummary
from wpcron.executor.handler import SudoCommandBuilder, TaskHandler
from wpcron.executor.policy import PolicyValidator, gate_records
from wpcron.monitor.resources import ResourceMonitor
from wpcron.registry.loader import load_registry
from wpcron.scheduler.runner import DispatchScheduler, Handler, Monitor
from wpcron.utils import current_user

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PRECONDITION_FAILED = 1
EXIT_INTERRUPTED = 130


def _bootstrap_logging() -> None:
    # Until logging.yaml is applied, errors still need to reach the operator.
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ConsoleFormatter())
    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)


def _load_logging_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise RunnerConfigError(f"Missing required logging config file: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise RunnerConfigError(f"Failed to parse YAML: {path}: {e}") from e
    if not isinstance(raw, dict):
        raise RunnerConfigError(f"Invalid logging config YAML root object: {path}")
    return raw


def _apply_logging_config(logging_config_path: Path) -> None:
    cfg = _load_logging_config(logging_config_path)
    try:
        logging.config.dictConfig(cfg)
    except ValueError as e:
        # dictConfig wraps handler construction errors, e.g. a missing /dev/log.
        raise RunnerConfigError(f"Invalid logging config {logging_config_path}: {e}") from e


def verify_identity(expected: str, *, whoami: Callable[[], str] = current_user) -> None:
    current = whoami()
    if current != expected:
        raise IdentityError(current=current, expected=expected)


@contextmanager
def _cancel_on_termination(cancel: asyncio.Event) -> Iterator[None]:
    """Route SIGTERM/SIGINT to the cancel event for as long as the run lasts."""
    loop = asyncio.get_running_loop()

    def _on_signal(signum: int) -> None:
        if not cancel.is_set():
            logger.info(
                "Received termination signal, cleaning up...",
                extra={"event": "termination_signal", "reason": signal.Signals(signum).name},
            )
        cancel.set()

    signals = (signal.SIGTERM, signal.SIGINT)
    for signum in signals:
        loop.add_signal_handler(signum, _on_signal, signum)
    try:
        yield
    finally:
        for signum in signals:
            loop.remove_signal_handler(signum)


async def _run(
    config: RunnerConfig,
    *,
    validator: PolicyValidator | None,
    handler: Handler | None,
    monitor: Monitor | None,
    dry_run: bool,
    whoami: Callable[[], str],
) -> RunSummary:
    cancel = asyncio.Event()
    with _cancel_on_termination(cancel):
        verify_identity(config.runner.run_as, whoami=whoami)

        # Filesystem and passwd lookups run off the loop so a signal is handled while they block.
        loaded = await asyncio.to_thread(
            load_registry,
            config.runner.registry_path,
            trusted_owner=config.runner.trusted_owner,
            max_entries=config.runner.max_entries,
        )
        aggregator = OutcomeAggregator(config.aggregator)

        if loaded.total == 0:
            logger.info("No sites found in registry", extra={"event": "no_sites", "path": str(config.runner.registry_path)})
            return aggregator.summarize(0, interrupted=cancel.is_set())

        logger.info(
            f"Starting cron run for {loaded.total} sites "
            f"(max parallel: {config.scheduler.max_parallel}, CPU threshold: {config.monitor.cpu_threshold_percent:g}%)",
            extra={
                "event": "run_started",
                "total": loaded.total,
                "max_parallel": config.scheduler.max_parallel,
                "cpu_threshold": config.monitor.cpu_threshold_percent,
            },
        )

        aggregator.record_all(loaded.invalid)
        gate = await asyncio.to_thread(gate_records, loaded.records, validator or PolicyValidator(config.security))
        aggregator.record_all(gate.blocked)

        if dry_run:
            for record in gate.admitted:
                logger.info(
                    f"DRY RUN: would run {record.path} ({record.method.value}, user: {record.owner})",
                    extra={"event": "dry_run_admitted", "path": record.path, "owner": record.owner, "method": record.method.value},
                )
            return aggregator.summarize(loaded.total, interrupted=cancel.is_set())

        scheduler = DispatchScheduler(
            config=config.scheduler,
            handler=handler
            or TaskHandler(
                SudoCommandBuilder(config.handler, direct_entry=config.security.direct_entry),
                timeout_seconds=config.scheduler.job_timeout_seconds,
                kill_grace_seconds=config.scheduler.kill_grace_seconds,
            ),
            monitor=monitor or ResourceMonitor(config.monitor),
            on_outcome=aggregator.record,
        )
        # An already-set cancel event admits nothing.
        await scheduler.run(gate.admitted, cancel)
        return aggregator.summarize(loaded.total, interrupted=cancel.is_set())


def execute_run(
    config: RunnerConfig,
    *,
    validator: PolicyValidator | None = None,
    handler: Handler | None = None,
    monitor: Monitor | None = None,
    dry_run: bool = False,
    whoami: Callable[[], str] = current_user,
) -> RunSummary:
    """Load, gate, dispatch and summarize one run. Raises ConfigError before anything is launched.

    SIGTERM/SIGINT are handled from the identity check onwards; a signal before
    dispatch means nothing is launched and the summary is marked interrupted.
    """
    return asyncio.run(
        _run(config, validator=validator, handler=handler, monitor=monitor, dry_run=dry_run, whoami=whoami)
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wp-cron-runner",
        description="Run WordPress scheduled tasks for every site in the registry.",
    )
    parser.add_argument("--config", type=Path, default=None, help="runner.yaml (default: $WPCRON_RUNNER_CONFIG)")
    parser.add_argument(
        "--logging-config", type=Path, default=None, help="logging.yaml (default: $WPCRON_LOGGING_CONFIG)"
    )
    parser.add_argument("--dry-run", action="store_true", help="validate the registry without running any handler")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    default_runner, default_logging = default_config_paths()

    _bootstrap_logging()
    try:
        config = load_runner_config(args.config or default_runner)
        _apply_logging_config(args.logging_config or default_logging)
        summary = execute_run(config, dry_run=args.dry_run)
    except ConfigError as e:
        logger.error(f"ERROR: {e}", extra={"event": "run_aborted", "reason": type(e).__name__})
        return EXIT_PRECONDITION_FAILED

    return EXIT_INTERRUPTED if summary.interrupted else EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
