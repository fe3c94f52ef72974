"""
Utility functions for kubeseq.

Includes logging, retries, duration formatting and console rendering.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from kubeseq.errors import TransientError
from kubeseq.schemas import SequenceRun, ValidationReport


# Global console for pretty output
console = Console()

# Log records go to stderr so stdout stays machine-readable
err_console = Console(stderr=True)

SEVERITY_STYLES = {
    "pass": "[bold green]✓ PASS[/bold green]",
    "warn": "[bold yellow]⚠ WARN[/bold yellow]",
    "fail": "[bold red]✗ FAIL[/bold red]",
}


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for kubeseq commands.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        log_file: Optional path to log file
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("kubeseq")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=err_console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "group"):
            log_data["group"] = record.group
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def retry_with_backoff(
    func: Callable,
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    backoff_multiplier: float = 2.0,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Retry a function with exponential backoff on transient errors.

    Only TransientError is retried; any other exception propagates
    immediately.

    Args:
        func: Function to retry
        max_attempts: Maximum number of attempts
        backoff_seconds: Initial backoff time in seconds
        backoff_multiplier: Multiplier for each retry
        logger: Logger for retry messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of successful function call

    Raises:
        TransientError: If all retries exhausted
    """
    attempt = 1
    wait_time = backoff_seconds

    while True:
        try:
            return func()

        except TransientError as e:
            if attempt >= max_attempts:
                if logger:
                    logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            if logger:
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed: {e}. Retrying in {wait_time:g}s..."
                )

            sleep(wait_time)
            wait_time *= backoff_multiplier
            attempt += 1


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_banner(title: str) -> None:
    """
    Print a banner to console.

    Args:
        title: Banner title
    """
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print info message to console."""
    console.print(f"[bold cyan]ℹ[/bold cyan] {message}")


def render_run(run: SequenceRun) -> Table:
    """Build a table of group outcomes for a finished run."""
    table = Table(title=f"Run {run.run_id[:12]} ({run.plan_name or 'unnamed'})")
    table.add_column("Group", style="bold")
    table.add_column("Result")
    table.add_column("Outcome")
    table.add_column("Duration", justify="right")
    table.add_column("Detail")

    for group in run.groups:
        result = run.results.get(group.name)
        if result is None:
            table.add_row(group.name, "[dim]skipped[/dim]", "-", "-", "")
            continue
        detail = result.detail or ""
        if result.error:
            detail = result.error.get("message", detail)
        table.add_row(
            group.name,
            SEVERITY_STYLES[result.severity],
            result.outcome.value,
            format_duration(result.duration_ms / 1000),
            detail,
        )
    return table


def render_report(report: ValidationReport, title: str = "Validation") -> Table:
    """Build a table of check results."""
    table = Table(title=title)
    table.add_column("Category", style="bold")
    table.add_column("Result")
    table.add_column("Message")
    for check in report.checks:
        table.add_row(check.category, SEVERITY_STYLES[check.severity.value], check.message)
    return table


def print_summary(passed: int, warnings: int, failed: int) -> None:
    """Print pass/warn/fail counts with an overall verdict."""
    console.print(
        f"[green]Passed: {passed}[/green]  "
        f"[yellow]Warnings: {warnings}[/yellow]  "
        f"[red]Failed: {failed}[/red]"
    )
    if failed:
        print_error("Some checks failed")
    elif warnings:
        print_warning("Completed with warnings")
    else:
        print_success("All checks passed")
