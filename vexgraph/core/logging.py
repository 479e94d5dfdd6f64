import logging
import os
import sys
from typing import Any

import structlog
from rich.console import Console
from rich.markup import escape

# Central console for rich output
console = Console()

# What an event is about, shown right after the message.
SUBJECT_FIELDS = ('document_id', 'path')

# Ingestion and resolution tallies, summarized as "(2 statements, 1 edges)".
COUNT_FIELDS = (
    'documents', 'unchanged', 'packages', 'vulnerabilities', 'statements',
    'edges', 'pairs', 'indeterminate', 'failures',
)


class RichConsoleRenderer:
    """
    A structlog renderer for the vexgraph console.

    A line reads: timestamp, logger, level and message, then the document or
    file the event concerns. Tallies of ingested records are folded into one
    summary, a skipped item is shown with its failure kind and reason, and
    whatever is left follows as key=value pairs. Values are escaped, so
    bracketed purl qualifiers and vers strings print as they are.
    """

    def __init__(self, console: Console | None = None):
        self._console = console or Console(stderr=True)
        self._level_styles = {
            'debug': 'dim',
            'info': 'green',
            'warning': 'yellow',
            'error': 'bold red',
            'critical': 'bold magenta',
        }

    def __call__(self, logger, name, event_dict):
        custom_style = event_dict.pop('_style', None)

        event = event_dict.pop('event', '')
        log_level = event_dict.pop('level', 'info')
        logger_name = event_dict.pop('logger', 'root')
        timestamp = event_dict.pop('timestamp', '')
        exc_info = event_dict.pop('exc_info', None)
        exception = event_dict.pop('exception', None)
        stack_info = event_dict.pop('stack_info', None)

        parts = []
        if timestamp:
            parts.append(f"[dim]{timestamp}[/dim]")
        if logger_name:
            parts.append(f"[bold]{logger_name}[/bold]")

        level_style = self._level_styles.get(log_level, 'white')
        parts.append(f"[{level_style}]{log_level:<8}[/{level_style}]")
        parts.append(escape(str(event)))

        for section in (subject(event_dict), counts(event_dict), failure(event_dict)):
            if section:
                parts.append(section)

        for key, value in event_dict.items():
            if key == 'error':
                parts.append(f"[cyan]{key}[/cyan]=[red]{escape(str(value))}[/red]")
            else:
                parts.append(f"[cyan]{key}[/cyan]=[green]{escape(repr(value))}[/green]")

        final_msg = ' '.join(parts)

        if exception:
            final_msg += f"\n[red]{escape(str(exception))}[/red]"
        elif exc_info:
            final_msg += f"\n[red]{escape(str(exc_info))}[/red]"

        if stack_info:
            final_msg += f"\n[dim]{escape(str(stack_info))}[/dim]"

        self._console.print(final_msg, style=custom_style, highlight=False)

        # the logger factory would otherwise print an empty line
        raise structlog.DropEvent


def subject(event_dict: dict) -> str | None:
    for key in SUBJECT_FIELDS:
        if key in event_dict:
            return f"[magenta]{escape(str(event_dict.pop(key)))}[/magenta]"
    return None


def counts(event_dict: dict) -> str | None:
    tallies = [
        f"{event_dict.pop(key)} {key}"
        for key in COUNT_FIELDS
        if type(event_dict.get(key)) is int
    ]
    if not tallies:
        return None
    return '[blue](' + ', '.join(tallies) + ')[/blue]'


def failure(event_dict: dict) -> str | None:
    """The skipped item of an 'Item skipped' event, as "item kind: reason"."""
    if 'item' not in event_dict:
        return None
    text = f"[yellow]{escape(str(event_dict.pop('item')))}[/yellow]"
    kind = event_dict.pop('kind', None)
    if kind:
        text += f" [dim]{escape(str(kind))}[/dim]"
    reason = event_dict.pop('reason', None)
    if reason:
        text += f": {escape(str(reason))}"
    return text


def drop_style_processor(logger, method_name, event_dict):
    """Remove the internal '_style' key so it never leaks into JSON logs."""
    event_dict.pop('_style', None)
    return event_dict


def setup_logging(level: str = 'INFO') -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(format='%(message)s', stream=sys.stderr, level=level)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt='iso'),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if os.getenv('VEXGRAPH_ENV') == 'production':
        processors = shared_processors + [
            drop_style_processor,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            RichConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
