import functools
from collections.abc import Callable
from typing import Any

import structlog
import typer

from vexgraph.core.errors import EmptyDocumentError
from vexgraph.core.errors import TransactionError
from vexgraph.core.errors import VexGraphError
from vexgraph.core.logging import console
logger = structlog.get_logger('cli')


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator to handle exceptions in CLI commands nicely."""
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except EmptyDocumentError as e:
            console.print(f"[bold red]Empty Document:[/] {e}")
            for failure in e.failures:
                console.print(f"  [dim]{failure.item}[/] {failure.kind}: {failure.reason}")
            raise typer.Exit(1)
        except TransactionError as e:
            console.print(f"[bold red]Storage Error:[/] {e}")
            logger.debug('Transaction error', exc_info=True)
            raise typer.Exit(1)
        except (VexGraphError, ValueError) as e:
            console.print(f"[bold red]Validation Error:[/] {e}")
            logger.debug('Validation error', exc_info=True)
            raise typer.Exit(1)
        except KeyboardInterrupt:
            console.print('\n[yellow]Operation cancelled by user.[/]')
            raise typer.Exit(130)
        except Exception as e:
            console.print(f"[bold red]Unexpected Error:[/] {e}")
            logger.exception('Unexpected error')
            raise typer.Exit(1)
    return wrapper
