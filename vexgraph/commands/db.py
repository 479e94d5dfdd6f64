import dotenv
import structlog
import typer
from rich.table import Table

from vexgraph.core.clickhouse import check_clickhouse_connection
from vexgraph.core.container import Container
from vexgraph.core.container import get_container
from vexgraph.core.decorators import handle_errors
from vexgraph.core.logging import console

logger = structlog.get_logger('db_command')
app = typer.Typer(help='Database operations')

dotenv.load_dotenv()


def check_backend(container: Container, require_tables: bool = True) -> None:
    """Fail early with a helpful message when ClickHouse is unreachable."""
    if container.config.backend == 'clickhouse':
        check_clickhouse_connection(
            container.config.clickhouse,
            console=console,
            require_tables=require_tables,
        )


@app.command()
@handle_errors
def init(
    reset: bool = typer.Option(False, '--reset', help='Drop and recreate all tables (destructive)'),
):
    """Create the graph tables if they do not exist."""
    container = get_container()
    check_backend(container, require_tables=False)
    repository = container.get_repository()
    if reset:
        repository.reset_schema()
    else:
        repository.ensure_schema()
    logger.info('Schema ready', backend=container.config.backend, reset=reset)
    console.print(f'[green]Schema ready[/] ({container.config.backend} backend)')


@app.command()
@handle_errors
def status():
    """Show database statistics."""
    container = get_container()
    check_backend(container)
    stats = container.get_repository().get_stats()

    overview = Table(title='Graph Statistics')
    overview.add_column('Table', style='cyan')
    overview.add_column('Rows', style='magenta', justify='right')
    for k, v in stats.items():
        overview.add_row(k.replace('_', ' ').title(), f'{v:,}')
    console.print(overview)
