import typer

from vexgraph.__version__ import __version__
from vexgraph.commands import db
from vexgraph.commands import ingest
from vexgraph.commands import resolve
from vexgraph.core.logging import setup_logging

app = typer.Typer(
    help='vexgraph: correlate SBOM packages with advisory statements.',
    no_args_is_help=True,
    pretty_exceptions_show_locals=False,
)

app.add_typer(db.app, name='db')
app.add_typer(ingest.app, name='ingest')
app.command(name='resolve')(resolve.main)


def print_version(value: bool):
    if value:
        typer.echo(f'vexgraph {__version__}')
        raise typer.Exit()


@app.callback()
def main(
    debug: bool = typer.Option(False, '--debug', help='Enable debug logging'),
    version: bool = typer.Option(
        False, '--version', callback=print_version, is_eager=True, help='Show the version and exit',
    ),
):
    """
    vexgraph CLI - ingest CSAF, CVE and SPDX documents and resolve package status.
    """
    level = 'DEBUG' if debug else 'INFO'
    setup_logging(level=level)


if __name__ == '__main__':
    app()
