"""Configuration management for vexgraph."""
import os
from dataclasses import dataclass
from dataclasses import field
from typing import Literal

from sqlalchemy.engine import make_url

Backend = Literal['sql', 'clickhouse']


@dataclass
class SqlConfig:
    """SQLAlchemy database configuration (SQLite or PostgreSQL)."""
    url: str = field(
        default_factory=lambda: os.getenv(
            'VEXGRAPH_DATABASE_URL', 'sqlite:///vexgraph.db',
        ),
    )
    echo: bool = False

    def __repr__(self) -> str:
        masked = make_url(self.url).render_as_string(hide_password=True)
        return f"SqlConfig(url={masked!r}, echo={self.echo!r})"


@dataclass
class DatabaseConfig:
    """ClickHouse connection configuration."""
    host: str = field(
        default_factory=lambda: os.getenv(
            'CLICKHOUSE_HOST', 'localhost',
        ),
    )
    port: int = field(
        default_factory=lambda: int(
            os.getenv('CLICKHOUSE_PORT', '8123'),
        ),
    )
    user: str = field(
        default_factory=lambda: os.getenv('CLICKHOUSE_USER', 'default'),
    )
    password: str = field(
        default_factory=lambda: os.getenv('CLICKHOUSE_PASSWORD', ''),
    )
    database: str = field(
        default_factory=lambda: os.getenv(
            'CLICKHOUSE_DB', 'vexgraph',
        ),
    )

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(host={self.host!r}, port={self.port!r}, "
            f"user={self.user!r}, password='*****', database={self.database!r})"
        )

    def get_connection_params(self) -> dict:
        return {
            'host': self.host,
            'port': self.port,
            'username': self.user,
            'password': self.password,
            'database': self.database,
        }


def _backend_from_env() -> Backend:
    backend = os.getenv('VEXGRAPH_BACKEND', 'sql').strip().lower()
    if backend not in ('sql', 'clickhouse'):
        raise ValueError(f"VEXGRAPH_BACKEND must be 'sql' or 'clickhouse', got {backend!r}")
    return backend  # type: ignore[return-value]


@dataclass
class VexGraphConfig:
    backend: Backend = field(default_factory=_backend_from_env)
    sql: SqlConfig = field(default_factory=SqlConfig)
    clickhouse: DatabaseConfig = field(default_factory=DatabaseConfig)
    max_workers: int = field(
        default_factory=lambda: int(os.getenv('VEXGRAPH_MAX_WORKERS', '8')),
    )

    @classmethod
    def load(cls) -> 'VexGraphConfig':
        return cls()


_config: VexGraphConfig | None = None


def get_config() -> VexGraphConfig:
    global _config
    if _config is None:
        _config = VexGraphConfig.load()
    return _config


def reset_config() -> None:
    """Forget the cached configuration so the next access re-reads the environment."""
    global _config
    _config = None
