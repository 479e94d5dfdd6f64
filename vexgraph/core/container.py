"""Dependency Injection Container."""
from typing import Optional

from vexgraph.core.clickhouse import ClickHouseGraphRepository
from vexgraph.core.config import get_config
from vexgraph.core.config import VexGraphConfig
from vexgraph.core.repository import GraphRepository
from vexgraph.core.repository import SqlGraphRepository
from vexgraph.services.correlation_service import CorrelationService
from vexgraph.services.ingest_service import IngestService


class Container:
    """Simple DI Container to manage service lifecycles."""

    _instance: Optional['Container'] = None

    def __init__(self, config: VexGraphConfig | None = None) -> None:
        self.config: VexGraphConfig = config or get_config()
        self._repository: GraphRepository | None = None
        self._ingest_service: IngestService | None = None
        self._correlation_service: CorrelationService | None = None

    @classmethod
    def get_instance(cls) -> 'Container':
        if cls._instance is None:
            cls._instance = Container()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        if cls._instance is not None and cls._instance._repository is not None:
            cls._instance._repository.close()
        cls._instance = None

    # -- Repository --

    def get_repository(self) -> GraphRepository:
        """The graph store for the configured backend, shared by all services."""
        if self._repository is None:
            if self.config.backend == 'clickhouse':
                self._repository = ClickHouseGraphRepository(self.config.clickhouse)
            else:
                self._repository = SqlGraphRepository(self.config.sql)
        return self._repository

    # -- Services (Singletons) --

    def get_ingest_service(self) -> IngestService:
        if not self._ingest_service:
            self._ingest_service = IngestService(
                self.get_repository(), max_workers=self.config.max_workers,
            )
        return self._ingest_service

    def get_correlation_service(self) -> CorrelationService:
        if not self._correlation_service:
            self._correlation_service = CorrelationService(
                self.get_repository(), max_workers=self.config.max_workers,
            )
        return self._correlation_service

# Global Accessor


def get_container() -> Container:
    return Container.get_instance()
