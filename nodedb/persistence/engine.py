"""
Persistence engine for NodeDB.

The Engine owns the shared resources of one application: entity registry,
settings, connection pool, cache, text index and version archive. It
resolves each entity's backing stores once (Binding) and hands out
memoized Repository objects carrying the per-entity operations.

It is also the validation context: ExtID reference checks call
``reference_exists`` / ``query_reference`` on it, so they run in the same
database handle (and transaction) as the save being validated.

Invariants:
    - One Repository and one Binding per entity per engine
    - Storage "auto" probes MySQL, then PostgreSQL, then SQLite, and
      falls back to a YAML flatfile; probe results are memoized per
      database and host
    - Flatfile-only entities always have a flatfile format
    - close() releases every pooled connection, the cache client and the
      text index

How to change safely:
    - New shared resources must be created lazily and released in close()
    - Keep Binding free of per-call state; repositories are shared
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Union

from ..archive import VersionArchive, create_archive
from ..cache import Cache, create_cache
from ..config import Settings, get_settings
from ..drivers import PROBE_ORDER, ConnectionPool, Credentials, FlatfileDriver, SqlDriver, create_driver
from ..errors import MethodNotApplicable
from ..schema.entity import EntityDef, FlatfileFormat, StorageType
from ..schema.registry import EntityRegistry, get_registry
from ..search import SearchIndex, SqliteTextIndex
from .repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Binding:
    """Resolved backing stores of one entity.

    Attributes:
        entity: The entity
        settings: Settings with the entity's overrides applied
        storage: Resolved SQL storage type (NONE for flatfile-only)
        driver: SQL dialect driver, or None
        credentials: Connection parameters for ``driver``
        flatfile: Flatfile driver, or None
        cache_ttl: Effective cache TTL (0 disables caching)
    """

    entity: EntityDef
    settings: Settings
    storage: StorageType
    driver: Optional[SqlDriver]
    credentials: Optional[Credentials]
    flatfile: Optional[FlatfileDriver]
    cache_ttl: int


class Engine:
    """Entry point of the persistence layer.

    Example:
        >>> registry = EntityRegistry()
        >>> registry.declare("myapp.Person", {"age": Int(min=0, max=150)},
        ...                  options=EntityOptions(storage=StorageType.SQLITE))
        >>> with Engine(registry, Settings(home="/tmp/nodedb")) as engine:
        ...     people = engine.repository("myapp.Person")
        ...     people.save(people.new(name="Alice", age=30))
        True
    """

    def __init__(
        self,
        registry: Optional[EntityRegistry] = None,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[Cache] = None,
        search_index: Optional[SearchIndex] = None,
        archive: Optional[VersionArchive] = None,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.registry = registry if registry is not None else get_registry()
        self.settings = settings if settings is not None else get_settings()
        self.pool = pool if pool is not None else ConnectionPool(self.settings.reconnect_delay)
        self.cache = cache if cache is not None else create_cache(self.settings)
        self._search_index = search_index
        self._archive = archive
        self._repositories: dict[str, Repository] = {}
        self._probed: dict[tuple, StorageType] = {}
        self._lock = threading.RLock()

    # -- shared resources -----------------------------------------------------

    @property
    def search_index(self) -> SearchIndex:
        with self._lock:
            if self._search_index is None:
                self._search_index = SqliteTextIndex(
                    self.settings.text_index_file,
                    busy_timeout_ms=self.settings.sqlite_busy_timeout_ms,
                )
            return self._search_index

    @property
    def archive(self) -> VersionArchive:
        with self._lock:
            if self._archive is None:
                self._archive = create_archive(self.settings)
            return self._archive

    def close(self) -> None:
        """Release pooled connections, the cache client and the text index."""
        self.pool.close()
        if self.cache is not None:
            self.cache.close()
        if self._search_index is not None:
            self._search_index.close()
        logger.debug("Engine closed")

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -- repositories ---------------------------------------------------------

    def repository(self, entity: Union[str, EntityDef]) -> Repository:
        """Memoized repository of an entity (by name or definition).

        An EntityDef not yet in the registry is registered.

        Raises:
            InvalidArgument: If a named entity is not declared
        """
        if isinstance(entity, str):
            entity = self.registry.require(entity)
        with self._lock:
            repository = self._repositories.get(entity.name)
            if repository is None:
                if entity.name not in self.registry and not entity.is_element:
                    self.registry.register(entity)
                repository = Repository(self, self._bind(entity))
                self._repositories[entity.name] = repository
                logger.debug(
                    f"Bound {entity.name} to {repository.binding.storage.value}",
                    extra={
                        "entity": entity.name,
                        "storage": repository.binding.storage.value,
                        "flatfile": entity.options.flatfile.value if entity.options.flatfile else None,
                    },
                )
            return repository

    def _bind(self, entity: EntityDef) -> Binding:
        options = entity.options
        settings = self.settings.for_entity(options.settings)

        storage = options.storage or StorageType.from_str(settings.storage)
        if storage == StorageType.AUTO:
            storage = self._detect_storage(entity, settings)

        flatfile_format = options.flatfile
        if storage == StorageType.NONE and flatfile_format is None:
            flatfile_format = FlatfileFormat.YAML

        driver = None
        credentials = None
        if storage != StorageType.NONE:
            driver = create_driver(storage, self.registry, settings)
            credentials = driver.credentials(entity, settings)

        flatfile = None
        if flatfile_format is not None:
            flatfile = FlatfileDriver(settings, archive_dir=settings.archive_dir)

        cache_ttl = options.cache_ttl if options.cache_ttl is not None else settings.cache_ttl
        if self.cache is None:
            cache_ttl = 0

        return Binding(
            entity=entity,
            settings=settings,
            storage=storage,
            driver=driver,
            credentials=credentials,
            flatfile=flatfile,
            cache_ttl=cache_ttl,
        )

    def _detect_storage(self, entity: EntityDef, settings: Settings) -> StorageType:
        key = (entity.database_name, settings.db_host, settings.db_port, str(settings.sqlite_path))
        with self._lock:
            if key in self._probed:
                return self._probed[key]
            detected = StorageType.NONE
            for storage in PROBE_ORDER:
                driver = create_driver(storage, self.registry, settings)
                if driver.probe(driver.credentials(entity, settings)):
                    detected = storage
                    break
            self._probed[key] = detected
        logger.info(
            f"Detected {detected.value} storage for {entity.database_name}",
            extra={"database": entity.database_name, "storage": detected.value},
        )
        return detected

    # -- validation context ---------------------------------------------------

    def reference_exists(self, entity_name: str, value: Any) -> bool:
        """True if ``entity_name`` has an object with primary key ``value``."""
        return self.repository(entity_name).does_id_exist(value)

    def query_reference(self, entity_name: str, query: str, value: Any) -> bool:
        """Run a boolean reference query in ``entity_name``'s SQL store."""
        repository = self.repository(entity_name)
        if repository.driver is None:
            raise MethodNotApplicable(
                f"Reference queries need a SQL store; {entity_name} has none", entity=entity_name
            )
        params = [value] if "{value}" in query else []
        return repository.select_bool(repository.driver.bind_value_query(query), params)
