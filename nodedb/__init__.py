"""
NodeDB - typed, validated object persistence.

Declare entities with typed attributes, then store their instances in
SQLite, PostgreSQL, MySQL or YAML/JSON flatfiles (with optional revision
history), with cache-aside caching and full-text indexing beside the store.

Example:
    >>> from nodedb import Engine, EntityOptions, Int, Settings, StorageType, get_registry
    >>>
    >>> get_registry().declare(
    ...     "myapp.Person",
    ...     {"age": Int(min=0, max=150)},
    ...     options=EntityOptions(storage=StorageType.SQLITE),
    ... )
    >>>
    >>> with Engine(settings=Settings(home="/tmp/nodedb")) as engine:
    ...     people = engine.repository("myapp.Person")
    ...     alice = people.new(name="Alice", age=30)
    ...     people.save(alice, "first save")
    ...     people.load(alice.id).age
    30

Invariants:
    - Nothing is stored before every attribute validates
    - Entity names, and so table and file names, are stable
    - Saves are atomic per SQL store

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import Settings, get_settings, reset_settings
from .errors import (
    AssertFailed,
    DataConversionFailed,
    DBConnectFailed,
    DBQueryFailed,
    FileAccessError,
    InvalidArgument,
    MethodNotApplicable,
    NodeDbError,
    ObjectIsAnonymous,
    ObjectNotFound,
    PrimaryKeyMissing,
    TransactionFailed,
    TransactionRollbackFailed,
    ValidationFailed,
    VersionArchiveError,
    WrongHost,
)
from .persistence import Emit, Engine, Node, Repository, Signal, Stream
from .runtime import setup_logging
from .schema import (
    ID,
    Array,
    Bool,
    DateTime,
    Double,
    EntityDef,
    EntityOptions,
    EntityRegistry,
    ExtID,
    FlatfileFormat,
    Float,
    Hash,
    Int,
    Name,
    Num,
    Rule,
    Serial,
    StorageType,
    Str,
    TimeSpan,
    TypeDef,
    get_registry,
    reset_registry,
    subtype,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "get_settings",
    "reset_settings",
    "setup_logging",
    # Schema
    "EntityDef",
    "EntityOptions",
    "EntityRegistry",
    "FlatfileFormat",
    "StorageType",
    "TypeDef",
    "get_registry",
    "reset_registry",
    "subtype",
    # Types
    "Array",
    "Bool",
    "DateTime",
    "Double",
    "ExtID",
    "Float",
    "Hash",
    "ID",
    "Int",
    "Name",
    "Num",
    "Rule",
    "Serial",
    "Str",
    "TimeSpan",
    # Persistence
    "Emit",
    "Engine",
    "Node",
    "Repository",
    "Signal",
    "Stream",
    # Errors
    "AssertFailed",
    "DataConversionFailed",
    "DBConnectFailed",
    "DBQueryFailed",
    "FileAccessError",
    "InvalidArgument",
    "MethodNotApplicable",
    "NodeDbError",
    "ObjectIsAnonymous",
    "ObjectNotFound",
    "PrimaryKeyMissing",
    "TransactionFailed",
    "TransactionRollbackFailed",
    "ValidationFailed",
    "VersionArchiveError",
    "WrongHost",
]
