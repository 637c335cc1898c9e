"""
Persistence layer for NodeDB.

- node: Node instances
- marshal: Row, document and cache representations
- repository: Per-entity operations (load, save, remove, query, revisions)
- engine: Shared resources, store resolution, validation context
- stream: Paged iteration
"""

from .engine import Binding, Engine
from .node import Node
from .repository import Repository
from .stream import Emit, Signal, Stream, collect

__all__ = ["Binding", "Emit", "Engine", "Node", "Repository", "Signal", "Stream", "collect"]
