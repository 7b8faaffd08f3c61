"""DiskANN approximate nearest-neighbour vector index stored in SQLite shadow tables."""

__version__ = "0.1.0"
__all__ = ["vectors", "params", "node", "search", "shadow_index"]