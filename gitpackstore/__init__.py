"""Read-only Git object store over pack, idx and multi-pack-index files."""

__version__ = "0.1.0"
__all__ = ["objects", "delta", "idx", "midx", "store", "example"]