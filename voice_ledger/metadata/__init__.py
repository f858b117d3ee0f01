"""Category, trip and payment-method registry."""

from voice_ledger.metadata.registry import (
    DEFAULT_CATEGORY_SEEDS,
    MetadataRegistry,
    default_categories,
    merge_remote_categories,
    normalize_keywords,
)

__all__ = [
    "DEFAULT_CATEGORY_SEEDS",
    "MetadataRegistry",
    "default_categories",
    "merge_remote_categories",
    "normalize_keywords",
]
