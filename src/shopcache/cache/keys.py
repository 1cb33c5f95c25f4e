"""Cache key schema for the storefront cache.

Persisted key format: {prefix}{logical_key}

Where:
- prefix: "cache_" (reserved namespace shared with unrelated data in the same store)
- logical_key: a resource key such as "menu_items", or "image_blob_{sha256(url)}"

Also holds the resource tables used by invalidation: which cache keys a
backend resource feeds, and which derived keys must follow a source key.
"""

from __future__ import annotations

import hashlib
from typing import Final


class CacheKeys:
    """Cache key generator following consistent naming convention."""

    PREFIX: Final = "cache_"

    CAROUSEL_IMAGES: Final = "carousel_images"
    HELP_SETTINGS: Final = "help_settings"
    HELP_ITEMS: Final = "help_items"
    MENU_ITEMS: Final = "menu_items"
    HEADER_SETTINGS: Final = "header_settings"
    HOME_DATA: Final = "home_data"

    IMAGE_BLOB_PREFIX: Final = "image_blob_"

    @classmethod
    def storage_key(cls, key: str) -> str:
        """Namespace a logical key for a backing store."""
        return f"{cls.PREFIX}{key}"

    @classmethod
    def logical_key(cls, storage_key: str) -> str | None:
        """Strip the reserved prefix.

        Returns None if the key doesn't belong to this cache.
        """
        if not storage_key.startswith(cls.PREFIX):
            return None
        return storage_key[len(cls.PREFIX) :]

    @classmethod
    def scoped(cls, prefix: str, identifier: str | int | None = None) -> str:
        """Key for a resource, optionally scoped to one record (e.g. product_42)."""
        if identifier is None or identifier == "":
            return prefix
        return f"{prefix}_{identifier}"

    @classmethod
    def image_blob(cls, url: str) -> str:
        """Key for a cached image, derived from a hash of its source URL."""
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
        return f"{cls.IMAGE_BLOB_PREFIX}{digest}"

    @classmethod
    def is_image_blob(cls, key: str) -> bool:
        return key.startswith(cls.IMAGE_BLOB_PREFIX)


class CacheDurations:
    """Standard TTLs in seconds."""

    SHORT: Final = 5 * 60
    MEDIUM: Final = 30 * 60
    LONG: Final = 2 * 60 * 60
    DAY: Final = 24 * 60 * 60


# Backend resource -> cache keys built from it
RESOURCE_CACHE_KEYS: dict[str, tuple[str, ...]] = {
    "menu_items": (CacheKeys.MENU_ITEMS,),
    "header_settings": (CacheKeys.HEADER_SETTINGS,),
    "carousel_images": (CacheKeys.CAROUSEL_IMAGES,),
    "help_settings": (CacheKeys.HELP_SETTINGS,),
    "help_items": (CacheKeys.HELP_ITEMS,),
}

# Source key -> derived keys that compose it. One level only.
RELATED_CACHE_KEYS: dict[str, tuple[str, ...]] = {
    CacheKeys.MENU_ITEMS: (CacheKeys.HEADER_SETTINGS,),
    CacheKeys.CAROUSEL_IMAGES: (CacheKeys.HOME_DATA,),
    CacheKeys.HELP_SETTINGS: (CacheKeys.HEADER_SETTINGS,),
    CacheKeys.HELP_ITEMS: (CacheKeys.HEADER_SETTINGS,),
}
