"""shopcache: client-side caching for a storefront.

Tiered key/value caching with TTL and schema versions, image preloading,
and real-time invalidation driven by admin writes and change streams.
"""

__version__ = "0.1.0"
