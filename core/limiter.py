"""
core/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and by both login routes
(api/routes/v1/auth.py and web/routes.py) to apply per-route limits with
@limiter.limit().

A single shared instance means all routes share one in-memory counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
