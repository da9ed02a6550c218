"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (signup and login draw on one shared "auth" scope
via @limiter.shared_limit(), so the budget is per IP across both routes).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.
create_app() sets limiter.enabled from Settings.rate_limit_enabled.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Signup and login share this budget per client IP.
AUTH_RATE_LIMIT = "5 per 15 minutes"

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
