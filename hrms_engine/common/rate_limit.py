"""slowapi limiter shared by the routers and wired into the app in main.py."""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Manual job triggers override this with a tighter @limiter.limit()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["120/minute"],
)
