"""
Shared slowapi limiter, keyed on the forwarded principal id.
"""
from slowapi import Limiter

from app.core import config


def get_principal_key(request) -> str:
    """
    Extract the principal header for rate limiting.
    Used with slowapi Limiter.
    """
    return request.headers.get(config.PRINCIPAL_HEADER, "") or "anonymous"


limiter = Limiter(key_func=get_principal_key)
