"""Per-IP rate limiting (SlowAPI); honours X-Forwarded-For behind a proxy."""
from fastapi import Request

from slowapi import Limiter

from .config import settings


def get_client_ip(request: Request) -> str:
    """Real client IP behind Render / Nginx."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


limiter = Limiter(key_func=get_client_ip)

DEFAULT_LIMIT = f"{settings.rate_limit_per_minute}/minute"
VERIFY_LIMIT = f"{settings.rate_limit_verify_per_minute}/minute"
