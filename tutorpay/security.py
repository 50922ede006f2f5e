import asyncio
import hashlib
import hmac
import logging
import time
from collections import defaultdict
from functools import wraps

from aiohttp import web

from .config import ADMIN_API_TOKEN, WEBHOOK_RATE_LIMIT

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1024 * 1024


class RateLimiter:
    def __init__(self, limit=WEBHOOK_RATE_LIMIT, period=10):
        # Request timestamps per client IP
        self.ip_requests = defaultdict(list)
        self.limit = limit
        self.period = period
        self.cleanup_interval = 3600  # 1 hour

    async def start_cleanup_task(self):
        """Start periodic cleanup of old rate limit data"""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self._cleanup_old_data()

    def _cleanup_old_data(self):
        """Remove old request data to prevent memory buildup"""
        current_time = time.time()
        for ip in list(self.ip_requests.keys()):
            self.ip_requests[ip] = [
                timestamp for timestamp in self.ip_requests[ip]
                if current_time - timestamp < self.period
            ]
            if not self.ip_requests[ip]:
                del self.ip_requests[ip]

        logger.info(f"Cleaned up rate limiting data. Tracking {len(self.ip_requests)} IPs")

    def track_ip(self, ip_address):
        """
        Track requests from a specific IP address

        Args:
            ip_address: The IP address making the request

        Returns:
            bool: True if IP should be blocked, False otherwise
        """
        current_time = time.time()
        self.ip_requests[ip_address].append(current_time)

        recent_requests = sum(
            1 for timestamp in self.ip_requests[ip_address]
            if current_time - timestamp < self.period
        )

        if recent_requests > self.limit:
            logger.warning(f"Rate limit exceeded for IP {ip_address}: {recent_requests} requests in {self.period}s")
            return True

        return False


# Create a global rate limiter instance
rate_limiter = RateLimiter()


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Verify the HMAC-SHA256 signature of a webhook body.

    Args:
        payload: Raw request body
        signature: Hex digest from the ``X-Signature`` header
        secret: Shared webhook secret

    Returns:
        bool: True if the signature is valid, False otherwise
    """
    if not secret or not signature:
        return False

    expected_signature = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected_signature)


@web.middleware
async def webhook_security_middleware(request, handler):
    """
    Reject clients sending too many requests or oversized payloads.
    """
    ip = request.remote

    if rate_limiter.track_ip(ip):
        logger.warning(f"Blocked burst of requests from IP: {ip}")
        return web.json_response({"error": "Too many requests"}, status=429)

    if request.content_length and request.content_length > MAX_PAYLOAD_BYTES:
        logger.warning(f"Oversized payload from IP: {ip}")
        return web.json_response({"error": "Payload too large"}, status=413)

    return await handler(request)


def require_admin(handler):
    """Decorator rejecting admin requests without a valid ``X-Admin-Token``."""
    @wraps(handler)
    async def wrapper(request, *args, **kwargs):
        token = request.headers.get("X-Admin-Token", "")
        if not ADMIN_API_TOKEN or not hmac.compare_digest(token, ADMIN_API_TOKEN):
            logger.warning(f"Rejected admin request to {request.path} from {request.remote}")
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request, *args, **kwargs)
    return wrapper


async def start_security_tasks():
    """Start security-related background tasks"""
    return asyncio.create_task(rate_limiter.start_cleanup_task())
