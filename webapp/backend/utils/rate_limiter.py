"""
Per-user and per-IP rate limiting utility with configurable limits per operation.
Uses in-memory sliding window algorithm.
"""
import time
from collections import defaultdict
from typing import Dict, List
from fastapi import HTTPException, Request, status


# Storage: {"{user_id}:{operation}": [timestamp, timestamp, ...]}
_user_request_counts: Dict[str, List[float]] = defaultdict(list)

# IP-based storage for unauthenticated endpoints
_ip_request_counts: Dict[str, List[float]] = defaultdict(list)

# Configurable rate limits by operation type
RATE_LIMITS = {
    # Public intake form - stricter to stop spam submissions
    "lead_intake": {"limit": 5, "window": 60},          # 5 submissions/min

    # Claiming - a lost race must not turn into a retry loop
    "lead_claim": {"limit": 10, "window": 60},          # 10 claims/min

    # Bulk operations
    "session_recurring": {"limit": 10, "window": 60},   # 10 expansions/min
    "series_update": {"limit": 10, "window": 60},       # 10 series edits/min

    # Billing writes
    "invoice_create": {"limit": 30, "window": 60},      # 30 invoices/min

    # Default fallback
    "default": {"limit": 100, "window": 60},
}


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _check_window(counts: Dict[str, List[float]], key: str, operation: str, message: str) -> None:
    config = RATE_LIMITS.get(operation, RATE_LIMITS["default"])
    limit = config["limit"]
    window = config["window"]
    now = time.time()

    # Clean old entries outside the window
    counts[key] = [t for t in counts[key] if now - t < window]

    if len(counts[key]) >= limit:
        retry_after = int(window - (now - counts[key][0]))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"{message} Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)}
        )

    counts[key].append(now)


def check_user_rate_limit(user_id: str, operation: str) -> None:
    """
    Check rate limit for a specific user and operation.
    Raises HTTPException 429 if rate limit exceeded.

    Args:
        user_id: The authenticated user's ID
        operation: The operation key (e.g., "lead_claim")
    """
    _check_window(_user_request_counts, f"{user_id}:{operation}", operation, "Rate limit exceeded.")


def check_ip_rate_limit(request: Request, operation: str) -> None:
    """
    Check rate limit for an IP address (for unauthenticated endpoints).
    Raises HTTPException 429 if rate limit exceeded.

    Args:
        request: The FastAPI request object
        operation: The operation key (e.g., "lead_intake")
    """
    client_ip = get_client_ip(request)
    _check_window(_ip_request_counts, f"{client_ip}:{operation}", operation, "Too many requests.")


def clear_rate_limits() -> None:
    """Clear all rate limit data. Useful for testing."""
    _user_request_counts.clear()
    _ip_request_counts.clear()
