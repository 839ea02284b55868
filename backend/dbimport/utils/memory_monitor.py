"""Memory headroom checks run before a batch is allowed to start."""

import logging
import resource
import sys

from dbimport.core.config import get_settings

logger = logging.getLogger(__name__)

UNLIMITED = -1


def get_memory_usage() -> int:
    """Get current memory usage in bytes (peak RSS of this process)."""
    try:
        usage = resource.getrusage(resource.RUSAGE_SELF)
        memory_value = usage.ru_maxrss
        # On macOS, ru_maxrss is in bytes, on Linux it's in KB
        if sys.platform == "darwin":
            return memory_value
        return memory_value * 1024
    except (OSError, ValueError) as e:
        logger.warning(f"Could not get memory usage: {e}")
        return 0


def parse_memory_value(value: str) -> int:
    """Convert notations like ``512M``, ``1G``, ``800MB`` or raw bytes to bytes.

    ``-1`` means unlimited and is returned unchanged.
    """
    value = value.upper().strip()
    if value == "-1":
        return UNLIMITED
    multipliers = {"K": 1024, "M": 1024**2, "G": 1024**3}
    if value.endswith("B") and value[:-1][-1:] in multipliers:
        value = value[:-1]
    unit = value[-1:]
    if unit in multipliers:
        return int(value[:-1]) * multipliers[unit]
    return int(value)


def get_memory_limit() -> int:
    """Get configured memory limit, falling back to the address-space rlimit."""
    limit_str = get_settings().memory_limit
    if limit_str:
        try:
            return parse_memory_value(limit_str)
        except ValueError:
            logger.warning(f"Invalid MEMORY_LIMIT format: {limit_str}, ignoring")
    try:
        soft, _ = resource.getrlimit(resource.RLIMIT_AS)
    except (OSError, ValueError):
        return UNLIMITED
    if soft == resource.RLIM_INFINITY:
        return UNLIMITED
    return soft


def check_memory_headroom(required: int | None = None) -> tuple[bool, str]:
    """Check that at least ``required`` bytes are free below the memory limit.

    Returns:
        (available, message)
    """
    if required is None:
        required = get_settings().memory_floor_bytes

    limit = get_memory_limit()
    if limit == UNLIMITED:
        return True, "Unlimited memory available"

    available = limit - get_memory_usage()
    if available < required:
        message = (
            f"Insufficient memory available. Required: {required / 1024 / 1024:.2f}MB, "
            f"Available: {available / 1024 / 1024:.2f}MB. Please increase the memory limit."
        )
        logger.warning(message)
        return False, message

    return True, f"Memory check passed. Available: {available / 1024 / 1024:.2f}MB"


def format_bytes(bytes_val: float) -> str:
    """Format bytes to human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}TB"


def log_memory_status(context: str = "") -> None:
    """Log current memory status for debugging."""
    current = get_memory_usage()
    limit = get_memory_limit()
    limit_str = "unlimited" if limit == UNLIMITED else format_bytes(limit)
    context_str = f" [{context}]" if context else ""
    logger.info(f"Memory status{context_str}: {format_bytes(current)} / {limit_str}")
