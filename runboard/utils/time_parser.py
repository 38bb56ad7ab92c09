"""
Time parsing utilities for run ranking.

Handles conversion between run time strings and seconds. Parsed seconds are the
ordering key used to rank runs inside a comparison group (lower is better).
"""

import math


def parse_time_to_seconds(time_str: str) -> float:
    """
    Parse a run time string into total seconds.

    Supported formats:
    - HH:MM:SS (canonical, e.g., 01:23:45)
    - HH:MM:SS.ms (e.g., 1:23:45.678)
    - MM:SS(.ms) (e.g., 8:30.5)
    - SS(.ms) (e.g., 45.2)

    Args:
        time_str: Time string to parse

    Returns:
        Total seconds as float

    Raises:
        ValueError: If the format is invalid
    """
    if time_str is None:
        raise ValueError("Time is required")

    time_str = str(time_str).strip()
    if not time_str:
        raise ValueError("Time is required")

    # Check for negative time before parsing
    if time_str.startswith('-'):
        raise ValueError("Negative time values are not allowed")

    # Handle plain seconds (no colons)
    if ':' not in time_str:
        try:
            seconds = float(time_str)
        except ValueError:
            raise ValueError(f"Invalid time format: {time_str}")
        if seconds < 0 or math.isnan(seconds) or math.isinf(seconds):
            raise ValueError(f"Invalid time value: {time_str}")
        return seconds

    parts = time_str.split(':')
    if len(parts) > 3:
        raise ValueError("Invalid time format. Use HH:MM:SS, MM:SS or SS")

    try:
        if len(parts) == 2:  # MM:SS or MM:SS.ms
            hours = 0
            minutes = int(parts[0])
            seconds = float(parts[1])
        else:  # HH:MM:SS or HH:MM:SS.ms
            hours = int(parts[0])
            minutes = int(parts[1])
            seconds = float(parts[2])
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid time format: {time_str}") from e

    if hours < 0 or minutes < 0 or seconds < 0 or seconds >= 60:
        raise ValueError(f"Invalid time components: {time_str}")
    if len(parts) == 3 and minutes >= 60:
        raise ValueError(f"Invalid time components: {time_str}")

    total = hours * 3600 + minutes * 60 + seconds
    if math.isnan(total) or math.isinf(total):
        raise ValueError(f"Invalid time value: {time_str}")
    # Round to avoid floating point edge cases (e.g., 59.999 -> 60)
    return round(total, 3)


def time_sort_key(time_str: str) -> float:
    """
    Ordering key for ranking: parsed seconds, or infinity when unparseable.

    Runs with malformed times sort after every valid run instead of failing the
    whole ranking pass.
    """
    try:
        return parse_time_to_seconds(time_str)
    except ValueError:
        return math.inf


def format_seconds_to_time(seconds: float) -> str:
    """
    Format seconds into the canonical HH:MM:SS form.

    Milliseconds are only appended when present, so whole-second times stay in
    the plain HH:MM:SS shape.

    Args:
        seconds: Total seconds

    Returns:
        Formatted time string (e.g., "00:08:30" or "00:08:30.500")
    """
    if seconds < 0:
        raise ValueError("Negative seconds not allowed")

    total_seconds = int(seconds)
    milliseconds = int(round((seconds - total_seconds) * 1000))
    if milliseconds == 1000:
        total_seconds += 1
        milliseconds = 0

    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if milliseconds > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}.{milliseconds:03d}"
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def normalize_time(time_str: str) -> str:
    """Render any accepted time format as canonical HH:MM:SS (raises ValueError if invalid)."""
    return format_seconds_to_time(parse_time_to_seconds(time_str))
