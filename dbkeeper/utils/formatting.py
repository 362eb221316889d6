"""
Human-readable formatting for CLI output.
"""

KB = 1024
MB = KB * 1024
GB = MB * 1024


def format_bytes(size: int) -> str:
    """
    Format a byte count with a binary unit.

    Args:
        size: Number of bytes

    Returns:
        String such as "1.50 MB" or "512 B"
    """
    if size >= GB:
        return f"{size / GB:.2f} GB"
    if size >= MB:
        return f"{size / MB:.2f} MB"
    if size >= KB:
        return f"{size / KB:.2f} KB"
    return f"{size} B"


def format_duration(seconds: float) -> str:
    """Format seconds as e.g. "1m 5.2s" or "850ms"."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, rest = divmod(seconds, 60)
    return f"{int(minutes)}m {rest:.1f}s"
