"""
Text helpers for vent content and durations.
"""


def make_preview_text(vent_text: str, length: int = 100) -> str:
    """First ``length`` characters of the trimmed text, with an ellipsis when cut."""
    text = vent_text.strip()
    if len(text) > length:
        return text[:length] + "..."
    return text


def format_duration(seconds: float) -> str:
    """Format seconds as ``MM:SS``."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"
