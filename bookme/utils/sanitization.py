import html
from typing import Optional


def sanitize_string(value: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """
    Escape HTML special characters in free-text input and trim whitespace.
    Returns None for None or blank input.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    if not value:
        return None
    if max_length is not None:
        value = value[:max_length]
    return html.escape(value, quote=True)
