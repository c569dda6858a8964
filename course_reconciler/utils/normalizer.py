"""Course code and name normalization."""

import re

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")


def normalize(text: str) -> str:
    """Reduce a course code or name to its comparable form.

    Lower-cases and strips everything outside ``[a-z0-9]``, so separator
    punctuation and whitespace runs disappear:

        >>> normalize("CS-101"), normalize("cs 101"), normalize("C.S. 101")
        ('cs101', 'cs101', 'cs101')

    Idempotent: the output only contains characters the pattern keeps.

    Args:
        text: Raw code or name (non-strings normalize to "")

    Returns:
        Normalized key, possibly empty
    """
    if not text or not isinstance(text, str):
        return ""
    return _NON_ALPHANUMERIC.sub("", text.lower())
