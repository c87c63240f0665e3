"""Optional duplicate row removal."""

from typing import Iterable


def normalize_key(value: str, strip_chars: str = "- ") -> str:
    """Trim whitespace and drop separator characters so formatting variants compare equal."""
    value = value.strip()
    if strip_chars:
        value = value.translate({ord(c): None for c in strip_chars})
    return value


def deduplicate(
    rows: list[dict[str, str]],
    mode: str = "full",
    key_columns: Iterable[str] = (),
    metadata_columns: Iterable[str] = (),
    strip_chars: str = "- ",
) -> tuple[list[dict[str, str]], int]:
    """
    Remove rows that repeat an earlier row, keeping the first occurrence.

    Args:
        rows: Unified rows, in master order
        mode: "none", "full" (all non-metadata columns) or "key" (key_columns only)
        key_columns: Columns compared in "key" mode, after normalize_key
        metadata_columns: Columns ignored in "full" mode
        strip_chars: Separator characters removed from key values

    Returns:
        Tuple of (surviving rows in original order, number of rows removed)
    """
    if mode == "none" or not rows:
        return list(rows), 0
    if mode not in ("full", "key"):
        raise ValueError(f"Unknown dedupe mode: {mode}")

    key_columns = list(key_columns)
    ignored = set(metadata_columns)

    seen = set()
    kept = []
    for row in rows:
        if mode == "key":
            key = tuple(normalize_key(row.get(c, ""), strip_chars) for c in key_columns)
            if not any(key):
                # No key value to compare on (e.g. a file without the key column).
                kept.append(row)
                continue
        else:
            key = tuple((c, v) for c, v in row.items() if c not in ignored)
        if key in seen:
            continue
        seen.add(key)
        kept.append(row)

    return kept, len(rows) - len(kept)
