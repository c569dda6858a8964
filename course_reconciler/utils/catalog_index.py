"""
Catalog Index Module

In-memory lookup structure built once per reconciliation run from a catalog
snapshot. Provides exact-code lookup, fixed-length prefix lookup, and the
normalized valid-code set the Response Validator checks AI output against.

Example Usage:
    from course_reconciler.utils.catalog_index import CatalogIndex

    index = CatalogIndex(catalog_entries)
    entry = index.lookup_exact(normalize("CS-101"))
    near = index.lookup_by_prefix(normalize("2000310X"), prefix_len=7)
    "cs101" in index.valid_codes()
"""

from collections import Counter
from typing import Iterable, Optional

from course_reconciler.models.catalog import CatalogEntry
from course_reconciler.utils.errors import DuplicateCodeError, InputValidationError
from course_reconciler.utils.normalizer import normalize


class CatalogIndex:
    """Read-only index over one catalog snapshot.

    Construction fails fast on integrity problems: two entries whose codes
    normalize to the same key raise DuplicateCodeError.
    """

    def __init__(self, entries: Iterable[CatalogEntry]):
        """
        Build the index.

        Args:
            entries: Catalog entries for this run

        Raises:
            DuplicateCodeError: If two codes normalize identically
            InputValidationError: If a code normalizes to an empty key
        """
        self._entries: tuple[CatalogEntry, ...] = tuple(entries)
        self._by_code: dict[str, CatalogEntry] = {}
        self._prefix_maps: dict[int, dict[str, list[str]]] = {}

        for entry in self._entries:
            key = normalize(entry.code)
            if not key:
                raise InputValidationError(
                    f"Catalog code {entry.code!r} has no alphanumeric characters"
                )
            if key in self._by_code:
                raise DuplicateCodeError(key, [self._by_code[key].code, entry.code])
            self._by_code[key] = entry

        self._valid_codes = frozenset(self._by_code)
        # Sorted once so prefix tie-breaks are independent of catalog order
        self._sorted_keys = sorted(self._by_code)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[CatalogEntry, ...]:
        """Catalog entries in their original order."""
        return self._entries

    def lookup_exact(self, normalized_code: str) -> Optional[CatalogEntry]:
        """Return the entry whose normalized code equals the key, if any."""
        if not normalized_code:
            return None
        return self._by_code.get(normalized_code)

    def prefix_candidates(
        self, normalized_code: str, prefix_len: int
    ) -> list[CatalogEntry]:
        """Return every entry sharing the first ``prefix_len`` characters.

        Candidates are ordered by normalized code. Codes shorter than
        ``prefix_len`` have no prefix to compare and return nothing.

        Args:
            normalized_code: Already-normalized source code
            prefix_len: Number of leading characters to compare

        Returns:
            Matching entries, smallest normalized code first
        """
        if prefix_len <= 0 or len(normalized_code) < prefix_len:
            return []

        prefix_map = self._prefix_maps.get(prefix_len)
        if prefix_map is None:
            prefix_map = {}
            for key in self._sorted_keys:
                if len(key) >= prefix_len:
                    prefix_map.setdefault(key[:prefix_len], []).append(key)
            self._prefix_maps[prefix_len] = prefix_map

        keys = prefix_map.get(normalized_code[:prefix_len], [])
        return [self._by_code[key] for key in keys]

    def lookup_by_prefix(
        self, normalized_code: str, prefix_len: int
    ) -> Optional[CatalogEntry]:
        """Return the first entry sharing the code's prefix, if any."""
        candidates = self.prefix_candidates(normalized_code, prefix_len)
        return candidates[0] if candidates else None

    def valid_codes(self) -> frozenset[str]:
        """Normalized codes of every entry; the validation anchor for AI output."""
        return self._valid_codes

    def canonical_codes(self) -> list[str]:
        """Catalog codes as listed, sorted by normalized key."""
        return [self._by_code[key].code for key in self._sorted_keys]

    def categories(self) -> dict[str, int]:
        """Entry count per category."""
        return dict(Counter(entry.category or "Uncategorized" for entry in self._entries))
