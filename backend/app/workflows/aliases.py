# /app/workflows/aliases.py

"""
Canonical field aliasing.

Different flows spell the same business field differently (``email`` vs
``proposer_email``). The alias graph maps every slug to its canonical group so
that a valid value under one spelling satisfies all of them, and an
invalidation under one spelling clears all of them.
"""

from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence

from app.workflows.validator import is_present


DEFAULT_ALIAS_GROUPS: Sequence[Sequence[str]] = (
    ("first_name", "user_first_name", "proposer_first_name"),
    ("last_name", "user_last_name", "proposer_last_name"),
    ("phone", "user_phone", "mobile_phone", "user_mobile_phone", "proposer_mobile_phone"),
    ("email", "user_email", "proposer_email"),
)


class AliasGraph:
    """Bidirectional slug -> canonical group index, built once."""

    def __init__(self, groups: Iterable[Sequence[str]]):
        self._canonical: Dict[str, str] = {}
        self._groups: Dict[str, FrozenSet[str]] = {}
        for group in groups:
            members = [slug for slug in group if slug]
            if not members:
                continue
            canonical = members[0]
            frozen = frozenset(members)
            for slug in members:
                if slug in self._canonical and self._canonical[slug] != canonical:
                    raise ValueError(f"Field '{slug}' belongs to more than one alias group")
                self._canonical[slug] = canonical
                self._groups[slug] = frozen

    def canonical(self, slug: str) -> str:
        return self._canonical.get(slug, slug)

    def group(self, slug: str) -> FrozenSet[str]:
        """All slugs equivalent to ``slug``, including itself."""
        return self._groups.get(slug, frozenset((slug,)))

    def are_aliases(self, a: str, b: str) -> bool:
        return self.canonical(a) == self.canonical(b)

    def lookup(self, data: Mapping[str, Any], slug: str) -> Optional[Any]:
        """The value stored under ``slug``, or under any of its aliases."""
        value = data.get(slug)
        if is_present(value):
            return value
        for alias in sorted(self.group(slug)):
            if alias != slug and is_present(data.get(alias)):
                return data[alias]
        return value

    def fan_out(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Copy every value onto its aliases. Explicitly provided keys win over
        values propagated from an alias.
        """
        expanded: Dict[str, Any] = {}
        for slug, value in data.items():
            for alias in self.group(slug):
                if alias not in data:
                    expanded.setdefault(alias, value)
        expanded.update(data)
        return expanded

    def expand_slugs(self, slugs: Iterable[str]) -> FrozenSet[str]:
        result = set()
        for slug in slugs:
            result.update(self.group(slug))
        return frozenset(result)


# Globally accessible instance
alias_graph = AliasGraph(DEFAULT_ALIAS_GROUPS)
