from functools import lru_cache
from typing import Iterable, Iterator

from config import get_settings


class CategoryRegistry:
    """Ordered, fixed set of spending categories.

    Every monthly report enumerates these names in this order, and cost
    categories are validated against them.
    """

    def __init__(self, names: Iterable[str]) -> None:
        normalized: list[str] = []
        for name in names:
            clean = str(name).strip().lower()
            if not clean:
                raise ValueError("Category names must not be empty")
            if clean in normalized:
                raise ValueError(f"Duplicate category: {clean}")
            normalized.append(clean)
        if not normalized:
            raise ValueError("At least one category is required")
        self._names = tuple(normalized)

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip().lower() in self._names

    def __repr__(self) -> str:
        return f"CategoryRegistry({list(self._names)!r})"

    def normalize(self, name: str) -> str:
        clean = (name or "").strip().lower()
        if clean not in self._names:
            options = ", ".join(self._names)
            raise ValueError(f"Unknown category '{name}'; expected one of: {options}")
        return clean


@lru_cache(maxsize=1)
def get_category_registry() -> CategoryRegistry:
    return CategoryRegistry(get_settings().categories)
