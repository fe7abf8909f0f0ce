"""Naming conventions shared by the manifest rules and the templates.

One canonical name (``order-history``, ``OrderHistory``...) yields every
spelling used in generated code: class names, routes, file names and
pluralized collection names.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


_UNCOUNTABLE = frozenset({
    "people", "data", "information", "equipment", "news", "series", "species", "metadata",
})
_IRREGULAR_PLURALS = {"person": "people", "child": "children", "man": "men", "woman": "women"}


def _split_words(value: str) -> list[str]:
    """Split ``order-history``, ``order_history`` or ``OrderHistory`` into words."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", value)
    spaced = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1 \2", spaced)
    return [w for w in re.split(r"[^A-Za-z0-9]+", spaced) if w]


def pascal_case(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``SomeThing``."""
    return "".join(word[:1].upper() + word[1:] for word in _split_words(value))


def camel_case(value: str) -> str:
    """Convert ``some-thing`` or ``SomeThing`` to ``someThing``."""
    pascal = pascal_case(value)
    return pascal[:1].lower() + pascal[1:]


def snake_case(value: str) -> str:
    """Convert ``SomeThing`` or ``some-thing`` to ``some_thing``."""
    return "_".join(word.lower() for word in _split_words(value))


def kebab_case(value: str) -> str:
    """Convert ``SomeThing`` or ``some_thing`` to ``some-thing``."""
    return "-".join(word.lower() for word in _split_words(value))


def pluralize(value: str) -> str:
    """Pluralize the last word of *value*, preserving its casing style."""
    words = re.split(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[-_])", value)
    last = words[-1]
    lower = last.lower()

    if lower in _UNCOUNTABLE:
        plural = last
    elif lower in _IRREGULAR_PLURALS:
        irregular = _IRREGULAR_PLURALS[lower]
        plural = irregular.capitalize() if last[:1].isupper() else irregular
    elif re.search(r"[^aeiou]y$", lower):
        plural = last[:-1] + "ies"
    elif lower.endswith(("s", "x", "z", "ch", "sh")):
        plural = last + "es"
    else:
        plural = last + "s"
    return "".join(words[:-1]) + plural


@dataclass(frozen=True)
class NameForms:
    """Every spelling of one canonical name used across generated artifacts.

    The operator supplies a name once; class names, file names, routes and
    paths all derive from it deterministically.
    """

    name: str
    pascal: str
    camel: str
    snake: str
    kebab: str
    plural_pascal: str
    plural_camel: str
    plural_kebab: str

    @classmethod
    def from_name(cls, name: str) -> "NameForms":
        pascal = pascal_case(name)
        plural_pascal = pluralize(pascal)
        return cls(
            name=name,
            pascal=pascal,
            camel=camel_case(name),
            snake=snake_case(name),
            kebab=kebab_case(name),
            plural_pascal=plural_pascal,
            plural_camel=camel_case(plural_pascal),
            plural_kebab=kebab_case(plural_pascal),
        )
