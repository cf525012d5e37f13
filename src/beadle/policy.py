"""Tag vocabulary checks layered above the core data model."""

from __future__ import annotations

from dataclasses import dataclass

from .config import TagPolicyConfig


@dataclass(frozen=True)
class TagPolicy:
    vocabulary: tuple[str, ...] = ()
    strict: bool = False

    @classmethod
    def from_config(cls, config: TagPolicyConfig) -> TagPolicy:
        return cls(vocabulary=config.vocabulary, strict=config.strict)

    def violations(self, tags: list[str]) -> list[str]:
        """Return ``prefix:value`` tags whose prefix is not recognized.

        Bare tags are always accepted; with an empty vocabulary nothing is
        checked.
        """
        if not self.vocabulary:
            return []
        known = set(self.vocabulary)
        problems: list[str] = []
        for tag in tags:
            prefix, sep, _value = tag.strip().partition(":")
            if not sep:
                continue
            if prefix.lower() not in known:
                problems.append(tag.strip())
        return sorted(set(problems))
