"""Shared kernel value objects."""
from dataclasses import dataclass


@dataclass(frozen=True)
class SemanticVersion:
    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        if min(self.major, self.minor, self.patch) < 0:
            raise ValueError("Version components cannot be negative")

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @classmethod
    def initial(cls) -> "SemanticVersion":
        return cls(1, 0, 0)

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        parts = value.strip().split(".")
        if len(parts) != 3:
            raise ValueError(f"Invalid semantic version: {value!r}")
        try:
            major, minor, patch = (int(part) for part in parts)
        except ValueError as exc:
            raise ValueError(f"Invalid semantic version: {value!r}") from exc
        return cls(major, minor, patch)

    def next_patch(self) -> "SemanticVersion":
        return SemanticVersion(self.major, self.minor, self.patch + 1)
