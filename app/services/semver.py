"""Semantic version parsing, precedence, and node-semver style ranges.

Ranges accept the grammar published clients already send:

    >=1.0.0 <2.0.0        whitespace means AND
    1.2.x  1.x  *         x-ranges
    ~1.2.3  ^0.2.3        tilde and caret
    1.2.3 - 2.3.4         hyphen ranges
    ^1.0.0 || ^2.0.0      || means OR

A pre-release version only satisfies a comparator set when one of the set's
comparators has a pre-release tag on the same major.minor.patch tuple.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import total_ordering

_IDENT = r"[0-9A-Za-z-]+"
_DOTTED = rf"{_IDENT}(?:\.{_IDENT})*"
_NUM = r"0|[1-9]\d*"

_VERSION_RE = re.compile(
    rf"^v?(?P<major>{_NUM})\.(?P<minor>{_NUM})\.(?P<patch>{_NUM})"
    rf"(?:-(?P<prerelease>{_DOTTED}))?"
    rf"(?:\+(?P<build>{_DOTTED}))?$"
)

_XR = rf"{_NUM}|[xX*]"
_PARTIAL_RE = re.compile(
    rf"^v?(?P<major>{_XR})"
    rf"(?:\.(?P<minor>{_XR})"
    rf"(?:\.(?P<patch>{_XR})"
    rf"(?:-(?P<prerelease>{_DOTTED}))?"
    rf"(?:\+(?P<build>{_DOTTED}))?)?)?$"
)

_OPERATOR_SPACE_RE = re.compile(r"(<=|>=|<|>|=|~>|~|\^)\s+")
_HYPHEN_RE = re.compile(r"^(?P<low>\S+)\s+-\s+(?P<high>\S+)$")
_TOKEN_RE = re.compile(r"^(?P<op><=|>=|<|>|=|~>|~|\^)?(?P<version>.+)$")


def _parse_prerelease(raw: str | None) -> tuple[int | str, ...]:
    if not raw:
        return ()
    parts: list[int | str] = []
    for ident in raw.split("."):
        if ident.isdigit():
            if len(ident) > 1 and ident.startswith("0"):
                raise ValueError(f"Numeric pre-release identifier has a leading zero: {ident!r}")
            parts.append(int(ident))
        else:
            parts.append(ident)
    return tuple(parts)


@total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: tuple[int | str, ...] = ()
    build: tuple[str, ...] = field(default=())

    @property
    def core(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def sort_key(self) -> tuple:
        # A release outranks any of its pre-releases; numeric identifiers
        # rank below alphanumeric ones.
        pre = tuple((0, ident, "") if isinstance(ident, int) else (1, 0, ident) for ident in self.prerelease)
        return (self.major, self.minor, self.patch, 0 if self.prerelease else 1, pre)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def __lt__(self, other: Version) -> bool:
        return self.sort_key() < other.sort_key()

    def __hash__(self) -> int:
        return hash(self.sort_key())

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += "-" + ".".join(str(p) for p in self.prerelease)
        if self.build:
            text += "+" + ".".join(self.build)
        return text


def parse_version(text: str) -> Version:
    if not isinstance(text, str):
        raise ValueError(f"Invalid version: {text!r}")
    match = _VERSION_RE.match(text.strip())
    if not match:
        raise ValueError(f"Invalid version: {text!r}")
    build = match.group("build")
    return Version(
        int(match.group("major")),
        int(match.group("minor")),
        int(match.group("patch")),
        _parse_prerelease(match.group("prerelease")),
        tuple(build.split(".")) if build else (),
    )


@dataclass(frozen=True)
class Comparator:
    op: str
    version: Version

    def test(self, candidate: Version) -> bool:
        if self.op == "<":
            return candidate < self.version
        if self.op == "<=":
            return candidate <= self.version
        if self.op == ">":
            return candidate > self.version
        if self.op == ">=":
            return candidate >= self.version
        return candidate == self.version

    def __str__(self) -> str:
        op = "" if self.op == "=" else self.op
        return f"{op}{self.version}"


# Nothing sorts below 0.0.0-0, so this comparator can never pass.
_NEVER = Comparator("<", Version(0, 0, 0, (0,)))


@dataclass(frozen=True)
class _Partial:
    major: int | None
    minor: int | None
    patch: int | None
    prerelease: tuple[int | str, ...] = ()

    @property
    def is_full(self) -> bool:
        return self.patch is not None

    def floor(self) -> Version:
        return Version(self.major or 0, self.minor or 0, self.patch or 0, self.prerelease if self.is_full else ())


def _xr(value: str | None) -> int | None:
    if value is None or value in ("x", "X", "*"):
        return None
    return int(value)


def _parse_partial(text: str) -> _Partial:
    match = _PARTIAL_RE.match(text)
    if not match:
        raise ValueError(f"Invalid version in range: {text!r}")
    major = _xr(match.group("major"))
    minor = _xr(match.group("minor")) if major is not None else None
    patch = _xr(match.group("patch")) if minor is not None else None
    prerelease = _parse_prerelease(match.group("prerelease")) if patch is not None else ()
    return _Partial(major, minor, patch, prerelease)


def _next_major(p: _Partial) -> Version:
    return Version((p.major or 0) + 1, 0, 0)


def _next_minor(p: _Partial) -> Version:
    return Version(p.major or 0, (p.minor or 0) + 1, 0)


def _primitive(op: str, p: _Partial) -> list[Comparator]:
    if p.major is None:
        return [_NEVER] if op in ("<", ">") else []
    if p.is_full:
        return [Comparator(op or "=", p.floor())]
    upper = _next_major(p) if p.minor is None else _next_minor(p)
    if op in ("", "="):
        return [Comparator(">=", p.floor()), Comparator("<", upper)]
    if op == ">":
        return [Comparator(">=", upper)]
    if op == ">=":
        return [Comparator(">=", p.floor())]
    if op == "<":
        return [Comparator("<", p.floor())]
    return [Comparator("<", upper)]


def _tilde(p: _Partial) -> list[Comparator]:
    if p.major is None:
        return []
    if p.minor is None:
        return [Comparator(">=", p.floor()), Comparator("<", _next_major(p))]
    return [Comparator(">=", p.floor()), Comparator("<", _next_minor(p))]


def _caret(p: _Partial) -> list[Comparator]:
    if p.major is None:
        return []
    if p.minor is None:
        return [Comparator(">=", p.floor()), Comparator("<", _next_major(p))]
    if p.patch is None:
        upper = _next_major(p) if p.major != 0 else _next_minor(p)
        return [Comparator(">=", p.floor()), Comparator("<", upper)]
    if p.major != 0:
        upper = _next_major(p)
    elif p.minor != 0:
        upper = _next_minor(p)
    else:
        upper = Version(0, 0, p.patch + 1)
    return [Comparator(">=", p.floor()), Comparator("<", upper)]


def _hyphen(low: _Partial, high: _Partial) -> list[Comparator]:
    comparators: list[Comparator] = []
    if low.major is not None:
        comparators.append(Comparator(">=", low.floor()))
    if high.major is not None:
        if high.minor is None:
            comparators.append(Comparator("<", _next_major(high)))
        elif high.patch is None:
            comparators.append(Comparator("<", _next_minor(high)))
        else:
            comparators.append(Comparator("<=", high.floor()))
    return comparators


def _parse_set(text: str) -> list[Comparator]:
    text = text.strip()
    if not text:
        return []
    hyphen = _HYPHEN_RE.match(text)
    if hyphen:
        return _hyphen(_parse_partial(hyphen.group("low")), _parse_partial(hyphen.group("high")))
    comparators: list[Comparator] = []
    for token in _OPERATOR_SPACE_RE.sub(r"\1", text).split():
        match = _TOKEN_RE.match(token)
        if not match:
            raise ValueError(f"Invalid range token: {token!r}")
        op = match.group("op") or ""
        partial = _parse_partial(match.group("version"))
        if op in ("~", "~>"):
            comparators.extend(_tilde(partial))
        elif op == "^":
            comparators.extend(_caret(partial))
        else:
            comparators.extend(_primitive(op, partial))
    return comparators


@dataclass(frozen=True)
class VersionRange:
    raw: str
    sets: tuple[tuple[Comparator, ...], ...]

    def satisfied_by(self, version: Version) -> bool:
        return any(_set_allows(comparators, version) for comparators in self.sets)

    def __str__(self) -> str:
        return " || ".join(" ".join(str(c) for c in s) or "*" for s in self.sets)


def _set_allows(comparators: tuple[Comparator, ...], version: Version) -> bool:
    if not all(c.test(version) for c in comparators):
        return False
    if not version.prerelease:
        return True
    return any(c.version.prerelease and c.version.core == version.core for c in comparators)


def parse_range(text: str) -> VersionRange:
    if not isinstance(text, str):
        raise ValueError(f"Invalid range: {text!r}")
    sets = tuple(tuple(_parse_set(part)) for part in text.split("||"))
    return VersionRange(text, sets)


def is_valid_range(text: str | None) -> bool:
    if text is None:
        return False
    try:
        parse_range(text)
    except ValueError:
        return False
    return True


def satisfies(version: str | Version, range_text: str) -> bool:
    """Never raises: malformed input on either side is simply unsatisfied."""
    try:
        candidate = version if isinstance(version, Version) else parse_version(version)
        return parse_range(range_text).satisfied_by(candidate)
    except ValueError:
        return False
