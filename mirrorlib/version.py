"""
Semantic versions as published by upstream projects, and the normalization
of raw upstream tags into them.

Upstream tags are inconsistent ("v10.3.1", "10.3.1", "v11.0.4-limitless",
"nightly-build"), so every project declares the tag shape it accepts and
anything else is dropped rather than treated as an error.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from functools import total_ordering
from typing import Optional, Pattern, Tuple, Union

from mirrorlib import logutil

logger = logutil.getLogger(__name__)

LEADING_NON_NUMERIC = re.compile(r"^[^\d]+")
NUMERIC_CORE = re.compile(r"^\d+(?:\.\d+)*")

PLAIN_SEMVER_PATTERN = r"^(?P<version>\d+\.\d+\.\d+)$"


def _strip_trailing_zeros(numbers: Tuple[int, ...]) -> Tuple[int, ...]:
    end = len(numbers)
    while end > 1 and numbers[end - 1] == 0:
        end -= 1
    return numbers[:end]


@total_ordering
@dataclass(frozen=True, eq=False)
class SemanticVersion:
    """
    An ordered tuple of non-negative integers plus an optional qualifier suffix.

    Ordering is by the numeric tuple only, the shorter tuple being zero-padded
    (so 10.3 == 10.3.0 < 10.3.1 < 10.10.0). When numbers tie, a version without
    suffix sorts before one with a suffix and suffixes sort alphabetically, which
    keeps the order total.
    """
    numbers: Tuple[int, ...]
    suffix: Optional[str] = None

    def __post_init__(self):
        if not self.numbers:
            raise ValueError("A version needs at least one numeric component")
        for n in self.numbers:
            if not isinstance(n, int) or isinstance(n, bool) or n < 0:
                raise ValueError(f"Invalid numeric version component {n!r}")
        if self.suffix == '':
            object.__setattr__(self, 'suffix', None)

    @classmethod
    def parse(cls, text: str) -> "SemanticVersion":
        """ '10.3.1' -> (10, 3, 1); '11.0.4-limitless' -> (11, 0, 4) + 'limitless' """
        core, _, suffix = text.strip().partition('-')
        try:
            numbers = tuple(int(part) for part in core.split('.'))
        except ValueError:
            raise ValueError(f"'{text}' is not a dotted numeric version")
        return cls(numbers, suffix or None)

    @property
    def major(self) -> int:
        return self.numbers[0]

    @property
    def minor(self) -> int:
        return self.numbers[1] if len(self.numbers) > 1 else 0

    @property
    def patch(self) -> int:
        return self.numbers[2] if len(self.numbers) > 2 else 0

    def _key(self):
        return _strip_trailing_zeros(self.numbers), (self.suffix is not None, self.suffix or '')

    def _padded(self, other: "SemanticVersion"):
        width = max(len(self.numbers), len(other.numbers))
        return (self.numbers + (0,) * (width - len(self.numbers)),
                other.numbers + (0,) * (width - len(other.numbers)))

    def __eq__(self, other):
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other):
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        mine, theirs = self._padded(other)
        if mine != theirs:
            return mine < theirs
        return self._key()[1] < other._key()[1]

    def __hash__(self):
        return hash(self._key())

    def __str__(self):
        core = '.'.join(str(n) for n in self.numbers)
        return f'{core}-{self.suffix}' if self.suffix else core

    def __repr__(self):
        return f'SemanticVersion({str(self)!r})'


def compare(v1: Union[str, SemanticVersion], v2: Union[str, SemanticVersion]) -> int:
    """ cmp-style comparison: negative, zero or positive """
    a = v1 if isinstance(v1, SemanticVersion) else SemanticVersion.parse(v1)
    b = v2 if isinstance(v2, SemanticVersion) else SemanticVersion.parse(v2)
    return (a > b) - (a < b)


@dataclass(frozen=True)
class ReleaseRecord:
    raw_tag: str
    version: SemanticVersion
    is_prerelease: bool = False
    published_at: Optional[datetime] = field(default=None, compare=False)


class TagPattern:
    """
    The tag shape accepted for one upstream project.

    The regular expression is matched against the tag once any leading
    non-numeric prefix ("v", "release-") is removed. A named group `version`
    selects the numeric part and a named group `suffix` selects a qualifier to
    keep in the version. Anything outside those groups (e.g. a known
    "-limitless" qualifier) is stripped.
    """

    def __init__(self, pattern: Union[str, Pattern] = PLAIN_SEMVER_PATTERN):
        self.regex = re.compile(pattern) if isinstance(pattern, str) else pattern

    def __repr__(self):
        return f'TagPattern({self.regex.pattern!r})'

    def normalize(self, raw_tag: str) -> Optional[SemanticVersion]:
        """
        :return: the version for raw_tag, or None if the tag does not have the accepted shape
        """
        stripped = LEADING_NON_NUMERIC.sub('', raw_tag.strip())
        match = self.regex.fullmatch(stripped)
        if not match:
            return None
        groups = match.groupdict()
        core = groups.get('version')
        if core is None:
            core_match = NUMERIC_CORE.match(match.group(0))
            if not core_match:
                return None
            core = core_match.group(0)
        try:
            numbers = tuple(int(part) for part in core.split('.'))
        except ValueError:
            return None
        return SemanticVersion(numbers, groups.get('suffix'))

    def to_record(self, raw_tag: str, is_prerelease: bool = False,
                  published_at: Optional[datetime] = None) -> Optional[ReleaseRecord]:
        version = self.normalize(raw_tag)
        if version is None:
            logger.debug("Dropping upstream tag %s: does not match %s", raw_tag, self.regex.pattern)
            return None
        return ReleaseRecord(raw_tag=raw_tag, version=version, is_prerelease=is_prerelease, published_at=published_at)
