"""
Tag Parser — derives creative classification tags from ad names.

Naming convention:
    {UniqueCode}_{Type}_{Person}_{Style}_{Product}_{Hook}_{Theme}

Names that don't follow the convention are not errors: the parser returns
None and the caller falls back to the CSV name-mapping table keyed by the
unique code (the first segment). If neither works the creative is untagged.

tag_source is modelled as a small state machine so the "manual is never
overwritten by an auto pass" rule can be checked mechanically.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from adsync.models import TAG_FIELDS

logger = logging.getLogger(__name__)

DELIMITER = "_"
MIN_SEGMENTS = 7


class TagSource(str, enum.Enum):
    PARSED = "parsed"
    CSV_MATCH = "csv_match"
    MANUAL = "manual"
    UNTAGGED = "untagged"


AUTO_SOURCES = frozenset({TagSource.PARSED, TagSource.CSV_MATCH, TagSource.UNTAGGED})

# from -> allowed targets for an ordinary (non-reset) transition
_TRANSITIONS: dict[TagSource, frozenset[TagSource]] = {
    TagSource.UNTAGGED: frozenset({TagSource.UNTAGGED, TagSource.PARSED, TagSource.CSV_MATCH, TagSource.MANUAL}),
    TagSource.PARSED: frozenset({TagSource.UNTAGGED, TagSource.PARSED, TagSource.CSV_MATCH, TagSource.MANUAL}),
    TagSource.CSV_MATCH: frozenset({TagSource.UNTAGGED, TagSource.PARSED, TagSource.CSV_MATCH, TagSource.MANUAL}),
    TagSource.MANUAL: frozenset({TagSource.MANUAL}),
}


def coerce_source(value) -> TagSource:
    if isinstance(value, TagSource):
        return value
    try:
        return TagSource(value or TagSource.UNTAGGED.value)
    except ValueError:
        logger.warning(f"Unknown tag_source {value!r}, treating as untagged")
        return TagSource.UNTAGGED


def can_transition(current, target, *, explicit_reset: bool = False) -> bool:
    """
    Whether tag_source may move from `current` to `target`.

    Manual tags are sticky: the only way out is an explicit reset to untagged.
    """
    current, target = coerce_source(current), coerce_source(target)
    if current == TagSource.MANUAL and target == TagSource.UNTAGGED:
        return explicit_reset
    return target in _TRANSITIONS[current]


@dataclass(frozen=True)
class ParsedTags:
    unique_code: str
    ad_type: Optional[str]
    person: Optional[str]
    style: Optional[str]
    product: Optional[str]
    hook: Optional[str]
    theme: Optional[str]

    def tags(self) -> dict:
        return {f: getattr(self, f) for f in TAG_FIELDS}

    def as_dict(self) -> dict:
        return {"unique_code": self.unique_code, **self.tags()}


def _clean(segment: str) -> Optional[str]:
    segment = segment.strip()
    return segment or None


def parse_ad_name(name: Optional[str]) -> Optional[ParsedTags]:
    """
    Parse an ad name into tags. Returns None when the name is unparseable:
    fewer than 7 segments or an empty unique code. Values are kept verbatim;
    segments beyond the seventh are folded back into the theme.
    """
    if not name:
        return None
    parts = name.strip().split(DELIMITER)
    if len(parts) < MIN_SEGMENTS:
        return None
    unique_code = parts[0].strip()
    if not unique_code:
        return None
    theme = DELIMITER.join(parts[6:])
    return ParsedTags(
        unique_code=unique_code,
        ad_type=_clean(parts[1]),
        person=_clean(parts[2]),
        style=_clean(parts[3]),
        product=_clean(parts[4]),
        hook=_clean(parts[5]),
        theme=_clean(theme),
    )


def extract_unique_code(name: Optional[str]) -> Optional[str]:
    """First segment of the name, used to look up CSV mappings for unparseable names."""
    if not name:
        return None
    code = name.strip().split(DELIMITER, 1)[0].strip()
    return code or None


def apply_mapping(unique_code: Optional[str], mapping_table: Mapping[str, dict]) -> Optional[dict]:
    """Exact-match lookup of a previously uploaded CSV mapping. Returns the tag dict or None."""
    if not unique_code:
        return None
    entry = mapping_table.get(unique_code)
    if entry is None:
        return None
    return {f: entry.get(f) for f in TAG_FIELDS}


# ══════════════════════════════════════════════════════════════════════
#  PRECEDENCE
# ══════════════════════════════════════════════════════════════════════

class TagAction(str, enum.Enum):
    SKIP_MANUAL = "skip_manual"
    APPLY = "apply"


@dataclass
class TagDecision:
    action: TagAction
    tag_source: TagSource
    tags: dict = field(default_factory=dict)
    unique_code: Optional[str] = None

    def values(self) -> dict:
        """Column values to write for this decision."""
        return {"unique_code": self.unique_code, "tag_source": self.tag_source.value, **self.tags}


_EMPTY_TAGS = {f: None for f in TAG_FIELDS}


def resolve_tags(
    ad_name: Optional[str],
    mappings: Mapping[str, dict],
    current_source=None,
    explicit_code: Optional[str] = None,
) -> TagDecision:
    """
    Auto-tag precedence for one creative:
      1. manual → skip, never overwrite
      2. name parse → parsed
      3. CSV mapping by extracted (or explicit) unique code → csv_match
      4. otherwise untagged
    """
    if coerce_source(current_source) == TagSource.MANUAL:
        return TagDecision(action=TagAction.SKIP_MANUAL, tag_source=TagSource.MANUAL)

    parsed = parse_ad_name(ad_name)
    if parsed is not None:
        return TagDecision(
            action=TagAction.APPLY,
            tag_source=TagSource.PARSED,
            tags=parsed.tags(),
            unique_code=parsed.unique_code,
        )

    code = extract_unique_code(ad_name)
    for candidate in (code, explicit_code):
        mapped = apply_mapping(candidate, mappings)
        if mapped is not None:
            return TagDecision(
                action=TagAction.APPLY,
                tag_source=TagSource.CSV_MATCH,
                tags=mapped,
                unique_code=candidate,
            )

    return TagDecision(
        action=TagAction.APPLY,
        tag_source=TagSource.UNTAGGED,
        tags=dict(_EMPTY_TAGS),
        unique_code=code or explicit_code,
    )


def needs_update(current: Mapping, decision: TagDecision) -> bool:
    """
    False when applying `decision` would leave the stored row unchanged.
    Unchanged creatives must produce no write and not count as updated.
    """
    if decision.action == TagAction.SKIP_MANUAL:
        return False
    for key, value in decision.values().items():
        if current.get(key) != value:
            return True
    return False
