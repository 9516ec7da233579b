"""Classification of decoded text into typed application codes.

Printed clinic documents carry payloads such as::

    PRE-12345
    PAT:PAT-9|EXTRA
    APPT-20250101-ABC|DOC:X|DATE:Y

The code of interest is either the part after a leading ``TAG:`` in the first
``|`` segment, or the whole first segment. It is then classified by prefix
against an ordered table; the table is configuration because different
screens historically accepted different prefixes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from clinic_scan.core.logging_utils import LoggerLike, ensure_structured_logger

from .state import CodeKind, ParsedCode


@dataclass(slots=True, frozen=True)
class PrefixRule:
    prefix: str
    kind: CodeKind


DEFAULT_PREFIX_RULES: Tuple[PrefixRule, ...] = (
    PrefixRule("PRE", CodeKind.PRESCRIPTION),
    PrefixRule("PR-", CodeKind.PRESCRIPTION),
    PrefixRule("PAT", CodeKind.PATIENT),
    PrefixRule("APT", CodeKind.APPOINTMENT),
    PrefixRule("APPT", CodeKind.APPOINTMENT),
)


def parse_prefix_table(raw: str, *, logger: LoggerLike = None) -> List[PrefixRule]:
    """Parse ``"PRE:prescription,PAT:patient"`` into ordered rules.

    Malformed entries and unknown kinds are skipped with a warning.
    """
    log = ensure_structured_logger(logger, fallback_name=__name__)
    rules: List[PrefixRule] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        prefix, sep, kind_name = entry.rpartition(":")
        prefix = prefix.strip().upper()
        if not sep or not prefix:
            log.warning("Ignoring malformed prefix rule %r", entry)
            continue
        try:
            kind = CodeKind(kind_name.strip().lower())
        except ValueError:
            log.warning("Ignoring prefix rule %r: unknown kind %r", entry, kind_name)
            continue
        if kind is CodeKind.UNRECOGNIZED:
            log.warning("Ignoring prefix rule %r: cannot map to 'unrecognized'", entry)
            continue
        rules.append(PrefixRule(prefix, kind))
    return rules


def format_prefix_table(rules: Iterable[PrefixRule]) -> str:
    return ",".join(f"{rule.prefix}:{rule.kind.value}" for rule in rules)


def extract_candidate(text: str) -> str:
    """Pull the code token out of already-trimmed payload text."""
    colon = text.find(":")
    pipe = text.find("|")
    first_segment = text.split("|", 1)[0]
    if colon != -1 and (pipe == -1 or colon < pipe):
        tokens = first_segment.split(":")
        return tokens[1].strip()
    return first_segment.strip()


class PayloadRouter:
    """Pure function object from raw decoded text to :class:`ParsedCode`."""

    def __init__(self, rules: Optional[Sequence[PrefixRule]] = None) -> None:
        self._rules: Tuple[PrefixRule, ...] = tuple(rules) if rules else DEFAULT_PREFIX_RULES

    @property
    def rules(self) -> Tuple[PrefixRule, ...]:
        return self._rules

    def classify(self, candidate: str) -> Optional[CodeKind]:
        upper = candidate.upper()
        for rule in self._rules:
            if upper.startswith(rule.prefix):
                return rule.kind
        return None

    def route(self, raw_text: str) -> ParsedCode:
        trimmed = (raw_text or "").strip()
        if not trimmed:
            return ParsedCode(CodeKind.UNRECOGNIZED, "")
        candidate = extract_candidate(trimmed)
        kind = self.classify(candidate) if candidate else None
        if kind is None:
            return ParsedCode(CodeKind.UNRECOGNIZED, trimmed)
        return ParsedCode(kind, candidate)


__all__ = [
    "DEFAULT_PREFIX_RULES",
    "PayloadRouter",
    "PrefixRule",
    "extract_candidate",
    "format_prefix_table",
    "parse_prefix_table",
]
