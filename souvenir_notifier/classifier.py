"""Souvenir Package classification.

Pure functions: nothing here touches the network or the state file.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from .inventory import ObservedItem

# The name must end with "Souvenir Package"; trailing text disqualifies it.
NAME_RE = re.compile(r"^(.*?) (\d{4}) (.*?) Souvenir Package$")
MATCH_RE = re.compile(r"^It was dropped during the (.*?) match between (.*?) and (.*?),")


@dataclass(frozen=True)
class MatchContext:
    tier: str
    team1: str
    team2: str


@dataclass(frozen=True)
class Drop:
    item_id: str
    event: str
    year: int
    location: str
    market_key: str
    match_context: Optional[MatchContext] = None

    @property
    def label(self) -> str:
        return f"{self.event} {self.year} {self.location}"


def parse_name(name: str) -> Optional[Tuple[str, int, str]]:
    """Return ``(event, year, location)`` for a Souvenir Package name."""
    m = NAME_RE.match(name or "")
    if m is None:
        return None
    return m.group(1), int(m.group(2)), m.group(3)


def parse_match_context(lines: Iterable[str]) -> Optional[MatchContext]:
    """First description line naming the match the package dropped in."""
    for line in lines:
        m = MATCH_RE.match(line or "")
        if m is not None:
            return MatchContext(tier=m.group(1), team1=m.group(2), team2=m.group(3))
    return None


def classify(item: ObservedItem) -> Optional[Drop]:
    parsed = parse_name(item.display_name)
    if parsed is None:
        return None
    event, year, location = parsed
    return Drop(
        item_id=item.item_id,
        event=event,
        year=year,
        location=location,
        market_key=item.market_key,
        match_context=parse_match_context(item.description_lines),
    )


__all__ = ["MatchContext", "Drop", "parse_name", "parse_match_context", "classify"]
