"""Readiness validator run before an instance may start.

Each problem is a ``ReadinessIssue(field, message, severity)``. Issues with
severity ``error`` block ``start``; ``warning`` issues are reported only.

Link requirements are checked by a fixed-point walk from the starting
location: a link opens once the items placed at locations already reached
cover its requirements, and opening it may reach more items. A requirement
still unmet when the walk stops can never be satisfied in play.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass
from typing import Dict, List

from pbm.errors import NoTemplate
from pbm.models.game_instance import GameInstance, JoinSubmission
from pbm.models.turn_sheet import SheetType
from pbm.models.world import ItemPlacement, Location, LocationLink
from pbm.services.template_registry import resolve_preview

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"


@dataclass(frozen=True)
class ReadinessIssue:
    field: str
    message: str
    severity: str = SEVERITY_ERROR

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


def _obtainable(placements: List[ItemPlacement], reached: set) -> Counter:
    counts: Counter = Counter()
    for placement in placements:
        if placement.location_id in reached and placement.spawn_chance > 0:
            counts[placement.item_id] += max(placement.initial_count, 0)
    return counts


def walk_links(start_id: str, links: List[LocationLink], placements: List[ItemPlacement]):
    """Return ``(reached_location_ids, blocked_links)`` from ``start_id``."""
    reached = {start_id}
    changed = True
    while changed:
        changed = False
        items = _obtainable(placements, reached)
        for link in links:
            if link.from_location_id not in reached or link.to_location_id in reached:
                continue
            if all(items[req.item_id] >= req.quantity for req in link.requirements):
                reached.add(link.to_location_id)
                changed = True
    items = _obtainable(placements, reached)
    blocked = [
        link
        for link in links
        if link.from_location_id in reached
        and not all(items[req.item_id] >= req.quantity for req in link.requirements)
    ]
    return reached, blocked


def check_readiness(instance: GameInstance) -> List[ReadinessIssue]:
    game_id = instance.game_id
    issues: List[ReadinessIssue] = []

    locations = Location.query.filter_by(game_id=game_id).order_by(Location.id).all()
    if not locations:
        issues.append(ReadinessIssue("locations", "game has no locations"))
    starting = [loc for loc in locations if loc.is_starting_location]
    if locations and not starting:
        issues.append(ReadinessIssue("starting_location", "game has no starting location"))
    elif len(starting) > 1:
        issues.append(
            ReadinessIssue(
                "starting_location", f"game has {len(starting)} starting locations; exactly one is allowed"
            )
        )

    if len(starting) == 1:
        links = LocationLink.query.filter_by(game_id=game_id).order_by(LocationLink.id).all()
        placements = ItemPlacement.query.filter_by(game_id=game_id).all()
        reached, blocked = walk_links(starting[0].id, links, placements)
        for link in blocked:
            issues.append(
                ReadinessIssue(
                    "location_links", f"requirements of link '{link.name}' ({link.id}) can never be satisfied"
                )
            )
        for loc in locations:
            if loc.id not in reached:
                issues.append(
                    ReadinessIssue(
                        "locations", f"location '{loc.name}' is unreachable from the start", SEVERITY_WARNING
                    )
                )

    for loc in locations:
        try:
            resolve_preview(game_id, SheetType.LOCATION_CHOICE.value, record_id=loc.id)
        except NoTemplate:
            issues.append(
                ReadinessIssue("templates", f"no location_choice template resolves for location '{loc.name}'")
            )
            break

    returned = JoinSubmission.query.filter_by(game_instance_id=instance.id, status="processed").count()
    needed = max(1, instance.required_player_count or 0)
    if returned < needed:
        issues.append(
            ReadinessIssue("players", f"{returned} join sheet(s) returned; at least {needed} required")
        )
    return issues


def blocking(issues: List[ReadinessIssue]) -> List[ReadinessIssue]:
    return [issue for issue in issues if issue.severity == SEVERITY_ERROR]
