# Model package init
from .game_image import GameImage  # noqa: F401 re-export
from .game_instance import (  # noqa: F401 re-export
    CharacterInstance,
    CreatureInstance,
    GameInstance,
    ItemInstance,
    JoinSubmission,
    LocationInstance,
)
from .job import Job  # noqa: F401 re-export
from .models import Account, Game, Subscription  # noqa: F401 re-export
from .template import SheetTemplate, TemplateSnapshot  # noqa: F401 re-export
from .turn_sheet import ProcessingStatus, SheetType, TurnSheet  # noqa: F401 re-export
from .world import (  # noqa: F401 re-export
    Character,
    Creature,
    CreaturePlacement,
    Item,
    ItemPlacement,
    Location,
    LocationLink,
    LocationLinkRequirement,
)

__all__ = [
    "Account",
    "Character",
    "CharacterInstance",
    "Creature",
    "CreatureInstance",
    "CreaturePlacement",
    "Game",
    "GameImage",
    "GameInstance",
    "Item",
    "ItemInstance",
    "ItemPlacement",
    "Job",
    "JoinSubmission",
    "Location",
    "LocationInstance",
    "LocationLink",
    "LocationLinkRequirement",
    "ProcessingStatus",
    "SheetTemplate",
    "SheetType",
    "Subscription",
    "TemplateSnapshot",
    "TurnSheet",
]
