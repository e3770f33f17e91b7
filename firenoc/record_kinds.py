from __future__ import annotations

import re
from dataclasses import dataclass, field

from firenoc.subject_fields import FieldSpec

_HEX_ONLY = re.compile(r"^[0-9a-fA-F]*$")


@dataclass(frozen=True)
class IdScheme:
    """How business identifiers are minted for a kind.

    ``counter`` produces ``prefix + zero-padded sequence``; a ``{year}``
    placeholder in the prefix is filled with the creation year, so each year
    has its own sequence. ``timestamp`` produces ``prefix + epochMillis + "-"
    + sequence``.
    """

    style: str
    prefix: str
    width: int = 3
    max_value: int | None = None

    def __post_init__(self) -> None:
        if self.style not in {"counter", "timestamp"}:
            raise ValueError(f"unknown id scheme style: {self.style}")
        # A non-hex character keeps business ids out of the primary-key syntax.
        literal = self.prefix.replace("{year}", "")
        if _HEX_ONLY.fullmatch(literal):
            raise ValueError(f"id prefix must contain a non-hex character: {self.prefix!r}")


@dataclass(frozen=True)
class RecordKind:
    name: str
    label: str
    fields: tuple[FieldSpec, ...]
    slots: tuple[str, ...]
    id_scheme: IdScheme
    search_fields: tuple[str, ...]
    multi_slots: dict[str, int] = field(default_factory=dict)
    required_slots: frozenset[str] = frozenset()
    summary_fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        unknown = set(self.multi_slots) - set(self.slots)
        if unknown:
            raise ValueError(f"multi slots not declared as slots: {sorted(unknown)}")
        unknown_required = set(self.required_slots) - set(self.slots)
        if unknown_required:
            raise ValueError(f"required slots not declared as slots: {sorted(unknown_required)}")

    def empty_attachments(self) -> dict[str, object]:
        return {slot: ([] if slot in self.multi_slots else None) for slot in self.slots}

    def is_multi_slot(self, slot: str) -> bool:
        return slot in self.multi_slots


def _checklist(group: str, *names: str) -> tuple[FieldSpec, ...]:
    return tuple(FieldSpec(name, type="bool", required=False, default=False, group=group) for name in names)


APPLICATION = RecordKind(
    name="application",
    label="Application",
    fields=(
        FieldSpec("buildingType"),
        FieldSpec("propertyName"),
        FieldSpec("plotNumber"),
        FieldSpec("address"),
        FieldSpec("builtupArea", type="float", minimum=0.01),
        FieldSpec("floors", type="int", minimum=1),
        FieldSpec("applicantName"),
        FieldSpec("mobile"),
        FieldSpec("email"),
        FieldSpec("applicantType"),
    ),
    slots=("buildingPlan", "propertyDoc", "idProof"),
    id_scheme=IdScheme(style="counter", prefix="NOC{year}", width=3),
    search_fields=("propertyName", "applicantName"),
    summary_fields=("buildingType", "propertyName", "applicantName", "floors"),
)

SAFETY_REVIEW = RecordKind(
    name="safety_review",
    label="Safety review",
    fields=(
        FieldSpec("buildingName"),
        FieldSpec(
            "buildingType",
            type="choice",
            choices=("residential", "commercial", "industrial", "mixed", "other"),
        ),
        FieldSpec("address"),
        FieldSpec("floors", type="int", minimum=1),
        FieldSpec("occupancyLoad", type="int", minimum=1),
        FieldSpec("yearConstruction", type="int", minimum=1900, max_current_year=True),
        FieldSpec("ownerName"),
        FieldSpec("contactNumber"),
        *_checklist(
            "fireProtection",
            "fireExtinguishers",
            "hydrants",
            "smokeDetectors",
            "sprinklers",
            "fireAlarm",
            "emergencyExits",
            "firePump",
        ),
        FieldSpec(
            "wiringCondition",
            type="choice",
            required=False,
            choices=("good", "average", "poor"),
            default="good",
            group="electricalSafety",
        ),
        *_checklist("electricalSafety", "earthing", "panelsAccessible"),
        *_checklist("structuralSafety", "escapeRoutes", "fireDoors", "staircaseWidth"),
        *_checklist("housekeepingStorage", "hazardousStorage", "corridors", "wasteDisposal"),
    ),
    slots=("buildingPlan", "equipmentLayout", "electricalLayout", "previousAudit", "additionalDocs"),
    multi_slots={"additionalDocs": 5},
    id_scheme=IdScheme(style="timestamp", prefix="SR-"),
    search_fields=("buildingName", "ownerName"),
    summary_fields=("buildingName", "buildingType", "address", "ownerName", "floors"),
)
