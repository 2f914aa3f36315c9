"""
templates.py — Reusable broadcast templates with {{variable}} placeholders.

    template.render({"name": "Alex", "location": "North Beach"})
        → ("Missing Person: Alex", "Alex was last seen near North Beach ...")

Every placeholder must be supplied; a missing one is a ValidationError so
a half-filled emergency message is never sent.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from backend.app.broadcasts.models import (
    BroadcastPriority,
    BroadcastType,
    DeliveryChannel,
    ordered_channels,
)
from backend.app.core.errors import NotFoundError, ValidationError

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class BroadcastTemplate:
    template_id: str
    name: str
    category: str
    type: BroadcastType
    priority: BroadcastPriority
    title: str
    body: str
    default_channels: FrozenSet[DeliveryChannel]
    requires_acknowledgment: bool = False

    @property
    def variables(self) -> List[str]:
        seen: List[str] = []
        for match in _PLACEHOLDER.finditer(self.title + "\n" + self.body):
            if match.group(1) not in seen:
                seen.append(match.group(1))
        return seen

    def render(self, values: Mapping[str, object]) -> Tuple[str, str]:
        missing = [v for v in self.variables if v not in values or values[v] in (None, "")]
        if missing:
            raise ValidationError(
                f"Template '{self.template_id}' is missing variables: {', '.join(missing)}",
                field="variables", missing=missing,
            )

        def substitute(text: str) -> str:
            return _PLACEHOLDER.sub(lambda m: str(values[m.group(1)]), text)

        return substitute(self.title), substitute(self.body)

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "name": self.name,
            "category": self.category,
            "type": self.type.value,
            "priority": self.priority.label,
            "title": self.title,
            "body": self.body,
            "variables": self.variables,
            "default_channels": [c.value for c in ordered_channels(self.default_channels)],
            "requires_acknowledgment": self.requires_acknowledgment,
        }


_C = DeliveryChannel

BUILTIN_TEMPLATES: Dict[str, BroadcastTemplate] = {
    t.template_id: t for t in (
        BroadcastTemplate(
            template_id="missing-person",
            name="Missing Person Alert",
            category="safety",
            type=BroadcastType.EMERGENCY,
            priority=BroadcastPriority.CRITICAL,
            title="Missing Person: {{name}}",
            body=(
                "{{name}} was last seen near {{location}} at {{last_seen}}. "
                "Description: {{description}}. If you see this person, contact "
                "the nearest tourist police post immediately."
            ),
            default_channels=frozenset({_C.PUSH, _C.SMS, _C.IN_APP}),
            requires_acknowledgment=False,
        ),
        BroadcastTemplate(
            template_id="severe-weather",
            name="Severe Weather Warning",
            category="weather",
            type=BroadcastType.WARNING,
            priority=BroadcastPriority.HIGH,
            title="{{hazard}} warning for {{area}}",
            body=(
                "A {{hazard}} is expected in {{area}} from {{starts_at}}. "
                "Stay indoors, avoid beaches and hill roads, and follow "
                "instructions from local authorities. Confirm you are safe."
            ),
            default_channels=frozenset({_C.PUSH, _C.SMS, _C.EMAIL, _C.IN_APP}),
            requires_acknowledgment=True,
        ),
        BroadcastTemplate(
            template_id="closure",
            name="Site Closure",
            category="operations",
            type=BroadcastType.ALERT,
            priority=BroadcastPriority.MEDIUM,
            title="{{site}} closed",
            body="{{site}} is closed until {{until}} because of {{reason}}. Please plan alternative visits.",
            default_channels=frozenset({_C.PUSH, _C.IN_APP}),
        ),
        BroadcastTemplate(
            template_id="welcome",
            name="Welcome Message",
            category="information",
            type=BroadcastType.ANNOUNCEMENT,
            priority=BroadcastPriority.LOW,
            title="Welcome to {{destination}}",
            body=(
                "Welcome to {{destination}}! Save the tourist helpline {{helpline}} "
                "and keep location sharing on so we can reach you in an emergency."
            ),
            default_channels=frozenset({_C.IN_APP, _C.EMAIL}),
        ),
    )
}


def get_template(template_id: str, templates: Optional[Mapping[str, BroadcastTemplate]] = None) -> BroadcastTemplate:
    catalogue = BUILTIN_TEMPLATES if templates is None else templates
    template = catalogue.get(template_id)
    if template is None:
        raise NotFoundError("Template", template_id=template_id)
    return template
