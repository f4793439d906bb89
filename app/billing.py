from __future__ import annotations

from dataclasses import dataclass

from app.events import ConversionEvent, InboundEvent, InteractionEvent, SystemEvent


@dataclass(frozen=True)
class BillingDecision:
    billable: bool
    reason: str

    def as_dict(self) -> dict[str, object]:
        return {"billable": self.billable, "reason": self.reason}


def classify(event: InboundEvent) -> BillingDecision:
    # First match wins; unknown shapes stay billable.
    if isinstance(event, ConversionEvent):
        return BillingDecision(billable=True, reason="conversion")
    if isinstance(event, InteractionEvent):
        action = event.action.strip().lower()
        if action == "view":
            return BillingDecision(billable=True, reason="interaction_view")
        if action == "scroll_depth":
            return BillingDecision(billable=False, reason="scroll_depth")
    if isinstance(event, SystemEvent):
        return BillingDecision(billable=False, reason="system")
    return BillingDecision(billable=True, reason="default_billable")
