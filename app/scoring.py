from __future__ import annotations

from dataclasses import asdict, dataclass

SCORE_VERSION = "v1.1"
CONVERSION_POINTS = 20
INTERACTION_POINTS = 5
BONUS_CAP = 40
SCORE_CAP = 100
DEDUCTION_NO_CLICK_ID = 25
DEDUCTION_FAST = 20
DEDUCTION_SINGLE_EVENT = 10
FAST_ELAPSED_SECONDS = 30


@dataclass(frozen=True)
class ScoreBreakdown:
    conversion_points: int
    interaction_points: int
    bonuses: int
    bonuses_capped: int
    raw_score: int
    final_score: int
    capped_at_100: bool
    confidence_score: int
    deduction_no_click_id: int
    deduction_fast: int
    deduction_single_event: int
    elapsed_seconds: float
    version: str = SCORE_VERSION

    @property
    def lead_score(self) -> int:
        return min(5, self.final_score // 20)

    def as_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["lead_score"] = self.lead_score
        return data


def compute_score(
    *,
    conversion_count: int,
    interaction_count: int,
    bonus_points: int = 0,
    has_click_id: bool,
    elapsed_seconds: float,
    event_count: int,
) -> ScoreBreakdown:
    conversion_points = max(0, int(conversion_count)) * CONVERSION_POINTS
    interaction_points = max(0, int(interaction_count)) * INTERACTION_POINTS
    bonuses = max(0, int(bonus_points))
    bonuses_capped = min(bonuses, BONUS_CAP)
    raw_score = conversion_points + interaction_points + bonuses_capped

    no_click_id = 0 if has_click_id else DEDUCTION_NO_CLICK_ID
    fast = DEDUCTION_FAST if elapsed_seconds < FAST_ELAPSED_SECONDS else 0
    single = DEDUCTION_SINGLE_EVENT if event_count <= 1 else 0
    confidence = max(0, min(100, 100 - no_click_id - fast - single))

    return ScoreBreakdown(
        conversion_points=conversion_points,
        interaction_points=interaction_points,
        bonuses=bonuses,
        bonuses_capped=bonuses_capped,
        raw_score=raw_score,
        final_score=min(raw_score, SCORE_CAP),
        capped_at_100=raw_score > SCORE_CAP,
        confidence_score=confidence,
        deduction_no_click_id=no_click_id,
        deduction_fast=fast,
        deduction_single_event=single,
        elapsed_seconds=elapsed_seconds,
    )


# Intent actions that add bonus points to the session; capped by BONUS_CAP.
ACTION_BONUSES: dict[str, int] = {
    "whatsapp": 40,
    "phone": 30,
    "call": 30,
    "click": 15,
    "copy": 15,
}


def action_bonus(action: str) -> int:
    return ACTION_BONUSES.get(action.strip().lower(), 0)
