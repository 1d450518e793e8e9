"""
`stages` の遷移ルールとステージデータの生成を検証するテスト。
Tests for stage transitions and per-stage data in `stages`.
"""
import unittest

from dreamtrip.entities import TripDraft
from dreamtrip.stages import (
    STAGE_DATA_BUILDERS,
    STAGE_ORDER,
    Stage,
    advance,
    automation_summary,
    normalize_tag,
    stage_data,
)


def _emit(proposals):
    """提案列を順に適用し、実際に出力されるステージ列を返す"""
    emitted = []
    previous = None
    for proposal in proposals:
        previous = advance(previous, normalize_tag(proposal))
        emitted.append(previous)
    return emitted


class AdvanceTests(unittest.TestCase):
    def test_first_turn_is_welcome(self):
        self.assertIs(advance(None, Stage.BUDGET), Stage.WELCOME)
        self.assertIs(advance(None, None), Stage.WELCOME)

    def test_skipping_is_clamped_to_next_stage(self):
        emitted = _emit(["welcome", "budget", "group-size", "duration"])
        self.assertEqual(
            emitted,
            [Stage.WELCOME, Stage.ASK_SOURCE, Stage.ASK_DESTINATION, Stage.BUDGET],
        )
        self.assertLess(emitted.index(Stage.ASK_DESTINATION), emitted.index(Stage.BUDGET))

    def test_regression_keeps_previous_stage(self):
        self.assertIs(advance(Stage.HOTELS, Stage.BUDGET), Stage.HOTELS)

    def test_missing_or_unknown_proposal_keeps_stage(self):
        self.assertIs(advance(Stage.DURATION, None), Stage.DURATION)
        self.assertIs(advance(Stage.DURATION, normalize_tag("carousel")), Stage.DURATION)

    def test_final_plan_is_terminal(self):
        self.assertIs(advance(Stage.FINAL_PLAN, Stage.FINAL_PLAN), Stage.FINAL_PLAN)
        self.assertIs(advance(Stage.FINAL_PLAN, Stage.WELCOME), Stage.FINAL_PLAN)

    def test_emitted_sequence_is_non_decreasing(self):
        proposals = ["final-plan", "", "map", "welcome", "budget", "hotels", "trip-map", None, "final-plan"]
        positions = [stage.position for stage in _emit(proposals)]
        self.assertEqual(positions, sorted(positions))
        for before, after in zip(positions, positions[1:]):
            self.assertLessEqual(after - before, 1)

    def test_whole_flow_reaches_final_plan(self):
        emitted = _emit([stage.value for stage in STAGE_ORDER])
        self.assertEqual(emitted, STAGE_ORDER)


class NormalizeTagTests(unittest.TestCase):
    def test_canonical_and_legacy_names(self):
        self.assertIs(normalize_tag("welcome-consultation"), Stage.WELCOME)
        self.assertIs(normalize_tag("budgeting"), Stage.BUDGET)
        self.assertIs(normalize_tag("groupSize"), Stage.GROUP_SIZE)
        self.assertIs(normalize_tag("GroupSize"), Stage.GROUP_SIZE)
        self.assertIs(normalize_tag("trip-duration"), Stage.DURATION)
        self.assertIs(normalize_tag("trip-details"), Stage.INTERESTS)
        self.assertIs(normalize_tag("trip-gallery"), Stage.GALLERY)
        self.assertIs(normalize_tag(" Virtual-Tour "), Stage.VIRTUAL_TOUR)

    def test_empty_and_unknown_tags(self):
        for tag in ("", None, "pricing-redirect", 42):
            self.assertIsNone(normalize_tag(tag))


class StageDataTests(unittest.TestCase):
    def test_every_stage_has_a_builder(self):
        self.assertEqual(set(STAGE_DATA_BUILDERS), set(Stage))

    def test_budget_stage_lists_options(self):
        data = stage_data(Stage.BUDGET, TripDraft(destination="Kribi"))
        self.assertEqual([option["id"] for option in data["options"]], ["low", "medium", "high"])
        self.assertEqual(data["destination"], "Kribi")

    def test_final_plan_carries_draft(self):
        draft = TripDraft(destination="Paris", source="Douala", duration=7)
        data = stage_data(Stage.FINAL_PLAN, draft)
        self.assertEqual(data["tripDraft"]["destination"], "Paris")
        self.assertEqual(data["tripDraft"]["duration"], 7)

    def test_automation_summary_is_a_copy(self):
        summary = automation_summary()
        summary["booking"] = "changed"
        self.assertEqual(
            automation_summary()["booking"],
            "Auto-booking available for hotels and flights",
        )
        self.assertEqual(set(summary), {"booking", "tracking", "safety", "notifications"})


if __name__ == "__main__":
    unittest.main()
