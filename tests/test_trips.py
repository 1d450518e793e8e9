"""
`trips` の旅行プラン保存・一覧を検証するテスト。
Tests for saving and listing trip plans in `trips`.
"""
import os
import unittest

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from dreamtrip import database  # noqa: E402
from dreamtrip.entities import TripDraft  # noqa: E402
from dreamtrip.errors import InvalidRequest  # noqa: E402
from dreamtrip.trips import (  # noqa: E402
    TripData,
    list_public_trips,
    list_user_trips,
    parse_trip_data,
    save_trip,
)


class TripStorageTests(unittest.TestCase):
    def setUp(self):
        database.Base.metadata.drop_all(bind=database.engine)
        database.init_db(max_retries=1)

    def test_save_and_list_for_user(self):
        first = save_trip("traveler", parse_trip_data({
            "destination": "Kribi",
            "sourceLocation": "Douala",
            "budget": "medium",
            "groupSize": "family",
            "duration": 5,
            "interests": ["beach", "food"],
            "tripPlan": {"days": [{"day": 1, "activity": "Lobe falls"}]},
        }))
        second = save_trip("traveler", parse_trip_data({"destination": "Limbe"}))
        save_trip("someone-else", parse_trip_data({"destination": "Paris"}))

        trips = list_user_trips("traveler")
        self.assertEqual([t["destination"] for t in trips], ["Limbe", "Kribi"])
        self.assertEqual(first["interests"], ["beach", "food"])
        self.assertEqual(first["sourceLocation"], "Douala")
        self.assertEqual(second["interests"], [])
        self.assertFalse(second["isPublic"])

    def test_destination_is_required(self):
        with self.assertRaises(InvalidRequest) as ctx:
            save_trip("traveler", TripData(budget="low"))
        self.assertEqual(ctx.exception.public_message, "Trip destination is required")
        self.assertEqual(list_user_trips("traveler"), [])

    def test_invalid_trip_data(self):
        for raw in ("Paris", None, {"destination": "Paris", "duration": 0}, {"interests": "beach"}):
            with self.assertRaises(InvalidRequest):
                parse_trip_data(raw)

    def test_fields_are_sanitized(self):
        data = parse_trip_data({"destination": "  Kribi\n\tBeach ", "budget": 42})
        self.assertEqual(data.destination, "Kribi Beach")
        self.assertEqual(data.budget, "42")

    def test_public_trips_filter_by_destination(self):
        save_trip("a", TripData(destination="Kribi"), is_public=True)
        save_trip("b", TripData(destination="kribi"), is_public=True)
        save_trip("c", TripData(destination="Kribi"))
        save_trip("d", TripData(destination="Paris"), is_public=True)

        kribi = list_public_trips("KRIBI")
        self.assertEqual(sorted(t["userId"] for t in kribi), ["a", "b"])
        self.assertEqual(len(list_public_trips()), 3)
        self.assertEqual(len(list_public_trips(limit=1)), 1)

    def test_from_draft(self):
        draft = TripDraft(destination="Paris", source="Douala", duration=7, interests=["culture"])
        data = TripData.from_draft(draft)
        self.assertEqual(data.sourceLocation, "Douala")
        self.assertEqual(save_trip("drafter", data, session_id="s-1")["duration"], 7)


if __name__ == "__main__":
    unittest.main()
