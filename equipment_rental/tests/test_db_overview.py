import unittest
from datetime import datetime

from equipment_rental.tests.support import add_equipment, add_reservation, add_user, make_session_factory

from equipment_rental.scripts import run_sweep
from equipment_rental.scripts.db_overview import (
    find_overlapping_reservations,
    find_rented_without_holder,
    find_stale_costs,
    run_integrity_checks,
)


class IntegrityCheckTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()
        self.client = add_user(self.db)
        self.equipment = add_equipment(self.db)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_clean_store_passes(self):
        add_reservation(self.db, self.equipment, self.client, datetime(2025, 9, 1), datetime(2025, 9, 4))
        add_reservation(self.db, self.equipment, self.client, datetime(2025, 9, 4), datetime(2025, 9, 6))
        results = run_integrity_checks(self.db, datetime(2025, 8, 1))
        self.assertTrue(all(result.ok for result in results), results)

    def test_detects_overlapping_blocking_reservations(self):
        first = add_reservation(self.db, self.equipment, self.client, datetime(2025, 9, 1), datetime(2025, 9, 4))
        second = add_reservation(self.db, self.equipment, self.client, datetime(2025, 9, 3), datetime(2025, 9, 5), status="active")
        add_reservation(self.db, self.equipment, self.client, datetime(2025, 9, 2), datetime(2025, 9, 3), status="pending")
        self.assertEqual(find_overlapping_reservations(self.db), [(first.ReservationID, second.ReservationID)])

    def test_detects_rented_equipment_without_holder(self):
        self.equipment.Status = "rented"
        self.db.commit()
        self.assertEqual(find_rented_without_holder(self.db, datetime(2025, 9, 2)), [self.equipment.EquipmentID])

        add_reservation(self.db, self.equipment, self.client, datetime(2025, 9, 1), datetime(2025, 9, 4), status="active")
        self.assertEqual(find_rented_without_holder(self.db, datetime(2025, 9, 2)), [])

    def test_detects_stale_costs(self):
        reservation = add_reservation(self.db, self.equipment, self.client, datetime(2025, 9, 1), datetime(2025, 9, 4))
        reservation.TotalCost = 1
        self.db.commit()
        self.assertEqual(find_stale_costs(self.db), [reservation.ReservationID])


class RunSweepCliTests(unittest.TestCase):
    def test_rejects_unknown_job(self):
        with self.assertRaises(SystemExit):
            run_sweep.main(["defragment"])

    def test_rejects_bad_timestamp(self):
        with self.assertRaises(SystemExit):
            run_sweep.main(["activate", "--at", "tomorrow"])


if __name__ == "__main__":
    unittest.main()
