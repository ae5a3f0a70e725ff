import unittest
from datetime import datetime, timedelta, timezone

from inventory import InventoryManager
from models import (
    WasteSource, WasteType,
    InvalidParameterError, InsufficientStockError, UnknownIsotopeError, UnknownVialError,
)
from constants import DoseUnit
from debug_calibration import run_debug

T0 = datetime(2024, 5, 20, 8, 0, 0)

class TestInventoryScenarios(unittest.TestCase):

    def setUp(self):
        """Fresh hot lab with the clock pinned to T0."""
        self.lab = InventoryManager(clock=lambda: T0)

    def test_01_dispense_two_vials(self):
        """
        SCENARIO: 40 + 30 mCi on the shelf, 50 mCi requested.
        EXPECTATION: the 40 vial is emptied into the hot room, 20 stays in stock,
        the syringe residue is logged as sharps.
        """
        print("\nTEST 1: Dispense Across Two Vials")
        self.lab.add_vial("tc99m", 40.0, 4.0)
        self.lab.add_vial("tc99m", 30.0, 3.0)

        receipt = self.lab.withdraw("tc99m", 50.0, procedure="Bone Scan")
        stock = self.lab.stock("tc99m")
        print(f"  > Stock after: {stock:.3f} | Queue #{receipt.entry.queue_number}")

        self.assertAlmostEqual(stock, 20.0, places=9)
        self.assertEqual(receipt.entry.patient_name, "Patient 1")
        self.assertEqual(receipt.entry.unit, DoseUnit.MCI)
        self.assertEqual(len(self.lab.vials("tc99m")), 1)

        bins = self.lab.inventory("tc99m").waste_bins
        self.assertEqual(len(bins), 1)
        self.assertEqual(bins[0].name, "Hot Room")
        sources = sorted(item.source.value for item in bins[0].items)
        self.assertEqual(sources, [WasteSource.PREPARATION.value, WasteSource.VIAL.value])
        vial_waste = [i for i in bins[0].items if i.source == WasteSource.VIAL][0]
        self.assertEqual(vial_waste.activity, 40.0)

    def test_02_rejection_changes_nothing(self):
        print("\nTEST 2: Rejected Withdrawal")
        self.lab.add_vial("tc99m", 10.0, 2.0)
        before = self.lab.vials("tc99m")

        with self.assertRaises(InsufficientStockError):
            self.lab.withdraw("tc99m", 25.0)
        with self.assertRaises(InvalidParameterError):
            self.lab.withdraw("tc99m", 0)

        inv = self.lab.inventory("tc99m")
        self.assertEqual(self.lab.vials("tc99m"), before)
        self.assertEqual(inv.waste_bins, [])
        self.assertEqual(inv.history, [])

    def test_03_dust_vial_rejected(self):
        print("\nTEST 3: Below-Epsilon Stock")
        self.lab.add_vial("tc99m", 0.005, 1.0)
        with self.assertRaises(InsufficientStockError):
            self.lab.withdraw("tc99m", 5.0)
        self.assertEqual(self.lab.vials("tc99m")[0].initial_amount, 0.005)

    def test_04_generator_lifecycle(self):
        """
        SCENARIO: register from a 12 mCi first elution, elute 3 mCi, replace.
        EXPECTATION: both eluates retired at their activity, generator cleared,
        ordered vials untouched.
        """
        print("\nTEST 4: Generator Replacement")
        self.lab.add_vial("tc99m", 50.0, 5.0, label="Ordered")
        gen = self.lab.register_generator("tc99m", 12.0, 2.0, efficiency=100.0)
        self.assertAlmostEqual(gen.initial_activity, 12.0 / 0.87, places=9)

        eluate = self.lab.elute("tc99m", 3.0, 2.0)
        self.assertEqual(eluate.label, "Elution #2")
        self.assertEqual(self.lab.vials("tc99m")[0].id, eluate.id)

        result = self.lab.remove_generator("tc99m")
        print(f"  > Retired: {[w.activity for w in result.waste_items]}")
        self.assertEqual(sorted(w.activity for w in result.waste_items), [3.0, 12.0])
        self.assertIsNone(self.lab.inventory("tc99m").generator)
        self.assertEqual([v.label for v in self.lab.vials("tc99m")], ["Ordered"])

    def test_05_generator_guards(self):
        print("\nTEST 5: Generator Guards")
        with self.assertRaises(InvalidParameterError):
            self.lab.elute("tc99m", 5.0, 1.0)
        with self.assertRaises(InvalidParameterError):
            self.lab.register_generator("f18", 5.0, 1.0)
        self.lab.register_generator("tc99m", 20.0, 2.0)
        with self.assertRaises(InvalidParameterError):
            self.lab.register_generator("tc99m", 20.0, 2.0)
        with self.assertRaises(UnknownIsotopeError):
            self.lab.stock("xe133")

    def test_06_generator_yield_and_overdue_flag(self):
        print("\nTEST 6: Generator Build-Up")
        self.lab.register_generator("tc99m", 300.0, 5.0)
        self.assertEqual(self.lab.generator_yield("f18"), 0.0)
        self.assertAlmostEqual(self.lab.generator_yield("tc99m"), 0.0, places=9)

        later = T0 + timedelta(hours=25)
        available = self.lab.generator_yield("tc99m", at=later)
        print(f"  > Available after 25h: {available:.1f}")
        self.assertGreater(available, 0.0)
        self.assertTrue(self.lab.alerts("tc99m", at=later).elution_overdue)
        self.assertFalse(self.lab.alerts("tc99m").elution_overdue)

    def test_07_kits_are_reported(self):
        print("\nTEST 7: Kit Usage")
        self.lab.add_vial("tc99m", 5.0, 5.0)
        kit = self.lab.prepare_kit("tc99m", "MDP", 25.0, 5.0, lot_number="A17")
        self.assertEqual(kit.label, "MDP (Lot: A17)")
        self.assertEqual(self.lab.vials("tc99m")[0].id, kit.id)

        receipt = self.lab.withdraw("tc99m", 20.0, patient_name="J. Okafor")
        self.assertEqual(receipt.kits_used, ["MDP (Lot: A17)"])
        self.assertEqual(receipt.entry.patient_name, "J. Okafor")

    def test_08_manual_disposal(self):
        print("\nTEST 8: Manual Disposal")
        vial = self.lab.add_vial("i131", 15.0, 1.0)
        item = self.lab.dispose_vial("i131", vial.id)
        self.assertEqual(item.activity, 15.0)
        self.assertEqual(self.lab.vials("i131"), [])
        with self.assertRaises(UnknownVialError):
            self.lab.dispose_vial("i131", vial.id)

    def test_09_stock_alerts(self):
        print("\nTEST 9: Stock Alerts")
        low = self.lab.add_vial("ga68", 3.0, 1.0)
        spent = self.lab.add_vial("ga68", 0.5, 1.0)
        hidden = self.lab.add_vial("ga68", 0.05, 1.0)
        alerts = self.lab.alerts("ga68")
        print(f"  > {alerts}")
        self.assertTrue(alerts.low_stock)
        self.assertAlmostEqual(alerts.stock_mci, 3.5)
        self.assertEqual(alerts.near_empty_vial_ids, [spent.id])
        self.assertEqual(alerts.hidden_vial_ids, [hidden.id])
        self.assertNotIn(low.id, alerts.near_empty_vial_ids)

    def test_10_unit_switch_rescales_stock(self):
        print("\nTEST 10: Unit Switch")
        self.lab.add_vial("tc99m", 10.0, 1.0)
        old = self.lab.add_vial("tc99m", 50.0, 1.0)
        self.lab.dispose_vial("tc99m", old.id)

        self.lab.set_unit(DoseUnit.MBQ)
        self.assertEqual(self.lab.stock("tc99m"), 370.0)
        # Low-stock threshold is defined in mCi
        self.assertAlmostEqual(self.lab.alerts("tc99m").stock_mci, 10.0)

        # Waste already in the bin follows the switch
        fresh = self.lab.add_vial("tc99m", 37.0, 1.0)
        self.lab.dispose_vial("tc99m", fresh.id)
        report = self.lab.waste_report("tc99m")
        print(f"  > Bin total: {report[0]['total_activity']} MBq")
        self.assertEqual(len(report), 1)
        self.assertEqual(report[0]["total_activity"], 1887.0)
        self.assertEqual(report[0]["category"], "hot")
        self.assertEqual([i["disposed_activity"] for i in report[0]["items"]], [1850.0, 37.0])
        self.assertTrue(all(item.unit == DoseUnit.MBQ for item in self.lab.inventory("tc99m").waste_bins[0].items))

        self.lab.set_unit(DoseUnit.MCI)
        self.assertEqual(self.lab.stock("tc99m"), 10.0)
        self.assertEqual(self.lab.waste_report("tc99m")[0]["total_activity"], 51.0)

    def test_11_waste_bins(self):
        """
        SCENARIO: 150 mCi vial disposed; bin emptied immediately, then 5 days later.
        EXPECTATION: first release warns (hot, open bin), decayed waste is cleared.
        """
        print("\nTEST 11: Decay-in-Storage")
        vial = self.lab.add_vial("tc99m", 150.0, 3.0)
        self.lab.dispose_vial("tc99m", vial.id)
        hot_room = self.lab.inventory("tc99m").waste_bins[0]

        report = self.lab.waste_report("tc99m")
        self.assertEqual(report[0]["category"], "hot")
        self.assertEqual(report[0]["items"][0]["disposed_activity"], 150.0)

        warnings = self.lab.empty_bin("tc99m", hot_room.id)
        print(f"  > Warnings: {warnings}")
        self.assertIn("hot_waste_in_open_bin", warnings)
        self.assertEqual(hot_room.items, [])

        vial = self.lab.add_vial("tc99m", 150.0, 3.0)
        self.lab.dispose_vial("tc99m", vial.id)
        self.lab.seal_bin("tc99m", hot_room.id)
        self.assertTrue(hot_room.is_sealed)
        warnings = self.lab.empty_bin("tc99m", hot_room.id, at=T0 + timedelta(days=5))
        self.assertEqual(warnings, [])

        extra = self.lab.add_waste_bin("tc99m", "Sharps", WasteType.SHARP)
        self.assertEqual(len(self.lab.waste_report("tc99m")), 2)
        with self.assertRaises(KeyError):
            self.lab.seal_bin("tc99m", "nope")
        self.assertEqual(extra.type, WasteType.SHARP)

    def test_12_audit_trail(self):
        print("\nTEST 12: Audit Trail")
        self.lab.add_vial("f18", 20.0, 2.0)
        self.lab.withdraw("f18", 5.0)
        actions = [a.action for a in self.lab.inventory("f18").audit]
        self.assertEqual(actions, ["vial_added", "dose_withdrawn"])

    def test_13_calibration_script(self):
        print("\nTEST 13: Calibration Script")
        self.assertTrue(run_debug())

    def test_14_sealed_hot_room_takes_no_new_waste(self):
        """
        SCENARIO: Hot Room bin sealed for decay-in-storage, then another dose is drawn.
        EXPECTATION: the sealed bin keeps its contents; new waste opens a fresh Hot Room bin.
        """
        print("\nTEST 14: Sealed Hot Room")
        first = self.lab.add_vial("tc99m", 20.0, 2.0)
        self.lab.dispose_vial("tc99m", first.id)
        sealed = self.lab.inventory("tc99m").waste_bins[0]
        self.lab.seal_bin("tc99m", sealed.id)

        self.lab.add_vial("tc99m", 30.0, 3.0)
        self.lab.withdraw("tc99m", 30.0)

        bins = self.lab.inventory("tc99m").waste_bins
        print(f"  > Bins: {[(b.name, b.is_sealed, len(b.items)) for b in bins]}")
        self.assertEqual(len(bins), 2)
        self.assertEqual(len(sealed.items), 1)
        fresh = bins[1]
        self.assertEqual(fresh.name, "Hot Room")
        self.assertFalse(fresh.is_sealed)
        self.assertEqual(len(fresh.items), 2)

    def test_15_elution_labels_stay_unique(self):
        print("\nTEST 15: Elution Numbering")
        self.lab.register_generator("tc99m", 40.0, 2.0)
        second = self.lab.elute("tc99m", 30.0, 2.0)
        self.lab.dispose_vial("tc99m", second.id)
        third = self.lab.elute("tc99m", 25.0, 2.0)
        labels = [v.label for v in self.lab.vials("tc99m")]
        print(f"  > Labels: {labels}")
        self.assertEqual(third.label, "Elution #3")
        self.assertEqual(labels, ["Elution #3", "Elution #1"])
        self.assertEqual(self.lab.inventory("tc99m").generator.elution_count, 3)

    def test_16_offset_aware_times_are_normalised(self):
        """
        SCENARIO: vial recorded with a UTC timestamp, later read with the local clock.
        FAILURE MODE: naive - aware subtraction blows up every read for the isotope.
        """
        print("\nTEST 16: Offset-Aware Input")
        utc = datetime(2024, 5, 20, 8, 0, 0, tzinfo=timezone.utc)
        vial = self.lab.add_vial("tc99m", 10.0, 1.0, at=utc)
        self.assertIsNone(vial.received_at.tzinfo)
        self.assertEqual(vial.received_at, utc.astimezone().replace(tzinfo=None))

        local_stock = self.lab.stock("tc99m", at=vial.received_at)
        self.assertAlmostEqual(local_stock, 10.0)
        self.assertAlmostEqual(self.lab.stock("tc99m", at=utc), 10.0)
        receipt = self.lab.withdraw("tc99m", 1.0, at=utc + timedelta(minutes=1))
        self.assertIsNone(receipt.entry.timestamp.tzinfo)

if __name__ == '__main__':
    unittest.main()
