# debug_calibration.py
from datetime import datetime, timedelta

from decay_engine import DecayEngine
from inventory import InventoryManager
from models import Vial, InsufficientStockError
from constants import ISOTOPE_LIBRARY

T0 = datetime(2024, 1, 1, 8, 0, 0)

def _vial_with_activity_now(activity, hours_ago, half_life, label):
    """Back-dates a vial so that its activity at T0 equals `activity`."""
    received = T0 - timedelta(hours=hours_ago)
    return Vial(
        initial_amount=activity / DecayEngine.decay_factor(half_life, hours_ago),
        initial_volume_ml=5.0,
        received_at=received,
        label=label,
        isotope_id="tc99m",
    )

def run_debug():
    print("\n========================================")
    print("   ISOFLOW DECAY ENGINE DEBUGGER")
    print("========================================")
    ok = True

    # 1. SINGLE VIAL DECAY (Tc-99m, T1/2 = 6h)
    print("\n--- CHECKING DECAY LAW ---")
    vial = Vial(initial_amount=100.0, initial_volume_ml=10.0, received_at=T0, label="Vial #1")
    a6 = DecayEngine.current_activity(vial, 6.0, T0 + timedelta(hours=6))
    a12 = DecayEngine.current_activity(vial, 6.0, T0 + timedelta(hours=12))
    print(f" > Activity @ +6h:      {a6:.4f} mCi (expect 50)")
    print(f" > Activity @ +12h:     {a12:.4f} mCi (expect 25)")
    if abs(a6 - 50.0) > 1e-9 or abs(a12 - 25.0) > 1e-9:
        print("❌ FAILURE: Decay law is off.")
        ok = False

    # 2. TWO-VIAL WITHDRAWAL
    print("\n--- RUNNING 50 mCi WITHDRAWAL (A=40, B=30) ---")
    half_life = ISOTOPE_LIBRARY.get("tc99m").half_life_hours
    a = _vial_with_activity_now(40.0, 3.0, half_life, "A")
    b = _vial_with_activity_now(30.0, 1.0, half_life, "B")
    result = DecayEngine.allocate_withdrawal([a, b], 50.0, half_life, T0)
    remaining = DecayEngine.aggregate_stock(result.updated_vials, half_life, T0)
    retired = sum(w.activity for w in result.waste_items)
    print(f" > Waste from vials:    {retired:.4f} mCi (expect 40)")
    print(f" > Remaining stock:     {remaining:.4f} mCi (expect 20)")
    print(f" > Syringe residue:     {result.syringe_waste.activity:.4f} mCi")
    if abs(remaining - 20.0) > 1e-6 or abs(retired - 40.0) > 1e-6:
        print("❌ FAILURE: Greedy allocation did not split 40/10.")
        ok = False

    # 3. BELOW-EPSILON STOCK
    print("\n--- CHECKING BELOW-EPSILON REJECTION ---")
    dust = Vial(initial_amount=0.005, initial_volume_ml=1.0, received_at=T0, label="Dust")
    try:
        DecayEngine.allocate_withdrawal([dust], 5.0, half_life, T0)
        print("❌ FAILURE: Withdrawal against 0.005 mCi was accepted.")
        ok = False
    except InsufficientStockError as e:
        print(f" > Rejected:            {e}")

    # 4. GENERATOR REPLACEMENT
    print("\n--- CHECKING GENERATOR REPLACEMENT ---")
    manager = InventoryManager(clock=lambda: T0)
    manager.register_generator("tc99m", 12.0, 2.0, at=T0)
    manager.elute("tc99m", 3.0, 2.0, at=T0)
    swept = manager.remove_generator("tc99m", at=T0)
    activities = sorted(w.activity for w in swept.waste_items)
    print(f" > Retired eluates:     {activities} (expect [3.0, 12.0])")
    print(f" > Generator cleared:   {manager.inventory('tc99m').generator is None}")
    if activities != [3.0, 12.0] or manager.inventory("tc99m").generator is not None:
        print("❌ FAILURE: Generator sweep incomplete.")
        ok = False

    # 5. VERDICT
    if ok:
        print("\n✅ SUCCESS: Engine reproduces every calibration case.")
    return ok

if __name__ == "__main__":
    run_debug()
