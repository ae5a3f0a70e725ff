# safety.py
from datetime import datetime
from typing import Optional, Sequence

from models import Vial, IsotopeGenerator, InventoryAlerts, WasteBin, WasteCategory
from constants import DoseUnit, ENGINE_CONSTANTS, GENERATOR_CONSTANTS, WASTE_CONSTANTS
from decay_engine import DecayEngine, convert_dose

class StockSupervisor:
    """
    Real-time stock checks used by the Inventory Manager and the dashboard.
    Returns an InventoryAlerts object (Flags).
    """
    @staticmethod
    def check_real_time(vials: Sequence[Vial], half_life_hours: float, now: datetime,
                        unit: DoseUnit = DoseUnit.MCI,
                        generator: Optional[IsotopeGenerator] = None) -> InventoryAlerts:
        alerts = InventoryAlerts()

        # 1. Low Stock
        # Threshold is defined in mCi whatever the display unit
        stock = DecayEngine.aggregate_stock(vials, half_life_hours, now)
        stock_mci = convert_dose(stock, unit, DoseUnit.MCI)
        alerts.stock_mci = stock_mci
        if 0 < stock_mci <= ENGINE_CONSTANTS.LOW_STOCK_THRESHOLD_MCI:
            alerts.low_stock = True

        # 2. Per-vial visibility
        for vial in vials:
            activity = DecayEngine.current_activity(vial, half_life_hours, now)
            if activity < ENGINE_CONSTANTS.VISIBILITY_THRESHOLD:
                # Hidden from totals; next draw or sweep retires it
                alerts.hidden_vial_ids.append(vial.id)
            elif activity <= ENGINE_CONSTANTS.NEAR_EMPTY_THRESHOLD:
                alerts.near_empty_vial_ids.append(vial.id)

        # 3. Generator not milked for a day
        if generator is not None:
            last = generator.last_elution_at or generator.received_at
            hours = DecayEngine.elapsed_hours(last, now)
            if hours > GENERATOR_CONSTANTS.ELUTION_INTERVAL_HOURS:
                alerts.elution_overdue = True

        return alerts

def validate_withdrawal_request(vials: Sequence[Vial], requested_amount: float,
                                half_life_hours: float, now: datetime) -> float:
    """
    Static Check: can this draw be served at all?
    Raises InvalidParameterError / InsufficientStockError / InsufficientVolumeError.
    Returns the draw volume in mL.
    """
    _, required_volume = DecayEngine.validate_withdrawal(vials, requested_amount, half_life_hours, now)
    return required_volume

def validate_waste_release(bin: WasteBin, half_life_hours: float, now: datetime,
                           alerts: list) -> list:
    """
    Dynamic Check: which items in the bin are still above clearance?
    Used before a bin is emptied. Appends strings to the 'alerts' list.
    """
    has_hot = False
    for item in bin.items:
        activity = DecayEngine.waste_current_activity(item, half_life_hours, now)
        if activity > WASTE_CONSTANTS.CLEARANCE_THRESHOLD:
            category = DecayEngine.classify_waste(activity)
            has_hot = has_hot or category == WasteCategory.HOT
            release_at = DecayEngine.release_time(item, half_life_hours)
            alerts.append(
                f"{item.description or item.id}: {category.value} "
                f"({activity:.3f}), releasable at {release_at.isoformat(timespec='minutes')}"
            )

    # Hot items belong in a sealed, shielded bin
    if has_hot and not bin.is_sealed:
        alerts.append("hot_waste_in_open_bin")
    return alerts
