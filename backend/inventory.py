"""
IsoFlow: Inventory Manager
==========================
The single writer for stock, generators and waste. Every mutation of an
isotope's inventory goes through one InventoryManager method, which runs
validation -> pure engine call -> commit while holding that isotope's lock.
Two withdrawals can therefore never both commit against the same snapshot.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from models import (
    Vial,
    IsotopeGenerator,
    WasteItem,
    WasteBin,
    WasteType,
    DoseLogEntry,
    WithdrawalResult,
    RetirementResult,
    InventoryAlerts,
    AuditLog,
    InvalidParameterError,
    StockRejectedError,
    UnknownIsotopeError,
)
from constants import DoseUnit, IsotopeProperties, ISOTOPE_LIBRARY, ENGINE_CONSTANTS
from decay_engine import DecayEngine, convert_dose
from safety import StockSupervisor, validate_waste_release
from protocols import DrawPlanner

logger = logging.getLogger("isoflow-inventory")

@dataclass
class IsotopeInventory:
    """Everything the hot lab holds for one isotope."""
    isotope: IsotopeProperties
    vials: List[Vial] = field(default_factory=list)
    generator: Optional[IsotopeGenerator] = None
    waste_bins: List[WasteBin] = field(default_factory=list)
    history: List[DoseLogEntry] = field(default_factory=list)
    audit: List[AuditLog] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

@dataclass
class DispenseReceipt:
    entry: DoseLogEntry
    withdrawal: WithdrawalResult
    kits_used: List[str] = field(default_factory=list)

class InventoryManager:
    def __init__(self, unit: DoseUnit = DoseUnit.MCI,
                 clock: Optional[Callable[[], datetime]] = None):
        self.unit = unit
        self._clock = clock or datetime.now
        self._inventories: Dict[str, IsotopeInventory] = {}
        self._registry_lock = threading.Lock()

    # --- Internals ---

    def inventory(self, isotope_id: str) -> IsotopeInventory:
        isotope = ISOTOPE_LIBRARY.get(isotope_id)
        if isotope is None:
            raise UnknownIsotopeError(isotope_id)
        with self._registry_lock:
            if isotope_id not in self._inventories:
                self._inventories[isotope_id] = IsotopeInventory(isotope=isotope)
            return self._inventories[isotope_id]

    def now(self, at: Optional[datetime] = None) -> datetime:
        """
        Query/record time as naive local time. Offset-aware inputs are
        converted so stored and queried times can always be subtracted.
        """
        moment = at if at is not None else self._clock()
        if moment.tzinfo is not None:
            moment = moment.astimezone().replace(tzinfo=None)
        return moment

    def _hot_room(self, inv: IsotopeInventory, bin_type: WasteType) -> WasteBin:
        # Sealed bins take nothing new; a fresh Hot Room bin is opened instead
        for bin in inv.waste_bins:
            if bin.name == ENGINE_CONSTANTS.HOT_ROOM_BIN_NAME and not bin.is_sealed:
                return bin
        bin = WasteBin(name=ENGINE_CONSTANTS.HOT_ROOM_BIN_NAME, type=bin_type)
        inv.waste_bins.append(bin)
        return bin

    def _route_to_waste(self, inv: IsotopeInventory, items: List[WasteItem],
                        bin_type: WasteType = WasteType.SOLID) -> None:
        if not items:
            return
        self._hot_room(inv, bin_type).items.extend(items)

    def _audit(self, inv: IsotopeInventory, action: str, detail: str) -> None:
        inv.audit.append(AuditLog(action=action, isotope_id=inv.isotope.id, detail=detail))
        logger.info(f"[{inv.isotope.id}] {action}: {detail}")

    def _find_bin(self, inv: IsotopeInventory, bin_id: str) -> WasteBin:
        for bin in inv.waste_bins:
            if bin.id == bin_id:
                return bin
        raise KeyError(bin_id)

    # --- Reads ---

    def vials(self, isotope_id: str) -> List[Vial]:
        return list(self.inventory(isotope_id).vials)

    def stock(self, isotope_id: str, at: Optional[datetime] = None) -> float:
        inv = self.inventory(isotope_id)
        return DecayEngine.aggregate_stock(inv.vials, inv.isotope.half_life_hours, self.now(at))

    def alerts(self, isotope_id: str, at: Optional[datetime] = None) -> InventoryAlerts:
        inv = self.inventory(isotope_id)
        return StockSupervisor.check_real_time(
            inv.vials, inv.isotope.half_life_hours, self.now(at),
            unit=self.unit, generator=inv.generator,
        )

    def generator_yield(self, isotope_id: str, at: Optional[datetime] = None) -> float:
        inv = self.inventory(isotope_id)
        parent = inv.isotope.parent
        if inv.generator is None or parent is None:
            return 0.0
        # Generator activities are tracked in the active unit
        return DecayEngine.generator_yield(
            inv.generator, parent.half_life_hours, inv.isotope.half_life_hours, self.now(at)
        )

    # --- Stock entry ---

    def add_vial(self, isotope_id: str, activity: float, volume_ml: float,
                 at: Optional[datetime] = None, label: Optional[str] = None) -> Vial:
        inv = self.inventory(isotope_id)
        with inv.lock:
            inv.vials = DecayEngine.add_ordered_vial(
                inv.vials, activity, volume_ml, self.now(at), isotope_id=isotope_id, label=label
            )
            vial = inv.vials[-1]
            self._audit(inv, "vial_added", f"{vial.label} {activity} {self.unit.value} / {volume_ml} mL")
            return vial

    def prepare_kit(self, isotope_id: str, kit_name: str, activity: float, volume_ml: float,
                    lot_number: Optional[str] = None, at: Optional[datetime] = None) -> Vial:
        inv = self.inventory(isotope_id)
        with inv.lock:
            inv.vials = DecayEngine.prepare_kit(
                inv.vials, kit_name, activity, volume_ml, self.now(at),
                lot_number=lot_number, isotope_id=isotope_id,
            )
            self._audit(inv, "kit_prepared", inv.vials[0].label)
            return inv.vials[0]

    # --- Dispensing ---

    def withdraw(self, isotope_id: str, amount: float, patient_name: str = "",
                 procedure: str = "", at: Optional[datetime] = None) -> DispenseReceipt:
        """
        Draws a patient dose. All-or-nothing: a rejected request leaves vials,
        waste and history exactly as they were.
        """
        inv = self.inventory(isotope_id)
        with inv.lock:
            now = self.now(at)
            half_life = inv.isotope.half_life_hours
            try:
                result = DecayEngine.allocate_withdrawal(
                    inv.vials, amount, half_life, now, unit=self.unit, isotope_id=isotope_id
                )
            except StockRejectedError as e:
                logger.warning(f"[{isotope_id}] Withdrawal of {amount} {self.unit.value} rejected: {e}")
                raise

            kits = DrawPlanner.kits_to_use(DrawPlanner.plan_draw(inv.vials, amount, half_life, now))

            # Commit
            inv.vials = result.updated_vials
            self._route_to_waste(inv, [result.syringe_waste], bin_type=WasteType.SHARP)
            self._route_to_waste(inv, result.waste_items)

            queue_number = len(inv.history) + 1
            entry = DoseLogEntry(
                queue_number=queue_number,
                patient_name=patient_name or f"Patient {queue_number}",
                procedure=procedure,
                amount=amount,
                unit=self.unit,
                timestamp=now,
            )
            inv.history.insert(0, entry)

            self._audit(inv, "dose_withdrawn",
                        f"{amount} {self.unit.value} for {entry.patient_name}, "
                        f"{len(result.depleted_vials)} vial(s) emptied")
            return DispenseReceipt(entry=entry, withdrawal=result, kits_used=kits)

    def dispose_vial(self, isotope_id: str, vial_id: str, at: Optional[datetime] = None) -> WasteItem:
        inv = self.inventory(isotope_id)
        with inv.lock:
            result = DecayEngine.dispose_vial(
                inv.vials, vial_id, inv.isotope.half_life_hours, self.now(at), unit=self.unit
            )
            inv.vials = result.updated_vials
            self._route_to_waste(inv, result.waste_items)
            item = result.waste_items[0]
            self._audit(inv, "vial_disposed", f"{item.description} ({item.activity:.3f})")
            return item

    # --- Generator ---

    def _require_generator_isotope(self, inv: IsotopeInventory) -> None:
        if not inv.isotope.has_generator or inv.isotope.parent is None:
            raise InvalidParameterError(f"{inv.isotope.name} is not produced by a generator")

    def register_generator(self, isotope_id: str, first_elution_activity: float, volume_ml: float,
                           efficiency: float = 90.0, at: Optional[datetime] = None) -> IsotopeGenerator:
        """
        Installs a generator from its first elution. The parent activity is
        back-calculated; the first eluate goes straight into stock.
        """
        inv = self.inventory(isotope_id)
        self._require_generator_isotope(inv)
        with inv.lock:
            if inv.generator is not None:
                raise InvalidParameterError("A generator is already installed; remove it first")
            now = self.now(at)
            parent_activity = DecayEngine.estimate_parent_activity(first_elution_activity, efficiency)
            vials = DecayEngine.allocate_elution(
                inv.vials, first_elution_activity, volume_ml, now, isotope_id=isotope_id, number=1
            )
            inv.generator = IsotopeGenerator(
                initial_activity=parent_activity,
                received_at=now,
                efficiency=efficiency,
                last_elution_at=now,
                elution_count=1,
            )
            inv.vials = vials
            self._audit(inv, "generator_registered",
                        f"{inv.isotope.parent.symbol} ~{parent_activity:.1f} {self.unit.value}, "
                        f"first elution {first_elution_activity} {self.unit.value}")
            return inv.generator

    def elute(self, isotope_id: str, activity: float, volume_ml: float,
              at: Optional[datetime] = None) -> Vial:
        inv = self.inventory(isotope_id)
        self._require_generator_isotope(inv)
        with inv.lock:
            if inv.generator is None:
                raise InvalidParameterError("No generator registered; record the first elution instead")
            now = self.now(at)
            number = inv.generator.elution_count + 1
            inv.vials = DecayEngine.allocate_elution(
                inv.vials, activity, volume_ml, now, isotope_id=isotope_id, number=number
            )
            inv.generator.last_elution_at = now
            inv.generator.elution_count = number
            self._audit(inv, "eluted", f"{inv.vials[0].label} {activity} {self.unit.value}")
            return inv.vials[0]

    def remove_generator(self, isotope_id: str, at: Optional[datetime] = None) -> RetirementResult:
        """Sweeps every eluate to waste, then clears the generator."""
        inv = self.inventory(isotope_id)
        with inv.lock:
            result = DecayEngine.retire_all_vials(
                inv.vials, inv.isotope.half_life_hours, self.now(at), unit=self.unit
            )
            inv.vials = result.updated_vials
            self._route_to_waste(inv, result.waste_items)
            inv.generator = None
            self._audit(inv, "generator_removed", f"{len(result.retired_vials)} eluate vial(s) retired")
            return result

    # --- Waste ---

    def add_waste_bin(self, isotope_id: str, name: str, bin_type: WasteType = WasteType.SOLID) -> WasteBin:
        if not name:
            raise InvalidParameterError("Waste bin needs a name")
        inv = self.inventory(isotope_id)
        with inv.lock:
            bin = WasteBin(name=name, type=bin_type)
            inv.waste_bins.append(bin)
            self._audit(inv, "bin_added", f"{name} ({bin_type.value})")
            return bin

    def seal_bin(self, isotope_id: str, bin_id: str, at: Optional[datetime] = None) -> WasteBin:
        inv = self.inventory(isotope_id)
        with inv.lock:
            bin = self._find_bin(inv, bin_id)
            bin.is_sealed = True
            bin.sealed_at = self.now(at)
            self._audit(inv, "bin_sealed", bin.name)
            return bin

    def empty_bin(self, isotope_id: str, bin_id: str, at: Optional[datetime] = None) -> List[str]:
        """
        Releases a bin's contents. Returns the warnings for items that were
        still above clearance when it was emptied.
        """
        inv = self.inventory(isotope_id)
        with inv.lock:
            bin = self._find_bin(inv, bin_id)
            warnings = validate_waste_release(bin, inv.isotope.half_life_hours, self.now(at), [])
            if warnings:
                logger.warning(f"[{isotope_id}] Emptying '{bin.name}' with {len(warnings)} warning(s)")
            bin.items = []
            bin.is_sealed = False
            bin.sealed_at = None
            self._audit(inv, "bin_emptied", bin.name)
            return warnings

    def waste_report(self, isotope_id: str, at: Optional[datetime] = None) -> List[dict]:
        inv = self.inventory(isotope_id)
        now = self.now(at)
        half_life = inv.isotope.half_life_hours
        report = []
        for bin in inv.waste_bins:
            items = []
            for item in bin.items:
                activity = DecayEngine.waste_current_activity(item, half_life, now)
                items.append({
                    "id": item.id,
                    "description": item.description,
                    "source": item.source.value,
                    "disposed_activity": item.activity,
                    "current_activity": activity,
                    "category": DecayEngine.classify_waste(activity).value,
                    "release_at": DecayEngine.release_time(item, half_life),
                })
            total = DecayEngine.bin_activity(bin, isotope_id, half_life, now)
            report.append({
                "id": bin.id,
                "name": bin.name,
                "type": bin.type.value,
                "is_sealed": bin.is_sealed,
                "total_activity": total,
                "category": DecayEngine.classify_waste(total).value,
                "items": items,
            })
        return report

    # --- Units ---

    def set_unit(self, unit: DoseUnit) -> None:
        """
        Switches the display/entry unit and rescales every stored activity so
        the physical quantities stay the same.
        """
        if unit == self.unit:
            return
        with self._registry_lock:
            inventories = list(self._inventories.values())
        for inv in inventories:
            with inv.lock:
                inv.vials = [
                    replace(v, initial_amount=convert_dose(v.initial_amount, self.unit, unit))
                    for v in inv.vials
                ]
                if inv.generator is not None:
                    inv.generator.initial_activity = convert_dose(
                        inv.generator.initial_activity, self.unit, unit
                    )
                for bin in inv.waste_bins:
                    bin.items = [
                        replace(item, activity=convert_dose(item.activity, item.unit, unit), unit=unit)
                        for item in bin.items
                    ]
        logger.info(f"Active unit switched {self.unit.value} -> {unit.value}")
        self.unit = unit
