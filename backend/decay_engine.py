"""
IsoFlow: Decay & Inventory Engine
=================================
The mathematical core. Translates vial records + a point in time into
current activity, and turns a requested dose into vial updates and waste.

Every function is pure: the vial list and the query time come in as
arguments, a new list (plus derived waste) goes out. Nothing here reads a
clock or mutates its inputs.

Decay law (one closed form, used everywhere):
    A(t) = A0 * 2^(-t / T_half)
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from models import (
    Vial,
    IsotopeGenerator,
    WasteItem,
    WasteBin,
    WasteSource,
    WasteCategory,
    WithdrawalResult,
    RetirementResult,
    InvalidParameterError,
    InsufficientStockError,
    InsufficientVolumeError,
    UnknownVialError,
)
from constants import (
    DoseUnit,
    MCI_TO_MBQ,
    ENGINE_CONSTANTS,
    WASTE_CONSTANTS,
    GENERATOR_CONSTANTS,
)

# Absorbs float residue when a draw exactly matches the stock on hand
_FLOAT_TOLERANCE = 1e-9


def mci_to_mbq(value: float) -> float:
    return value * MCI_TO_MBQ


def mbq_to_mci(value: float) -> float:
    return value / MCI_TO_MBQ


def convert_dose(value: float, from_unit: DoseUnit, to_unit: DoseUnit) -> float:
    if from_unit == to_unit:
        return value
    if from_unit == DoseUnit.MCI and to_unit == DoseUnit.MBQ:
        return mci_to_mbq(value)
    return mbq_to_mci(value)


class DecayEngine:
    """
    The Mathematical Core.
    Vials + Half-life + Time -> Activity -> Allocation -> Waste.
    """

    # --- 1. DECAY ---

    @staticmethod
    def _require_half_life(half_life_hours: float) -> None:
        if isinstance(half_life_hours, bool) or not isinstance(half_life_hours, (int, float)):
            raise InvalidParameterError(f"Half-life must be numeric, got {type(half_life_hours)}")
        if not half_life_hours > 0:
            raise InvalidParameterError(f"Half-life must be positive, got {half_life_hours}")

    @staticmethod
    def elapsed_hours(reference: datetime, query_time: datetime) -> float:
        """Signed hours from reference to query_time (negative if query is earlier)."""
        return (query_time - reference).total_seconds() / ENGINE_CONSTANTS.SECONDS_PER_HOUR

    @staticmethod
    def decay_factor(half_life_hours: float, elapsed_hours: float) -> float:
        """Fraction of activity left after elapsed_hours: 2^(-t/T)."""
        DecayEngine._require_half_life(half_life_hours)
        return 2.0 ** (-elapsed_hours / half_life_hours)

    @staticmethod
    def calculate_decay(initial_activity: float, half_life_hours: float, elapsed_hours: float) -> float:
        if initial_activity < 0:
            raise InvalidParameterError(f"Activity cannot be negative ({initial_activity})")
        factor = DecayEngine.decay_factor(half_life_hours, elapsed_hours)
        if initial_activity == 0:
            return 0.0
        return initial_activity * factor

    @staticmethod
    def current_activity(vial: Vial, half_life_hours: float, query_time: datetime) -> float:
        """
        Activity present in the vial at query_time.
        Computed on read; the stored amount is never decayed at rest.
        """
        hours = DecayEngine.elapsed_hours(vial.received_at, query_time)
        return DecayEngine.calculate_decay(vial.initial_amount, half_life_hours, hours)

    @staticmethod
    def _activities(vials: Sequence[Vial], half_life_hours: float, query_time: datetime) -> List[float]:
        DecayEngine._require_half_life(half_life_hours)
        return [DecayEngine.current_activity(v, half_life_hours, query_time) for v in vials]

    @staticmethod
    def aggregate_stock(vials: Sequence[Vial], half_life_hours: float, query_time: datetime,
                        visibility_threshold: float = ENGINE_CONSTANTS.VISIBILITY_THRESHOLD) -> float:
        """
        Total current activity, ignoring vials decayed below the visibility threshold.
        This is THE stock figure: alerts, validation and displays all use it.
        """
        activities = DecayEngine._activities(vials, half_life_hours, query_time)
        return sum(a for a in activities if a >= visibility_threshold)

    @staticmethod
    def total_volume(vials: Sequence[Vial]) -> float:
        # Liquid volume does not decay
        return sum(v.initial_volume_ml for v in vials)

    @staticmethod
    def current_concentration(vials: Sequence[Vial], half_life_hours: float, query_time: datetime) -> float:
        volume = DecayEngine.total_volume(vials)
        if volume <= 0:
            return 0.0
        return DecayEngine.aggregate_stock(vials, half_life_hours, query_time) / volume

    @staticmethod
    def decay_curve(vial: Vial, half_life_hours: float,
                    half_lives: int = ENGINE_CONSTANTS.CHART_HALF_LIVES,
                    steps: int = ENGINE_CONSTANTS.CHART_STEPS) -> List[dict]:
        """
        Samples the vial's decay from calibration across N half-lives (for charts).
        """
        DecayEngine._require_half_life(half_life_hours)
        if steps < 1:
            raise InvalidParameterError(f"steps must be >= 1, got {steps}")
        span = half_life_hours * half_lives
        points = []
        for i in range(steps + 1):
            hours = (span / steps) * i
            activity = DecayEngine.calculate_decay(vial.initial_amount, half_life_hours, hours)
            points.append({"hours": round(hours, 3), "activity": round(activity, 2)})
        return points

    # --- 2. WITHDRAWAL ---

    @staticmethod
    def validate_withdrawal(vials: Sequence[Vial], requested_amount: float,
                            half_life_hours: float, query_time: datetime) -> Tuple[float, float]:
        """
        Pre-checks for a draw. Raises before anything is allocated.
        Returns (visible stock, required volume in mL).
        """
        if isinstance(requested_amount, bool) or not isinstance(requested_amount, (int, float)):
            raise InvalidParameterError(f"Requested amount must be numeric, got {type(requested_amount)}")
        if not requested_amount > 0:
            raise InvalidParameterError(f"Requested amount must be positive, got {requested_amount}")

        stock = DecayEngine.aggregate_stock(vials, half_life_hours, query_time)
        if requested_amount > stock:
            raise InsufficientStockError(
                f"Requested {requested_amount:.3f} exceeds available stock {stock:.3f}"
            )

        volume = DecayEngine.total_volume(vials)
        if volume <= 0:
            raise InsufficientVolumeError("No liquid volume recorded for the vials in stock")

        # required = amount / (stock / volume)
        required_volume = requested_amount * volume / stock
        if required_volume > volume + _FLOAT_TOLERANCE:
            raise InsufficientVolumeError(
                f"Dose needs {required_volume:.2f} mL but only {volume:.2f} mL is on hand"
            )
        return stock, required_volume

    @staticmethod
    def _retire(vial: Vial, activity: float, query_time: datetime, reason: str,
                unit: DoseUnit) -> WasteItem:
        return WasteItem(
            isotope_id=vial.isotope_id,
            activity=activity,
            disposed_at=query_time,
            source=WasteSource.VIAL,
            unit=unit,
            description=f"{vial.label} - {reason}",
        )

    @staticmethod
    def residual_waste(requested_amount: float, query_time: datetime,
                       isotope_id: Optional[str] = None, unit: DoseUnit = DoseUnit.MCI,
                       patient_name: str = "") -> WasteItem:
        """Syringe/needle hold-up. Bookkeeping only, not drawn from vial stock."""
        who = patient_name or "Patient"
        return WasteItem(
            isotope_id=isotope_id,
            activity=requested_amount * ENGINE_CONSTANTS.RESIDUAL_WASTE_FRACTION,
            disposed_at=query_time,
            source=WasteSource.PREPARATION,
            unit=unit,
            description=f"{who} - Syringe/needle residue",
        )

    @staticmethod
    def allocate_withdrawal(vials: Sequence[Vial], requested_amount: float,
                            half_life_hours: float, query_time: datetime,
                            unit: DoseUnit = DoseUnit.MCI,
                            isotope_id: Optional[str] = None) -> WithdrawalResult:
        """
        Greedy draw, highest current activity first.

        Vials the walk never reaches come back untouched. A vial that covers
        the remainder gets a new stored amount such that decaying it to
        query_time leaves (activity - remainder); everything else the walk
        touches is retired to waste at its current activity.
        """
        stock, draw_volume = DecayEngine.validate_withdrawal(
            vials, requested_amount, half_life_hours, query_time
        )
        epsilon = ENGINE_CONSTANTS.DEPLETION_EPSILON
        activities = DecayEngine._activities(vials, half_life_hours, query_time)

        # sorted() is stable, so ties keep list order
        ranked = sorted(range(len(vials)), key=lambda i: activities[i], reverse=True)

        remaining = float(requested_amount)
        replaced: Dict[int, Vial] = {}
        retired: List[int] = []
        unrecovered = 0.0

        for idx in ranked:
            if remaining <= _FLOAT_TOLERANCE:
                break
            vial = vials[idx]
            activity = activities[idx]

            if activity <= epsilon:
                # Already empty
                retired.append(idx)
                unrecovered += activity
                continue

            if activity >= remaining:
                left = activity - remaining
                if left < epsilon:
                    retired.append(idx)
                    unrecovered += left
                else:
                    hours = DecayEngine.elapsed_hours(vial.received_at, query_time)
                    factor = DecayEngine.decay_factor(half_life_hours, hours)
                    replaced[idx] = replace(vial, initial_amount=left / factor)
                remaining = 0.0
            else:
                remaining -= activity
                retired.append(idx)

        retired_set = set(retired)
        updated = [replaced.get(i, v) for i, v in enumerate(vials) if i not in retired_set]
        depleted = [vials[i] for i in retired]
        waste = [
            DecayEngine._retire(vials[i], activities[i], query_time, "Empty vial", unit)
            for i in retired
        ]
        syringe = DecayEngine.residual_waste(
            requested_amount, query_time,
            isotope_id=isotope_id or (vials[ranked[0]].isotope_id if ranked else None),
            unit=unit,
        )

        return WithdrawalResult(
            updated_vials=updated,
            depleted_vials=depleted,
            waste_items=waste,
            syringe_waste=syringe,
            withdrawn_amount=requested_amount - max(remaining, 0.0),
            unrecovered_activity=unrecovered,
            draw_volume_ml=draw_volume,
        )

    # --- 3. STOCK ENTRY ---

    @staticmethod
    def _require_positive(activity: float, volume: float, what: str) -> None:
        for name, val in (("activity", activity), ("volume", volume)):
            if isinstance(val, bool) or not isinstance(val, (int, float)) or not val > 0:
                raise InvalidParameterError(f"{what} {name} must be a positive number, got {val!r}")

    @staticmethod
    def is_generator_vial(vial: Vial) -> bool:
        return vial.label.startswith(ENGINE_CONSTANTS.ELUTION_LABEL_PREFIX)

    @staticmethod
    def allocate_elution(vials: Sequence[Vial], activity: float, volume: float,
                         query_time: datetime, isotope_id: Optional[str] = None,
                         number: Optional[int] = None) -> List[Vial]:
        """
        Mints a generator-derived vial calibrated now and puts it first.
        Labels are numbered by position in the list unless the caller
        tracks its own elution count.
        """
        DecayEngine._require_positive(activity, volume, "Elution")
        eluate = Vial(
            initial_amount=activity,
            initial_volume_ml=volume,
            received_at=query_time,
            label=f"{ENGINE_CONSTANTS.ELUTION_LABEL_PREFIX} #{number or len(vials) + 1}",
            isotope_id=isotope_id,
        )
        return [eluate] + list(vials)

    @staticmethod
    def prepare_kit(vials: Sequence[Vial], kit_name: str, activity: float, volume: float,
                    query_time: datetime, lot_number: Optional[str] = None,
                    isotope_id: Optional[str] = None) -> List[Vial]:
        DecayEngine._require_positive(activity, volume, "Kit")
        kit = Vial(
            initial_amount=activity,
            initial_volume_ml=volume,
            received_at=query_time,
            label=f"{kit_name} (Lot: {lot_number or 'N/A'})",
            isotope_id=isotope_id,
        )
        return [kit] + list(vials)

    @staticmethod
    def add_ordered_vial(vials: Sequence[Vial], activity: float, volume: float,
                         query_time: datetime, isotope_id: Optional[str] = None,
                         label: Optional[str] = None) -> List[Vial]:
        DecayEngine._require_positive(activity, volume, "Vial")
        vial = Vial(
            initial_amount=activity,
            initial_volume_ml=volume,
            received_at=query_time,
            label=label or f"{ENGINE_CONSTANTS.ORDERED_VIAL_LABEL_PREFIX} #{len(vials) + 1}",
            isotope_id=isotope_id,
        )
        return list(vials) + [vial]

    # --- 4. RETIREMENT ---

    @staticmethod
    def retire_all_vials(vials: Sequence[Vial], half_life_hours: float, query_time: datetime,
                         predicate: Optional[Callable[[Vial], bool]] = None,
                         reason: str = "Generator replaced",
                         unit: DoseUnit = DoseUnit.MCI) -> RetirementResult:
        """
        Retires every vial matching predicate (default: generator-derived)
        at its current activity. Used on generator replacement.
        """
        match = predicate or DecayEngine.is_generator_vial
        activities = DecayEngine._activities(vials, half_life_hours, query_time)
        kept, retired, waste = [], [], []
        for vial, activity in zip(vials, activities):
            if match(vial):
                retired.append(vial)
                waste.append(DecayEngine._retire(vial, activity, query_time, reason, unit))
            else:
                kept.append(vial)
        return RetirementResult(updated_vials=kept, retired_vials=retired, waste_items=waste)

    @staticmethod
    def dispose_vial(vials: Sequence[Vial], vial_id: str, half_life_hours: float,
                     query_time: datetime, unit: DoseUnit = DoseUnit.MCI) -> RetirementResult:
        if not any(v.id == vial_id for v in vials):
            raise UnknownVialError(vial_id)
        return DecayEngine.retire_all_vials(
            vials, half_life_hours, query_time,
            predicate=lambda v: v.id == vial_id,
            reason="Manual disposal",
            unit=unit,
        )

    # --- 5. GENERATOR ---

    @staticmethod
    def estimate_parent_activity(first_elution_activity: float, efficiency: float) -> float:
        """
        Back-calculates parent activity from the first elution, so the user
        never has to enter the factory calibration.
        """
        if not first_elution_activity > 0:
            raise InvalidParameterError(f"First elution activity must be positive, got {first_elution_activity}")
        if not 0 < efficiency <= 100:
            raise InvalidParameterError(f"Efficiency must be in (0, 100], got {efficiency}")
        return first_elution_activity / (GENERATOR_CONSTANTS.FIRST_ELUTION_YIELD * (efficiency / 100.0))

    @staticmethod
    def generator_yield(generator: IsotopeGenerator, parent_half_life_hours: float,
                        daughter_half_life_hours: float, query_time: datetime) -> float:
        """
        Daughter activity available for elution (Bateman build-up since the
        last elution, scaled by elution efficiency).
        """
        DecayEngine._require_half_life(parent_half_life_hours)
        DecayEngine._require_half_life(daughter_half_life_hours)
        if parent_half_life_hours == daughter_half_life_hours:
            raise InvalidParameterError("Parent and daughter half-lives must differ")

        since_received = DecayEngine.elapsed_hours(generator.received_at, query_time)
        last = generator.last_elution_at or generator.received_at
        since_elution = max(DecayEngine.elapsed_hours(last, query_time), 0.0)

        parent_now = DecayEngine.calculate_decay(
            generator.initial_activity, parent_half_life_hours, since_received
        )
        # lambda_d / (lambda_d - lambda_p) == T_p / (T_p - T_d)
        branching = parent_half_life_hours / (parent_half_life_hours - daughter_half_life_hours)
        growth = branching * (
            DecayEngine.decay_factor(parent_half_life_hours, since_elution)
            - DecayEngine.decay_factor(daughter_half_life_hours, since_elution)
        )
        return parent_now * growth * (generator.efficiency / 100.0)

    # --- 6. WASTE DECAY-IN-STORAGE ---

    @staticmethod
    def waste_current_activity(item: WasteItem, half_life_hours: float, query_time: datetime) -> float:
        hours = DecayEngine.elapsed_hours(item.disposed_at, query_time)
        return DecayEngine.calculate_decay(item.activity, half_life_hours, hours)

    @staticmethod
    def classify_waste(activity: float) -> WasteCategory:
        if activity >= WASTE_CONSTANTS.HOT_THRESHOLD:
            return WasteCategory.HOT
        if activity >= WASTE_CONSTANTS.WARM_THRESHOLD:
            return WasteCategory.WARM
        if activity >= WASTE_CONSTANTS.COLD_THRESHOLD:
            return WasteCategory.COLD
        return WasteCategory.CLEARED

    @staticmethod
    def release_time(item: WasteItem, half_life_hours: float,
                     threshold: float = WASTE_CONSTANTS.CLEARANCE_THRESHOLD) -> datetime:
        """When the item decays below the clearance threshold."""
        DecayEngine._require_half_life(half_life_hours)
        if not threshold > 0:
            raise InvalidParameterError(f"Clearance threshold must be positive, got {threshold}")
        if item.activity <= threshold:
            return item.disposed_at
        # t = T * log2(A0 / A_threshold)
        hours = half_life_hours * math.log2(item.activity / threshold)
        return item.disposed_at + timedelta(hours=hours)

    @staticmethod
    def bin_activity(bin: WasteBin, isotope_id: Optional[str], half_life_hours: float,
                     query_time: datetime) -> float:
        """Decayed activity of the bin's items belonging to isotope_id."""
        return sum(
            DecayEngine.waste_current_activity(item, half_life_hours, query_time)
            for item in bin.items
            if item.isotope_id == isotope_id
        )


current_activity = DecayEngine.current_activity
aggregate_stock = DecayEngine.aggregate_stock
allocate_withdrawal = DecayEngine.allocate_withdrawal
allocate_elution = DecayEngine.allocate_elution
retire_all_vials = DecayEngine.retire_all_vials
