# protocols.py
from datetime import datetime
from typing import List, Sequence

from models import Vial, DrawPlanStep, InvalidParameterError
from constants import DoseUnit, IsotopeProperties, ENGINE_CONSTANTS, KIT_LABEL_MARKERS
from decay_engine import DecayEngine, convert_dose

class DoseCalculator:
    @staticmethod
    def recommended_dose(isotope: IsotopeProperties, weight_kg: float,
                         unit: DoseUnit = DoseUnit.MCI) -> float:
        """
        Weight-based starting dose. The ratio table is in mCi/kg.
        Returns 0 for a missing/invalid weight so the form stays empty.
        """
        if weight_kg is None or weight_kg <= 0:
            return 0.0
        dose_mci = weight_kg * isotope.dose_ratio_mci_per_kg
        return convert_dose(dose_mci, DoseUnit.MCI, unit)

class DrawPlanner:
    @staticmethod
    def is_kit(vial: Vial) -> bool:
        return any(marker in vial.label for marker in KIT_LABEL_MARKERS)

    @staticmethod
    def plan_draw(vials: Sequence[Vial], requested_amount: float, half_life_hours: float,
                  now: datetime) -> List[DrawPlanStep]:
        """
        Preview: which vials would a draw of requested_amount touch?
        Walks the same order as the allocation but changes nothing.
        """
        if not requested_amount > 0:
            raise InvalidParameterError(f"Requested amount must be positive, got {requested_amount}")
        epsilon = ENGINE_CONSTANTS.DEPLETION_EPSILON

        activities = [DecayEngine.current_activity(v, half_life_hours, now) for v in vials]
        ranked = sorted(range(len(vials)), key=lambda i: activities[i], reverse=True)

        steps = []
        remaining = requested_amount
        for idx in ranked:
            if remaining <= 0:
                break
            activity = activities[idx]
            if activity <= epsilon:
                continue
            take = min(activity, remaining)
            steps.append(DrawPlanStep(
                vial_id=vials[idx].id,
                label=vials[idx].label,
                current_activity=activity,
                take=take,
                depletes=(activity - take) < epsilon,
                is_kit=DrawPlanner.is_kit(vials[idx]),
            ))
            remaining -= take
        return steps

    @staticmethod
    def kits_to_use(plan: Sequence[DrawPlanStep]) -> List[str]:
        """Prepared kit labels a draw will consume (ask the technologist first)."""
        labels = []
        for step in plan:
            if step.is_kit and step.label not in labels:
                labels.append(step.label)
        return labels

class DrawInstruction:
    @staticmethod
    def generate(vials: Sequence[Vial], requested_amount: float, half_life_hours: float,
                 now: datetime) -> dict:
        concentration = DecayEngine.current_concentration(vials, half_life_hours, now)

        volume_ml = 0.0
        if concentration >= ENGINE_CONSTANTS.MIN_CONCENTRATION and requested_amount > 0:
            volume_ml = requested_amount / concentration
            # Near-zero concentration gives absurd volumes; show nothing instead
            if volume_ml > ENGINE_CONSTANTS.MAX_DRAW_VOLUME_ML:
                volume_ml = 0.0

        return {
            "requested_amount": requested_amount,
            "concentration_per_ml": round(concentration, 4),
            "draw_volume_ml": round(volume_ml, 2),
            "total_volume_ml": DecayEngine.total_volume(vials),
        }
