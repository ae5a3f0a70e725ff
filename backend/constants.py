from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict
VERSION = "1.0.0"

# 1 mCi = 37 MBq (exact)
MCI_TO_MBQ = 37

class DoseUnit(Enum):
    MCI = "mCi"
    MBQ = "MBq"

@dataclass
class ParentIsotope:
    symbol: str
    half_life_hours: float

@dataclass
class IsotopeProperties:
    id: str
    name: str
    symbol: str
    half_life_hours: float
    description: str = ""
    has_generator: bool = False
    parent: Optional[ParentIsotope] = None
    # Weight-based dose recommendation (mCi per kg)
    dose_ratio_mci_per_kg: float = 0.1

class ENGINE_CONSTANTS:
    SECONDS_PER_HOUR = 3600.0

    # Vials at or below this are treated as empty (source unit)
    DEPLETION_EPSILON = 0.01
    # Vials below this are hidden from stock totals
    VISIBILITY_THRESHOLD = 0.1
    # Visible but nearly spent
    NEAR_EMPTY_THRESHOLD = 1.0

    # Syringe/needle hold-up recorded as preparation waste
    RESIDUAL_WASTE_FRACTION = 0.05

    LOW_STOCK_THRESHOLD_MCI = 5.0

    # Draw-volume display guards
    MIN_CONCENTRATION = 0.001
    MAX_DRAW_VOLUME_ML = 1000.0

    ELUTION_LABEL_PREFIX = "Elution"
    ORDERED_VIAL_LABEL_PREFIX = "Vial"
    HOT_ROOM_BIN_NAME = "Hot Room"

    # Decay chart sampling
    CHART_HALF_LIVES = 4
    CHART_STEPS = 20

class WASTE_CONSTANTS:
    # Lower bound of each category (source unit)
    HOT_THRESHOLD = 100.0
    WARM_THRESHOLD = 10.0
    COLD_THRESHOLD = 0.1
    # Below this a waste item can go to normal disposal
    CLEARANCE_THRESHOLD = 0.001

class GENERATOR_CONSTANTS:
    # Fraction of parent activity recovered in the first elution at 100% efficiency
    FIRST_ELUTION_YIELD = 0.87
    ELUTION_INTERVAL_HOURS = 24.0

# Label fragments that mark a vial as a prepared cold kit
KIT_LABEL_MARKERS = ("Lot:", "MDP", "MIBI", "MAA", "DTPA", "DMSA", "MAG3", "HDP")

class ISOTOPE_LIBRARY:
    """
    Radionuclides handled by the hot lab.
    Half-lives in hours.
    """
    SPECS: Dict[str, IsotopeProperties] = {
        "f18": IsotopeProperties(
            id="f18", name="Fluorine-18 (FDG)", symbol="F-18",
            half_life_hours=1.8295, # 109.77 min
            description="PET glucose metabolism imaging.",
            dose_ratio_mci_per_kg=0.131
        ),
        "tc99m": IsotopeProperties(
            id="tc99m", name="Technetium-99m", symbol="Tc-99m",
            half_life_hours=6.0067,
            description="Most widely used diagnostic radionuclide.",
            has_generator=True,
            parent=ParentIsotope(symbol="Mo-99", half_life_hours=66.02)
        ),
        "ga68": IsotopeProperties(
            id="ga68", name="Gallium-68", symbol="Ga-68",
            half_life_hours=1.1285, # 67.7 min
            description="PSMA and somatostatin receptor PET.",
            dose_ratio_mci_per_kg=0.05
        ),
        "i131": IsotopeProperties(
            id="i131", name="Iodine-131", symbol="I-131",
            half_life_hours=192.48, # ~8.02 days
            description="Thyroid imaging and therapy.",
            dose_ratio_mci_per_kg=0.1
        ),
        "lu177": IsotopeProperties(
            id="lu177", name="Lutetium-177", symbol="Lu-177",
            half_life_hours=159.528, # ~6.647 days
            description="Targeted radionuclide therapy."
        ),
    }

    @staticmethod
    def get(isotope_id: str) -> Optional[IsotopeProperties]:
        return ISOTOPE_LIBRARY.SPECS.get(isotope_id)
