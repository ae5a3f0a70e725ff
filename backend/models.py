"""
IsoFlow: Data Dictionary
========================
This module defines the records that flow through the Decay & Inventory Engine:
Vials (stock), Waste (retired activity), Generators (stock source) and the
result records the engine hands back to the Inventory Store.

NO LOGIC is implemented here beyond field validation. Decay math lives in
decay_engine.py.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from datetime import datetime
from constants import VERSION, DoseUnit

class InvalidParameterError(ValueError):
    """Raised on caller contract violations (non-positive half-life, negative amounts)."""
    pass

class StockRejectedError(ValueError):
    """Base for expected, user-facing withdrawal rejections. Nothing is mutated."""
    pass

class InsufficientStockError(StockRejectedError):
    """Requested activity exceeds the visible stock total."""
    pass

class InsufficientVolumeError(StockRejectedError):
    """Required draw volume exceeds the liquid volume on hand."""
    pass

class UnknownIsotopeError(KeyError):
    pass

class UnknownVialError(KeyError):
    pass

def new_record_id() -> str:
    return uuid.uuid4().hex[:9]

# --- 1. ENUMS ---

class WasteSource(Enum):
    VIAL = "vial"
    PREPARATION = "preparation"
    PATIENT = "patient"
    OTHER = "other"

class WasteType(Enum):
    SHARP = "sharp"    # Needles, syringes
    SOLID = "solid"    # Shields, gloves, empty vials
    LIQUID = "liquid"  # Left-over solution

class WasteCategory(Enum):
    HOT = "hot"          # Special disposal
    WARM = "warm"        # Needs decay-in-storage
    COLD = "cold"        # Low activity
    CLEARED = "cleared"  # Below clearance, normal trash

# --- 2. STOCK ---

@dataclass
class Vial:
    """
    A quantity of radiopharmaceutical received at a specific time.
    initial_amount is the activity at received_at as currently known; draws
    replace it with a smaller value. Volume never decays.
    """
    initial_amount: float
    initial_volume_ml: float
    received_at: datetime
    label: str
    isotope_id: Optional[str] = None
    id: str = field(default_factory=new_record_id)

    def __post_init__(self):
        for name in ("initial_amount", "initial_volume_ml"):
            val = getattr(self, name)
            if isinstance(val, bool) or not isinstance(val, (int, float)):
                raise InvalidParameterError(f"Field '{name}' must be numeric, got {type(val)}")
            if val < 0:
                raise InvalidParameterError(f"Field '{name}' cannot be negative ({val})")
        if not isinstance(self.received_at, datetime):
            raise InvalidParameterError(f"received_at must be a datetime, got {type(self.received_at)}")

@dataclass
class IsotopeGenerator:
    """Parent/daughter generator (e.g. Mo-99 -> Tc-99m)."""
    initial_activity: float   # Parent activity at received_at
    received_at: datetime
    efficiency: float = 90.0  # %
    last_elution_at: Optional[datetime] = None
    elution_count: int = 0
    id: str = field(default_factory=new_record_id)

# --- 3. WASTE ---

@dataclass
class WasteItem:
    isotope_id: Optional[str]
    activity: float          # At disposed_at
    disposed_at: datetime
    source: WasteSource
    unit: DoseUnit = DoseUnit.MCI
    description: str = ""
    id: str = field(default_factory=new_record_id)

@dataclass
class WasteBin:
    name: str
    type: WasteType = WasteType.SOLID
    items: List[WasteItem] = field(default_factory=list)
    is_sealed: bool = False
    sealed_at: Optional[datetime] = None
    id: str = field(default_factory=new_record_id)

# --- 4. DISPENSING ---

@dataclass
class DoseLogEntry:
    queue_number: int
    patient_name: str
    procedure: str
    amount: float
    unit: DoseUnit
    timestamp: datetime
    id: str = field(default_factory=new_record_id)

# --- 5. ENGINE OUTPUTS ---

@dataclass
class WithdrawalResult:
    """
    Output of a successful allocation.
    updated_vials keeps the original list order minus retired vials.
    """
    updated_vials: List[Vial]
    depleted_vials: List[Vial]
    waste_items: List[WasteItem]
    syringe_waste: WasteItem
    withdrawn_amount: float
    # Activity left in retired vials that could not be dispensed (< epsilon)
    unrecovered_activity: float = 0.0
    draw_volume_ml: float = 0.0

@dataclass
class RetirementResult:
    updated_vials: List[Vial]
    retired_vials: List[Vial]
    waste_items: List[WasteItem]

@dataclass
class DrawPlanStep:
    vial_id: str
    label: str
    current_activity: float
    take: float
    depletes: bool
    is_kit: bool = False

@dataclass
class InventoryAlerts:
    """
    Flags for the dashboard.
    """
    low_stock: bool = False
    stock_mci: float = 0.0
    near_empty_vial_ids: List[str] = field(default_factory=list)
    hidden_vial_ids: List[str] = field(default_factory=list)
    elution_overdue: bool = False

@dataclass
class AuditLog:
    action: str
    isotope_id: str
    detail: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    model_version: str = VERSION
