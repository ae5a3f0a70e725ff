# main.py

import logging
from typing import Optional, List
from datetime import datetime
from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

# Import Data Models & Logic
from models import (
    InventoryAlerts,
    WasteItem,
    WasteType,
    StockRejectedError,
    UnknownIsotopeError,
    UnknownVialError,
)
from constants import DoseUnit, ISOTOPE_LIBRARY, VERSION, ENGINE_CONSTANTS
from decay_engine import DecayEngine, convert_dose
from inventory import InventoryManager
from protocols import DoseCalculator, DrawInstruction
from safety import validate_withdrawal_request

# --- 1. CONFIGURATION & LOGGING ---
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("isoflow-api")

app = FastAPI(
    title="IsoFlow API",
    version=VERSION,
    description="Radioisotope inventory, decay and dose dispensing for the nuclear medicine hot lab. \n\n"
                "**WARNING**: Bookkeeping aid only. Not a dosimetry or regulatory record.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], # Tighten this in real production!
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_manager = InventoryManager()

def get_manager() -> InventoryManager:
    return _manager

def _raise_http(e: Exception):
    """Maps engine/inventory errors onto HTTP status codes."""
    if isinstance(e, (UnknownIsotopeError, UnknownVialError, KeyError)):
        raise HTTPException(status_code=404, detail=f"Not found: {e.args[0] if e.args else e}")
    if isinstance(e, StockRejectedError):
        logger.warning(f"Stock Rejection: {str(e)}")
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValueError):
        logger.warning(f"Validation Error: {str(e)}")
        raise HTTPException(status_code=422, detail=f"Validation Error: {str(e)}")
    logger.error(f"Internal Inventory Failure: {str(e)}", exc_info=True)
    raise HTTPException(status_code=500, detail="Internal Inventory Engine Error")

@app.get("/")
def read_root():
    return {"status": "active", "message": "IsoFlow API is running successfully!"}

@app.get("/health")
def health_check():
    """K8s/AWS Health Probe"""
    return {"status": "active", "version": VERSION, "module": "isoflow-decay-engine"}

# --- 2. INPUT SCHEMAS ---
class VialRequest(BaseModel):
    activity: float = Field(..., gt=0, description="Activity at calibration, in the active unit")
    volume_ml: float = Field(..., gt=0, le=1000.0)
    label: Optional[str] = Field(None, max_length=120)
    at: Optional[datetime] = Field(None, description="Calibration time (defaults to now)")

class KitRequest(BaseModel):
    kit_name: str = Field(..., min_length=1, max_length=60)
    activity: float = Field(..., gt=0)
    volume_ml: float = Field(..., gt=0, le=1000.0)
    lot_number: Optional[str] = Field(None, max_length=60)
    at: Optional[datetime] = None

class WithdrawRequest(BaseModel):
    amount: float = Field(..., gt=0, description="Dose to draw, in the active unit")
    patient_name: str = Field("", max_length=120)
    procedure: str = Field("", max_length=120)
    at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {"amount": 10.0, "patient_name": "Jane Doe", "procedure": "Bone Scan (Whole Body)"}
        }

class GeneratorRequest(BaseModel):
    first_elution_activity: float = Field(..., gt=0)
    volume_ml: float = Field(..., gt=0, le=100.0)
    efficiency: float = Field(90.0, gt=0, le=100.0, description="Elution efficiency (%)")
    at: Optional[datetime] = None

class ElutionRequest(BaseModel):
    activity: float = Field(..., gt=0)
    volume_ml: float = Field(..., gt=0, le=100.0)
    at: Optional[datetime] = None

class BinRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    type: WasteType = Field(default=WasteType.SOLID)

class ConversionRequest(BaseModel):
    value: float = Field(..., ge=0)
    from_unit: DoseUnit
    to_unit: DoseUnit

# --- 3. RESPONSE SCHEMAS ---
class VialView(BaseModel):
    id: str
    label: str
    initial_amount: float
    initial_volume_ml: float
    received_at: datetime
    current_activity: float
    visible: bool

class GeneratorView(BaseModel):
    id: str
    initial_activity: float
    received_at: datetime
    efficiency: float
    last_elution_at: Optional[datetime] = None
    available_yield: float

class InventoryResponse(BaseModel):
    isotope_id: str
    unit: DoseUnit
    half_life_hours: float
    stock: float
    total_volume_ml: float
    concentration_per_ml: float
    vials: List[VialView]
    alerts: InventoryAlerts
    generator: Optional[GeneratorView] = None
    generated_at: datetime = Field(default_factory=datetime.now)

class WasteItemView(BaseModel):
    id: str
    activity: float
    source: str
    description: str
    disposed_at: datetime

class WithdrawResponse(BaseModel):
    dose_id: str
    queue_number: int
    patient_name: str
    amount: float
    unit: DoseUnit
    draw_volume_ml: float
    depleted_vial_ids: List[str]
    waste_items: List[WasteItemView]
    syringe_waste: WasteItemView
    kits_used: List[str]
    stock_after: float

def _waste_view(item: WasteItem) -> WasteItemView:
    return WasteItemView(
        id=item.id, activity=item.activity, source=item.source.value,
        description=item.description, disposed_at=item.disposed_at,
    )

def _inventory_view(manager: InventoryManager, isotope_id: str, at: Optional[datetime]) -> InventoryResponse:
    inv = manager.inventory(isotope_id)
    now = manager.now(at)
    half_life = inv.isotope.half_life_hours
    vials = []
    for vial in inv.vials:
        activity = DecayEngine.current_activity(vial, half_life, now)
        vials.append(VialView(
            id=vial.id, label=vial.label, initial_amount=vial.initial_amount,
            initial_volume_ml=vial.initial_volume_ml, received_at=vial.received_at,
            current_activity=activity,
            visible=activity >= ENGINE_CONSTANTS.VISIBILITY_THRESHOLD,
        ))
    generator = None
    if inv.generator is not None:
        generator = GeneratorView(
            id=inv.generator.id,
            initial_activity=inv.generator.initial_activity,
            received_at=inv.generator.received_at,
            efficiency=inv.generator.efficiency,
            last_elution_at=inv.generator.last_elution_at,
            available_yield=manager.generator_yield(isotope_id, at=now),
        )
    return InventoryResponse(
        isotope_id=isotope_id,
        unit=manager.unit,
        half_life_hours=half_life,
        stock=DecayEngine.aggregate_stock(inv.vials, half_life, now),
        total_volume_ml=DecayEngine.total_volume(inv.vials),
        concentration_per_ml=DecayEngine.current_concentration(inv.vials, half_life, now),
        vials=vials,
        alerts=manager.alerts(isotope_id, at=now),
        generator=generator,
    )

# --- 4. ENDPOINTS ---

@app.get("/isotopes")
def list_isotopes():
    return [
        {
            "id": iso.id, "name": iso.name, "symbol": iso.symbol,
            "half_life_hours": iso.half_life_hours, "has_generator": iso.has_generator,
        }
        for iso in ISOTOPE_LIBRARY.SPECS.values()
    ]

@app.get("/inventory/{isotope_id}", response_model=InventoryResponse)
def get_inventory(isotope_id: str, at: Optional[datetime] = None,
                  manager: InventoryManager = Depends(get_manager)):
    try:
        return _inventory_view(manager, isotope_id, at)
    except Exception as e:
        _raise_http(e)

@app.post("/inventory/{isotope_id}/vials", response_model=VialView, status_code=201)
def add_vial(isotope_id: str, request: VialRequest, manager: InventoryManager = Depends(get_manager)):
    try:
        vial = manager.add_vial(isotope_id, request.activity, request.volume_ml,
                                at=request.at, label=request.label)
        return VialView(
            id=vial.id, label=vial.label, initial_amount=vial.initial_amount,
            initial_volume_ml=vial.initial_volume_ml, received_at=vial.received_at,
            current_activity=vial.initial_amount, visible=vial.initial_amount >= ENGINE_CONSTANTS.VISIBILITY_THRESHOLD,
        )
    except Exception as e:
        _raise_http(e)

@app.post("/inventory/{isotope_id}/kits", response_model=VialView, status_code=201)
def prepare_kit(isotope_id: str, request: KitRequest, manager: InventoryManager = Depends(get_manager)):
    try:
        vial = manager.prepare_kit(isotope_id, request.kit_name, request.activity, request.volume_ml,
                                   lot_number=request.lot_number, at=request.at)
        return VialView(
            id=vial.id, label=vial.label, initial_amount=vial.initial_amount,
            initial_volume_ml=vial.initial_volume_ml, received_at=vial.received_at,
            current_activity=vial.initial_amount, visible=True,
        )
    except Exception as e:
        _raise_http(e)

@app.delete("/inventory/{isotope_id}/vials/{vial_id}", response_model=WasteItemView)
def dispose_vial(isotope_id: str, vial_id: str, manager: InventoryManager = Depends(get_manager)):
    try:
        return _waste_view(manager.dispose_vial(isotope_id, vial_id))
    except Exception as e:
        _raise_http(e)

@app.post("/inventory/{isotope_id}/withdraw", response_model=WithdrawResponse)
def withdraw_dose(isotope_id: str, request: WithdrawRequest, manager: InventoryManager = Depends(get_manager)):
    """
    Draws a patient dose from stock, highest-activity vial first.
    Rejections (409) leave the inventory untouched.
    """
    try:
        logger.info(f"Withdrawal request: {request.amount} {manager.unit.value} of {isotope_id}")
        receipt = manager.withdraw(isotope_id, request.amount, patient_name=request.patient_name,
                                   procedure=request.procedure, at=request.at)
        result = receipt.withdrawal
        return WithdrawResponse(
            dose_id=receipt.entry.id,
            queue_number=receipt.entry.queue_number,
            patient_name=receipt.entry.patient_name,
            amount=receipt.entry.amount,
            unit=receipt.entry.unit,
            draw_volume_ml=result.draw_volume_ml,
            depleted_vial_ids=[v.id for v in result.depleted_vials],
            waste_items=[_waste_view(w) for w in result.waste_items],
            syringe_waste=_waste_view(result.syringe_waste),
            kits_used=receipt.kits_used,
            stock_after=manager.stock(isotope_id, at=receipt.entry.timestamp),
        )
    except Exception as e:
        _raise_http(e)

@app.get("/inventory/{isotope_id}/draw-volume")
def draw_volume(isotope_id: str, amount: float, at: Optional[datetime] = None,
                manager: InventoryManager = Depends(get_manager)):
    try:
        inv = manager.inventory(isotope_id)
        now = manager.now(at)
        # Refuse draws the shelf cannot serve before quoting a volume
        validate_withdrawal_request(inv.vials, amount, inv.isotope.half_life_hours, now)
        return DrawInstruction.generate(inv.vials, amount, inv.isotope.half_life_hours, now)
    except Exception as e:
        _raise_http(e)

@app.get("/inventory/{isotope_id}/recommended-dose")
def recommended_dose(isotope_id: str, weight_kg: float, manager: InventoryManager = Depends(get_manager)):
    try:
        inv = manager.inventory(isotope_id)
        dose = DoseCalculator.recommended_dose(inv.isotope, weight_kg, manager.unit)
        return {"weight_kg": weight_kg, "dose": round(dose, 2), "unit": manager.unit.value}
    except Exception as e:
        _raise_http(e)

@app.post("/inventory/{isotope_id}/generator", response_model=GeneratorView, status_code=201)
def register_generator(isotope_id: str, request: GeneratorRequest, manager: InventoryManager = Depends(get_manager)):
    try:
        gen = manager.register_generator(isotope_id, request.first_elution_activity, request.volume_ml,
                                         efficiency=request.efficiency, at=request.at)
        return GeneratorView(
            id=gen.id, initial_activity=gen.initial_activity, received_at=gen.received_at,
            efficiency=gen.efficiency, last_elution_at=gen.last_elution_at,
            available_yield=manager.generator_yield(isotope_id, at=gen.received_at),
        )
    except Exception as e:
        _raise_http(e)

@app.post("/inventory/{isotope_id}/elute", response_model=VialView, status_code=201)
def elute(isotope_id: str, request: ElutionRequest, manager: InventoryManager = Depends(get_manager)):
    try:
        vial = manager.elute(isotope_id, request.activity, request.volume_ml, at=request.at)
        return VialView(
            id=vial.id, label=vial.label, initial_amount=vial.initial_amount,
            initial_volume_ml=vial.initial_volume_ml, received_at=vial.received_at,
            current_activity=vial.initial_amount, visible=True,
        )
    except Exception as e:
        _raise_http(e)

@app.delete("/inventory/{isotope_id}/generator")
def remove_generator(isotope_id: str, manager: InventoryManager = Depends(get_manager)):
    try:
        result = manager.remove_generator(isotope_id)
        return {
            "retired_vial_ids": [v.id for v in result.retired_vials],
            "waste_items": [_waste_view(w) for w in result.waste_items],
        }
    except Exception as e:
        _raise_http(e)

@app.get("/inventory/{isotope_id}/waste")
def waste_report(isotope_id: str, at: Optional[datetime] = None,
                 manager: InventoryManager = Depends(get_manager)):
    try:
        return manager.waste_report(isotope_id, at=at)
    except Exception as e:
        _raise_http(e)

@app.post("/inventory/{isotope_id}/waste/bins", status_code=201)
def add_waste_bin(isotope_id: str, request: BinRequest, manager: InventoryManager = Depends(get_manager)):
    try:
        bin = manager.add_waste_bin(isotope_id, request.name, request.type)
        return {"id": bin.id, "name": bin.name, "type": bin.type.value}
    except Exception as e:
        _raise_http(e)

@app.post("/inventory/{isotope_id}/waste/bins/{bin_id}/empty")
def empty_waste_bin(isotope_id: str, bin_id: str, manager: InventoryManager = Depends(get_manager)):
    try:
        return {"bin_id": bin_id, "warnings": manager.empty_bin(isotope_id, bin_id)}
    except Exception as e:
        _raise_http(e)

@app.post("/convert")
def convert(request: ConversionRequest):
    return {
        "value": convert_dose(request.value, request.from_unit, request.to_unit),
        "unit": request.to_unit.value,
    }
