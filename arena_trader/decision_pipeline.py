import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class PipelineModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _clean_direction(value: Any) -> str:
    if value is None:
        raise ValueError("Direction is required")
    token = str(value).strip().upper()
    if token in ("LONG", "BUY", "STRONG_BUY"):
        return "LONG"
    if token in ("SHORT", "SELL", "STRONG_SELL"):
        return "SHORT"
    raise ValueError(f"Unsupported direction '{value}'")


class SymbolSelection(PipelineModel):
    symbol: str
    direction: str
    confidence: Optional[float] = None
    reason: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Symbol is required")
        return value.strip().lower()

    @field_validator("direction", mode="before")
    @classmethod
    def validate_direction(cls, value: Any) -> str:
        return _clean_direction(value)


class SpecialistAnalysis(PipelineModel):
    analyst_id: str
    recommendation: str
    confidence: float = Field(default=0.0, ge=0, le=100)
    thesis: Optional[str] = None
    price_target: Optional[float] = None


class ChampionDecision(PipelineModel):
    analyst_id: str
    recommendation: str
    confidence: float = Field(ge=0, le=100)
    entry_price: Optional[float] = Field(default=None, gt=0)
    take_profit: Optional[float] = Field(default=None, gt=0)
    stop_loss: Optional[float] = Field(default=None, gt=0)
    position_size: float = Field(default=5.0, gt=0, le=10)
    leverage: Optional[float] = Field(default=None, gt=0)
    scores: Dict[str, float] = Field(default_factory=dict)
    reasoning: Optional[str] = None

    @field_validator("analyst_id")
    @classmethod
    def validate_analyst(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Champion analyst id is required")
        return value.strip().lower()

    @property
    def direction(self) -> str:
        return _clean_direction(self.recommendation)


class RiskAdjustments(PipelineModel):
    leverage: Optional[float] = Field(default=None, gt=0)
    position_size: Optional[float] = Field(default=None, gt=0, le=10)
    take_profit: Optional[float] = Field(default=None, gt=0)
    stop_loss: Optional[float] = Field(default=None, gt=0)


class RiskReview(PipelineModel):
    approved: bool
    veto_reason: Optional[str] = None
    adjustments: Optional[RiskAdjustments] = None


def coerce_result(model: type[PipelineModel], raw: Any, stage: str) -> Optional[PipelineModel]:
    """
    Validate a pipeline stage result into its model.

    None, or anything that fails validation, is treated as "no result" so a
    malformed answer never reaches order sizing.
    """
    if raw is None:
        return None
    if isinstance(raw, model):
        return raw
    try:
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        return model.model_validate(raw)
    except ValidationError as exc:
        logger.warning(f"Decision pipeline {stage} returned invalid result: {exc}")
        return None


class DecisionPipeline(ABC):
    """Symbol selection, specialist debate and risk council, consumed as a black box."""

    @abstractmethod
    async def select_symbol(self, market_data_by_symbol: Dict[str, dict]):
        """Return a SymbolSelection (or compatible dict) or None."""
        raise NotImplementedError

    @abstractmethod
    async def analyze_specialists(self, symbol: str, market_data: dict, direction: str) -> List[Any]:
        raise NotImplementedError

    @abstractmethod
    async def adjudicate(self, analyses: List[Any], market_data: dict):
        """Return the champion decision or None."""
        raise NotImplementedError

    @abstractmethod
    async def review_risk(
        self,
        champion: ChampionDecision,
        market_data: dict,
        balance: float,
        positions: List[dict],
        recent_pnl: List[float],
    ):
        """Return a RiskReview (or compatible dict)."""
        raise NotImplementedError
