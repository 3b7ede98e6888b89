"""
Shipping Rules Engine

Business rules adjust the aggregated rate set: exclude carriers, discount,
free shipping, service upgrade markers.

Rules are compiled when loaded: the JSON `conditions` and `actions` columns
are validated into typed models, and a rule that fails validation is skipped
with a warning instead of being interpreted per request.

Evaluation:
- Active rules whose validity window contains now (null bound = open)
- Highest priority first
- All specified conditions must hold; unspecified ones are ignored
- A matched rule with stop_processing halts evaluation
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from multicarrier.models.shipping_rule import ShippingRule
from multicarrier.modules.shipping.carriers.base import ShipmentRequest
from multicarrier.services.rate_option import RateOption

logger = logging.getLogger(__name__)


# ==================== Conditions ====================


class RangeCondition(BaseModel):
    """Inclusive [min, max]; a missing bound is open."""
    model_config = ConfigDict(extra="forbid")

    min: Optional[float] = None
    max: Optional[float] = None

    def matches(self, value: float) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


class RuleConditions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_value: Optional[RangeCondition] = None
    weight: Optional[RangeCondition] = None
    customer_type: Optional[List[str]] = None
    payment_method: Optional[List[str]] = None

    def matches(self, shipment: ShipmentRequest) -> bool:
        if self.order_value and not self.order_value.matches(shipment.order_value):
            return False
        if self.weight and not self.weight.matches(shipment.billable_weight):
            return False
        if self.customer_type is not None and shipment.customer_type not in self.customer_type:
            return False
        if self.payment_method is not None and shipment.payment_mode not in self.payment_method:
            return False
        return True


# ==================== Actions ====================


class RuleActions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    excluded_carriers: List[str] = Field(default_factory=list)
    discount_type: Optional[Literal["percent", "flat"]] = None
    discount_value: Optional[float] = Field(None, ge=0)
    free_shipping: bool = False
    upgrade_service: Optional[str] = None

    @model_validator(mode="after")
    def discount_pair(self):
        if (self.discount_type is None) != (self.discount_value is None):
            raise ValueError("discount_type and discount_value must be given together")
        if self.discount_type == "percent" and self.discount_value > 100:
            raise ValueError("percent discount cannot exceed 100")
        return self

    def apply(self, rates: List[RateOption]) -> List[RateOption]:
        excluded = {code.lower() for code in self.excluded_carriers}
        kept = []
        for rate in rates:
            if rate.carrier_code.lower() in excluded:
                continue

            if self.discount_type is not None:
                if self.discount_type == "percent":
                    discount = rate.total_charge * (self.discount_value / 100)
                else:
                    discount = self.discount_value
                if rate.original_charge is None:
                    rate.original_charge = rate.total_charge
                rate.discount = round((rate.discount or 0) + discount, 2)
                rate.total_charge = round(max(0.0, rate.total_charge - discount), 2)
                rate.has_discount = True

            if self.free_shipping:
                if rate.original_charge is None:
                    rate.original_charge = rate.total_charge
                rate.total_charge = 0.0
                rate.is_free_shipping = True

            if self.upgrade_service:
                rate.service_upgraded = True
                if rate.original_service is None:
                    rate.original_service = rate.service_name
                rate.upgrade_service = self.upgrade_service

            kept.append(rate)
        return kept


# ==================== Compiled Rule ====================


@dataclass
class CompiledRule:
    id: Optional[int]
    name: str
    priority: int
    stop_processing: bool
    conditions: RuleConditions
    actions: RuleActions

    @classmethod
    def from_model(cls, rule: ShippingRule) -> "CompiledRule":
        """
        Raises:
            pydantic.ValidationError: malformed conditions or actions
        """
        return cls(
            id=rule.id,
            name=rule.name,
            priority=rule.priority or 0,
            stop_processing=bool(rule.stop_processing),
            conditions=RuleConditions.model_validate(rule.conditions or {}),
            actions=RuleActions.model_validate(rule.actions or {}),
        )


def compile_rules(rules: List[ShippingRule]) -> List[CompiledRule]:
    """Compile rule rows, dropping malformed ones. Result is priority-descending."""
    compiled = []
    for rule in rules:
        try:
            compiled.append(CompiledRule.from_model(rule))
        except PydanticValidationError as e:
            logger.warning(f"Skipping malformed shipping rule {rule.id} ({rule.name}): {e.errors()}")
    compiled.sort(key=lambda r: r.priority, reverse=True)
    return compiled


async def load_active_rules(db: AsyncSession, now: Optional[datetime] = None) -> List[CompiledRule]:
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(ShippingRule)
        .where(
            ShippingRule.is_active == True,  # noqa: E712
            or_(ShippingRule.valid_from.is_(None), ShippingRule.valid_from <= now),
            or_(ShippingRule.valid_to.is_(None), ShippingRule.valid_to >= now),
        )
        .order_by(ShippingRule.priority.desc())
    )
    return compile_rules(list(result.scalars().all()))


def apply_rules(
    rates: List[RateOption],
    shipment: ShipmentRequest,
    rules: List[CompiledRule],
) -> List[RateOption]:
    for rule in rules:
        if not rule.conditions.matches(shipment):
            continue
        before = len(rates)
        rates = rule.actions.apply(rates)
        logger.info(f"Applied shipping rule '{rule.name}' ({before} -> {len(rates)} rates)")
        if rule.stop_processing:
            break
    return rates


class RulesEngine:
    """Loads active rules and applies them to a rate set."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def apply_business_rules(
        self,
        rates: List[RateOption],
        shipment: ShipmentRequest,
    ) -> List[RateOption]:
        rules = await load_active_rules(self.db)
        return apply_rules(rates, shipment, rules)
