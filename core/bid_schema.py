"""
Bid Schema Validation

Checks a decision engine's bid against a Pydantic schema before it is
submitted to the ledger. Errors are flattened into BidValidationFailed so
callers get one exception type regardless of which field was wrong.
"""
import logging
from decimal import Decimal
from typing import Any, List, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.exceptions import BidValidationFailed
from core.investment import Bid
from core.ledger import Validator

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{1,40}$"


class BidSchema(BaseModel):
    """Structural contract for a bid"""
    model_config = ConfigDict(extra="forbid")

    amount: Decimal = Field(gt=0, description="Amount committed to the auction")
    bidder: str = Field(pattern=ADDRESS_PATTERN, description="Bidder account address")
    min_interest_rate: Decimal = Field(ge=0, description="Lowest acceptable interest rate")

    @field_validator("amount", "min_interest_rate", mode="before")
    @classmethod
    def reject_non_numeric(cls, v: Any) -> Any:
        """Booleans and blank strings coerce silently otherwise; floats go through str"""
        if isinstance(v, bool):
            raise ValueError("must be a number, not a boolean")
        if isinstance(v, str) and not v.strip():
            raise ValueError("must not be blank")
        if isinstance(v, float):
            return Decimal(str(v))
        return v

    @field_validator("amount", "min_interest_rate")
    @classmethod
    def reject_non_finite(cls, v: Decimal) -> Decimal:
        if not v.is_finite():
            raise ValueError("must be finite")
        return v


def _format_errors(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "bid"
        messages.append(f"{location}: {item.get('msg', 'invalid')}")
    return messages


class BidValidator(Validator):
    """Default Validator backed by BidSchema."""

    def validate(self, bid: Union[Bid, Mapping[str, Any]]) -> None:
        self.parse(bid)

    def parse(self, bid: Union[Bid, Mapping[str, Any]]) -> Bid:
        """Validate and return the normalized Bid."""
        if isinstance(bid, Bid):
            payload: Any = {
                "amount": bid.amount,
                "bidder": bid.bidder,
                "min_interest_rate": bid.min_interest_rate,
            }
        elif isinstance(bid, Mapping):
            payload = dict(bid)
        else:
            raise BidValidationFailed([f"bid: expected a mapping, got {type(bid).__name__}"], bid=bid)

        try:
            model = BidSchema.model_validate(payload)
        except ValidationError as exc:
            errors = _format_errors(exc)
            logger.debug(f"Bid rejected by schema: {errors}")
            raise BidValidationFailed(errors, bid=bid) from exc

        return Bid(
            amount=model.amount,
            bidder=model.bidder,
            min_interest_rate=model.min_interest_rate,
        )
