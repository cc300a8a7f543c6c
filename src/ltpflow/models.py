"""
Pydantic models for decoded price observations and option subscriptions.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class OptionType(str, Enum):
    """Option side. Values are the exchange's CE/PE codes stored in the topics table."""
    CALL = "CE"
    PUT = "PE"

    @property
    def query_value(self) -> str:
        """Lowercase form expected by the token resolver (ce/pe)."""
        return self.value.lower()


class Observation(BaseModel):
    """A single last-traded-price tick waiting to be persisted."""
    series_key: str = Field(..., description="Series name, e.g. index/NIFTY or index/NSE_FO|12345")
    price: float = Field(..., description="Last traded price")
    index_name: Optional[str] = Field(None, description="Underlying index name")
    instrument_type: Optional[OptionType] = Field(None, description="CE/PE for option series")
    strike: Optional[float] = Field(None, description="Strike price for option series")

    @field_validator("series_key")
    @classmethod
    def validate_series_key(cls, v):
        """Ensure series key is not blank."""
        if not v or not v.strip():
            raise ValueError("Series key must not be empty")
        return v


class SubscriptionEntry(BaseModel):
    """Metadata recorded for an acknowledged option topic subscription."""
    topic: str = Field(..., description="Full subscribed topic, e.g. index/NSE_FO|12345")
    series_key: str = Field(..., description="Series key the topic's prices are stored under")
    index_name: str = Field(..., description="Underlying index name")
    instrument_type: OptionType = Field(..., description="CE or PE")
    strike: float = Field(..., description="Strike price")

    @property
    def topic_suffix(self) -> str:
        """Topic part after the prefix, used to match inbound messages."""
        return self.topic.split("/", 1)[1]
