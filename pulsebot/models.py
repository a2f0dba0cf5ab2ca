from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class User:
    id: int
    discord_id: str
    username: str
    email: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_status: str = "inactive"
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(dataclasses.asdict(self))


@dataclass(frozen=True)
class Bot:
    id: int
    user_id: int
    name: str
    type: str
    network: str
    guild_id: str
    status: str = "configured"
    token_address: Optional[str] = None
    update_frequency: str = "60"
    configuration: Dict[str, Any] = field(default_factory=dict)
    bot_token: Optional[str] = None
    channel_id: Optional[str] = None
    subscription_item_id: Optional[str] = None
    last_value: Optional[str] = None
    last_updated: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def interval_s(self) -> float:
        return float(int(self.update_frequency))

    def to_dict(self) -> Dict[str, Any]:
        out = dataclasses.asdict(self)
        # The encrypted credential never leaves the server.
        out.pop("bot_token", None)
        return _jsonable(out)


@dataclass(frozen=True)
class BillingEvent:
    id: int
    event_id: str
    type: str
    data: Dict[str, Any]
    processed: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PlatformStats:
    total_users: int = 0
    active_bots: int = 0
    total_rpc_calls: int = 0
    daily_rpc_calls: int = 0
    revenue: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(dataclasses.asdict(self))


def _jsonable(d: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in d.items():
        out[k] = v.isoformat() if isinstance(v, datetime) else v
    return out


# ------------------------
# Request payloads

BotType = Literal["standard", "alert_whale", "alert_buy", "custom_rpc"]
NetworkName = Literal["ethereum", "bsc", "polygon", "arbitrum"]
UpdateFrequency = Literal["60", "30", "15"]
MetricType = Literal["price", "supply", "balance"]


def _as_str(v: Any) -> Any:
    # Discord snowflakes and frequencies often arrive as JSON numbers.
    if isinstance(v, int) and not isinstance(v, bool):
        return str(v)
    return v


class BotConfiguration(BaseModel):
    """Per-bot settings. Keys beyond the known ones are kept as-is."""

    model_config = ConfigDict(extra="allow")

    metric_type: Optional[MetricType] = None
    decimals: Optional[int] = Field(default=None, ge=0, le=77)
    formatter: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BotCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=50)
    type: BotType
    network: NetworkName
    guild_id: str = Field(min_length=1)
    channel_id: Optional[str] = None
    token_address: Optional[str] = None
    update_frequency: UpdateFrequency = "60"
    configuration: BotConfiguration = Field(default_factory=BotConfiguration)

    @field_validator("guild_id", "channel_id", "update_frequency", mode="before")
    @classmethod
    def _numbers_to_str(cls, v: Any) -> Any:
        return _as_str(v)

    @field_validator("update_frequency", mode="before")
    @classmethod
    def _default_frequency(cls, v: Any) -> Any:
        return "60" if v is None or v == "" else v

    @field_validator("channel_id", "token_address")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    def bot_fields(self) -> Dict[str, Any]:
        """Fields for Storage.create_bot."""
        out = self.model_dump(exclude={"configuration"})
        out["configuration"] = self.configuration.as_dict()
        return out


class BotUpdate(BaseModel):
    """Partial update. Only user-editable fields are accepted."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=3, max_length=50)
    token_address: Optional[str] = None
    update_frequency: Optional[UpdateFrequency] = None
    configuration: Optional[BotConfiguration] = None
    channel_id: Optional[str] = None

    @field_validator("channel_id", "update_frequency", mode="before")
    @classmethod
    def _numbers_to_str(cls, v: Any) -> Any:
        return _as_str(v)

    @field_validator("channel_id", "token_address")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @model_validator(mode="after")
    def _no_null_required(self) -> "BotUpdate":
        for key in ("name", "update_frequency", "configuration"):
            if key in self.model_fields_set and getattr(self, key) is None:
                raise ValueError(f"{key} cannot be null")
        return self

    def updates(self) -> Dict[str, Any]:
        """Only the fields present in the request."""
        out = self.model_dump(exclude_unset=True, exclude={"configuration"})
        if self.configuration is not None:
            out["configuration"] = self.configuration.as_dict()
        return out


class CheckoutRequest(BaseModel):
    """Plan picked on the dashboard when starting a subscription."""

    bot_type: BotType = "standard"
    update_frequency: UpdateFrequency = "60"

    @field_validator("update_frequency", mode="before")
    @classmethod
    def _numbers_to_str(cls, v: Any) -> Any:
        return _as_str(v)
