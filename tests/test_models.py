from typing import get_args

import pydantic
import pytest

from pulsebot import config
from pulsebot.models import BotCreate, BotType, BotUpdate, CheckoutRequest, MetricType, NetworkName, UpdateFrequency


def _payload(**over):
    base = {
        "name": "ETH supply",
        "type": "standard",
        "network": "ethereum",
        "guild_id": "123",
        "token_address": "0x" + "11" * 20,
        "configuration": {"metric_type": "supply", "decimals": 18},
    }
    base.update(over)
    return base


def _error_locs(err: pydantic.ValidationError) -> set:
    return {".".join(str(p) for p in e["loc"]) for e in err.errors()}


def test_literals_match_config_tables() -> None:
    assert get_args(BotType) == config.BOT_TYPES
    assert set(get_args(NetworkName)) == set(config.NETWORKS)
    assert get_args(UpdateFrequency) == config.UPDATE_FREQUENCIES
    assert get_args(MetricType) == config.METRIC_TYPES


def test_bot_create_defaults_frequency() -> None:
    out = BotCreate.model_validate(_payload(name="  ETH supply  ", channel_id="")).bot_fields()
    assert out["name"] == "ETH supply"
    assert out["update_frequency"] == "60"
    assert out["channel_id"] is None
    assert out["configuration"] == {"metric_type": "supply", "decimals": 18}


def test_bot_create_accepts_numeric_ids_and_extra_configuration() -> None:
    out = BotCreate.model_validate(
        _payload(guild_id=987654321, update_frequency=15, configuration={"pair_address": "0xpair", "decimals": "6"})
    ).bot_fields()
    assert out["guild_id"] == "987654321"
    assert out["update_frequency"] == "15"
    assert out["configuration"] == {"pair_address": "0xpair", "decimals": 6}


def test_bot_create_collects_errors() -> None:
    with pytest.raises(pydantic.ValidationError) as err:
        BotCreate.model_validate(
            _payload(name="x", type="nft", network="solana", update_frequency="5", guild_id="", configuration={"decimals": 99})
        )
    assert _error_locs(err.value) == {
        "name",
        "type",
        "network",
        "update_frequency",
        "guild_id",
        "configuration.decimals",
    }


def test_bot_create_checks_formatter_type() -> None:
    with pytest.raises(pydantic.ValidationError) as err:
        BotCreate.model_validate(_payload(type="custom_rpc", configuration={"formatter": 5}))
    assert "configuration.formatter" in _error_locs(err.value)

    with pytest.raises(pydantic.ValidationError):
        BotCreate.model_validate(["not", "an", "object"])


def test_bot_update_whitelist() -> None:
    update = BotUpdate.model_validate({"update_frequency": 15, "name": "  Renamed  "})
    assert update.updates() == {"update_frequency": "15", "name": "Renamed"}
    assert BotUpdate.model_validate({"configuration": {"decimals": 8}}).updates() == {"configuration": {"decimals": 8}}

    with pytest.raises(pydantic.ValidationError) as err:
        BotUpdate.model_validate({"status": "active", "user_id": 2})
    assert _error_locs(err.value) == {"status", "user_id"}

    with pytest.raises(pydantic.ValidationError):
        BotUpdate.model_validate({"name": None})


def test_checkout_request_defaults() -> None:
    plan = CheckoutRequest.model_validate({})
    assert (plan.bot_type, plan.update_frequency) == ("standard", "60")
    assert CheckoutRequest.model_validate({"bot_type": "custom_rpc", "update_frequency": 30}).update_frequency == "30"
