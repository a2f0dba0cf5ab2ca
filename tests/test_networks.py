import json

from infra.networks import load_networks, split_urls, url_host
from pulsebot import config


def test_split_urls_and_host() -> None:
    assert split_urls("a.example, https://b.example/rpc\nc.example") == [
        "https://a.example",
        "https://b.example/rpc",
        "https://c.example",
    ]
    assert split_urls("") == []
    assert url_host("https://Arb1.Arbitrum.io/rpc") == "arb1.arbitrum.io"


def test_defaults_match_config(monkeypatch) -> None:
    for name in config.NETWORKS:
        monkeypatch.delenv(f"RPC_URLS_{name.upper()}", raising=False)
    nets = load_networks()
    assert set(nets) == {"ethereum", "bsc", "polygon", "arbitrum"}
    assert nets["bsc"].chain_id == 56
    assert nets["arbitrum"].rpc_urls[0] == "https://arb1.arbitrum.io/rpc"


def test_file_and_env_overrides(tmp_path, monkeypatch) -> None:
    path = tmp_path / "networks.json"
    path.write_text(
        json.dumps(
            {
                "polygon": {"rpc_urls": ["https://p1.example", "https://p1.example", "https://p2.example"]},
                "base": {"display_name": "Base", "chain_id": "8453", "rpc_urls": ["https://base.example"]},
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.delenv("RPC_URLS_POLYGON", raising=False)
    monkeypatch.setenv("RPC_URLS_ETHEREUM", "https://e1.example,https://e2.example")

    nets = load_networks(str(path))

    assert nets["polygon"].rpc_urls == ["https://p1.example", "https://p2.example"]
    assert nets["polygon"].chain_id == 137
    assert nets["base"].chain_id == 8453
    assert nets["base"].display_name == "Base"
    assert nets["ethereum"].rpc_urls == ["https://e1.example", "https://e2.example"]
