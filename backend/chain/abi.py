"""Contract interfaces of the settlement chain."""

from __future__ import annotations

from typing import Any, Iterable


def _function(
    name: str,
    inputs: Iterable[tuple[str, str]],
    outputs: Iterable[tuple[str, str]] = (),
    *,
    mutability: str = "nonpayable",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": arg, "type": kind} for arg, kind in inputs],
        "outputs": [{"name": arg, "type": kind} for arg, kind in outputs],
    }


def _event(name: str, inputs: Iterable[tuple[str, str, bool]]) -> dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg, "type": kind, "indexed": indexed} for arg, kind, indexed in inputs
        ],
    }


TOKEN_ABI: list[dict[str, Any]] = [
    _function("balanceOf", [("account", "address")], [("", "uint256")], mutability="view"),
    _function("transfer", [("to", "address"), ("amount", "uint256")], [("", "bool")]),
    _function(
        "transferFrom",
        [("from", "address"), ("to", "address"), ("amount", "uint256")],
        [("", "bool")],
    ),
    _function("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")]),
    _function(
        "allowance",
        [("owner", "address"), ("spender", "address")],
        [("", "uint256")],
        mutability="view",
    ),
    _function("decimals", [], [("", "uint8")], mutability="view"),
]

PREDICTION_ABI: list[dict[str, Any]] = [
    _function(
        "createMarket",
        [("title", "string"), ("description", "string"), ("deadline", "uint256")],
        [("", "uint256")],
    ),
    _function("resolveMarket", [("marketId", "uint256"), ("outcome", "bool")]),
    _function("cancelMarket", [("marketId", "uint256")]),
    _function("closeMarket", [("marketId", "uint256")]),
    _function(
        "placeBet", [("marketId", "uint256"), ("isYes", "bool"), ("amount", "uint256")]
    ),
    _function("claimWinnings", [("marketId", "uint256")]),
    _function("refund", [("marketId", "uint256")]),
    _function(
        "getUserBets",
        [("marketId", "uint256"), ("user", "address")],
        [("yesBet", "uint256"), ("noBet", "uint256")],
        mutability="view",
    ),
    _function(
        "calculatePayout",
        [("marketId", "uint256"), ("user", "address")],
        [("", "uint256")],
        mutability="view",
    ),
    _function(
        "getOdds",
        [("marketId", "uint256")],
        [("yesPercent", "uint256"), ("noPercent", "uint256")],
        mutability="view",
    ),
    _function("nextMarketId", [], [("", "uint256")], mutability="view"),
    _function("platformFeeBps", [], [("", "uint256")], mutability="view"),
    _event(
        "MarketCreated",
        [("marketId", "uint256", True), ("title", "string", False), ("deadline", "uint256", False)],
    ),
    _event(
        "BetPlaced",
        [
            ("marketId", "uint256", True),
            ("user", "address", True),
            ("isYes", "bool", False),
            ("amount", "uint256", False),
        ],
    ),
    _event("MarketResolved", [("marketId", "uint256", True), ("outcome", "bool", False)]),
    _event(
        "WinningsClaimed",
        [("marketId", "uint256", True), ("user", "address", True), ("payout", "uint256", False)],
    ),
    _event("MarketCancelled", [("marketId", "uint256", True)]),
]


__all__ = ["PREDICTION_ABI", "TOKEN_ABI"]
