"""Minimal ABI fragments for the protocol contracts we read from.

Only the functions and events the indexer touches are declared here; full
contract ABIs are not needed for encoding calls or decoding logs.
"""

from __future__ import annotations

from typing import Any

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"

# TroveManager operation code carried by TroveUpdated during a redemption.
REDEMPTION_OPERATION = 2


def _params(specs: list[tuple[str, str]], *, indexed: tuple[str, ...] | None = None) -> list[dict[str, Any]]:
    params: list[dict[str, Any]] = []
    for name, type_ in specs:
        param: dict[str, Any] = {"name": name, "type": type_}
        if indexed is not None:
            param["indexed"] = name in indexed
        params.append(param)
    return params


def function(
    name: str,
    inputs: list[tuple[str, str]] | None = None,
    outputs: list[tuple[str, str]] | None = None,
    *,
    mutability: str = "view",
) -> dict[str, Any]:
    """Build a function ABI entry."""
    return {
        "type": "function",
        "name": name,
        "inputs": _params(inputs or []),
        "outputs": _params(outputs or []),
        "stateMutability": mutability,
    }


def event(name: str, params: list[tuple[str, str]], *, indexed: tuple[str, ...] = ()) -> dict[str, Any]:
    """Build an event ABI entry."""
    return {
        "type": "event",
        "name": name,
        "inputs": _params(params, indexed=indexed),
        "anonymous": False,
    }


# TroveManager
PRICE_FEED = function("priceFeed", outputs=[("", "address")])
GET_ENTIRE_SYSTEM_COLL = function("getEntireSystemColl", outputs=[("", "uint256")])
GET_ENTIRE_SYSTEM_DEBT = function("getEntireSystemDebt", outputs=[("", "uint256")])
GET_TROVE_OWNERS_COUNT = function("getTroveOwnersCount", outputs=[("", "uint256")])
GET_TROVE_FROM_OWNERS_ARRAY = function(
    "getTroveFromTroveOwnersArray", [("_index", "uint256")], [("", "address")]
)
GET_ENTIRE_DEBT_AND_COLL = function(
    "getEntireDebtAndColl",
    [("_borrower", "address")],
    [
        ("coll", "uint256"),
        ("principal", "uint256"),
        ("interest", "uint256"),
        ("pendingCollateral", "uint256"),
        ("pendingPrincipal", "uint256"),
        ("pendingInterest", "uint256"),
    ],
)
GET_TROVE_STATUS = function("getTroveStatus", [("_borrower", "address")], [("", "uint8")])
GET_TROVE_STAKE = function("getTroveStake", [("_borrower", "address")], [("", "uint256")])
GET_TROVE_INTEREST_RATE = function("getTroveInterestRate", [("_borrower", "address")], [("", "uint16")])
GET_TCR = function("getTCR", [("_price", "uint256")], [("", "uint256")])
CHECK_RECOVERY_MODE = function("checkRecoveryMode", [("_price", "uint256")], [("", "bool")])
REDEEM_COLLATERAL = function(
    "redeemCollateral",
    [
        ("_amount", "uint256"),
        ("_firstRedemptionHint", "address"),
        ("_upperPartialRedemptionHint", "address"),
        ("_lowerPartialRedemptionHint", "address"),
        ("_partialRedemptionHintNICR", "uint256"),
        ("_maxIterations", "uint256"),
    ],
    mutability="nonpayable",
)

TROVE_LIQUIDATED = event(
    "TroveLiquidated",
    [("_borrower", "address"), ("_debt", "uint256"), ("_coll", "uint256"), ("operation", "uint8")],
    indexed=("_borrower",),
)
REDEMPTION = event(
    "Redemption",
    [
        ("_attemptedAmount", "uint256"),
        ("_actualAmount", "uint256"),
        ("_collateralSent", "uint256"),
        ("_collateralFee", "uint256"),
    ],
)
TROVE_UPDATED = event(
    "TroveUpdated",
    [
        ("_borrower", "address"),
        ("_principal", "uint256"),
        ("_interest", "uint256"),
        ("_coll", "uint256"),
        ("_stake", "uint256"),
        ("operation", "uint8"),
    ],
    indexed=("_borrower",),
)

# PriceFeed
FETCH_PRICE = function("fetchPrice", outputs=[("", "uint256")])

# HintHelpers / SortedTroves
GET_REDEMPTION_HINTS = function(
    "getRedemptionHints",
    [("_amount", "uint256"), ("_price", "uint256"), ("_maxIterations", "uint256")],
    [
        ("firstRedemptionHint", "address"),
        ("partialRedemptionHintNICR", "uint256"),
        ("truncatedAmount", "uint256"),
    ],
)
GET_APPROX_HINT = function(
    "getApproxHint",
    [("_CR", "uint256"), ("_numTrials", "uint256"), ("_inputRandomSeed", "uint256")],
    [("hintAddress", "address"), ("diff", "uint256"), ("latestRandomSeed", "uint256")],
)
FIND_INSERT_POSITION = function(
    "findInsertPosition",
    [("_NICR", "uint256"), ("_prevId", "address"), ("_nextId", "address")],
    [("", "address"), ("", "address")],
)

# ERC20
BALANCE_OF = function("balanceOf", [("account", "address")], [("", "uint256")])
DECIMALS = function("decimals", outputs=[("", "uint8")])
ALLOWANCE = function("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")])
APPROVE = function(
    "approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")], mutability="nonpayable"
)

# Pools and voting
ALL_POOLS_LENGTH = function("allPoolsLength", outputs=[("", "uint256")])
ALL_POOLS = function("allPools", [("", "uint256")], [("", "address")])
POOL_NAME = function("name", outputs=[("", "string")])
VOTER_GAUGES = function("gauges", [("pool", "address")], [("", "address")])
VOTER_WEIGHTS = function("weights", [("pool", "address")], [("", "uint256")])
VOTER_GAUGE_TO_BRIBE = function("gaugeToBribe", [("gauge", "address")], [("", "address")])
VOTER_TOTAL_WEIGHT = function("totalWeight", outputs=[("", "uint256")])
VOTER_EPOCH_START = function("epochStart", [("timestamp", "uint256")], [("", "uint256")])
VOTER_EPOCH_NEXT = function("epochNext", [("timestamp", "uint256")], [("", "uint256")])
VOTER_EPOCH_VOTE_END = function("epochVoteEnd", [("timestamp", "uint256")], [("", "uint256")])
BRIBE_REWARDS_LIST_LENGTH = function("rewardsListLength", outputs=[("", "uint256")])
BRIBE_DURATION = function("duration", outputs=[("", "uint256")])
BRIBE_REWARDS = function("rewards", [("", "uint256")], [("", "address")])
BRIBE_TOKEN_REWARDS_PER_EPOCH = function(
    "tokenRewardsPerEpoch", [("token", "address"), ("epochStart", "uint256")], [("", "uint256")]
)
VE_TOTAL_VOTING_POWER = function("totalVotingPower", outputs=[("", "uint256")])
VE_TOTAL_VOTING_POWER_AT = function("totalVotingPowerAt", [("timestamp", "uint256")], [("", "uint256")])

# Multicall3
AGGREGATE3 = {
    "type": "function",
    "name": "aggregate3",
    "stateMutability": "payable",
    "inputs": [
        {
            "name": "calls",
            "type": "tuple[]",
            "components": [
                {"name": "target", "type": "address"},
                {"name": "allowFailure", "type": "bool"},
                {"name": "callData", "type": "bytes"},
            ],
        }
    ],
    "outputs": [
        {
            "name": "returnData",
            "type": "tuple[]",
            "components": [
                {"name": "success", "type": "bool"},
                {"name": "returnData", "type": "bytes"},
            ],
        }
    ],
}
