"""Minimal JSON ABIs for the contracts read by the Chain Reader"""


def _fn(name, inputs, outputs):
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
    }


def _out(*types):
    return [{"name": "", "type": t} for t in types]


def _tuple(*fields):
    return [{
        "name": "",
        "type": "tuple",
        "components": [{"name": n, "type": t} for n, t in fields],
    }]


WEDGED_POOL_ABI = [
    _fn("getPoolInfo", [("poolId", "uint256")], _tuple(
        ("id", "uint256"),
        ("token0", "address"),
        ("token1", "address"),
        ("totalDeposits", "uint256"),
        ("availableLiquidity", "uint256"),
        ("hedgedAmount", "uint256"),
        ("riskScore", "uint256"),
        ("active", "bool"),
    )),
    _fn("totalPools", [], _out("uint256")),
    _fn("getUserPools", [("user", "address")], _out("uint256[]")),
    _fn("getUserDeposit", [("poolId", "uint256"), ("user", "address")], _out("uint256")),
]

# The calculator's volatility and pool-risk entry points are declared as
# state-changing on-chain; they are only ever evaluated through eth_call here.
RISK_CALCULATOR_ABI = [
    _fn("getPoolRiskMetrics", [("poolId", "uint256")], _tuple(
        ("volatility", "uint256"),
        ("impermanentLoss", "uint256"),
        ("correlationRisk", "uint256"),
        ("liquidityRisk", "uint256"),
        ("compositeRisk", "uint256"),
    )),
    _fn("calculateVolatility", [("token", "address")], _out("uint256")),
    _fn("calculateCorrelation", [("token0", "address"), ("token1", "address")], _out("uint256")),
    _fn("calculateImpermanentLoss", [("token0", "address"), ("token1", "address"), ("amount", "uint256")], _out("uint256")),
]

HEDGING_MANAGER_ABI = [
    _fn("calculateHedgingCost", [("poolId", "uint256"), ("amount", "uint256")], _out("uint256")),
    _fn("getStrategy", [("strategyId", "uint256")], _tuple(
        ("id", "uint256"),
        ("name", "string"),
        ("riskThreshold", "uint256"),
        ("hedgeRatio", "uint256"),
        ("active", "bool"),
    )),
]

EULER_SWAP_INTEGRATION_ABI = [
    _fn("getPrice", [("token0", "address"), ("token1", "address")], _out("uint256")),
    _fn("getPoolInfo", [("token0", "address"), ("token1", "address")], _tuple(
        ("pool", "address"),
        ("token0", "address"),
        ("token1", "address"),
        ("fee", "uint24"),
        ("reserve0", "uint256"),
        ("reserve1", "uint256"),
        ("totalSupply", "uint256"),
    )),
]
