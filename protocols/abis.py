"""Minimal ABI fragments for the contracts the adapters touch."""


def _fn(name, inputs, outputs=(), mutability="view"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": list(inputs),
        "outputs": list(outputs),
    }


def _p(name, type_, components=None):
    param = {"name": name, "type": type_}
    if components is not None:
        param["components"] = list(components)
    return param


# ----- generic -----

ERC20_ABI = [
    _fn("balanceOf", [_p("account", "address")], [_p("", "uint256")]),
    _fn("decimals", [], [_p("", "uint8")]),
]

MULTICALL3_ABI = [
    _fn(
        "aggregate3",
        [_p("calls", "tuple[]", [
            _p("target", "address"),
            _p("allowFailure", "bool"),
            _p("callData", "bytes"),
        ])],
        [_p("returnData", "tuple[]", [
            _p("success", "bool"),
            _p("returnData", "bytes"),
        ])],
        mutability="payable",
    ),
]

# ----- GMX v2 (synthetics) -----

_GMX_MARKET_PROPS = [
    _p("marketToken", "address"),
    _p("indexToken", "address"),
    _p("longToken", "address"),
    _p("shortToken", "address"),
]

_GMX_PRICE_PROPS = [_p("min", "uint256"), _p("max", "uint256")]

_GMX_MARKET_PRICES = [
    _p("indexTokenPrice", "tuple", _GMX_PRICE_PROPS),
    _p("longTokenPrice", "tuple", _GMX_PRICE_PROPS),
    _p("shortTokenPrice", "tuple", _GMX_PRICE_PROPS),
]

_GMX_POSITION_PROPS = [
    _p("addresses", "tuple", [
        _p("account", "address"),
        _p("market", "address"),
        _p("collateralToken", "address"),
    ]),
    _p("numbers", "tuple", [
        _p("sizeInUsd", "uint256"),
        _p("sizeInTokens", "uint256"),
        _p("collateralAmount", "uint256"),
        _p("borrowingFactor", "uint256"),
        _p("fundingFeeAmountPerSize", "uint256"),
        _p("longTokenClaimableFundingAmountPerSize", "uint256"),
        _p("shortTokenClaimableFundingAmountPerSize", "uint256"),
        _p("increasedAtBlock", "uint256"),
        _p("decreasedAtBlock", "uint256"),
    ]),
    _p("flags", "tuple", [_p("isLong", "bool")]),
]

# eth_abi type string for one Position.Props (used to decode multicall results)
GMX_POSITION_PROPS_TYPE = (
    "((address,address,address),"
    "(uint256,uint256,uint256,uint256,uint256,uint256,uint256,uint256,uint256),"
    "(bool))"
)

GMX_READER_ABI = [
    _fn("getMarket", [_p("dataStore", "address"), _p("key", "address")],
        [_p("", "tuple", _GMX_MARKET_PROPS)]),
    _fn("getPosition", [_p("dataStore", "address"), _p("key", "bytes32")],
        [_p("", "tuple", _GMX_POSITION_PROPS)]),
    _fn("getAccountPositions",
        [_p("dataStore", "address"), _p("account", "address"), _p("start", "uint256"), _p("end", "uint256")],
        [_p("", "tuple[]", _GMX_POSITION_PROPS)]),
    _fn(
        "isPositionLiquidatable",
        [
            _p("dataStore", "address"),
            _p("referralStorage", "address"),
            _p("positionKey", "bytes32"),
            _p("market", "tuple", _GMX_MARKET_PROPS),
            _p("prices", "tuple", _GMX_MARKET_PRICES),
            _p("shouldValidateMinCollateralUsd", "bool"),
        ],
        [
            _p("isLiquidatable", "bool"),
            _p("reason", "string"),
            _p("info", "tuple", [
                _p("minCollateralUsd", "int256"),
                _p("collateralUsd", "int256"),
                _p("minCollateralFactor", "uint256"),
                _p("minCollateralFactorForOpenInterest", "uint256"),
            ]),
        ],
    ),
]

GMX_DATASTORE_ABI = [
    _fn("getUint", [_p("key", "bytes32")], [_p("", "uint256")]),
]

GMX_EXCHANGE_ROUTER_ABI = [
    _fn("multicall", [_p("data", "bytes[]")], [_p("results", "bytes[]")], mutability="payable"),
    _fn("sendWnt", [_p("receiver", "address"), _p("amount", "uint256")], mutability="payable"),
    _fn(
        "createOrder",
        [_p("params", "tuple", [
            _p("addresses", "tuple", [
                _p("receiver", "address"),
                _p("callbackContract", "address"),
                _p("uiFeeReceiver", "address"),
                _p("market", "address"),
                _p("initialCollateralToken", "address"),
                _p("swapPath", "address[]"),
            ]),
            _p("numbers", "tuple", [
                _p("sizeDeltaUsd", "uint256"),
                _p("initialCollateralDeltaAmount", "uint256"),
                _p("triggerPrice", "uint256"),
                _p("acceptablePrice", "uint256"),
                _p("executionFee", "uint256"),
                _p("callbackGasLimit", "uint256"),
                _p("minOutputAmount", "uint256"),
            ]),
            _p("orderType", "uint8"),
            _p("decreasePositionSwapType", "uint8"),
            _p("isLong", "bool"),
            _p("shouldUnwrapNativeToken", "bool"),
            _p("referralCode", "bytes32"),
        ])],
        [_p("", "bytes32")],
        mutability="payable",
    ),
]

# ----- Aave v3 -----

AAVE_POOL_ABI = [
    _fn(
        "getUserAccountData",
        [_p("user", "address")],
        [
            _p("totalCollateralBase", "uint256"),
            _p("totalDebtBase", "uint256"),
            _p("availableBorrowsBase", "uint256"),
            _p("currentLiquidationThreshold", "uint256"),
            _p("ltv", "uint256"),
            _p("healthFactor", "uint256"),
        ],
    ),
    _fn(
        "liquidationCall",
        [
            _p("collateralAsset", "address"),
            _p("debtAsset", "address"),
            _p("user", "address"),
            _p("debtToCover", "uint256"),
            _p("receiveAToken", "bool"),
        ],
        mutability="nonpayable",
    ),
]

# getUserAccountData return tuple, for multicall decoding
AAVE_ACCOUNT_DATA_TYPES = ["uint256"] * 6

AAVE_ORACLE_ABI = [
    _fn("getAssetsPrices", [_p("assets", "address[]")], [_p("", "uint256[]")]),
    _fn("getAssetPrice", [_p("asset", "address")], [_p("", "uint256")]),
]

FLASH_LIQUIDATOR_ABI = [
    _fn(
        "executeLiquidation",
        [
            _p("user", "address"),
            _p("debtAsset", "address"),
            _p("collateralAsset", "address"),
            _p("debtToCover", "uint256"),
            _p("poolFee", "uint24"),
        ],
        mutability="nonpayable",
    ),
]

AAVE_DATA_PROVIDER_ABI = [
    _fn(
        "getUserReserveData",
        [_p("asset", "address"), _p("user", "address")],
        [
            _p("currentATokenBalance", "uint256"),
            _p("currentStableDebt", "uint256"),
            _p("currentVariableDebt", "uint256"),
            _p("principalStableDebt", "uint256"),
            _p("scaledVariableDebt", "uint256"),
            _p("stableBorrowRate", "uint256"),
            _p("liquidityRate", "uint256"),
            _p("stableRateLastUpdated", "uint40"),
            _p("usageAsCollateralEnabled", "bool"),
        ],
    ),
    _fn(
        "getReserveConfigurationData",
        [_p("asset", "address")],
        [
            _p("decimals", "uint256"),
            _p("ltv", "uint256"),
            _p("liquidationThreshold", "uint256"),
            _p("liquidationBonus", "uint256"),
            _p("reserveFactor", "uint256"),
            _p("usageAsCollateralEnabled", "bool"),
            _p("borrowingEnabled", "bool"),
            _p("stableBorrowRateEnabled", "bool"),
            _p("isActive", "bool"),
            _p("isFrozen", "bool"),
        ],
    ),
]

# ----- Venus (Compound-style comptroller) -----

VENUS_COMPTROLLER_ABI = [
    _fn("getAllMarkets", [], [_p("", "address[]")]),
    _fn("getAssetsIn", [_p("account", "address")], [_p("", "address[]")]),
    _fn(
        "markets",
        [_p("vToken", "address")],
        [_p("isListed", "bool"), _p("collateralFactorMantissa", "uint256"), _p("isVenus", "bool")],
    ),
    _fn("closeFactorMantissa", [], [_p("", "uint256")]),
    _fn("liquidationIncentiveMantissa", [], [_p("", "uint256")]),
    _fn("oracle", [], [_p("", "address")]),
    _fn(
        "getAccountLiquidity",
        [_p("account", "address")],
        [_p("error", "uint256"), _p("liquidity", "uint256"), _p("shortfall", "uint256")],
    ),
]

# getAccountLiquidity return tuple, for multicall decoding
VENUS_ACCOUNT_LIQUIDITY_TYPES = ["uint256"] * 3

VTOKEN_ABI = [
    _fn("underlying", [], [_p("", "address")]),
    _fn(
        "getAccountSnapshot",
        [_p("account", "address")],
        [
            _p("error", "uint256"),
            _p("vTokenBalance", "uint256"),
            _p("borrowBalance", "uint256"),
            _p("exchangeRateMantissa", "uint256"),
        ],
    ),
    _fn(
        "liquidateBorrow",
        [_p("borrower", "address"), _p("repayAmount", "uint256"), _p("vTokenCollateral", "address")],
        [_p("", "uint256")],
        mutability="nonpayable",
    ),
]

# vBNB takes the repayment as msg.value
VNATIVE_ABI = [
    _fn(
        "liquidateBorrow",
        [_p("borrower", "address"), _p("vTokenCollateral", "address")],
        mutability="payable",
    ),
]

VENUS_ORACLE_ABI = [
    _fn("getUnderlyingPrice", [_p("vToken", "address")], [_p("", "uint256")]),
]

VENUS_LIQUIDATOR_ABI = [
    _fn(
        "liquidateBorrow",
        [
            _p("vToken", "address"),
            _p("borrower", "address"),
            _p("repayAmount", "uint256"),
            _p("vTokenCollateral", "address"),
        ],
        mutability="payable",
    ),
]

# ----- Uniswap V3 / PancakeSwap V3 QuoterV2 -----

QUOTER_V2_ABI = [
    _fn(
        "quoteExactInputSingle",
        [_p("params", "tuple", [
            _p("tokenIn", "address"),
            _p("tokenOut", "address"),
            _p("amountIn", "uint256"),
            _p("fee", "uint24"),
            _p("sqrtPriceLimitX96", "uint160"),
        ])],
        [
            _p("amountOut", "uint256"),
            _p("sqrtPriceX96After", "uint160"),
            _p("initializedTicksCrossed", "uint32"),
            _p("gasEstimate", "uint256"),
        ],
        mutability="nonpayable",
    ),
    _fn(
        "quoteExactInput",
        [_p("path", "bytes"), _p("amountIn", "uint256")],
        [
            _p("amountOut", "uint256"),
            _p("sqrtPriceX96AfterList", "uint160[]"),
            _p("initializedTicksCrossedList", "uint32[]"),
            _p("gasEstimate", "uint256"),
        ],
        mutability="nonpayable",
    ),
]
