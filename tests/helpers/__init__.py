"""Test helpers for liquidation-sentinel test suite"""

from tests.helpers.liquidation_stubs import (
    BORROWER,
    GMX_MARKET,
    ROUTER,
    TEST_ADDRESS,
    TEST_PRIVATE_KEY,
    WETH,
    USDC,
    USDT,
    WBTC,
    FakeAdapter,
    FakeHttpResponse,
    ReadStub,
    make_candidate,
    make_chain,
    make_execution_policy,
    make_fake_chain,
    make_http_session,
    make_risk_policy,
    make_snapshot,
    usd_price_per_unit,
)

__all__ = [
    "BORROWER",
    "GMX_MARKET",
    "ROUTER",
    "TEST_ADDRESS",
    "TEST_PRIVATE_KEY",
    "WETH",
    "USDC",
    "USDT",
    "WBTC",
    "FakeAdapter",
    "FakeHttpResponse",
    "ReadStub",
    "make_candidate",
    "make_chain",
    "make_execution_policy",
    "make_fake_chain",
    "make_http_session",
    "make_risk_policy",
    "make_snapshot",
    "usd_price_per_unit",
]
