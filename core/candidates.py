"""
Liquidation Sentinel Core: Candidate Sources

Pull-model adapters over the off-chain position index. Whatever they return
is advisory: it only selects which accounts the monitor re-reads on-chain.

- SubgraphCandidateSource: paginated GraphQL over aiohttp
- JsonFileCandidateSource: exported position lists (data/*.json)
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiohttp

from core.exceptions import TransientRpcError
from core.models import USD_SCALE, IndexedPosition

logger = logging.getLogger(__name__)

DEFAULT_QUERIES = {
    "gmx": """
query Positions($limit: Int!, $offset: Int!) {
  positions(limit: $limit, offset: $offset, where: { sizeInUsd_gt: "0" }, orderBy: sizeInUsd_DESC) {
    account
    market
    collateralToken
    isLong
    sizeInUsd
  }
}
""",
    "aave": """
query Borrowers($first: Int!, $skip: Int!) {
  users(first: $first, skip: $skip, where: { borrowedReservesCount_gt: 0 }) {
    id
  }
}
""",
    "venus": """
query Borrowers($first: Int!, $skip: Int!) {
  accounts(first: $first, skip: $skip, where: { hasBorrowed: true }) {
    id
  }
}
""",
}


def _first(row: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in row and row[key] is not None:
            return row[key]
    return default


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "long")
    return bool(value)


def _size_usd(value: Any) -> float:
    """Index sizes come either as 1e30 integer strings or as plain USD numbers."""
    if value is None:
        return 0.0
    text = str(value)
    if text.isdigit() and len(text) > 20:
        return int(text) / USD_SCALE
    try:
        return float(text)
    except ValueError:
        return 0.0


def parse_row(protocol: str, row: Dict[str, Any], default_market: Optional[str] = None) -> Optional[IndexedPosition]:
    """Normalize one index row (camelCase or snake_case keys)."""
    account = _first(row, "account", "id", "user", "address")
    market = _first(row, "market", "marketAddress", "market_address", default=default_market)
    if not account or not market:
        return None

    return IndexedPosition(
        protocol=protocol,
        account=str(account),
        market=str(market),
        collateral_token=_first(row, "collateralToken", "collateral_token"),
        is_long=_as_bool(_first(row, "isLong", "is_long")),
        indexed_size_usd=_size_usd(_first(row, "sizeInUsd", "sizeUsd", "size_usd", "totalDebtUSD")),
        debt_asset=_first(row, "debtAsset", "debt_asset"),
    )


def _dedupe(positions: Iterable[IndexedPosition]) -> List[IndexedPosition]:
    seen = set()
    unique = []
    for position in positions:
        key = (
            position.protocol,
            position.account.lower(),
            position.market.lower(),
            (position.collateral_token or "").lower(),
            position.is_long,
        )
        if key in seen:
            continue
        seen.add(key)
        unique.append(position)
    return unique


class CandidateSource(ABC):
    protocol: str = ""

    def __init__(self, protocol: str, min_size_usd: float = 0.0, default_market: Optional[str] = None):
        self.protocol = protocol
        self.min_size_usd = min_size_usd
        self.default_market = default_market

    @abstractmethod
    async def fetch(self) -> List[IndexedPosition]:
        """Current candidate list."""

    def _filter(self, rows: Iterable[Dict[str, Any]]) -> List[IndexedPosition]:
        positions = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            position = parse_row(self.protocol, row, self.default_market)
            if position is None:
                logger.debug(f"Skipping index row without account/market: {row!r}")
                continue
            # Unknown size (0) is kept; the chain decides.
            if position.indexed_size_usd and position.indexed_size_usd < self.min_size_usd:
                continue
            positions.append(position)
        return _dedupe(positions)

    async def close(self) -> None:
        return None


class SubgraphCandidateSource(CandidateSource):
    def __init__(self, protocol: str, url: str, query: Optional[str] = None, page_size: int = 500,
                 max_pages: int = 20, min_size_usd: float = 0.0, default_market: Optional[str] = None,
                 timeout_seconds: float = 15.0, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(protocol, min_size_usd, default_market)
        self.url = url
        self.query = query or DEFAULT_QUERIES[protocol]
        self.page_size = page_size
        self.max_pages = max_pages
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def _page(self, skip: int) -> List[Dict[str, Any]]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        # Subsquid pages with limit/offset, TheGraph with first/skip; undeclared variables are ignored.
        variables = {"first": self.page_size, "skip": skip, "limit": self.page_size, "offset": skip}
        body = {"query": self.query, "variables": variables}
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with self._session.post(self.url, json=body, timeout=timeout) as response:
                if response.status >= 400:
                    raise TransientRpcError(f"subgraph HTTP {response.status}")
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRpcError("subgraph", e) from e

        if payload.get("errors"):
            raise TransientRpcError(f"subgraph errors: {payload['errors']}")
        data = payload.get("data") or {}
        # Single root field per query (positions / users)
        for value in data.values():
            if isinstance(value, list):
                return value
        return []

    async def fetch(self) -> List[IndexedPosition]:
        rows: List[Dict[str, Any]] = []
        for page in range(self.max_pages):
            batch = await self._page(page * self.page_size)
            rows.extend(batch)
            if len(batch) < self.page_size:
                break
        else:
            logger.warning(f"{self.protocol} subgraph: stopped after {self.max_pages} pages ({len(rows)} rows)")

        positions = self._filter(rows)
        logger.info(f"{self.protocol} subgraph returned {len(rows)} rows -> {len(positions)} candidates")
        return positions

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class JsonFileCandidateSource(CandidateSource):
    """Reads a JSON list (or {"positions": [...]}) exported by an indexer job."""

    def __init__(self, protocol: str, path: Union[str, Path], min_size_usd: float = 0.0,
                 default_market: Optional[str] = None):
        super().__init__(protocol, min_size_usd, default_market)
        self.path = Path(path)

    async def fetch(self) -> List[IndexedPosition]:
        if not self.path.exists():
            logger.warning(f"Candidate file {self.path} not found; no {self.protocol} candidates this cycle")
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Candidate file {self.path} is not valid JSON: {e}")
            return []

        if isinstance(payload, dict):
            payload = payload.get("positions") or payload.get("users") or []
        positions = self._filter(payload)
        logger.info(f"Loaded {len(positions)} {self.protocol} candidates from {self.path}")
        return positions


def build_sources(indexer_config, protocols_config) -> List[CandidateSource]:
    sources: List[CandidateSource] = []
    for source in indexer_config.sources:
        section = getattr(protocols_config, source.protocol, None)
        if section is None or not section.enabled:
            logger.info(f"Ignoring index source for disabled protocol {source.protocol}")
            continue
        default_market = getattr(section, "pool", None) or getattr(section, "comptroller", None)
        if source.kind == "subgraph":
            sources.append(SubgraphCandidateSource(
                source.protocol,
                os.path.expandvars(source.url),
                query=source.query,
                page_size=source.page_size,
                max_pages=source.max_pages,
                min_size_usd=source.min_size_usd,
                default_market=default_market,
                timeout_seconds=source.timeout_seconds,
            ))
        else:
            sources.append(JsonFileCandidateSource(
                source.protocol, source.path, min_size_usd=source.min_size_usd, default_market=default_market,
            ))
    return sources


def load_accounts(path: Union[str, Path]) -> List[str]:
    """Account list for bulk scans: JSON array or one address per line."""
    text = Path(path).read_text(encoding="utf-8").strip()
    if not text:
        return []
    if text.startswith("["):
        raw = [str(item.get("account", "")) if isinstance(item, dict) else str(item) for item in json.loads(text)]
    else:
        raw = [line.split("#", 1)[0] for line in text.splitlines()]

    accounts, seen = [], set()
    for account in raw:
        account = account.strip()
        if not account or account.lower() in seen:
            continue
        seen.add(account.lower())
        accounts.append(account)
    return accounts


__all__ = [
    "CandidateSource",
    "SubgraphCandidateSource",
    "JsonFileCandidateSource",
    "build_sources",
    "load_accounts",
    "parse_row",
]
