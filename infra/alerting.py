"""
Webhook alerts for operator-relevant engine events.

Raised by:
- RiskManager: emergency stop latched (daily loss ceiling)
- ExecutionService: liquidation confirmed / liquidation failed on-chain
- LiquidationBot: startup

notify() is synchronous so risk and execution code can call it inline. When an
event loop is running the webhook POST is scheduled as a background task
(await close() to flush); otherwise it is delivered before returning.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set

import aiohttp

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @classmethod
    def parse(cls, value: Optional[str]) -> "AlertSeverity":
        try:
            return cls[(value or "warning").strip().upper()]
        except KeyError:
            logger.warning(f"Unknown alert severity {value!r}; using WARNING")
            return cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout_seconds: float = 5.0
    dedupe_seconds: float = 60.0
    source: str = "liquidation-sentinel"


class AlertService:
    """Severity filter + dedupe window in front of a JSON webhook."""

    def __init__(self, config: AlertConfig, session: Optional[aiohttp.ClientSession] = None,
                 clock=time.monotonic) -> None:
        self._config = config
        self._session = session
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._last_sent: Dict[str, float] = {}
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, enabled: bool, raw_config: Optional[Dict[str, Any]],
                    env: Optional[Dict[str, str]] = None) -> "AlertService":
        raw_config = raw_config or {}
        env = os.environ if env is None else env
        webhook_url = raw_config.get("webhook_url") or env.get(
            raw_config.get("webhook_env") or "ALERT_WEBHOOK_URL", ""
        ).strip()
        return cls(AlertConfig(
            enabled=enabled,
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.parse(raw_config.get("min_severity")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout_seconds=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        ))

    @classmethod
    def disabled(cls) -> "AlertService":
        return cls(AlertConfig(enabled=False, webhook_url=None))

    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _is_duplicate(self, severity: AlertSeverity, title: str, message: str) -> bool:
        key = hashlib.sha256(f"{severity.name}|{title}|{message}".encode("utf-8")).hexdigest()
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self._config.dedupe_seconds:
            logger.debug(f"Suppressed repeat alert '{title}'")
            return True
        self._last_sent[key] = now
        return False

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Queue (or deliver) an alert.

        Returns:
            False when filtered (disabled, below min severity, duplicate) or
            when a synchronous delivery failed; True otherwise
        """
        if not self._enabled or severity.value < self._config.min_severity.value:
            return False
        if self._is_duplicate(severity, title, message):
            return False

        payload = self.build_payload(self._config.source, severity, title, message, context)
        if self._config.dry_run:
            logger.info(f"[ALERT:{severity.name}] {payload['text']}")
            return True

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self._post(payload, title))
        task = loop.create_task(self._post(payload, title))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _post(self, payload: Dict[str, Any], title: str) -> bool:
        timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
        try:
            if self._session is not None:
                return await self._deliver(self._session, payload, title, timeout)
            async with aiohttp.ClientSession() as session:
                return await self._deliver(session, payload, title, timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to deliver alert '{title}': {e}")
            return False

    async def _deliver(self, session: aiohttp.ClientSession, payload: Dict[str, Any], title: str,
                       timeout: aiohttp.ClientTimeout) -> bool:
        async with session.post(self._config.webhook_url, json=payload, timeout=timeout) as response:
            if response.status >= 400:
                logger.error(f"Alert webhook returned HTTP {response.status} for '{title}'")
                return False
        return True

    async def close(self) -> None:
        """Wait for queued deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def build_payload(
        source: str,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Slack/Discord-compatible body: a one-line ``text`` plus the raw fields."""
        text = f"[{severity.name}] {source}: {title}"
        if message:
            text += f" | {message}"
        if context:
            text += f" | {json.dumps(context, sort_keys=True, default=str)}"
        return {
            "text": text,
            "severity": severity.name.lower(),
            "title": title,
            "message": message,
            "context": json.loads(json.dumps(context or {}, default=str)),
        }


__all__ = ["AlertService", "AlertSeverity", "AlertConfig"]
