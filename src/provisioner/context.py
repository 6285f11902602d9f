"""Explicit run context threaded through every component.

A RunContext replaces ambient script state: it holds the configuration, the
resource identifiers produced so far, the cancellation token, and the
append-only provisioning history.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import Config
from .layout import ResourceLayout
from .models import DeploymentSpec
from .resources import ProvisioningHistory, StagingArtifact


class CancellationToken:
    """Shared cancellation flag plus a monotonic run deadline.

    ``wait`` is the single suspension point used by the retry executor. It
    returns early when the token is cancelled or the deadline passes.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline (None when unbounded)."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self) -> None:
        self._event.set()

    async def wait(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds.

        Returns:
            True if the full delay elapsed, False if cancelled or past deadline.
        """
        if self.cancelled:
            return False

        remaining = self.remaining()
        timeout = delay if remaining is None else min(delay, remaining)
        if timeout <= 0:
            await asyncio.sleep(0)
            return not self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            return False
        except TimeoutError:
            pass
        return not self.cancelled


@dataclass
class RunContext:
    """Everything one provisioning run knows about itself."""

    config: Config
    spec: DeploymentSpec
    token: CancellationToken
    history: ProvisioningHistory = field(default_factory=ProvisioningHistory)
    # Outputs of completed steps (resource ids, principal ids, endpoints)
    outputs: dict[str, Any] = field(default_factory=dict)
    staging: StagingArtifact | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def subscription_id(self) -> str:
        return self.config.subscription_id

    @property
    def resource_group(self) -> str:
        return self.config.effective_resource_group

    @property
    def location(self) -> str:
        return self.config.location

    def output(self, key: str) -> Any:
        """Read an output recorded by an earlier step."""
        return self.outputs.get(key)

    @property
    def layout(self) -> ResourceLayout:
        """Descriptor factory for this run's resources."""
        return ResourceLayout(self.config, self.spec, self.started_at)
