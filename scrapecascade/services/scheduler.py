"""Sequential provider cascade.

Walks an OrderPlan in order and stops at the first success. Every attempt,
whatever its outcome, becomes an AttemptRecord. Paid attempts reserve their
estimated cost before the call; the reservation is booked on success and
released on failure, so a failed attempt never adds to spend.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from scrapecascade.config import PerformanceConfig
from scrapecascade.core import events
from scrapecascade.core.events import EventBus
from scrapecascade.core.exceptions import BudgetExceededError, ProviderAttemptFailed
from scrapecascade.schemas.request import FetchOptions, RequestDescriptor
from scrapecascade.schemas.result import AttemptRecord, ProviderResponse
from scrapecascade.services.budget import BudgetGovernor, Reservation
from scrapecascade.services.providers.base import Provider
from scrapecascade.services.registry import OrderPlan, ProviderProfile, ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass
class CascadeOutcome:
    response: ProviderResponse | None = None
    provider: str | None = None
    cost: float = 0.0
    attempts: list[AttemptRecord] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    budget_blocked: dict[str, str] = field(default_factory=dict)  # name -> window label

    @property
    def success(self) -> bool:
        return self.response is not None and self.response.success


class CascadeScheduler:
    def __init__(
        self,
        registry: ProviderRegistry,
        budget: BudgetGovernor,
        providers: dict[str, Provider],
        performance: PerformanceConfig | None = None,
        bus: EventBus | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        perf = performance or PerformanceConfig()
        self._registry = registry
        self._budget = budget
        self._providers = providers
        self._delay = perf.retry_delay_ms / 1000
        self._bus = bus
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        descriptor: RequestDescriptor,
        plan: OrderPlan,
        options: FetchOptions | None = None,
    ) -> CascadeOutcome:
        options = options or FetchOptions()
        outcome = CascadeOutcome()
        delay = 0.0 if options.priority_hint == "high" else self._delay
        attempted = False

        for profile in plan.providers:
            provider = self._providers.get(profile.name)
            if provider is None:
                logger.warning(f"No client registered for provider {profile.name}, skipping")
                outcome.skipped[profile.name] = "no client"
                continue

            # max_retries only covers transport failures; a non-success
            # answer moves straight on to the next provider
            for attempt_no in range(1, profile.max_retries + 2):
                if attempted and delay > 0:
                    await self._sleep(delay)

                try:
                    reservation = self._reserve(profile)
                except BudgetExceededError as e:
                    outcome.skipped[profile.name] = f"{e.window} budget"
                    outcome.budget_blocked[profile.name] = e.window
                    break

                attempted = True
                record, response, transport_error = await self._attempt(
                    provider, profile, descriptor, reservation, attempt_no
                )
                outcome.attempts.append(record)

                if record.success:
                    outcome.response = response
                    outcome.provider = profile.name
                    outcome.cost = record.cost
                    return outcome
                if not transport_error:
                    break
                if attempt_no <= profile.max_retries:
                    logger.info(
                        f"Retrying {profile.name} after transport error "
                        f"({attempt_no}/{profile.max_retries}): {record.error}"
                    )

        return outcome

    def _reserve(self, profile: ProviderProfile) -> Reservation | None:
        amount = profile.estimated_cost
        if amount <= 0:
            return None
        return self._budget.check_and_reserve(amount)

    async def _attempt(
        self,
        provider: Provider,
        profile: ProviderProfile,
        descriptor: RequestDescriptor,
        reservation: Reservation | None,
        attempt_no: int,
    ) -> tuple[AttemptRecord, ProviderResponse | None, bool]:
        timeout = profile.timeout_ms / 1000
        self._emit(
            events.PROVIDER_ATTEMPT,
            provider=profile.name,
            url=descriptor.url,
            attempt=attempt_no,
        )

        response: ProviderResponse | None = None
        error: str | None = None
        status_code = 0
        transport_error = False
        start = self._clock()
        try:
            response = await asyncio.wait_for(provider.fetch(descriptor, timeout), timeout)
        except asyncio.TimeoutError:
            error = f"Timeout after {profile.timeout_ms}ms"
            transport_error = True
        except ProviderAttemptFailed as e:
            error = str(e)
            status_code = e.status_code
        except asyncio.CancelledError:
            if reservation is not None:
                self._budget.release(reservation)
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            transport_error = True
        duration_ms = (self._clock() - start) * 1000

        if response is not None:
            status_code = response.status_code
            if not response.success:
                error = response.error or f"Non-success status {response.status_code}"

        success = response is not None and response.success
        cost = 0.0
        if success:
            cost = response.cost if response.cost is not None else profile.cost_per_request
            if reservation is not None or cost > 0:
                self._budget.record_actual_cost(cost, reservation)
        elif reservation is not None:
            self._budget.release(reservation)

        self._registry.record_outcome(profile.name, success, duration_ms)

        record = AttemptRecord(
            provider=profile.name,
            success=success,
            status_code=status_code,
            cost=cost,
            duration_ms=round(duration_ms, 2),
            error=None if success else error,
        )
        if success:
            logger.info(
                f"Provider {profile.name} succeeded for {descriptor.url} "
                f"({duration_ms:.0f}ms, ${cost:.4f})"
            )
            self._emit(
                events.PROVIDER_SUCCESS,
                provider=profile.name,
                url=descriptor.url,
                status_code=status_code,
                cost=cost,
                duration_ms=record.duration_ms,
            )
        else:
            logger.warning(f"Provider {profile.name} failed for {descriptor.url}: {error}")
            self._emit(
                events.PROVIDER_FAILURE,
                provider=profile.name,
                url=descriptor.url,
                status_code=status_code,
                error=error,
                duration_ms=record.duration_ms,
            )
        return record, response, transport_error

    def _emit(self, name: str, **payload) -> None:
        if self._bus is not None:
            self._bus.emit(name, **payload)
