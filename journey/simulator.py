"""
Delivery Journey Simulator

Walks a purchased product through five fixed delivery steps. Without
contracts it only reports progress (dashboard mode). With contracts it starts
on-chain tracking and writes one Tracking checkpoint per step, then runs an
optional completion hook (the server transfers the token through the registry).

Every run takes an explicit cancellation token (an ``asyncio.Event``) that is
checked before each step, and ends with a JourneyOutcome instead of dying
quietly on the first failed checkpoint.
"""

import asyncio
import inspect
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# (step, location); the last location is the customer's delivery location
JOURNEY_STEPS = [
    ("Manufactured", "Manufacturing Facility"),
    ("Dispatched", "Distribution Center"),
    ("In Transit", "Highway Hub"),
    ("Out for Delivery", "Local Delivery Center"),
    ("Delivered", None),
]
STEP_PROGRESS = (20, 40, 60, 80, 100)

INITIAL_STEP = "Purchase Confirmed"
INITIAL_LOCATION = "Processing"
INITIAL_PROGRESS = 10


class JourneyError(ValueError):
    """Journey cannot be started."""


class JourneyStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class JourneyStep:
    step: str
    location: str
    progress: int


@dataclass
class JourneyUpdate:
    token_id: int
    index: int
    step: str
    location: str
    progress: int
    tx_hash: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class JourneyOutcome:
    token_id: int
    status: JourneyStatus
    updates: List[JourneyUpdate] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def last_update(self) -> Optional[JourneyUpdate]:
        return self.updates[-1] if self.updates else None


def build_journey(delivery_location: str) -> List[JourneyStep]:
    """
    The five journey steps ending at ``delivery_location``.

    Raises:
        JourneyError: If the delivery location is blank
    """
    delivery_location = (delivery_location or "").strip()
    if not delivery_location:
        raise JourneyError("Delivery location is required")
    return [
        JourneyStep(step, location or delivery_location, progress)
        for (step, location), progress in zip(JOURNEY_STEPS, STEP_PROGRESS)
    ]


def default_interval(on_chain: bool) -> float:
    if on_chain:
        return float(os.getenv("JOURNEY_INTERVAL_SECONDS", "10"))
    return float(os.getenv("MOCK_JOURNEY_INTERVAL_SECONDS", "3"))


async def _invoke(callback: Optional[Callable], *args) -> Any:
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class JourneySimulator:
    """Runs one journey per call to ``run``"""

    def __init__(
        self,
        contracts=None,
        interval_seconds: Optional[float] = None,
        on_update: Optional[Callable[[JourneyUpdate], Any]] = None,
        on_complete: Optional[Callable[[int], Any]] = None
    ):
        """
        Args:
            contracts: SupplyChainContracts, or None for a progress-only run
            interval_seconds: Delay before each step
            on_update: Called with each JourneyUpdate (sync or async)
            on_complete: Called with the token id after the last step; a
                blocking callable runs in a worker thread
        """
        self.contracts = contracts
        self.interval_seconds = (
            default_interval(contracts is not None) if interval_seconds is None else interval_seconds
        )
        self.on_update = on_update
        self.on_complete = on_complete

    async def _wait(self, cancel: asyncio.Event) -> bool:
        """Sleep one interval; True if cancelled meanwhile."""
        if cancel.is_set():
            return True
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self.interval_seconds)
            return True
        except asyncio.TimeoutError:
            return cancel.is_set()

    async def run(
        self,
        token_id: int,
        delivery_location: str,
        customer: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None
    ) -> JourneyOutcome:
        """
        Simulate the journey of ``token_id`` to ``delivery_location``.

        Raises:
            JourneyError: If the delivery location is blank (nothing is started)

        Returns:
            JourneyOutcome; a failed contract call ends the run with
            status FAILED and the error text
        """
        steps = build_journey(delivery_location)
        cancel = cancel or asyncio.Event()
        outcome = JourneyOutcome(token_id=token_id, status=JourneyStatus.RUNNING)

        if self.contracts is not None and customer:
            try:
                await asyncio.to_thread(self.contracts.start_tracking, token_id, customer)
            except Exception as e:
                logger.error(f"Journey {token_id}: startTracking failed: {e}", exc_info=True)
                outcome.status, outcome.error = JourneyStatus.FAILED, str(e)
                return outcome

        logger.info(f"Journey {token_id} started to {steps[-1].location} ({self.interval_seconds}s per step)")

        for index, step in enumerate(steps):
            if await self._wait(cancel):
                logger.info(f"Journey {token_id} cancelled before '{step.step}'")
                outcome.status = JourneyStatus.CANCELLED
                return outcome

            tx_hash = None
            if self.contracts is not None:
                try:
                    result = await asyncio.to_thread(
                        self.contracts.add_checkpoint, token_id, step.step, step.location
                    )
                    tx_hash = result.tx_hash
                except Exception as e:
                    logger.error(f"Journey {token_id}: checkpoint '{step.step}' failed: {e}", exc_info=True)
                    outcome.status, outcome.error = JourneyStatus.FAILED, str(e)
                    return outcome

            update = JourneyUpdate(
                token_id=token_id,
                index=index,
                step=step.step,
                location=step.location,
                progress=step.progress,
                tx_hash=tx_hash
            )
            outcome.updates.append(update)
            logger.info(f"Journey {token_id}: {step.step} @ {step.location} ({step.progress}%)")
            await _invoke(self.on_update, update)

        if self.on_complete is not None:
            try:
                if inspect.iscoroutinefunction(self.on_complete):
                    await self.on_complete(token_id)
                else:
                    await asyncio.to_thread(self.on_complete, token_id)
            except Exception as e:
                logger.error(f"Journey {token_id}: completion hook failed: {e}", exc_info=True)
                outcome.status, outcome.error = JourneyStatus.FAILED, str(e)
                return outcome

        outcome.status = JourneyStatus.COMPLETED
        logger.info(f"Journey {token_id} completed")
        return outcome


@dataclass
class _RunningJourney:
    token_id: int
    delivery_location: str
    cancel: asyncio.Event
    loop: asyncio.AbstractEventLoop
    future: Any = None
    status: JourneyStatus = JourneyStatus.RUNNING
    updates: List[JourneyUpdate] = field(default_factory=list)
    error: Optional[str] = None


class JourneyRegistry:
    """
    Running journeys keyed by token id, at most one per token.
    Finished journeys stay queryable until more than ``history_limit`` of
    them accumulate; the oldest are then evicted.

    ``bind`` attaches the registry to the application's event loop so that
    journeys can be started from worker threads; ``cancel_all`` is awaited
    when that application shuts down.
    """

    def __init__(
        self,
        contracts=None,
        interval_seconds: Optional[float] = None,
        on_update: Optional[Callable[[JourneyUpdate], Any]] = None,
        history_limit: Optional[int] = None
    ):
        self.contracts = contracts
        self.interval_seconds = interval_seconds
        self.on_update = on_update
        if history_limit is None:
            history_limit = int(os.getenv("JOURNEY_HISTORY_LIMIT", "100"))
        self.history_limit = history_limit
        self._journeys: Dict[int, _RunningJourney] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def is_running(self, token_id: int) -> bool:
        journey = self._journeys.get(token_id)
        return journey is not None and journey.status == JourneyStatus.RUNNING

    def start(
        self,
        token_id: int,
        delivery_location: str,
        customer: Optional[str] = None,
        on_complete: Optional[Callable[[int], Any]] = None,
        on_update: Optional[Callable[[JourneyUpdate], Any]] = None
    ) -> List[JourneyStep]:
        """
        Start a journey in the background.

        Returns:
            The steps that will be walked

        Raises:
            JourneyError: Blank location, a journey already running for the
                token, or no event loop to run on
        """
        steps = build_journey(delivery_location)
        try:
            loop = asyncio.get_running_loop()
            in_loop = True
        except RuntimeError:
            loop, in_loop = self._loop, False
        if loop is None:
            raise JourneyError("No event loop available to run the journey")

        journey = _RunningJourney(
            token_id=token_id,
            delivery_location=steps[-1].location,
            cancel=asyncio.Event(),
            loop=loop
        )

        async def record(update: JourneyUpdate):
            journey.updates.append(update)
            await _invoke(self.on_update, update)
            await _invoke(on_update, update)

        simulator = JourneySimulator(
            contracts=self.contracts,
            interval_seconds=self.interval_seconds,
            on_update=record,
            on_complete=on_complete
        )
        with self._lock:
            if self.is_running(token_id):
                raise JourneyError(f"Journey already running for token {token_id}")
            self._journeys.pop(token_id, None)
            self._prune()
            self._journeys[token_id] = journey
        coro = self._run(journey, simulator, customer)

        if in_loop:
            journey.future = loop.create_task(coro)
        else:
            journey.future = asyncio.run_coroutine_threadsafe(coro, loop)
        return steps

    def _prune(self) -> None:
        finished = [t for t, j in self._journeys.items() if j.status != JourneyStatus.RUNNING]
        for token_id in finished[:max(0, len(finished) - self.history_limit)]:
            del self._journeys[token_id]

    async def _run(self, journey: _RunningJourney, simulator: JourneySimulator, customer: Optional[str]):
        outcome = await simulator.run(journey.token_id, journey.delivery_location, customer, journey.cancel)
        journey.status = outcome.status
        journey.error = outcome.error
        return outcome

    def cancel(self, token_id: int) -> bool:
        """Signal a running journey to stop before its next step."""
        journey = self._journeys.get(token_id)
        if journey is None or journey.status != JourneyStatus.RUNNING:
            return False
        try:
            same_loop = asyncio.get_running_loop() is journey.loop
        except RuntimeError:
            same_loop = False
        if same_loop:
            journey.cancel.set()
        else:
            journey.loop.call_soon_threadsafe(journey.cancel.set)
        logger.info(f"Cancellation requested for journey {token_id}")
        return True

    def status(self, token_id: int) -> Optional[Dict[str, Any]]:
        journey = self._journeys.get(token_id)
        if journey is None:
            return None
        last = journey.updates[-1] if journey.updates else None
        return {
            "tokenId": token_id,
            "status": journey.status.value,
            "step": last.step if last else INITIAL_STEP,
            "location": last.location if last else INITIAL_LOCATION,
            "progress": last.progress if last else INITIAL_PROGRESS,
            "deliveryLocation": journey.delivery_location,
            "updates": len(journey.updates),
            "error": journey.error,
        }

    async def wait(self, token_id: int) -> Optional[JourneyOutcome]:
        journey = self._journeys.get(token_id)
        if journey is None or journey.future is None:
            return None
        future = journey.future
        if not isinstance(future, asyncio.Future):
            future = asyncio.wrap_future(future)
        return await future

    async def cancel_all(self) -> None:
        """Cancel every running journey and wait for them to stop."""
        running = [t for t, j in self._journeys.items() if j.status == JourneyStatus.RUNNING]
        for token_id in running:
            self.cancel(token_id)
        if running:
            await asyncio.gather(*(self.wait(t) for t in running), return_exceptions=True)
            logger.info(f"Stopped {len(running)} running journey(s)")
