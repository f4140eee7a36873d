"""
Token refresh orchestration for one client runtime.

A TokenRefreshCoordinator owns the refresh state of a single subject:

    IDLE --request--> REFRESH_IN_FLIGHT --success--> IDLE
                             |
                             +--failure, retries left--> BACKOFF_WAIT --delay--> REFRESH_IN_FLIGHT
                             |
                             +--failure, retries exhausted--> IDLE (counter reset)

Triggers:
- Periodic timer (base interval +/- jitter) while the client is visible
  and has made a request within the session lifetime
- Visibility return after an absence longer than the short threshold
- Unauthorized (401) responses from protected resources

Only one refresh runs at a time per coordinator; a request made while
a refresh is in flight or waiting to retry returns ALREADY_REFRESHING
and does not call the identity provider.

State is per process. Cross-instance races are tolerated because any
token set written by a successful refresh is valid until its own expiry.
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from docchat.auth.refresh import RefreshResult, TokenRefreshService
from docchat.config.auth import AuthConfig, get_auth_config
from docchat.platform.errors import ServiceUnavailableError
from docchat.platform.oidc_client import OIDCError

logger = logging.getLogger(__name__)

# async (force) -> RefreshResult
RefreshCallable = Callable[[bool], Awaitable[RefreshResult]]
SleepCallable = Callable[[float], Awaitable[None]]


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESH_IN_FLIGHT = "refresh_in_flight"
    BACKOFF_WAIT = "backoff_wait"


class RefreshOutcome(str, Enum):
    """What a single refresh request resulted in."""
    REFRESHED = "refreshed"
    ALREADY_REFRESHING = "already_refreshing"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    STOPPED = "stopped"


class AbsenceLevel(str, Enum):
    NONE = "none"
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class SessionExpiryTracker:
    """
    Counts unauthorized responses to decide when to prompt for sign-in.

    The counter resets when more than window_seconds pass between two
    reports. Reaching prompt_count within the window sets should_prompt.
    """

    def __init__(
        self,
        prompt_count: int = 3,
        window_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.prompt_count = prompt_count
        self.window_seconds = window_seconds
        self._clock = clock
        self.error_count = 0
        self.last_error_time: Optional[float] = None
        self.should_prompt = False

    @classmethod
    def from_config(cls, config: AuthConfig, clock: Callable[[], float] = time.monotonic):
        return cls(
            prompt_count=config.unauthorized_prompt_count,
            window_seconds=config.unauthorized_window_seconds,
            clock=clock,
        )

    def is_active(self) -> bool:
        """True while a prompt is pending or the last 401 is inside the window."""
        if self.should_prompt:
            return True
        return (
            self.last_error_time is not None
            and self._clock() - self.last_error_time <= self.window_seconds
        )

    def report_unauthorized(self) -> bool:
        """Record one 401. Returns True once the prompt threshold is reached."""
        now = self._clock()
        if self.last_error_time is None or now - self.last_error_time > self.window_seconds:
            self.error_count = 0

        self.error_count += 1
        self.last_error_time = now

        if self.error_count >= self.prompt_count:
            if not self.should_prompt:
                logger.info(
                    "Unauthorized threshold reached; re-authentication required",
                    extra={"error_count": self.error_count},
                )
            self.should_prompt = True
        return self.should_prompt

    def reset(self) -> None:
        self.error_count = 0
        self.last_error_time = None
        self.should_prompt = False

    def dismiss_prompt(self) -> None:
        self.should_prompt = False


class TokenRefreshCoordinator:
    """
    Per-subject refresh state machine with a start/stop lifecycle.

    sleep, clock and rand are injectable so timing behaviour can be
    driven deterministically. on_idle is called with the coordinator
    whenever its timer or a retry chain ends, so an owner can drop it.
    """

    def __init__(
        self,
        subject: str,
        refresh_fn: RefreshCallable,
        config: Optional[AuthConfig] = None,
        sleep: SleepCallable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rand: Callable[[], float] = random.random,
        on_idle: Optional[Callable[["TokenRefreshCoordinator"], None]] = None,
    ):
        self.subject = subject
        self.config = config or get_auth_config()
        self._refresh_fn = refresh_fn
        self._sleep = sleep
        self._clock = clock
        self._rand = rand
        self._on_idle = on_idle

        self.state = RefreshState.IDLE
        self.retry_count = 0
        self.visible = True
        self._hidden_at: Optional[float] = None
        self._last_seen = clock()
        self._stopped = False
        self._timer_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None
        self.expiry_tracker = SessionExpiryTracker.from_config(self.config, clock=clock)

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def lease_expired(self) -> bool:
        """No client activity for longer than a session lives."""
        return self._clock() - self._last_seen > self.config.session_max_age_seconds

    @property
    def is_idle(self) -> bool:
        """
        Nothing scheduled or running, and nothing worth remembering.

        A hidden client is kept until its lease runs out so its return can
        be classified; a tracker inside its 401 window is kept so the
        prompt count survives between requests.
        """
        if self.state is not RefreshState.IDLE or self.is_running:
            return False
        for task in (self._retry_task, self._inflight):
            if task is not None and not task.done():
                return False
        if not self.visible and not self.lease_expired:
            return False
        return not self.expiry_tracker.is_active()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic refresh timer. Idempotent."""
        if self.is_running:
            return
        self._stopped = False
        self._last_seen = self._clock()
        self._timer_task = asyncio.create_task(self._timer_loop())
        self._timer_task.add_done_callback(self._task_finished)
        logger.debug("Refresh coordinator started", extra={"subject": self.subject})

    async def pause(self) -> None:
        """Cancel the periodic timer without stopping the coordinator."""
        task = self._timer_task
        self._timer_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self) -> None:
        """Cancel the timer, any pending retry and any in-flight refresh, then reset to IDLE."""
        self._stopped = True
        current = asyncio.current_task()
        tasks = [
            t for t in (self._timer_task, self._retry_task, self._inflight)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._timer_task = None
        self._retry_task = None
        self._inflight = None
        self.state = RefreshState.IDLE
        self.retry_count = 0
        logger.debug("Refresh coordinator stopped", extra={"subject": self.subject})

    def touch(self) -> None:
        """Record client activity; keeps the periodic timer alive."""
        self._last_seen = self._clock()

    def _task_finished(self, task: asyncio.Future) -> None:
        if self._on_idle is not None:
            self._on_idle(self)

    async def wait_for_retries(self) -> None:
        """Wait until no retry is pending (the whole backoff chain)."""
        while self._retry_task is not None and not self._retry_task.done():
            await self._retry_task

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def request_refresh(self, reason: str, force: bool = False) -> RefreshOutcome:
        """
        Ask for a refresh.

        Returns ALREADY_REFRESHING without any provider call when a refresh
        is in flight or a retry is pending.
        """
        if self._stopped:
            return RefreshOutcome.STOPPED

        if self.state is not RefreshState.IDLE:
            logger.debug(
                "Refresh already in progress",
                extra={"subject": self.subject, "reason": reason, "state": self.state.value},
            )
            return RefreshOutcome.ALREADY_REFRESHING

        return await self._attempt(reason, force)

    async def on_visibility_change(self, visible: bool) -> Optional[RefreshOutcome]:
        """
        Track foreground state; refresh when returning after a real absence.

        The absence level only affects logging.
        """
        now = self._clock()
        if not visible:
            self.visible = False
            self._hidden_at = now
            return None

        was_hidden_at = self._hidden_at
        self.visible = True
        self._hidden_at = None
        if was_hidden_at is None:
            return None

        absence = now - was_hidden_at
        level = self.classify_absence(absence)
        if level is AbsenceLevel.NONE:
            return None

        logger.info(
            "Client returned after absence",
            extra={
                "subject": self.subject,
                "absence_level": level.value,
                "absence_minutes": round(absence / 60),
            },
        )
        return await self.request_refresh(f"User returned - {level.value} absence")

    async def on_unauthorized(self) -> RefreshOutcome:
        """Emergency refresh after a 401 from a protected resource."""
        self.expiry_tracker.report_unauthorized()
        return await self.request_refresh("Unauthorized response", force=True)

    def classify_absence(self, absence_seconds: float) -> AbsenceLevel:
        if absence_seconds > self.config.long_absence_seconds:
            return AbsenceLevel.LONG
        if absence_seconds > self.config.medium_absence_seconds:
            return AbsenceLevel.MEDIUM
        if absence_seconds > self.config.short_absence_seconds:
            return AbsenceLevel.SHORT
        return AbsenceLevel.NONE

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _attempt(self, reason: str, force: bool) -> RefreshOutcome:
        self.state = RefreshState.REFRESH_IN_FLIGHT
        self._inflight = asyncio.ensure_future(self._refresh_fn(force))
        retryable = True
        try:
            result = await asyncio.wait_for(
                self._inflight,
                timeout=self.config.refresh_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = "refresh timed out"
        except (OIDCError, ServiceUnavailableError) as e:
            error = str(e)
        except asyncio.CancelledError:
            self.state = RefreshState.IDLE
            self.retry_count = 0
            if self._stopped:
                logger.debug(
                    "In-flight refresh cancelled by stop",
                    extra={"subject": self.subject, "reason": reason},
                )
                return RefreshOutcome.STOPPED
            raise
        except Exception as e:
            logger.exception(
                "Unexpected error during refresh",
                extra={"subject": self.subject, "reason": reason},
            )
            error = f"unexpected {type(e).__name__}"
            retryable = False
        else:
            if result.succeeded:
                self.retry_count = 0
                self.state = RefreshState.IDLE
                self.expiry_tracker.reset()
                logger.debug(
                    "Refresh cycle completed",
                    extra={"subject": self.subject, "reason": reason, "status": result.status.value},
                )
                return RefreshOutcome.REFRESHED
            error = result.error_message or result.status.value
            retryable = result.retryable

        return self._handle_failure(reason, force, error, retryable)

    def _handle_failure(
        self,
        reason: str,
        force: bool,
        error: str,
        retryable: bool,
    ) -> RefreshOutcome:
        if retryable and not self._stopped and self.retry_count < self.config.refresh_max_retries:
            delay = self.config.retry_delay(self.retry_count)
            self.retry_count += 1
            self.state = RefreshState.BACKOFF_WAIT
            logger.warning(
                "Refresh failed; retry scheduled",
                extra={
                    "subject": self.subject,
                    "reason": reason,
                    "retry": self.retry_count,
                    "delay_seconds": delay,
                    "error": error,
                },
            )
            self._retry_task = asyncio.create_task(
                self._retry_after(delay, f"{reason} (retry {self.retry_count})", force)
            )
            self._retry_task.add_done_callback(self._task_finished)
            return RefreshOutcome.RETRY_SCHEDULED

        logger.error(
            "Refresh failed; giving up for this cycle",
            extra={
                "subject": self.subject,
                "reason": reason,
                "retries": self.retry_count,
                "retryable": retryable,
                "error": error,
            },
        )
        self.retry_count = 0
        self.state = RefreshState.IDLE
        return RefreshOutcome.FAILED

    async def _retry_after(self, delay: float, reason: str, force: bool) -> None:
        try:
            await self._sleep(delay)
        except asyncio.CancelledError:
            self.state = RefreshState.IDLE
            self.retry_count = 0
            raise
        if self._stopped:
            return
        await self._attempt(reason, force)

    async def _timer_loop(self) -> None:
        while not self._stopped:
            await self._sleep(self.config.randomized_interval(self._rand()))
            if self._stopped:
                break
            if self.lease_expired:
                logger.debug(
                    "No client activity within session lifetime; timer ended",
                    extra={"subject": self.subject},
                )
                break
            if self.visible:
                await self.request_refresh("Preventive refresh")


class CoordinatorRegistry:
    """
    One TokenRefreshCoordinator per subject for this process.

    Coordinators are created on first use, torn down on sign-out and
    dropped again as soon as they go idle, so the map only holds
    subjects with a timer, a refresh, a hidden client or a recent 401.
    """

    def __init__(
        self,
        refresh_service: TokenRefreshService,
        config: Optional[AuthConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.refresh_service = refresh_service
        self.config = config or get_auth_config()
        self._clock = clock
        self._coordinators: dict[str, TokenRefreshCoordinator] = {}
        self._background: dict[str, set[asyncio.Task]] = {}

    def __len__(self) -> int:
        return len(self._coordinators)

    def get(self, subject: str) -> Optional[TokenRefreshCoordinator]:
        return self._coordinators.get(subject)

    def get_or_create(self, subject: str) -> TokenRefreshCoordinator:
        coordinator = self._coordinators.get(subject)
        if coordinator is None:
            self.prune()
            service = self.refresh_service

            async def refresh_fn(force: bool) -> RefreshResult:
                return await service.refresh_if_needed(subject, force=force)

            coordinator = TokenRefreshCoordinator(
                subject,
                refresh_fn,
                config=self.config,
                clock=self._clock,
                on_idle=self._coordinator_idle,
            )
            self._coordinators[subject] = coordinator
        return coordinator

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict_if_idle(self, subject: str) -> bool:
        coordinator = self._coordinators.get(subject)
        if coordinator is None or self._background.get(subject):
            return False
        if not coordinator.is_idle:
            return False
        del self._coordinators[subject]
        logger.debug("Evicted idle refresh coordinator", extra={"subject": subject})
        return True

    def prune(self) -> int:
        """Drop every idle coordinator. Returns how many were dropped."""
        return sum(1 for subject in list(self._coordinators) if self.evict_if_idle(subject))

    def _coordinator_idle(self, coordinator: TokenRefreshCoordinator) -> None:
        if self._coordinators.get(coordinator.subject) is coordinator:
            self.evict_if_idle(coordinator.subject)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def touch(self, subject: str) -> None:
        """Note an authenticated request; never creates a coordinator."""
        coordinator = self._coordinators.get(subject)
        if coordinator is not None:
            coordinator.touch()

    async def refresh(self, subject: str, reason: str, force: bool = False) -> RefreshOutcome:
        coordinator = self.get_or_create(subject)
        try:
            return await coordinator.request_refresh(reason, force=force)
        finally:
            self.evict_if_idle(subject)

    async def report_unauthorized(self, subject: str) -> tuple[RefreshOutcome, bool]:
        """
        Emergency refresh after a 401 seen by the client.

        Returns the outcome and whether the client should now prompt the
        user to sign in again.
        """
        coordinator = self.get_or_create(subject)
        try:
            outcome = await coordinator.on_unauthorized()
            return outcome, coordinator.expiry_tracker.should_prompt
        finally:
            self.evict_if_idle(subject)

    async def visibility_changed(self, subject: str, visible: bool) -> Optional[RefreshOutcome]:
        """
        Foreground/background signal from the client.

        Hidden pauses the periodic timer; visible refreshes after a real
        absence and restarts the timer.
        """
        coordinator = self.get_or_create(subject)
        try:
            outcome = await coordinator.on_visibility_change(visible)
            if visible:
                coordinator.start()
            else:
                await coordinator.pause()
            return outcome
        finally:
            self.evict_if_idle(subject)

    def schedule_refresh(self, subject: str, reason: str) -> bool:
        """
        Kick off a background refresh without waiting for it.

        Returns False when the subject already has a refresh under way.
        """
        coordinator = self.get_or_create(subject)
        if coordinator.state is not RefreshState.IDLE:
            return False

        task = asyncio.create_task(coordinator.request_refresh(reason))
        tasks = self._background.setdefault(subject, set())
        tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            tasks.discard(finished)
            if not tasks and self._background.get(subject) is tasks:
                del self._background[subject]
            self._coordinator_idle(coordinator)

        task.add_done_callback(_done)
        return True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def remove(self, subject: str) -> None:
        """
        Stop the subject's coordinator and wait for its background refreshes.

        Once this returns no refresh started by this process is still
        running for the subject.
        """
        coordinator = self._coordinators.pop(subject, None)
        if coordinator is not None:
            await coordinator.stop()
        tasks = self._background.pop(subject, set())
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        for subject in set(self._coordinators) | set(self._background):
            await self.remove(subject)
