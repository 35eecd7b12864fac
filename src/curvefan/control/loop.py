"""
Fan Control Loop Module

This module provides the main control loop: sample the package
temperature, map it through the fan curve, and send the duty to the BMC
when it changed (or always, when forced).
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from ..config import CurveConfig, LoopPolicy
from ..ipmi import FanCommander, IPMIError
from ..sensors import PackageTemperatureSource, TemperatureReading
from .curve import map_duty

logger = logging.getLogger(__name__)


class Action(Enum):
    """What a tick decided to do with the computed duty"""
    APPLY = "apply"      # Send the duty to the BMC
    SKIP = "skip"        # Duty unchanged, nothing to send
    DRY_RUN = "dry_run"  # Would send, suppressed by dry run


@dataclass(frozen=True)
class LoopState:
    """State carried from one tick to the next.

    Attributes:
        last_applied_duty: Last duty sent (or reported, in dry run);
            None until the first tick
    """
    last_applied_duty: Optional[int] = None


@dataclass(frozen=True)
class TickDecision:
    """Outcome of evaluating one temperature reading"""
    temperature: float
    duty: int
    action: Action


def step(state: LoopState, reading: TemperatureReading, curve: CurveConfig,
         policy: LoopPolicy) -> Tuple[LoopState, TickDecision]:
    """Decide what to do with a temperature reading.

    The returned state records the new duty in every case. For APPLY it
    must only be kept once the BMC accepted the duty.

    Args:
        state: State from the previous tick
        reading: Fresh temperature reading
        curve: Fan curve configuration
        policy: Loop policy (force and dry_run are used here)

    Returns:
        Tuple of (state after this tick, decision)
    """
    duty = map_duty(reading.value, curve)
    should_apply = policy.force or duty != state.last_applied_duty

    if not should_apply:
        action = Action.SKIP
    elif policy.dry_run:
        action = Action.DRY_RUN
    else:
        action = Action.APPLY

    return LoopState(last_applied_duty=duty), TickDecision(reading.value, duty, action)


class ControlLoop:
    """Runs the temperature to fan duty control loop.

    The loop is single threaded. stop() may be called from a signal
    handler; it interrupts the wait between ticks.
    """

    def __init__(self, curve: CurveConfig, policy: LoopPolicy,
                 source: Optional[PackageTemperatureSource] = None,
                 commander: Optional[FanCommander] = None,
                 reporter: Callable[[str], None] = print):
        """Initialize control loop

        Args:
            curve: Validated fan curve configuration
            policy: Loop policy
            source: Temperature source
            commander: BMC fan commander
            reporter: Receives the operator-facing per-tick report lines
        """
        self.curve = curve
        self.policy = policy
        self.source = source or PackageTemperatureSource()
        self.commander = commander or FanCommander()
        self.reporter = reporter
        self.state = LoopState()
        self._stop_event = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to finish after the current tick"""
        self._stop_event.set()

    def startup(self) -> None:
        """Probe the BMC unless running dry.

        Raises:
            BmcUnreachableError: If the BMC does not answer
        """
        if self.policy.dry_run:
            logger.info("Dry run: not touching the BMC")
            return
        self.commander.probe()

    def _report_reading(self, reading: TemperatureReading) -> None:
        for entry in reading.detail:
            self.reporter(f"{entry.chip} - {entry.label}: {entry.value:.1f}°C")
        self.reporter(f"Effective temperature for calculation: {reading.value:.1f}°C")

    def _report_decision(self, decision: TickDecision) -> None:
        if decision.action is Action.SKIP:
            if self.policy.verbose:
                self.reporter(
                    f"Fan speed unchanged at {decision.duty}% (temp: {decision.temperature:.1f}°C)"
                )
        elif self.policy.verbose or self.policy.dry_run:
            prefix = "[DRY RUN] " if decision.action is Action.DRY_RUN else ""
            self.reporter(
                f"{prefix}Setting fan speed to {decision.duty}% based on {decision.temperature:.1f}°C"
            )

    def tick(self) -> TickDecision:
        """Run one sample, map, decide and command cycle.

        Returns:
            The decision taken

        Raises:
            SensorError: If no valid temperature could be read
            CommandFailedError: If the BMC rejected the duty; the loop state
                keeps the previously applied duty
        """
        reading = self.source.read(verbose=self.policy.verbose)
        if self.policy.verbose:
            self._report_reading(reading)

        new_state, decision = step(self.state, reading, self.curve, self.policy)
        self._report_decision(decision)

        if decision.action is Action.APPLY:
            try:
                self.commander.apply(decision.duty)
            except IPMIError:
                logger.error(
                    f"Failed to set fan speed to {decision.duty}% at {decision.temperature:.1f}°C"
                )
                raise
            logger.info(f"Fan speed set to {decision.duty}% ({decision.temperature:.1f}°C)")
        else:
            logger.debug(f"{decision.action.value}: {decision.temperature:.1f}°C -> {decision.duty}%")

        self.state = new_state
        return decision

    def run(self) -> None:
        """Run ticks until single shot completes or stop() is called.

        A fan command failing after stop() was requested ends the loop
        normally, so restore_on_exit still applies.

        Raises:
            SensorError: If a temperature read fails
            IPMIError: If a fan command fails while the loop is running
        """
        logger.info("Control loop started")
        try:
            while not self.stopped:
                try:
                    self.tick()
                except IPMIError as e:
                    # The stop signal also reaches the running ipmitool child
                    if not self.stopped:
                        raise
                    logger.warning(f"Fan command interrupted by stop: {e}")
                    break
                if self.policy.single_shot:
                    break
                self._stop_event.wait(self.policy.interval)
        finally:
            logger.info("Control loop stopped")

        if self.stopped and self.policy.restore_on_exit and not self.policy.dry_run:
            try:
                self.commander.restore_auto()
            except IPMIError as e:
                logger.error(f"Failed to restore automatic control: {e}")
