"""
Tests for the Control Loop module
"""

import pytest
import threading
from unittest.mock import Mock, patch

from curvefan.config import CurveConfig, LoopPolicy
from curvefan.control.loop import Action, ControlLoop, LoopState, TickDecision, step
from curvefan.ipmi import FanCommander, BmcUnreachableError, CommandFailedError
from curvefan.sensors import (
    PackageTemperature,
    PackageTemperatureSource,
    TemperatureReading,
    NoPackageSensorError
)

# Test Data
CURVE = CurveConfig(min_fan=10, max_fan=100, min_temp=40.0, max_temp=90.0, exponent=2.0)
QUIET_CURVE = CurveConfig(min_fan=4, max_fan=100, min_temp=40.0, max_temp=90.0, exponent=4.0)


def reading(temp, detail=()):
    return TemperatureReading(temp, tuple(detail))


@pytest.fixture
def mock_source():
    """Create a mock temperature source"""
    source = Mock(spec=PackageTemperatureSource)
    source.read.return_value = reading(65.0)
    return source


@pytest.fixture
def mock_commander():
    """Create a mock fan commander"""
    return Mock(spec=FanCommander)


@pytest.fixture
def lines():
    """Collected report lines"""
    return []


def make_loop(mock_source, mock_commander, lines, curve=CURVE, **policy):
    return ControlLoop(
        curve,
        LoopPolicy(**policy),
        source=mock_source,
        commander=mock_commander,
        reporter=lines.append
    )


def feed(mock_source, temps):
    mock_source.read.side_effect = [reading(t) for t in temps]


# Step function tests

def test_step_first_tick_applies():
    """Test the first tick always applies"""
    state, decision = step(LoopState(), reading(65.0), CURVE, LoopPolicy())
    assert decision == TickDecision(65.0, 33, Action.APPLY)
    assert state.last_applied_duty == 33


def test_step_first_tick_applies_zero_duty():
    """Test a 0% first duty is still sent"""
    curve = CurveConfig(min_fan=0, max_fan=100, min_temp=40.0, max_temp=90.0, exponent=1.0)
    _, decision = step(LoopState(), reading(30.0), curve, LoopPolicy())
    assert decision.duty == 0
    assert decision.action is Action.APPLY


def test_step_unchanged_duty_skips():
    """Test an unchanged duty is skipped"""
    state, decision = step(LoopState(33), reading(65.0), CURVE, LoopPolicy())
    assert decision.action is Action.SKIP
    assert state == LoopState(33)


def test_step_force_applies_unchanged():
    """Test force sends even an unchanged duty"""
    _, decision = step(LoopState(33), reading(65.0), CURVE, LoopPolicy(force=True))
    assert decision.action is Action.APPLY


def test_step_dry_run():
    """Test dry run never asks to apply"""
    for force in (False, True):
        policy = LoopPolicy(dry_run=True, force=force)
        state, decision = step(LoopState(), reading(65.0), CURVE, policy)
        assert decision.action is Action.DRY_RUN
        assert state.last_applied_duty == 33

    # Unchanged duty in dry run is a plain skip
    _, decision = step(LoopState(33), reading(65.0), CURVE, LoopPolicy(dry_run=True))
    assert decision.action is Action.SKIP


def test_step_does_not_mutate_state():
    """Test state is threaded, not modified"""
    state = LoopState(10)
    step(state, reading(80.0), CURVE, LoopPolicy())
    assert state.last_applied_duty == 10


# Tick tests

def test_apply_only_on_duty_change(mock_source, mock_commander, lines):
    """Test 65°C, 65°C, 80°C on the quiet curve applies 10 then 43"""
    loop = make_loop(mock_source, mock_commander, lines, curve=QUIET_CURVE)
    feed(mock_source, [65.0, 65.0, 80.0])
    actions = [loop.tick().action for _ in range(3)]
    assert actions == [Action.APPLY, Action.SKIP, Action.APPLY]
    assert [c.args[0] for c in mock_commander.apply.call_args_list] == [10, 43]


def test_squared_curve_applies_new_duties(mock_source, mock_commander, lines):
    """Test first tick at 65°C applies 33, repeat skips, 80°C applies 46"""
    loop = make_loop(mock_source, mock_commander, lines)
    feed(mock_source, [65.0, 65.0, 80.0])
    for _ in range(3):
        loop.tick()
    # 80°C: x=0.8, 0.64 * 90 + 10 = 67.6 -> 68
    assert [c.args[0] for c in mock_commander.apply.call_args_list] == [33, 68]
    assert loop.state.last_applied_duty == 68


def test_idempotent_over_many_ticks(mock_source, mock_commander, lines):
    """Test an unchanging duty is applied once across N ticks"""
    loop = make_loop(mock_source, mock_commander, lines)
    feed(mock_source, [65.0] * 20)
    for _ in range(20):
        loop.tick()
    mock_commander.apply.assert_called_once_with(33)


def test_idempotent_with_temperature_noise(mock_source, mock_commander, lines):
    """Test temperatures mapping to the same duty do not resend"""
    loop = make_loop(mock_source, mock_commander, lines)
    # All of these map to 10% (at or below min_temp)
    feed(mock_source, [30.0, 35.5, 40.0, 38.0, 39.9])
    for _ in range(5):
        loop.tick()
    mock_commander.apply.assert_called_once_with(10)


def test_force_applies_every_tick(mock_source, mock_commander, lines):
    """Test force resends the same duty every tick"""
    loop = make_loop(mock_source, mock_commander, lines, force=True)
    feed(mock_source, [65.0] * 3)
    for _ in range(3):
        loop.tick()
    assert mock_commander.apply.call_count == 3


@pytest.mark.parametrize("force", [False, True])
def test_dry_run_never_applies(mock_source, mock_commander, lines, force):
    """Test dry run never calls apply regardless of force or changes"""
    loop = make_loop(mock_source, mock_commander, lines, dry_run=True, force=force)
    feed(mock_source, [30.0, 65.0, 65.0, 80.0, 200.0])
    for _ in range(5):
        loop.tick()
    mock_commander.apply.assert_not_called()


def test_apply_failure_keeps_previous_duty(mock_source, mock_commander, lines):
    """Test a failed apply does not record the new duty"""
    loop = make_loop(mock_source, mock_commander, lines)
    feed(mock_source, [65.0, 80.0])
    loop.tick()
    mock_commander.apply.side_effect = CommandFailedError("Failed to set fan duty to 68%")
    with pytest.raises(CommandFailedError):
        loop.tick()
    assert loop.state.last_applied_duty == 33


def test_sensor_failure_propagates(mock_source, mock_commander, lines):
    """Test a failed read is fatal and nothing is sent"""
    loop = make_loop(mock_source, mock_commander, lines)
    mock_source.read.side_effect = NoPackageSensorError("No CPU package temperature found")
    with pytest.raises(NoPackageSensorError):
        loop.tick()
    mock_commander.apply.assert_not_called()
    assert loop.state == LoopState()


# Reporting tests

def test_quiet_by_default(mock_source, mock_commander, lines):
    """Test nothing is reported without verbose or dry run"""
    loop = make_loop(mock_source, mock_commander, lines)
    loop.tick()
    assert lines == []


def test_verbose_report(mock_source, mock_commander, lines):
    """Test verbose reports packages, effective temperature and decisions"""
    mock_source.read.side_effect = [
        reading(65.0, [
            PackageTemperature("coretemp", "Package id 0", 61.0),
            PackageTemperature("coretemp-isa-0001", "Package id 1", 65.0),
        ]),
        reading(65.0),
    ]
    loop = make_loop(mock_source, mock_commander, lines, verbose=True)
    loop.tick()
    loop.tick()
    mock_source.read.assert_called_with(verbose=True)
    assert lines == [
        "coretemp - Package id 0: 61.0°C",
        "coretemp-isa-0001 - Package id 1: 65.0°C",
        "Effective temperature for calculation: 65.0°C",
        "Setting fan speed to 33% based on 65.0°C",
        "Effective temperature for calculation: 65.0°C",
        "Fan speed unchanged at 33% (temp: 65.0°C)",
    ]


def test_dry_run_report(mock_source, mock_commander, lines):
    """Test dry run reports changes once, with a prefix"""
    loop = make_loop(mock_source, mock_commander, lines, dry_run=True)
    feed(mock_source, [65.0, 65.0, 80.0])
    for _ in range(3):
        loop.tick()
    assert lines == [
        "[DRY RUN] Setting fan speed to 33% based on 65.0°C",
        "[DRY RUN] Setting fan speed to 68% based on 80.0°C",
    ]


# Startup and run tests

def test_startup_probes(mock_source, mock_commander, lines):
    """Test startup probes the BMC"""
    make_loop(mock_source, mock_commander, lines).startup()
    mock_commander.probe.assert_called_once()


def test_startup_dry_run_skips_probe(mock_source, mock_commander, lines):
    """Test dry run never touches the BMC"""
    make_loop(mock_source, mock_commander, lines, dry_run=True).startup()
    mock_commander.probe.assert_not_called()


def test_startup_probe_failure(mock_source, mock_commander, lines):
    """Test an unreachable BMC aborts startup"""
    mock_commander.probe.side_effect = BmcUnreachableError("ipmitool not found")
    with pytest.raises(BmcUnreachableError):
        make_loop(mock_source, mock_commander, lines).startup()


def test_run_single_shot(mock_source, mock_commander, lines):
    """Test single shot runs one tick without waiting"""
    loop = make_loop(mock_source, mock_commander, lines, single_shot=True, interval=3600)
    with patch.object(loop._stop_event, "wait") as mock_wait:
        loop.run()
    mock_source.read.assert_called_once()
    mock_commander.apply.assert_called_once_with(33)
    mock_wait.assert_not_called()
    mock_commander.restore_auto.assert_not_called()


def test_run_waits_interval_until_stopped(mock_source, mock_commander, lines):
    """Test ticks are separated by the interval and stop() ends the loop"""
    loop = make_loop(mock_source, mock_commander, lines, interval=2.5)
    waits = []

    def fake_wait(timeout):
        waits.append(timeout)
        if len(waits) == 3:
            loop.stop()
        return loop.stopped

    with patch.object(loop._stop_event, "wait", side_effect=fake_wait):
        loop.run()
    assert waits == [2.5, 2.5, 2.5]
    assert mock_source.read.call_count == 3
    mock_commander.apply.assert_called_once_with(33)


def test_run_stop_interrupts_wait(mock_source, mock_commander, lines):
    """Test stop() from another thread interrupts a long wait"""
    loop = make_loop(mock_source, mock_commander, lines, interval=3600)
    timer = threading.Timer(0.05, loop.stop)
    timer.start()
    try:
        loop.run()
    finally:
        timer.cancel()
    assert loop.stopped
    assert mock_source.read.call_count == 1


def test_run_propagates_command_failure(mock_source, mock_commander, lines):
    """Test a mid-loop command failure ends the loop"""
    loop = make_loop(mock_source, mock_commander, lines)
    mock_commander.apply.side_effect = CommandFailedError("Failed to enable manual fan control")
    with pytest.raises(CommandFailedError):
        loop.run()
    mock_commander.restore_auto.assert_not_called()


def test_run_restore_on_exit(mock_source, mock_commander, lines):
    """Test fan control is handed back to the BMC after an explicit stop"""
    loop = make_loop(mock_source, mock_commander, lines, restore_on_exit=True)
    loop.stop()
    loop.run()
    mock_commander.restore_auto.assert_called_once()


def test_run_restore_on_exit_failure_is_logged(mock_source, mock_commander, lines, caplog):
    """Test a failed restore is logged, not raised"""
    loop = make_loop(mock_source, mock_commander, lines, restore_on_exit=True)
    mock_commander.restore_auto.side_effect = CommandFailedError("Invalid command")
    loop.stop()
    loop.run()
    assert "Failed to restore automatic control" in caplog.text


def test_run_restore_on_exit_not_in_dry_run(mock_source, mock_commander, lines):
    """Test dry run never restores either"""
    loop = make_loop(mock_source, mock_commander, lines, restore_on_exit=True, dry_run=True)
    loop.stop()
    loop.run()
    mock_commander.restore_auto.assert_not_called()


def test_run_stop_during_apply_restores(mock_source, mock_commander, lines):
    """Test a command killed by the stop signal still ends in a clean stop"""
    loop = make_loop(mock_source, mock_commander, lines, restore_on_exit=True)

    def interrupted(duty):
        loop.stop()
        raise CommandFailedError(f"Failed to set fan duty to {duty}%")

    mock_commander.apply.side_effect = interrupted
    loop.run()
    assert loop.stopped
    assert loop.state.last_applied_duty is None
    mock_commander.restore_auto.assert_called_once()


def test_run_stop_during_apply_without_restore(mock_source, mock_commander, lines):
    """Test an interrupted command ends the loop without raising"""
    loop = make_loop(mock_source, mock_commander, lines)

    def interrupted(duty):
        loop.stop()
        raise CommandFailedError("Failed to enable manual fan control")

    mock_commander.apply.side_effect = interrupted
    loop.run()
    assert mock_source.read.call_count == 1
    mock_commander.restore_auto.assert_not_called()
