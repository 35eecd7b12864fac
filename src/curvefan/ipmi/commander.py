"""
IPMI Command Execution Module

This module provides a wrapper around ipmitool for sending raw IPMI
commands to the BMC and driving its fan control.
"""

import subprocess
import logging
from typing import List, Optional, Sequence

from ..config import IPMIConfig

logger = logging.getLogger(__name__)


class IPMIError(Exception):
    """Base exception for IPMI-related errors"""
    pass


class BmcUnreachableError(IPMIError):
    """Raised when the BMC control channel cannot be reached"""
    pass


class IPMICommandError(IPMIError):
    """Raised when the BMC rejects a command"""
    pass


class CommandFailedError(IPMIError):
    """Raised when a fan control command fails"""
    pass


# stderr fragments meaning ipmitool never got to talk to the BMC
CONNECTION_ERRORS = (
    "Could not open device",
    "Error in open session",
    "Unable to establish",
    "No such file or directory",
)


def parse_response(output: str) -> bytes:
    """Parse ipmitool raw output into response bytes.

    ipmitool prints the response data as whitespace separated hex bytes,
    wrapped over several lines for long responses.

    Args:
        output: Standard output of `ipmitool raw`

    Returns:
        Response data bytes (empty when the command returns no data)

    Raises:
        IPMIError: If the output is not a hex byte dump

    Examples:
        >>> parse_response(" 20 01 03 45 02 bf\\n")
        b' \\x01\\x03E\\x02\\xbf'
    """
    try:
        return bytes(int(part, 16) for part in output.split())
    except ValueError as e:
        raise IPMIError(f"Unexpected ipmitool output: {output.strip()!r}") from e


class FanCommander:
    """Sends fan control commands to the BMC.

    The command set is the one used by Dell iDRAC style BMCs: netfn 0x30,
    command 0x30, with a sub-command byte selecting manual/automatic mode
    or the duty cycle for a fan zone (0xFF addresses all zones).
    """

    # (netfn, command, data)
    GET_DEVICE_ID = (0x06, 0x01, ())
    GET_FAN_STATUS = (0x30, 0x45, (0x00,))
    SET_MANUAL_MODE = (0x30, 0x30, (0x01, 0x00))
    SET_AUTO_MODE = (0x30, 0x30, (0x01, 0x01))
    SET_DUTY = (0x30, 0x30, (0x02, 0xFF))

    def __init__(self, config: Optional[IPMIConfig] = None):
        """Initialize fan commander

        Args:
            config: ipmitool location and BMC connection details
        """
        self.config = config or IPMIConfig()

    def _base_command(self) -> List[str]:
        if self.config.is_local:
            return [self.config.ipmitool, "-I", "open", "-d", str(self.config.device)]
        # For remote access, include connection parameters
        return [
            self.config.ipmitool, "-I", self.config.interface,
            "-H", self.config.host,
            "-U", self.config.username,
            "-P", self.config.password,
        ]

    def execute_raw(self, netfn: int, command: int, data: Sequence[int] = ()) -> bytes:
        """Execute a raw IPMI request and return the response data.

        The BMC channel is opened by ipmitool for this request only.

        Args:
            netfn: Network function code
            command: Command code
            data: Request data bytes

        Returns:
            Response data bytes

        Raises:
            BmcUnreachableError: If ipmitool is missing, times out or
                cannot open the BMC channel
            IPMICommandError: If the BMC rejects the request
            IPMIError: If a byte is out of range or the output is garbled
        """
        request = [netfn, command, *data]
        if any(not 0 <= b <= 0xFF for b in request):
            raise IPMIError(f"Request byte out of range: {request}")

        raw_args = [f"0x{b:02x}" for b in request]
        full_cmd = self._base_command() + ["raw"] + raw_args
        logger.debug(f"Executing: ipmitool raw {' '.join(raw_args)}")

        try:
            result = subprocess.run(
                full_cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.config.timeout
            )
        except FileNotFoundError as e:
            raise BmcUnreachableError(f"ipmitool not found: {self.config.ipmitool}") from e
        except subprocess.TimeoutExpired as e:
            raise BmcUnreachableError(f"IPMI command timed out after {self.config.timeout}s") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            if any(fragment in stderr for fragment in CONNECTION_ERRORS):
                raise BmcUnreachableError(f"Failed to connect to IPMI: {stderr}") from e
            raise IPMICommandError(
                f"Command {netfn:#04x} {command:#04x} failed: {stderr or f'exit status {e.returncode}'}"
            ) from e

        return parse_response(result.stdout)

    def probe(self) -> None:
        """Check that the BMC control channel works.

        Sends Get Device ID; failure means the BMC is unreachable. Then
        tries to read the fan status purely for diagnostics.

        Raises:
            BmcUnreachableError: If the identify command fails
        """
        try:
            device_id = self.execute_raw(*self.GET_DEVICE_ID)
        except BmcUnreachableError:
            raise
        except IPMIError as e:
            raise BmcUnreachableError(f"BMC did not answer Get Device ID: {e}") from e
        logger.info(f"IPMI device accessible (device id: {device_id.hex(' ') or 'n/a'})")

        try:
            self.execute_raw(*self.GET_FAN_STATUS)
        except IPMIError as e:
            logger.warning(f"Could not read fan status: {e}")
            logger.warning("Fan control may not work on this system")
        else:
            logger.info("Fan control commands appear to be supported")

    def apply(self, duty: int) -> None:
        """Switch the BMC to manual fan control and set the duty cycle.

        Both commands are sent on every call, in order. If the second one
        fails the BMC may be left in manual mode with its previous duty.

        Args:
            duty: Fan duty percentage (0-100) for all fan zones

        Raises:
            CommandFailedError: If the duty is out of range or either
                command fails
        """
        if isinstance(duty, bool) or not isinstance(duty, int) or not 0 <= duty <= 100:
            raise CommandFailedError(f"Invalid fan duty {duty!r}, must be an integer 0-100")

        netfn, command, data = self.SET_MANUAL_MODE
        try:
            self.execute_raw(netfn, command, data)
        except IPMIError as e:
            raise CommandFailedError(f"Failed to enable manual fan control: {e}") from e

        netfn, command, data = self.SET_DUTY
        try:
            self.execute_raw(netfn, command, data + (duty,))
        except IPMIError as e:
            raise CommandFailedError(f"Failed to set fan duty to {duty}%: {e}") from e

        logger.debug(f"Fan duty set to {duty}%")

    def restore_auto(self) -> None:
        """Return fan control to the BMC.

        Raises:
            CommandFailedError: If the BMC rejects the mode change
        """
        try:
            self.execute_raw(*self.SET_AUTO_MODE)
        except IPMIError as e:
            raise CommandFailedError(f"Failed to restore automatic fan control: {e}") from e
        logger.info("Restored automatic fan control")
