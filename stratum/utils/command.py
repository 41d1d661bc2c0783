"""
Command execution utilities.

This module provides tools for executing external tools with explicit argument
vectors, simulation support and signal-aware abort handling.
"""
import logging
import os
import re
import subprocess
import uuid
from enum import Enum
from typing import Dict, List, Optional, Any

from stratum.core.exceptions import InstallAborted
from stratum.utils.format import TermColors, colorize, parse_size_spec

logger = logging.getLogger('stratum')

# Partition nodes that carry a GPT PARTUUID in simulation
_SIM_PARTITION_RE = re.compile(r"^/dev/(sd[a-z]+|vd[a-z]+|xvd[a-z]+|(nvme\d+n\d+|mmcblk\d+|loop\d+)p)\d+$")


class SimulationMode(Enum):
    """Enumeration for simulation modes"""
    DISABLED = 0  # Normal operation
    SIMULATE = 1  # Simulate operations


class CommandRunner:
    """
    Class responsible for command execution with simulation support.
    Acts as a wrapper around subprocess.run with additional functionality.

    Commands are always argument vectors; secrets travel through ``input=``
    (stdin) and are never logged.
    """
    def __init__(self, simulation_mode: SimulationMode, colored_output: bool = True):
        """
        Initialize the command runner.
        
        Args:
            simulation_mode: Simulation mode to operate in
            colored_output: Whether to use colored output in terminal
        """
        self.simulation_mode = simulation_mode
        self.colored_output = colored_output
        self.commands_run: List[Dict[str, Any]] = []
        
        # Generate a unique simulation ID
        self.simulation_id = str(uuid.uuid4())[:8]
        
        # Keep track of simulated UUIDs for consistency
        self.simulated_uuids: Dict[str, str] = {}
        self.simulated_partuuids: Dict[str, str] = {}
        
        # Simulation parameters
        self.simulation_params: Dict[str, Any] = {}

        # Signal number of a pending abort, set from the signal handler
        self.abort_requested: Optional[int] = None

    @property
    def simulating(self) -> bool:
        return self.simulation_mode == SimulationMode.SIMULATE

    def set_simulation_params(self, params: Dict[str, Any]) -> None:
        """
        Set parameters for disk simulation.
        
        Args:
            params: Dictionary of simulation parameters
        """
        self.simulation_params = params

    def request_abort(self, signum: int) -> None:
        """Record a pending abort; the next command start raises InstallAborted."""
        self.abort_requested = signum

    def check_abort(self) -> None:
        """
        Raise if an abort has been requested.

        Raises:
            InstallAborted: If a signal was received since the run started
        """
        if self.abort_requested is not None:
            raise InstallAborted(self.abort_requested)

    def run(self, cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        """
        Run a command or simulate running it.

        A pending abort is honoured before the command starts; a command that
        is already running is left to finish or fail on its own.
        
        Args:
            cmd: Command to run as list of strings
            check: Whether to check for non-zero return code
            **kwargs: Additional arguments to pass to subprocess.run
            
        Returns:
            CompletedProcess instance from subprocess.run

        Raises:
            InstallAborted: If an abort is pending
            subprocess.CalledProcessError: If check is set and the command fails
        """
        self.check_abort()
        return self._execute(cmd, check, **kwargs)

    def run_unguarded(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        """
        Run a command regardless of a pending abort and without raising on failure.
        Used by teardown, which must still work after a signal.
        """
        try:
            return self._execute(cmd, False, **kwargs)
        except OSError as e:
            logger.debug(f"Could not execute {' '.join(cmd)}: {e}")
            return subprocess.CompletedProcess(args=cmd, returncode=127, stdout="", stderr=str(e))

    def _execute(self, cmd: List[str], check: bool, **kwargs) -> subprocess.CompletedProcess:
        cmd_str = ' '.join(cmd)
        if "input" in kwargs:
            logger.debug(f"Command requested: {cmd_str} <stdin redacted>")
        else:
            logger.debug(f"Command requested: {cmd_str}")
        
        self.commands_run.append({
            "command": list(cmd),
            "simulated": self.simulating
        })
        
        if self.simulating:
            sim_prefix = colorize(f"[SIM:{self.simulation_id}]", TermColors.SIM, self.colored_output)
            logger.info(f"{sim_prefix} Would execute: {cmd_str}")
            return self._simulate_command(cmd, check, **kwargs)
            
        try:
            return subprocess.run(
                cmd,
                check=check,
                text=True,
                capture_output=True,
                # Keep children out of the terminal's process group; Ctrl+C only flags an abort
                start_new_session=True,
                **kwargs
            )
        except subprocess.CalledProcessError as e:
            logger.error(colorize(f"Command failed: {cmd_str}", TermColors.ERROR, self.colored_output))
            logger.error(f"Return code: {e.returncode}")
            logger.error(f"Stdout: {e.stdout}")
            logger.error(f"Stderr: {e.stderr}")
            raise

    def executed(self, tool: Optional[str] = None) -> List[List[str]]:
        """Return the recorded command vectors, optionally only those of one tool."""
        commands = [record["command"] for record in self.commands_run]
        if tool is None:
            return commands
        return [cmd for cmd in commands if cmd and os.path.basename(cmd[0]) == tool]

    def _simulate_command(self, cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        """
        Generate simulated output for a command.
        
        Args:
            cmd: Command to simulate
            check: Whether the caller asked for a checked call
            **kwargs: Additional arguments passed to the original command
            
        Returns:
            CompletedProcess with simulated output
        """
        result = subprocess.CompletedProcess(
            args=cmd,
            returncode=0,
            stdout="",
            stderr=""
        )
        
        cmd_name = os.path.basename(cmd[0]) if cmd else ""
        
        handlers = {
            "blkid": self._handle_blkid_simulation,
            "blockdev": self._handle_blockdev_simulation,
            "lsblk": self._handle_lsblk_simulation,
            "cryptsetup": self._handle_cryptsetup_simulation,
            "mdadm": self._handle_mdadm_simulation,
            "timedatectl": self._handle_timedatectl_simulation,
            "smartctl": self._handle_smartctl_simulation,
        }
        handler = handlers.get(cmd_name)
        if handler:
            return handler(cmd, result)
        return result
    
    def _handle_blkid_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate blkid command output"""
        if "-s" not in cmd or len(cmd) <= cmd.index("-s") + 1:
            return result
        param_type = cmd[cmd.index("-s") + 1]
        device_path = cmd[-1]
        
        if param_type == "UUID":
            if device_path not in self.simulated_uuids:
                self.simulated_uuids[device_path] = str(uuid.uuid4())
            result.stdout = self.simulated_uuids[device_path] + "\n"
        elif param_type == "PARTUUID" and _SIM_PARTITION_RE.match(device_path):
            if device_path not in self.simulated_partuuids:
                self.simulated_partuuids[device_path] = str(uuid.uuid4())
            result.stdout = self.simulated_partuuids[device_path] + "\n"
        return result
    
    def _handle_blockdev_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate blockdev command output"""
        if "--getsize64" in cmd:
            size_bytes = 500107862016  # ~465.76 GiB
            if "disk_size" in self.simulation_params:
                try:
                    size_bytes = parse_size_spec(self.simulation_params["disk_size"])
                except ValueError:
                    pass
            result.stdout = f"{size_bytes}\n"
        elif "--getss" in cmd:
            result.stdout = f"{self.simulation_params.get('sector_size', 512)}\n"
        
        return result
    
    def _handle_lsblk_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate lsblk command output"""
        # Column list follows -o, possibly combined with other short flags (-dpno)
        columns = ""
        for position, arg in enumerate(cmd[1:-1], 1):
            if arg.startswith("-") and not arg.startswith("--") and arg.endswith("o"):
                columns = cmd[position + 1]
                break
        if columns == "NAME,TYPE":
            disks = self.simulation_params.get("disks", [])
            result.stdout = "".join(f"{disk} disk\n" for disk in disks)
        elif "MODEL" in columns:
            disk_type = self.simulation_params.get("disk_type", "disk").upper()
            result.stdout = f"SIMULATED {disk_type}\n"
        elif "MOUNTPOINT" in columns:
            result.stdout = ""
        
        return result
    
    def _handle_cryptsetup_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate cryptsetup command output"""
        if "--version" in cmd:
            result.stdout = "cryptsetup 2.7.0\n"
        elif "luksUUID" in cmd:
            # Same value blkid reports for the device
            device_path = cmd[-1]
            if device_path not in self.simulated_uuids:
                self.simulated_uuids[device_path] = str(uuid.uuid4())
            result.stdout = self.simulated_uuids[device_path] + "\n"
        
        return result

    def _handle_mdadm_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate mdadm command output"""
        if "--detail" in cmd and "--scan" in cmd:
            lines = []
            for created in self.executed("mdadm"):
                if "--create" in created:
                    array_path = created[created.index("--create") + 1]
                    name = os.path.basename(array_path)
                    lines.append(f"ARRAY {array_path} metadata=1.2 name=stratum:{name} UUID={uuid.uuid4()}")
            result.stdout = "\n".join(lines) + ("\n" if lines else "")
        elif "--examine" in cmd:
            result.returncode = 1
            result.stderr = f"mdadm: No md superblock detected on {cmd[-1]}.\n"
        return result

    def _handle_timedatectl_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate timedatectl command output"""
        if "show" in cmd:
            result.stdout = "yes\n"
        return result

    def _handle_smartctl_simulation(self, cmd: List[str], result: subprocess.CompletedProcess) -> subprocess.CompletedProcess:
        """Simulate smartctl command output"""
        result.stdout = "SMART overall-health self-assessment test result: PASSED\n"
        return result
    
    def get_simulation_report(self) -> str:
        """
        Generate a report of all simulated commands.
        
        Returns:
            Formatted string with report of simulated commands
        """
        if not self.simulating:
            return "Simulation mode is not active."
        
        report = []
        report.append("=" * 80)
        report.append(f"SIMULATION REPORT [ID: {self.simulation_id}]")
        report.append("=" * 80)
        report.append("")
        
        # Group commands by tool, keeping first-use order
        command_groups: Dict[str, List[List[str]]] = {}
        for cmd in self.executed():
            cmd_type = os.path.basename(cmd[0]) if cmd else "unknown"
            command_groups.setdefault(cmd_type, []).append(cmd)
        
        for cmd_type, commands in command_groups.items():
            report.append(f"{cmd_type.upper()} COMMANDS:")
            report.append("-" * 40)
            for i, cmd in enumerate(commands, 1):
                report.append(f"{i}. {' '.join(cmd)}")
            report.append("")
        
        report.append("-" * 80)
        report.append(f"Total commands simulated: {len(self.commands_run)}")
        report.append("=" * 80)
        
        return "\n".join(report)
