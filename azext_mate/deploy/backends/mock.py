"""Simulated execution backend.

Turns a script into a deterministic list of timed log events without
any I/O, so the whole session and rendering path can be exercised
without credentials or infrastructure.  :func:`plan_simulation` is pure;
:class:`MockBackend` only plays the plan back.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from azext_mate.deploy.backends.base import ExecutionBackend
from azext_mate.deploy.errors import ScriptExecutionError, UserCancelled
from azext_mate.deploy.models import (
    BackendKind,
    DeployContext,
    ExecutionResult,
    LogKind,
    script_commands,
)

_MAX_COMMAND_DISPLAY = 60


class LineKind(str, Enum):
    """Syntactic shape of a script line."""

    ASSIGNMENT = "assignment"
    RESOURCE_GROUP = "resource_group"
    VIRTUAL_NETWORK = "virtual_network"
    VIRTUAL_MACHINE = "virtual_machine"
    CREATE = "create"
    OUTPUT = "output"
    OTHER = "other"


@dataclass(frozen=True)
class SimulationStep:
    """One synthetic event followed by a pause of ``delay`` seconds."""

    message: str
    kind: LogKind
    delay: float = 0.0
    progress: float | None = None


_RESOURCE_GROUP_RE = re.compile(r"\bnew-azresourcegroup\b", re.IGNORECASE)
_VIRTUAL_NETWORK_RE = re.compile(r"\bnew-azvirtualnetwork\b", re.IGNORECASE)
_VIRTUAL_MACHINE_RE = re.compile(r"\bnew-azvm\b", re.IGNORECASE)
_CREATE_RE = re.compile(r"^new-az(\w+)", re.IGNORECASE)
_OUTPUT_RE = re.compile(r"\bwrite-(host|output)\b", re.IGNORECASE)
_COLOR_ARG_RE = re.compile(r"-(Foreground|Background)Color\s+\w+", re.IGNORECASE)


def classify_line(line: str) -> LineKind:
    """Classify a single (stripped, non-comment) script line."""
    if line.startswith("$"):
        return LineKind.ASSIGNMENT
    if _RESOURCE_GROUP_RE.search(line):
        return LineKind.RESOURCE_GROUP
    if _VIRTUAL_NETWORK_RE.search(line):
        return LineKind.VIRTUAL_NETWORK
    if _VIRTUAL_MACHINE_RE.search(line):
        return LineKind.VIRTUAL_MACHINE
    if _CREATE_RE.match(line):
        return LineKind.CREATE
    if _OUTPUT_RE.search(line):
        return LineKind.OUTPUT
    return LineKind.OTHER


def _display(command: str) -> str:
    if len(command) > _MAX_COMMAND_DISPLAY:
        return command[:_MAX_COMMAND_DISPLAY] + "..."
    return command


def _echo_text(command: str) -> str:
    text = _OUTPUT_RE.sub("", command, count=1)
    text = _COLOR_ARG_RE.sub("", text)
    return text.replace('"', "").replace("'", "").strip()


def _steps_for(command: str) -> list[SimulationStep]:
    kind = classify_line(command)
    shown = SimulationStep(_display(command), LogKind.COMMAND)

    if kind is LineKind.ASSIGNMENT:
        return [SimulationStep(shown.message, LogKind.COMMAND, 0.1)]

    if kind is LineKind.RESOURCE_GROUP:
        return [
            shown,
            SimulationStep("Creating Resource Group...", LogKind.INFO, 1.5),
            SimulationStep("Resource Group created successfully.", LogKind.SUCCESS),
        ]

    if kind is LineKind.VIRTUAL_NETWORK:
        return [
            shown,
            SimulationStep("Allocating address space 10.0.0.0/16...", LogKind.INFO, 2.0),
            SimulationStep("Virtual Network created.", LogKind.SUCCESS),
        ]

    if kind is LineKind.VIRTUAL_MACHINE:
        return [
            shown,
            SimulationStep("Starting Virtual Machine deployment (Standard_DS1_v2)...", LogKind.INFO),
            SimulationStep("This operation may take several minutes...", LogKind.WARNING, 1.5),
            SimulationStep("Provisioning Network Interfaces...", LogKind.INFO, 1.5),
            SimulationStep("Creating OS Disk...", LogKind.INFO, 2.5),
            SimulationStep("Virtual Machine is running.", LogKind.SUCCESS),
        ]

    if kind is LineKind.CREATE:
        resource_type = _CREATE_RE.match(command).group(1)
        return [
            shown,
            SimulationStep(f"Provisioning {resource_type}...", LogKind.INFO, 1.2),
            SimulationStep(f"{resource_type} provisioned.", LogKind.SUCCESS),
        ]

    if kind is LineKind.OUTPUT:
        return [
            shown,
            SimulationStep(_echo_text(command), LogKind.INFO, 0.6),
        ]

    return [SimulationStep(shown.message, LogKind.COMMAND, 0.4)]


def plan_simulation(script: str, subscription_id: str = "") -> list[SimulationStep]:
    """Build the ordered event plan for *script*.

    Identical input always yields an identical plan.
    """
    context_name = subscription_id or "Subscription-1"
    plan = [
        SimulationStep("Authenticating to Azure with Managed Identity...", LogKind.INFO, 0.8),
        SimulationStep(f"Authentication Successful. Context: {context_name}", LogKind.SUCCESS, 0.5),
    ]

    commands = script_commands(script)
    total = len(commands)
    for index, command in enumerate(commands, start=1):
        steps = _steps_for(command)
        last = steps[-1]
        steps[-1] = SimulationStep(last.message, last.kind, last.delay, progress=index * 100.0 / total)
        plan.extend(steps)
    return plan


class MockBackend(ExecutionBackend):
    """Plays back :func:`plan_simulation` with stop-aware timers.

    ``time_scale`` multiplies every delay; ``0`` replays instantly.
    """

    kind = BackendKind.MOCK
    display_name = "Simulated deployment"
    requires_token = False

    def __init__(self, time_scale: float = 1.0):
        super().__init__()
        self._time_scale = max(0.0, float(time_scale))

    def _run(self, script: str, context: DeployContext) -> ExecutionResult:
        try:
            plan = plan_simulation(script, context.subscription_id)
            self.logger.debug("Simulating %d steps", len(plan))
            for step in plan:
                self.emit(step.message, step.kind, source="simulation", progress=step.progress)
                if not self._pause(step.delay * self._time_scale):
                    raise UserCancelled("Simulation stopped.")
        except UserCancelled:
            raise
        except Exception as exc:
            self.logger.exception("Simulation fault")
            raise ScriptExecutionError("An unexpected error occurred during deployment.") from exc

        return ExecutionResult(success=True, exit_code=0, output=f"{len(plan)} simulated events")

    def _release(self) -> None:
        # No live handle; stop() only has to interrupt the pause.
        return None
