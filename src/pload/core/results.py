"""
Result objects for core operations.

Provides a unified result structure the CLI uses to report the outcome of
a p-load run.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any

from pload.errors import ExitCode


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "run", "list")
        device: Name of the device operated on
        serial_number: Serial number of the device operated on
        exit_code: Process exit code the CLI should report
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    device: str = ""
    serial_number: str = ""
    exit_code: ExitCode = ExitCode.SUCCESS
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def to_summary(self) -> str:
        """
        Generate a human-readable summary string.

        Suitable for CLI output or simple logging.
        """
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.device:
            lines.append(f"  Device: {self.device}")
        if self.serial_number:
            lines.append(f"  Serial number: {self.serial_number}")

        actions = self.metadata.get("actions")
        if actions:
            lines.append("  Actions:")
            for action in actions:
                lines.append(f"    - {action}")

        if self.errors:
            lines.append("  Errors:")
            for err in self.errors:
                lines.append(f"    - {err}")

        return "\n".join(lines)

    @classmethod
    def success(
        cls,
        operation: str,
        device: str = "",
        serial_number: str = "",
        **kwargs,
    ) -> "OperationResult":
        """Create a successful result."""
        return cls(
            ok=True,
            operation=operation,
            device=device,
            serial_number=serial_number,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        exit_code: ExitCode = ExitCode.OPERATION_FAILED,
        **kwargs,
    ) -> "OperationResult":
        """Create a failed result."""
        result = cls(
            ok=False,
            operation=operation,
            exit_code=exit_code,
            **kwargs,
        )
        result.errors.append(error)
        return result
