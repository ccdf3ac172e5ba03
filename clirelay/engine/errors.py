"""Exception hierarchy for the turn orchestrator.

Only SpawnError, TurnTimeoutError and ProcessExitError end a turn.
ProtocolParseError and AttachmentError are raised close to where they
happen and recovered there.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay errors."""


class OrchestratorError(RelayError):
    """A turn could not be started or did not finish cleanly."""


class UnknownProviderError(OrchestratorError):
    """Requested provider tag is not registered."""
    def __init__(self, provider_name: str, available: list[str]):
        self.provider_name = provider_name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Unknown provider '{provider_name}'. "
            f"Available providers: {avail_str}"
        )


class SessionBusyError(OrchestratorError):
    """A process is already running for this session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} already has an active process"
        )


class SpawnError(OrchestratorError):
    """The agent binary is missing or could not be executed."""
    def __init__(self, command: str, reason: str, exit_code: int = 1):
        self.command = command
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(f"Failed to start '{command}': {reason}")


class TurnTimeoutError(OrchestratorError):
    """The process produced no output within the provider's window."""
    def __init__(self, provider_label: str, timeout_seconds: float):
        self.provider_label = provider_label
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{provider_label} CLI timeout - no response received "
            f"after {timeout_seconds:g}s"
        )


class ProcessExitError(OrchestratorError):
    """The process exited with a non-zero code."""
    def __init__(self, code: int | None, provider_label: str, stderr: str = ""):
        self.code = code
        self.provider_label = provider_label
        self.stderr = stderr
        super().__init__(f"{provider_label} CLI exited with code {code}")


class TurnAbortedError(ProcessExitError):
    """The process was terminated through an explicit abort."""


class ProtocolParseError(RelayError):
    """A structured output line could not be decoded."""
    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"Unparseable event line ({reason}): {line[:120]}")


class AttachmentError(RelayError):
    """An inbound attachment could not be decoded or written."""
    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        super().__init__(f"Attachment #{index} skipped: {reason}")
