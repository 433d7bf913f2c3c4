from __future__ import annotations

from typing import Any

TERMINAL_REVERT_MARKERS = (
    "already settled",
    "already claimed",
    "already fulfilled",
    "already filled",
    "insufficient bid",
    "insufficient amount",
    "insufficient payment",
    "replay",
    "vaa already consumed",
    "already consumed",
    "invalid emitter",
    "emitter mismatch",
    "order not open",
    "order not found",
    "intent not found",
    "execution reverted",
    "moveabort",
)


class SolverError(RuntimeError):
    pass


class TransientError(SolverError):
    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class RpcTransportError(TransientError):
    pass


class RpcMethodError(SolverError):
    def __init__(self, method: str, *, code: int | None, message: str, data: Any = None) -> None:
        super().__init__(f"RPC error for {method}: code={code} message={message}")
        self.method = method
        self.code = code
        self.rpc_message = message
        self.data = data


class AttestationNotReady(TransientError):
    pass


class TransactionPendingConfirmationError(TransientError):
    def __init__(self, message: str, *, tx_hash: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class EconomicRejection(SolverError):
    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = details


class TerminalRejectionError(SolverError):
    def __init__(self, reason: str, *, tx_hash: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.tx_hash = tx_hash


class AttestationMismatchError(TerminalRejectionError):
    pass


class MessageParseError(SolverError):
    pass


class AttestationTimeoutError(SolverError):
    def __init__(self, message: str, *, elapsed_seconds: float) -> None:
        super().__init__(message)
        self.elapsed_seconds = elapsed_seconds


class ConfigurationError(SolverError):
    pass


def terminal_revert_reason(message: str) -> str | None:
    lowered = message.lower()
    for marker in TERMINAL_REVERT_MARKERS:
        if marker in lowered:
            return message
    return None


def classify_rpc_error(error: RpcMethodError) -> SolverError:
    """Map a JSON-RPC error object onto the solver error taxonomy."""
    # EIP-1474 code 3 carries contract revert data
    if error.code == 3:
        return TerminalRejectionError(error.rpc_message)
    reason = terminal_revert_reason(error.rpc_message)
    if reason is not None:
        return TerminalRejectionError(reason)
    return TransientError(str(error))
