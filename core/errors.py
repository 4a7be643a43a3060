"""
Typed error taxonomy for the ledger core.

Every error carries a stable `code` and an HTTP status so the API layer can
render `{"error": code, "message": ...}` without leaking internal state.
"""


class LedgerError(Exception):
    code = 'ledger_error'
    http_status = 500
    retriable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(LedgerError):
    """Bad input, rejected before any write."""
    code = 'validation_error'
    http_status = 400


class ConflictError(LedgerError):
    """Invariant violation (double completion, overdraw, illegal transition)."""
    code = 'conflict'
    http_status = 409


class ExternalUnavailable(LedgerError):
    """Blockchain adapter unreachable or transient RPC failure."""
    code = 'external_unavailable'
    http_status = 503
    retriable = True


class TransferReverted(ExternalUnavailable):
    """The chain mined the transfer but it reverted."""
    code = 'transfer_reverted'


class ReconciliationMismatch(LedgerError):
    """On-chain state disagrees with the ledger. Never auto-resolved."""
    code = 'reconciliation_mismatch'
    http_status = 409


class TerminalFailure(LedgerError):
    """The transfer cannot complete by retrying; the transaction is marked failed."""
    code = 'terminal_failure'
    http_status = 502
